"""
Flask application factory for the subscription sync service.
Designed to fail fast on configuration errors in production.
"""

import logging
from datetime import timedelta
from typing import Any, Optional

import sentry_sdk
from flask import Flask
from sentry_sdk.integrations.flask import FlaskIntegration

from subsync.config import ConfigurationError, get_config
from subsync.error_handlers import register_error_handlers
from subsync.extensions import init_extensions, mail
from subsync.logging_config import setup_logging
from subsync.registry import EXTENSION_KEY, ServiceRegistry
from subsync.routes import register_blueprints
from subsync.services.email_service import MailSender, VerificationMailer
from subsync.services.ledger_service import LedgerService
from subsync.services.secret_provider import SecretProvider
from subsync.services.stripe_service import GatewayInitializer, StripeConfig
from subsync.services.subscription_service import SubscriptionService
from subsync.services.token_service import TokenStore
from subsync.services.user_directory import UserDirectory
from subsync.webhooks.reconciler import WebhookReconciler

logger = logging.getLogger(__name__)

__all__ = ["create_app", "ConfigurationError"]


def setup_sentry(app: Flask) -> None:
    """Initialize Sentry error tracking"""
    sentry_dsn = app.config.get("SENTRY_DSN")

    if sentry_dsn and app.config.get("ENVIRONMENT") == "production":
        try:
            sentry_sdk.init(
                dsn=sentry_dsn,
                integrations=[FlaskIntegration()],
                traces_sample_rate=0.1,
                environment="production",
                release=app.config.get("APP_VERSION", "1.0.0"),
                send_default_pii=False,
            )
            app.logger.info("Sentry error tracking initialized")
        except Exception as e:
            app.logger.error(f"Failed to initialize Sentry: {str(e)}")


def build_services(app: Flask, secrets: SecretProvider,
                   gateway: Optional[GatewayInitializer] = None) -> ServiceRegistry:
    config = app.config

    if gateway is None:
        gateway = GatewayInitializer(secrets, StripeConfig.from_app_config(config))

    directory = UserDirectory()
    ledger = LedgerService(retention_years=config.get("LEDGER_RETENTION_YEARS", 7))
    subscriptions = SubscriptionService(
        gateway,
        directory,
        ledger,
        price_ids=config.get("STRIPE_PRICE_IDS") or {},
    )
    sender = MailSender(mail, default_sender=config.get("MAIL_DEFAULT_SENDER"))
    ttl_hours = config.get("VERIFICATION_TOKEN_TTL_HOURS", 24)

    return ServiceRegistry(
        secrets=secrets,
        gateway=gateway,
        directory=directory,
        ledger=ledger,
        subscriptions=subscriptions,
        tokens=TokenStore(ttl=timedelta(hours=ttl_hours)),
        mail=sender,
        verification_mailer=VerificationMailer(
            sender,
            base_url=config.get("VERIFICATION_BASE_URL", ""),
            support_email=config.get("SUPPORT_EMAIL", ""),
            ttl_hours=ttl_hours,
        ),
        reconciler=WebhookReconciler(
            subscriptions,
            webhook_secret=config.get("STRIPE_WEBHOOK_SECRET") or None,
            allow_unverified=config.get("STRIPE_ALLOW_UNVERIFIED_WEBHOOKS", False),
            tolerance=config.get("STRIPE_WEBHOOK_TOLERANCE", 300),
        ),
    )


def create_app(config_name: Optional[str] = None, gateway: Optional[GatewayInitializer] = None,
               secret_client: Any = None, **overrides) -> Flask:
    """
    Build the application.

    ``gateway`` replaces the Stripe initializer (tests pass a ready one),
    ``secret_client`` is an optional vault client for the secret provider and
    ``overrides`` are applied on top of the environment config.
    """
    app = Flask(__name__)

    config = get_config(config_name)
    app.config.from_object(config)
    app.config.update(overrides)

    setup_logging(app)
    setup_sentry(app)

    secrets = SecretProvider(client=secret_client)
    if not app.config.get("MAIL_PASSWORD"):
        app.config["MAIL_PASSWORD"] = secrets.get_secret(app.config["MAIL_PASSWORD_SECRET_NAME"])

    init_extensions(app)
    register_error_handlers(app)

    services = build_services(app, secrets, gateway=gateway)
    app.extensions[EXTENSION_KEY] = services
    if not app.config.get("TESTING"):
        # Start resolving the Stripe key now
        services.gateway.start()

    register_blueprints(app)

    from subsync.cli import register_commands

    register_commands(app)

    app.logger.info(f"Application created in {app.config.get('ENVIRONMENT')} mode")
    return app
