from dataclasses import dataclass

from flask import current_app

from subsync.services.email_service import MailSender, VerificationMailer
from subsync.services.ledger_service import LedgerService
from subsync.services.secret_provider import SecretProvider
from subsync.services.stripe_service import GatewayInitializer
from subsync.services.subscription_service import SubscriptionService
from subsync.services.token_service import TokenStore
from subsync.services.user_directory import UserDirectory
from subsync.webhooks.reconciler import WebhookReconciler

EXTENSION_KEY = "subsync"


@dataclass
class ServiceRegistry:
    """Everything the routes and workers need, built once per app."""

    secrets: SecretProvider
    gateway: GatewayInitializer
    directory: UserDirectory
    ledger: LedgerService
    subscriptions: SubscriptionService
    tokens: TokenStore
    mail: MailSender
    verification_mailer: VerificationMailer
    reconciler: WebhookReconciler


def get_services(app=None) -> ServiceRegistry:
    app = app or current_app
    return app.extensions[EXTENSION_KEY]
