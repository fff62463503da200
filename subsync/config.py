"""
Environment-driven configuration for the subscription sync service.
Fails fast on settings that would be unsafe in production.
"""

import json
import logging
import os
import warnings
from enum import Enum
from typing import Any, Dict
from urllib.parse import urlparse

logger = logging.getLogger(__name__)


def _bool_env(name: str, default: bool = False) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


class Environment(str, Enum):
    """Environment types"""
    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TESTING = "testing"
    STAGING = "staging"


class ConfigurationError(Exception):
    """Raised when configuration validation fails"""
    pass


class SecureConfig:
    """
    Base configuration. Secrets are lazy properties so a missing value only
    fails when it is actually needed (or at startup in production).
    """

    # ============================================
    # APPLICATION META
    # ============================================
    APP_NAME = os.getenv("APP_NAME", "Subscription Sync")
    APP_VERSION = os.getenv("APP_VERSION", "1.0.0")

    # ============================================
    # ENVIRONMENT & DEBUG
    # ============================================
    ENV = os.getenv("ENV", os.getenv("FLASK_ENV", "development")).lower()
    DEBUG = _bool_env("FLASK_DEBUG")
    TESTING = False
    PROPAGATE_EXCEPTIONS = False

    @property
    def ENVIRONMENT(self):
        """Alias for compatibility"""
        return str(self.ENV)

    # ============================================
    # DATABASE
    # ============================================
    @property
    def SQLALCHEMY_DATABASE_URI(self):
        uri = os.getenv("DATABASE_URL")

        if not uri:
            if self.ENV == Environment.PRODUCTION:
                raise ConfigurationError("DATABASE_URL is required in production")
            uri = "sqlite:///subsync.db"

        parsed = urlparse(uri)
        if self.ENV == Environment.PRODUCTION and parsed.scheme == "sqlite":
            raise ConfigurationError("SQLite is not allowed in production. Use PostgreSQL or MySQL.")

        return uri

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "echo": _bool_env("SQLALCHEMY_ECHO"),
    }

    # ============================================
    # STRIPE
    # ============================================
    @property
    def STRIPE_SECRET_KEY(self):
        """Optional override; normally resolved through the secret provider."""
        key = os.getenv("STRIPE_SECRET_KEY", "")
        if self.ENV == Environment.PRODUCTION and key.startswith("sk_test"):
            raise ConfigurationError("Stripe test key detected in production!")
        return key

    @property
    def STRIPE_WEBHOOK_SECRET(self):
        secret = os.getenv("STRIPE_WEBHOOK_SECRET", "")
        if not secret and self.ENV == Environment.PRODUCTION and not self.STRIPE_ALLOW_UNVERIFIED_WEBHOOKS:
            raise ConfigurationError("STRIPE_WEBHOOK_SECRET is required in production")
        return secret

    # Processing unsigned webhooks is opt-in only
    STRIPE_ALLOW_UNVERIFIED_WEBHOOKS = _bool_env("STRIPE_ALLOW_UNVERIFIED_WEBHOOKS")
    STRIPE_WEBHOOK_TOLERANCE = int(os.getenv("STRIPE_WEBHOOK_TOLERANCE", "300"))
    STRIPE_INIT_TIMEOUT_SECONDS = float(os.getenv("STRIPE_INIT_TIMEOUT_SECONDS", "10"))
    STRIPE_MAX_RETRIES = int(os.getenv("STRIPE_MAX_RETRIES", "2"))
    STRIPE_SECRET_NAME = os.getenv("STRIPE_SECRET_NAME", "stripe-secret-key")

    @property
    def STRIPE_PRICE_IDS(self) -> Dict[str, str]:
        """Map of "<plan>:<cycle>" to Stripe price ID."""
        raw = os.getenv("STRIPE_PRICE_IDS", "")
        if not raw:
            return {}
        try:
            mapping = json.loads(raw)
        except ValueError as e:
            raise ConfigurationError(f"STRIPE_PRICE_IDS is not valid JSON: {e}")
        if not isinstance(mapping, dict):
            raise ConfigurationError("STRIPE_PRICE_IDS must be a JSON object")
        return {str(k): str(v) for k, v in mapping.items()}

    # ============================================
    # EMAIL
    # ============================================
    MAIL_SERVER = os.getenv("MAIL_SERVER", "smtp.gmail.com")
    MAIL_PORT = int(os.getenv("MAIL_PORT", "587"))
    MAIL_USE_TLS = _bool_env("MAIL_USE_TLS", True)
    MAIL_USE_SSL = _bool_env("MAIL_USE_SSL")
    MAIL_USERNAME = os.getenv("MAIL_USERNAME", "")
    MAIL_PASSWORD_SECRET_NAME = os.getenv("MAIL_PASSWORD_SECRET_NAME", "gmail-app-password")
    MAIL_DEFAULT_SENDER = os.getenv("MAIL_DEFAULT_SENDER", "verification@example.com")
    MAIL_SUPPRESS_SEND = _bool_env("MAIL_SUPPRESS_SEND")
    SUPPORT_EMAIL = os.getenv("SUPPORT_EMAIL", "support@example.com")

    @property
    def VERIFICATION_BASE_URL(self):
        url = os.getenv("VERIFICATION_BASE_URL", "http://localhost:5000").rstrip("/")
        if self.ENV == Environment.PRODUCTION and not url.startswith("https://"):
            warnings.warn(f"Verification URL should use HTTPS in production: {url}")
        return url

    VERIFICATION_TOKEN_TTL_HOURS = int(os.getenv("VERIFICATION_TOKEN_TTL_HOURS", "24"))

    # ============================================
    # LEDGER
    # ============================================
    LEDGER_RETENTION_YEARS = int(os.getenv("LEDGER_RETENTION_YEARS", "7"))

    # ============================================
    # CORS
    # ============================================
    @property
    def CORS_ORIGINS(self):
        origins = os.getenv("CORS_ORIGINS", "")
        if origins:
            origin_list = [o.strip() for o in origins.split(",") if o.strip()]
            if self.ENV == Environment.PRODUCTION and "*" in origin_list:
                raise ConfigurationError("CORS wildcard ('*') is not allowed in production")
            return origin_list
        return [] if self.ENV == Environment.PRODUCTION else ["*"]

    # ============================================
    # CELERY
    # ============================================
    CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
    CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", CELERY_BROKER_URL)

    # ============================================
    # MONITORING & LOGGING
    # ============================================
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
    LOG_REQUESTS = _bool_env("LOG_REQUESTS")
    SENTRY_DSN = os.getenv("SENTRY_DSN")

    def __init__(self, env: str = None):
        if env:
            self.ENV = env
        self._validate_environment()
        logger.info(f"Configuration loaded for {self.ENV} environment")

    def _validate_environment(self):
        valid_environments = [env.value for env in Environment]
        if self.ENV not in valid_environments:
            raise ConfigurationError(
                f"Invalid ENV/FLASK_ENV: {self.ENV}. "
                f"Must be one of: {', '.join(valid_environments)}"
            )

        if self.DEBUG and self.ENV == Environment.PRODUCTION:
            warnings.warn("DEBUG mode is enabled in production! This is a security risk.")

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to a dictionary with secrets masked"""
        config_dict = {}

        for key in dir(self):
            if not key.startswith("_") and key.isupper():
                try:
                    value = getattr(self, key)
                except ConfigurationError:
                    config_dict[key] = "<invalid>"
                    continue

                if any(s in key.lower() for s in ("key", "secret", "password", "token", "dsn")):
                    if isinstance(value, str) and len(value) > 4:
                        config_dict[key] = f"***{value[-4:]}"
                    else:
                        config_dict[key] = "***"
                else:
                    config_dict[key] = value

        return config_dict

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} ENV={self.ENV}>"


class DevelopmentConfig(SecureConfig):
    """Development configuration with relaxed settings"""

    def __init__(self, env: str = Environment.DEVELOPMENT.value):
        super().__init__(env)
        self.DEBUG = True
        self.PROPAGATE_EXCEPTIONS = True
        self.MAIL_SUPPRESS_SEND = True
        logger.info("Development configuration loaded")


class ProductionConfig(SecureConfig):
    """Production configuration with strict validation"""

    def __init__(self, env: str = Environment.PRODUCTION.value):
        super().__init__(env)
        self.DEBUG = False
        self.PROPAGATE_EXCEPTIONS = False

        # Touch the lazy properties so misconfiguration fails at boot
        _ = self.SQLALCHEMY_DATABASE_URI
        _ = self.STRIPE_SECRET_KEY
        _ = self.STRIPE_WEBHOOK_SECRET
        _ = self.CORS_ORIGINS
        logger.info("Production configuration loaded")


class TestingConfig(SecureConfig):
    """Testing configuration"""

    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ENGINE_OPTIONS = {}
    STRIPE_SECRET_KEY = "sk_test_mock"
    STRIPE_WEBHOOK_SECRET = "whsec_test_secret"
    STRIPE_PRICE_IDS = {
        "starter:monthly": "price_starter_monthly",
        "starter:yearly": "price_starter_yearly",
        "professional:monthly": "price_professional_monthly",
        "professional:yearly": "price_professional_yearly",
        "premium:monthly": "price_premium_monthly",
        "premium:yearly": "price_premium_yearly",
    }
    STRIPE_INIT_TIMEOUT_SECONDS = 2.0
    VERIFICATION_BASE_URL = "http://testserver"
    CORS_ORIGINS = ["*"]

    def __init__(self, env: str = Environment.TESTING.value):
        self.ENV = env
        self.DEBUG = False
        self.TESTING = True
        self.MAIL_SUPPRESS_SEND = True
        logger.info("Testing configuration loaded")


def get_config(env: str = None) -> SecureConfig:
    """Get configuration based on environment"""
    if env is None:
        env = os.getenv("ENV", os.getenv("FLASK_ENV", "development"))
    env = env.lower()

    config_map = {
        Environment.DEVELOPMENT.value: DevelopmentConfig,
        Environment.PRODUCTION.value: ProductionConfig,
        Environment.TESTING.value: TestingConfig,
        Environment.STAGING.value: ProductionConfig,
    }

    config_class = config_map.get(env)
    if not config_class:
        raise ConfigurationError(f"Unknown environment: {env}")

    return config_class(env)
