import logging
import os
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from estate_billing.errors import ConfigurationError

logger = logging.getLogger(__name__)


class BaseConfig:
    """
    Base configuration shared by all environments.
    """

    # Flask
    DEBUG = False
    TESTING = False
    SECRET_KEY = None

    # Application
    APP_NAME = "Estate Billing"
    ENVIRONMENT = "base"

    # Database
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL", "sqlite:///billing.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Per-tenant locks fall back to in-process locks when unset
    REDIS_URL = os.getenv("REDIS_URL")
    TENANT_LOCK_TIMEOUT = 30

    # Observability
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    LOG_REQUESTS = False
    SENTRY_DSN = os.getenv("SENTRY_DSN")
    METRICS_ENABLED = True


class DevelopmentConfig(BaseConfig):
    """
    Development configuration.
    """

    DEBUG = True
    ENVIRONMENT = "development"
    SECRET_KEY = "dev-secret-key"
    LOG_REQUESTS = True


class TestingConfig(BaseConfig):
    TESTING = True
    ENVIRONMENT = "testing"
    SECRET_KEY = "test-secret-key"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    REDIS_URL = None
    SENTRY_DSN = None
    METRICS_ENABLED = False


class ProductionConfig(BaseConfig):
    ENVIRONMENT = "production"
    SECRET_KEY = os.getenv("SECRET_KEY")


CONFIGS = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
}


def get_config(name: Optional[str] = None):
    """
    Resolve and return the configuration class for ``name``, falling back
    to the APP_ENV environment variable.
    """
    env = (name or os.getenv("APP_ENV", "development")).lower()

    try:
        return CONFIGS[env]
    except KeyError:
        raise ConfigurationError(f"Invalid APP_ENV value: {env}")


class BillingSettings(BaseSettings):
    """Provider credentials and webhook policy, read from the environment."""

    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_WEBHOOK_TOLERANCE: int = 300

    MERCADOPAGO_ACCESS_TOKEN: Optional[str] = None
    MERCADOPAGO_WEBHOOK_SECRET: str = ""
    MERCADOPAGO_BASE_URL: str = "https://api.mercadopago.com"
    MERCADOPAGO_TIMEOUT: float = 5.0
    MERCADOPAGO_NOTIFICATION_URL: Optional[str] = None

    # An unset Mercado Pago webhook secret accepts every notification
    # while this flag is on. Turning it off rejects unsigned deliveries.
    MERCADOPAGO_ALLOW_UNSIGNED_WEBHOOKS: bool = True
    # Invalid Mercado Pago signatures are acknowledged with 200 unless set.
    MERCADOPAGO_REJECT_INVALID_SIGNATURE: bool = False

    SUBSCRIPTION_PROVIDER: str = "stripe"
    ONE_OFF_PROVIDER: str = "mercadopago"
    DEFAULT_CURRENCY: str = "brl"
    DEFAULT_PLAN_ID: str = "trial"
    TRIAL_DAYS: int = 14

    model_config = SettingsConfigDict(case_sensitive=True, extra="ignore")


def validate_settings(settings: BillingSettings, environment: str) -> list:
    """
    Check provider settings and return a list of issues.

    Raises ConfigurationError for issues that must stop a production boot.
    """
    issues = []

    if not settings.STRIPE_SECRET_KEY:
        issues.append("STRIPE_SECRET_KEY is not set")
    if not settings.STRIPE_WEBHOOK_SECRET:
        issues.append("STRIPE_WEBHOOK_SECRET is not set")
    if not settings.MERCADOPAGO_ACCESS_TOKEN:
        issues.append("MERCADOPAGO_ACCESS_TOKEN is not set")

    if not settings.MERCADOPAGO_WEBHOOK_SECRET:
        if settings.MERCADOPAGO_ALLOW_UNSIGNED_WEBHOOKS:
            logger.warning(
                "MERCADOPAGO_WEBHOOK_SECRET is not set: Mercado Pago webhooks "
                "will be accepted WITHOUT signature verification",
                extra={"flag": "MERCADOPAGO_ALLOW_UNSIGNED_WEBHOOKS"},
            )
        else:
            issues.append(
                "MERCADOPAGO_WEBHOOK_SECRET is not set and unsigned webhooks are disallowed"
            )

    for issue in issues:
        logger.warning("Billing configuration issue: %s", issue)

    if environment == "production" and not settings.STRIPE_WEBHOOK_SECRET:
        raise ConfigurationError("STRIPE_WEBHOOK_SECRET is required in production")

    return issues
