import logging

from estate_billing.errors import ConfigurationError
from estate_billing.providers.base import (
    PayerIdentity,
    PaymentMethod,
    PaymentProvider,
    PaymentResult,
    SubscriptionResult,
)
from estate_billing.providers.mercadopago_provider import MercadoPagoProvider
from estate_billing.providers.stripe_provider import StripeProvider

__all__ = [
    "PayerIdentity",
    "PaymentMethod",
    "PaymentProvider",
    "PaymentResult",
    "SubscriptionResult",
    "MercadoPagoProvider",
    "StripeProvider",
    "build_provider",
    "build_providers",
    "get_provider",
]

logger = logging.getLogger(__name__)


def build_provider(name: str, settings) -> PaymentProvider:
    """Instantiate the provider configured under ``name``."""
    if name == "stripe":
        return StripeProvider(
            api_key=settings.STRIPE_SECRET_KEY,
            currency=settings.DEFAULT_CURRENCY,
        )

    if name == "mercadopago":
        return MercadoPagoProvider(
            access_token=settings.MERCADOPAGO_ACCESS_TOKEN,
            base_url=settings.MERCADOPAGO_BASE_URL,
            timeout=settings.MERCADOPAGO_TIMEOUT,
            notification_url=settings.MERCADOPAGO_NOTIFICATION_URL,
        )

    raise ConfigurationError(f"Unknown payment provider: {name}")


def build_providers(settings) -> dict:
    """
    Build every provider the settings reference.

    A provider without credentials is left out and reported; using it later
    raises ConfigurationError through get_provider.
    """
    providers = {}
    for name in {settings.SUBSCRIPTION_PROVIDER, settings.ONE_OFF_PROVIDER}:
        try:
            providers[name] = build_provider(name, settings)
        except ConfigurationError as e:
            logger.warning("Payment provider %s not available: %s", name, e)
    return providers


def get_provider(providers: dict, name: str) -> PaymentProvider:
    try:
        return providers[name]
    except KeyError:
        raise ConfigurationError(f"Payment provider {name} is not configured")
