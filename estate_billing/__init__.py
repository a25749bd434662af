import logging
from typing import Optional

from flask import Flask, jsonify

from estate_billing.config import BillingSettings, get_config, validate_settings
from estate_billing.enforcement import PlanLimitEnforcer
from estate_billing.error_handlers import register_error_handlers
from estate_billing.extensions import init_extensions
from estate_billing.logging_config import setup_logging
from estate_billing.observability import init_metrics, init_sentry
from estate_billing.providers import build_providers
from estate_billing.routes.billing import billing_bp
from estate_billing.routes.webhooks import webhooks_bp
from estate_billing.services import BillingServices, SubscriptionService
from estate_billing.state_machine import SubscriptionStateMachine
from estate_billing.storage import SubscriptionStore
from estate_billing.webhooks.processor import WebhookProcessor
from estate_billing.webhooks.verifier import MercadoPagoWebhookVerifier, StripeWebhookVerifier

logger = logging.getLogger(__name__)


def create_app(
    config_name: Optional[str] = None,
    settings: Optional[BillingSettings] = None,
    providers: Optional[dict] = None,
) -> Flask:
    """
    Application factory.

    Args:
        config_name: Configuration name (development, production, testing)
        settings: Provider settings; read from the environment when omitted
        providers: Prebuilt payment providers keyed by name, mainly for tests

    Raises:
        ConfigurationError: If configuration validation fails
    """
    app = Flask(__name__)

    config = get_config(config_name)
    app.config.from_object(config)

    setup_logging(app)
    app.logger.info(f"Starting billing service in {app.config.get('ENVIRONMENT')} mode...")

    settings = settings or BillingSettings()
    validate_settings(settings, app.config["ENVIRONMENT"])

    init_sentry(app)
    init_extensions(app)
    init_metrics(app)

    app.extensions["billing"] = build_services(app, settings, providers)

    app.register_blueprint(webhooks_bp)
    app.register_blueprint(billing_bp)
    register_error_handlers(app)

    @app.route("/health")
    def health():
        return jsonify({"status": "ok", "service": app.config["APP_NAME"]})

    app.logger.info("Billing service initialized")
    return app


def build_services(app: Flask, settings: BillingSettings, providers: Optional[dict] = None) -> BillingServices:
    store = SubscriptionStore()
    providers = build_providers(settings) if providers is None else providers
    state_machine = SubscriptionStateMachine(
        store, lock_timeout=app.config.get("TENANT_LOCK_TIMEOUT", 30)
    )

    processor = WebhookProcessor(
        store,
        state_machine,
        providers,
        stripe_verifier=StripeWebhookVerifier(
            settings.STRIPE_WEBHOOK_SECRET, tolerance=settings.STRIPE_WEBHOOK_TOLERANCE
        ),
        mercadopago_verifier=MercadoPagoWebhookVerifier(
            settings.MERCADOPAGO_WEBHOOK_SECRET,
            allow_unsigned=settings.MERCADOPAGO_ALLOW_UNSIGNED_WEBHOOKS,
        ),
        reject_invalid_mercadopago_signature=settings.MERCADOPAGO_REJECT_INVALID_SIGNATURE,
    )

    return BillingServices(
        settings=settings,
        store=store,
        providers=providers,
        state_machine=state_machine,
        enforcer=PlanLimitEnforcer(store),
        processor=processor,
        subscriptions=SubscriptionService(store, state_machine, providers, settings),
    )
