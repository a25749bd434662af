import hashlib
import hmac
import json
import time
from unittest.mock import Mock

import pytest
from faker import Faker

from estate_billing import create_app
from estate_billing.config import BillingSettings
from estate_billing.enforcement import ResourceKind
from estate_billing.extensions import db
from estate_billing.plans import seed_plans
from estate_billing.providers import MercadoPagoProvider, StripeProvider

# Initialize Faker for generating test data
fake = Faker("pt_BR")

STRIPE_WEBHOOK_SECRET = "whsec_test_secret"
MERCADOPAGO_WEBHOOK_SECRET = "mp_test_secret"

VALID_CPF = "529.982.247-25"
VALID_CNPJ = "11.222.333/0001-81"


def pytest_configure(config):
    config.addinivalue_line("markers", "payment: mark test as payment-related")
    config.addinivalue_line("markers", "webhook: mark test as webhook-related")


@pytest.fixture
def settings():
    return BillingSettings(
        STRIPE_SECRET_KEY="sk_test_mock",
        STRIPE_WEBHOOK_SECRET=STRIPE_WEBHOOK_SECRET,
        MERCADOPAGO_ACCESS_TOKEN="TEST-mock-token",
        MERCADOPAGO_WEBHOOK_SECRET=MERCADOPAGO_WEBHOOK_SECRET,
        MERCADOPAGO_ALLOW_UNSIGNED_WEBHOOKS=True,
        MERCADOPAGO_REJECT_INVALID_SIGNATURE=False,
        SUBSCRIPTION_PROVIDER="stripe",
        ONE_OFF_PROVIDER="mercadopago",
    )


@pytest.fixture
def stripe_provider():
    provider = Mock(spec=StripeProvider)
    provider.name = "stripe"
    return provider


@pytest.fixture
def mercadopago_provider():
    provider = Mock(spec=MercadoPagoProvider)
    provider.name = "mercadopago"
    return provider


@pytest.fixture
def usage():
    """Usage counts keyed by (tenant_id, resource kind)."""
    return {}


@pytest.fixture
def app(settings, stripe_provider, mercadopago_provider, usage):
    """Create application for testing with mocked providers and a fresh sqlite database"""
    app = create_app(
        "testing",
        settings=settings,
        providers={"stripe": stripe_provider, "mercadopago": mercadopago_provider},
    )

    with app.app_context():
        db.create_all()

        store = app.extensions["billing"].store
        for kind in ResourceKind:
            store.register_usage_counter(
                kind.value, lambda tenant_id, kind=kind.value: usage.get((tenant_id, kind), 0)
            )
        seed_plans(store, {
            "basic": {"stripe_price_id": "price_basic", "mercadopago_plan_id": "mp_plan_basic"},
            "pro": {"stripe_price_id": "price_pro", "mercadopago_plan_id": "mp_plan_pro"},
        })

        yield app

        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def billing(app):
    return app.extensions["billing"]


@pytest.fixture
def store(billing):
    return billing.store


@pytest.fixture
def tenant(billing, store):
    """A provisioned trial tenant already linked to a Stripe customer."""
    tenant_id = f"tenant-{fake.uuid4()}"
    billing.subscriptions.provision_tenant(tenant_id, fake.company(), fake.email())
    store.upsert_subscription(tenant_id, {"provider_metadata": {"stripe_customer_id": "cus_test_123"}})
    store.commit()
    return tenant_id


@pytest.fixture
def tenant_headers(tenant):
    return {"X-Tenant-ID": tenant}


@pytest.fixture
def stripe_subscription_object():
    def build(status="active", customer="cus_test_123", cancel_at_period_end=False, **extra):
        now = int(time.time())
        obj = {
            "id": "sub_test_123",
            "object": "subscription",
            "customer": customer,
            "status": status,
            "cancel_at_period_end": cancel_at_period_end,
            "current_period_start": now,
            "current_period_end": now + 30 * 24 * 3600,
            "trial_end": None,
            "canceled_at": None,
        }
        obj.update(extra)
        return obj
    return build


@pytest.fixture
def stripe_event():
    def build(event_type, obj, event_id=None, created=None):
        return {
            "id": event_id or f"evt_{fake.uuid4()}",
            "object": "event",
            "type": event_type,
            "created": created or int(time.time()),
            "data": {"object": obj},
        }
    return build


@pytest.fixture
def sign_stripe():
    """Build a Stripe-Signature header the way Stripe does."""
    def sign(payload: str, secret: str = STRIPE_WEBHOOK_SECRET, timestamp=None):
        timestamp = timestamp or int(time.time())
        signature = hmac.new(
            secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256
        ).hexdigest()
        return f"t={timestamp},v1={signature}"
    return sign


@pytest.fixture
def sign_mercadopago():
    """Build x-signature / x-request-id headers for a Mercado Pago notification."""
    def sign(data_id, request_id="req-123", secret: str = MERCADOPAGO_WEBHOOK_SECRET, ts="1700000000"):
        manifest = f"id:{data_id};request-id:{request_id};ts:{ts};"
        v1 = hmac.new(secret.encode(), manifest.encode(), hashlib.sha256).hexdigest()
        return {"x-signature": f"ts={ts},v1={v1}", "x-request-id": request_id}
    return sign


@pytest.fixture
def post_json(client):
    def post(url, payload, headers=None):
        body = json.dumps(payload)
        return client.post(url, data=body, headers=headers or {}, content_type="application/json")
    return post
