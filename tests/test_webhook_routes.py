import json
import time
import pytest
from decimal import Decimal
from unittest.mock import patch

from estate_billing.providers import PaymentResult

pytestmark = pytest.mark.webhook


@pytest.fixture
def post_stripe(client, sign_stripe):
    """POST a Stripe event with a valid signature unless one is given."""
    def post(event, signature=None):
        body = json.dumps(event)
        headers = {"Stripe-Signature": signature or sign_stripe(body)}
        return client.post("/webhooks/stripe", data=body, headers=headers, content_type="application/json")
    return post


@pytest.fixture
def pending_pix(billing, store, tenant):
    """A local Mercado Pago PIX payment waiting for payment."""
    payment = store.save_payment(
        tenant,
        "mercadopago",
        "pix",
        "brl",
        PaymentResult(id="987654", status="pending", status_detail="pending_waiting_transfer", amount=Decimal("150")),
    )
    store.commit()
    return payment


def _approved(payment_id="987654"):
    return PaymentResult(
        id=payment_id, status="approved", status_detail="accredited", amount=Decimal("150")
    )


# ---- Stripe ----

def test_stripe_event_updates_subscription(post_stripe, stripe_event, stripe_subscription_object, store, tenant):
    event = stripe_event("customer.subscription.updated", stripe_subscription_object(status="active"))

    response = post_stripe(event)

    assert response.status_code == 200
    assert response.get_json() == {"received": True, "outcome": "applied"}
    assert store.get_subscription(tenant).status == "active"


def test_stripe_invalid_signature_is_refused(post_stripe, stripe_event, stripe_subscription_object, store, tenant):
    event = stripe_event("customer.subscription.deleted", stripe_subscription_object(status="canceled"))

    response = post_stripe(event, signature=f"t={int(time.time())},v1=deadbeef")

    assert response.status_code == 401
    assert response.get_json()["error"] == "INVALID_SIGNATURE"
    assert store.get_subscription(tenant).status == "trial"


def test_stripe_missing_signature_is_refused(client, stripe_event, stripe_subscription_object):
    body = json.dumps(stripe_event("customer.subscription.updated", stripe_subscription_object()))

    response = client.post("/webhooks/stripe", data=body, content_type="application/json")

    assert response.status_code == 401


def test_stripe_processing_failure_is_still_acknowledged(post_stripe, stripe_event, stripe_subscription_object):
    """Test that an event for an unknown customer is reported, not retried"""
    event = stripe_event(
        "customer.subscription.updated", stripe_subscription_object(customer="cus_nobody")
    )

    with patch("estate_billing.webhooks.processor.report_failure") as mock_report:
        response = post_stripe(event)

    assert response.status_code == 200
    assert response.get_json()["outcome"] == "failed"
    mock_report.assert_called_once()


def test_stripe_unparseable_body_is_acknowledged(client, sign_stripe):
    body = "not json"

    response = client.post(
        "/webhooks/stripe", data=body, headers={"Stripe-Signature": sign_stripe(body)}
    )

    assert response.status_code == 200
    assert response.get_json()["outcome"] == "failed"


def test_stripe_redelivery_is_a_noop(post_stripe, stripe_event, stripe_subscription_object, store, tenant):
    event = stripe_event("invoice.payment_failed", {
        "id": "in_1", "object": "invoice", "customer": "cus_test_123", "subscription": "sub_test_123",
    })

    first = post_stripe(event)
    second = post_stripe(event)

    assert first.get_json()["outcome"] == "applied"
    assert second.get_json()["outcome"] == "duplicate"
    assert store.get_subscription(tenant).status == "suspended"


def test_stripe_unhandled_event_type(post_stripe, stripe_event):
    response = post_stripe(stripe_event("charge.refunded", {"id": "ch_1", "customer": "cus_test_123"}))

    assert response.status_code == 200
    assert response.get_json()["outcome"] == "ignored"


# ---- Mercado Pago ----

def _mp_body(payment_id="987654", notification_id=5550001):
    return {
        "id": notification_id,
        "type": "payment",
        "action": "payment.updated",
        "date_created": "2024-05-01T12:00:00Z",
        "data": {"id": payment_id},
    }


def test_mercadopago_notification_syncs_payment(
    post_json, sign_mercadopago, mercadopago_provider, pending_pix, store
):
    mercadopago_provider.get_payment_status.return_value = _approved()

    response = post_json(
        "/webhooks/mercadopago?data.id=987654&type=payment", _mp_body(), headers=sign_mercadopago("987654")
    )

    assert response.status_code == 200
    assert response.get_json()["outcome"] == "applied"
    mercadopago_provider.get_payment_status.assert_called_once_with("987654")
    payment = store.get_payment("mercadopago", "987654")
    assert payment.status == "approved"
    assert payment.status_detail == "accredited"
    assert payment.amount == Decimal("150")


def test_mercadopago_redelivery_is_a_noop(post_json, sign_mercadopago, mercadopago_provider, pending_pix):
    mercadopago_provider.get_payment_status.return_value = _approved()
    url = "/webhooks/mercadopago?data.id=987654&type=payment"

    post_json(url, _mp_body(), headers=sign_mercadopago("987654"))
    second = post_json(url, _mp_body(), headers=sign_mercadopago("987654"))

    assert second.get_json()["outcome"] == "duplicate"
    assert mercadopago_provider.get_payment_status.call_count == 1


def test_mercadopago_invalid_signature_is_acknowledged_but_ignored(
    post_json, sign_mercadopago, mercadopago_provider, pending_pix, store
):
    headers = sign_mercadopago("987654", secret="wrong-secret")

    response = post_json("/webhooks/mercadopago?data.id=987654", _mp_body(), headers=headers)

    assert response.status_code == 200
    assert response.get_json()["outcome"] == "invalid_signature"
    mercadopago_provider.get_payment_status.assert_not_called()
    assert store.get_payment("mercadopago", "987654").status == "pending"


def test_mercadopago_invalid_signature_refused_when_configured(
    billing, post_json, sign_mercadopago
):
    billing.processor.reject_invalid_mercadopago_signature = True

    response = post_json(
        "/webhooks/mercadopago?data.id=987654", _mp_body(), headers=sign_mercadopago("111")
    )

    assert response.status_code == 401


def test_mercadopago_unknown_payment(post_json, sign_mercadopago, mercadopago_provider):
    mercadopago_provider.get_payment_status.return_value = _approved("424242")

    response = post_json(
        "/webhooks/mercadopago?data.id=424242", _mp_body("424242"), headers=sign_mercadopago("424242")
    )

    assert response.status_code == 200
    assert response.get_json()["outcome"] == "unknown_payment"


def test_mercadopago_provider_failure_is_acknowledged(
    post_json, sign_mercadopago, mercadopago_provider, pending_pix
):
    from estate_billing.errors import ProviderError

    mercadopago_provider.get_payment_status.side_effect = ProviderError("boom", provider="mercadopago")

    response = post_json(
        "/webhooks/mercadopago?data.id=987654", _mp_body(), headers=sign_mercadopago("987654")
    )

    assert response.status_code == 200
    assert response.get_json()["outcome"] == "failed"


def test_ipn_syncs_payment(client, mercadopago_provider, pending_pix, store):
    mercadopago_provider.get_payment_status.return_value = _approved()

    response = client.get("/webhooks/mercadopago?topic=payment&id=987654")

    assert response.status_code == 200
    assert store.get_payment("mercadopago", "987654").status == "approved"


def test_ipn_missing_parameters(client):
    response = client.get("/webhooks/mercadopago?topic=payment")

    assert response.status_code == 400
    assert response.get_json()["error"] == "VALIDATION_ERROR"


@pytest.mark.parametrize("body", [b"[]", b"123", b'"x"', b'{"data": "abc"}', b"{not json"])
def test_mercadopago_malformed_body_is_acknowledged(client, mercadopago_provider, body):
    with patch("estate_billing.webhooks.processor.report_failure") as mock_report:
        response = client.post("/webhooks/mercadopago", data=body, content_type="application/json")

    assert response.status_code == 200
    assert response.get_json() == {"received": True, "outcome": "failed"}
    mock_report.assert_called_once()
    mercadopago_provider.get_payment_status.assert_not_called()
