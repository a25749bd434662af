"""
Map provider-native webhook payloads onto one canonical event shape.

Normalization is pure: no network calls and no storage access. Tenant
resolution happens later, in the state machine, from ``customer_ref``.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from estate_billing.models import from_unix, utcnow
from estate_billing.providers.mercadopago_provider import parse_datetime
from estate_billing.providers.stripe_provider import as_dict, subscription_period


class CanonicalEvent(str, Enum):
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_DELETED = "subscription.deleted"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    TRIAL_WILL_END = "subscription.trial_will_end"
    PAYMENT_UPDATED = "payment.updated"
    IGNORED = "ignored"


STRIPE_EVENT_TYPES = {
    "customer.subscription.created": CanonicalEvent.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": CanonicalEvent.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": CanonicalEvent.SUBSCRIPTION_DELETED,
    "customer.subscription.trial_will_end": CanonicalEvent.TRIAL_WILL_END,
    "invoice.payment_succeeded": CanonicalEvent.INVOICE_PAYMENT_SUCCEEDED,
    "invoice.payment_failed": CanonicalEvent.INVOICE_PAYMENT_FAILED,
}

MERCADOPAGO_TOPICS = {
    "payment": CanonicalEvent.PAYMENT_UPDATED,
}


@dataclass(frozen=True)
class NormalizedEvent:
    provider: str
    kind: CanonicalEvent
    raw_type: str
    external_event_id: Optional[str] = None
    customer_ref: Optional[str] = None
    resource_id: Optional[str] = None
    provider_status: Optional[str] = None
    cancel_at_period_end: bool = False
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    occurred_at: Optional[datetime] = None

    @property
    def is_subscription_event(self) -> bool:
        return self.kind in (
            CanonicalEvent.SUBSCRIPTION_CREATED,
            CanonicalEvent.SUBSCRIPTION_UPDATED,
            CanonicalEvent.SUBSCRIPTION_DELETED,
            CanonicalEvent.INVOICE_PAYMENT_SUCCEEDED,
            CanonicalEvent.INVOICE_PAYMENT_FAILED,
            CanonicalEvent.TRIAL_WILL_END,
        )


def _customer_id(obj: Dict[str, Any]) -> Optional[str]:
    customer = obj.get("customer")
    if isinstance(customer, str) or customer is None:
        return customer
    return as_dict(customer).get("id")


def normalize_stripe_event(envelope: Dict[str, Any]) -> NormalizedEvent:
    """Normalize a verified Stripe event envelope ``{id, type, created, data: {object}}``."""
    envelope = as_dict(envelope)
    raw_type = envelope.get("type") or ""
    kind = STRIPE_EVENT_TYPES.get(raw_type, CanonicalEvent.IGNORED)
    obj = as_dict((as_dict(envelope.get("data")) or {}).get("object"))

    fields: Dict[str, Any] = {
        "provider": "stripe",
        "kind": kind,
        "raw_type": raw_type,
        "external_event_id": envelope.get("id"),
        "customer_ref": _customer_id(obj),
        "resource_id": obj.get("id"),
        "occurred_at": from_unix(envelope.get("created")),
    }

    if raw_type.startswith("customer.subscription."):
        fields.update(
            provider_status=obj.get("status"),
            cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
            current_period_start=subscription_period(obj, "current_period_start"),
            current_period_end=subscription_period(obj, "current_period_end"),
            trial_end=from_unix(obj.get("trial_end")),
            canceled_at=from_unix(obj.get("canceled_at")),
        )
    elif raw_type.startswith("invoice."):
        fields.update(
            provider_status=obj.get("status"),
            resource_id=obj.get("subscription") or obj.get("id"),
        )

    return NormalizedEvent(**fields)


def normalize_mercadopago_notification(
    body: Dict[str, Any], request_id: Optional[str] = None
) -> NormalizedEvent:
    """
    Normalize a Mercado Pago webhook body ``{id, type, action, data: {id}}``.

    Notifications carry only a resource id; the payment itself is fetched
    by the processor.
    """
    raw_type = body.get("type") or body.get("topic") or ""
    data = body.get("data") or {}
    event_id = body.get("id") or request_id

    return NormalizedEvent(
        provider="mercadopago",
        kind=MERCADOPAGO_TOPICS.get(raw_type, CanonicalEvent.IGNORED),
        raw_type=raw_type,
        external_event_id=str(event_id) if event_id else None,
        resource_id=str(data["id"]) if data.get("id") else None,
        occurred_at=parse_datetime(body.get("date_created")) or utcnow(),
    )


def normalize_mercadopago_ipn(topic: str, resource_id: str) -> NormalizedEvent:
    """Legacy IPN (``?topic=payment&id=...``). Not deduplicated; status sync is idempotent."""
    return NormalizedEvent(
        provider="mercadopago",
        kind=MERCADOPAGO_TOPICS.get(topic, CanonicalEvent.IGNORED),
        raw_type=topic,
        resource_id=str(resource_id),
        occurred_at=utcnow(),
    )
