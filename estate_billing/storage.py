"""
Persistence of tenants, plans, subscriptions, payments and the webhook ledger.

This is the storage collaborator the billing core consumes. Usage counts for
business objects (users, properties, integrations) live outside billing, so
the host application registers one counter per resource kind.
"""

import logging
from typing import Callable, Dict, Optional

from sqlalchemy.exc import IntegrityError

from estate_billing.extensions import db
from estate_billing.models import Payment, Plan, Subscription, Tenant, WebhookEvent, utcnow

logger = logging.getLogger(__name__)

# provider name -> provider_metadata key holding that provider's customer reference
CUSTOMER_REF_KEYS = {
    "stripe": "stripe_customer_id",
    "mercadopago": "mercadopago_payer_email",
}

# provider name -> provider_metadata key holding the provider subscription id
SUBSCRIPTION_REF_KEYS = {
    "stripe": "stripe_subscription_id",
    "mercadopago": "mercadopago_preapproval_id",
}


class SubscriptionStore:
    """Repository over the billing tables."""

    def __init__(self, session=None):
        self._session = session
        self._usage_counters: Dict[str, Callable[[str], int]] = {}

    @property
    def session(self):
        return self._session or db.session

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()

    # ---- tenants & plans ----

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        return self.session.get(Tenant, tenant_id)

    def create_tenant(self, tenant_id: str, name: str, email: Optional[str] = None) -> Tenant:
        tenant = Tenant(id=tenant_id, name=name, email=email)
        self.session.add(tenant)
        self.session.flush()
        return tenant

    def get_plan(self, plan_id: str) -> Optional[Plan]:
        return self.session.get(Plan, plan_id)

    def save_plan(self, **fields) -> Plan:
        plan = self.get_plan(fields["id"])
        if plan is None:
            plan = Plan(**fields)
            self.session.add(plan)
        else:
            for key, value in fields.items():
                setattr(plan, key, value)
        self.session.flush()
        return plan

    # ---- subscriptions ----

    def get_subscription(self, tenant_id: str) -> Optional[Subscription]:
        return self.session.query(Subscription).filter_by(tenant_id=tenant_id).one_or_none()

    def get_subscription_for_update(self, tenant_id: str) -> Optional[Subscription]:
        return (
            self.session.query(Subscription)
            .filter_by(tenant_id=tenant_id)
            .with_for_update()
            .one_or_none()
        )

    def upsert_subscription(self, tenant_id: str, patch: dict) -> Subscription:
        """
        Create or update the tenant's subscription.

        ``provider_metadata`` in the patch is merged into the stored map
        instead of replacing it.
        """
        subscription = self.get_subscription(tenant_id)
        patch = dict(patch)
        metadata_patch = patch.pop("provider_metadata", None)

        if subscription is None:
            subscription = Subscription(tenant_id=tenant_id, provider_metadata={}, **patch)
            self.session.add(subscription)
        else:
            for key, value in patch.items():
                setattr(subscription, key, value)

        if metadata_patch:
            merged = dict(subscription.provider_metadata or {})
            merged.update(metadata_patch)
            subscription.provider_metadata = merged

        self.session.flush()
        return subscription

    def find_tenant_by_customer(self, provider: str, customer_ref: str) -> Optional[str]:
        key = CUSTOMER_REF_KEYS.get(provider)
        if key is None or not customer_ref:
            return None

        row = (
            self.session.query(Subscription.tenant_id)
            .filter(Subscription.provider_metadata[key].as_string() == customer_ref)
            .first()
        )
        return row[0] if row else None

    # ---- usage ----

    def register_usage_counter(self, resource_kind: str, counter: Callable[[str], int]) -> None:
        self._usage_counters[str(resource_kind)] = counter

    def count_usage(self, tenant_id: str, resource_kind: str) -> int:
        try:
            counter = self._usage_counters[str(resource_kind)]
        except KeyError:
            raise LookupError(f"No usage counter registered for {resource_kind}")
        return int(counter(tenant_id))

    # ---- payments ----

    def get_payment(self, provider: str, external_id: str) -> Optional[Payment]:
        return (
            self.session.query(Payment)
            .filter_by(provider=provider, external_id=str(external_id))
            .one_or_none()
        )

    def save_payment(self, tenant_id: str, provider: str, method: str, currency: str, result) -> Payment:
        payment = Payment(
            tenant_id=tenant_id,
            provider=provider,
            external_id=result.id,
            method=method,
            amount=result.amount,
            currency=currency.upper(),
            status=result.status,
            status_detail=result.status_detail,
            extras=dict(result.provider_specific_extras),
            created_at=result.created_at or utcnow(),
            approved_at=result.approved_at,
        )
        self.session.add(payment)
        self.session.flush()
        return payment

    def update_payment_status(self, payment: Payment, result) -> bool:
        """Copy status fields from a provider result. The amount never changes."""
        changed = (
            payment.status != result.status
            or payment.status_detail != result.status_detail
            or (result.approved_at is not None and payment.approved_at is None)
        )
        payment.status = result.status
        payment.status_detail = result.status_detail
        if result.approved_at is not None:
            payment.approved_at = result.approved_at
        if result.provider_specific_extras:
            extras = dict(payment.extras or {})
            extras.update(result.provider_specific_extras)
            payment.extras = extras
        self.session.flush()
        return changed

    # ---- webhook ledger ----

    def has_processed_event(self, provider: str, external_event_id: str) -> bool:
        return (
            self.session.query(WebhookEvent.id)
            .filter_by(provider=provider, external_event_id=external_event_id)
            .first()
            is not None
        )

    def record_event(self, provider: str, external_event_id: str, event_type: str, outcome: str) -> WebhookEvent:
        record = WebhookEvent(
            provider=provider,
            external_event_id=external_event_id,
            event_type=event_type,
            outcome=outcome,
            processed_at=utcnow(),
        )
        self.session.add(record)
        return record

    def commit_or_duplicate(self) -> bool:
        """
        Commit the current unit of work.

        Returns False when a concurrent delivery already recorded the same
        event (unique constraint on the ledger); the work is rolled back.
        """
        try:
            self.session.commit()
            return True
        except IntegrityError:
            self.session.rollback()
            logger.info("Webhook event recorded concurrently, treating as duplicate")
            return False
