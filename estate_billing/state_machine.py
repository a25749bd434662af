"""
Canonical per-tenant subscription state.

Every status change, from a webhook or from an explicit user action, goes
through SubscriptionStateMachine. Writes for one tenant are serialized by
tenant_lock plus a row lock, and the Subscription version column catches
anything that slips past both.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from estate_billing.errors import ConflictError, TenantResolutionError
from estate_billing.locks import tenant_lock
from estate_billing.models import as_utc, utcnow
from estate_billing.webhooks.normalizer import CanonicalEvent, NormalizedEvent

logger = logging.getLogger(__name__)


class SubscriptionStatus(str, Enum):
    TRIAL = "trial"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"


ALLOWED_TRANSITIONS = {
    SubscriptionStatus.TRIAL: {
        SubscriptionStatus.TRIAL,
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.SUSPENDED,
        SubscriptionStatus.CANCELLED,
    },
    SubscriptionStatus.ACTIVE: {
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.SUSPENDED,
        SubscriptionStatus.CANCELLED,
    },
    SubscriptionStatus.SUSPENDED: {
        SubscriptionStatus.SUSPENDED,
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.CANCELLED,
    },
    # Terminal
    SubscriptionStatus.CANCELLED: {SubscriptionStatus.CANCELLED},
}


class Outcome(str, Enum):
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    DUPLICATE = "duplicate"
    STALE = "stale"
    REJECTED = "rejected"


@dataclass
class TransitionResult:
    tenant_id: str
    previous: Optional[SubscriptionStatus]
    current: Optional[SubscriptionStatus]
    changed: bool
    outcome: Outcome


def resolve_status(event: NormalizedEvent) -> Optional[SubscriptionStatus]:
    """
    Target status for a normalized event, or None when the event does not
    move the status (informational events, unmapped provider statuses).
    """
    status = event.provider_status

    if event.kind is CanonicalEvent.SUBSCRIPTION_CREATED:
        return SubscriptionStatus.TRIAL if status == "trialing" else SubscriptionStatus.ACTIVE

    if event.kind is CanonicalEvent.SUBSCRIPTION_UPDATED:
        if status == "canceled" or event.cancel_at_period_end:
            return SubscriptionStatus.CANCELLED
        if status in ("past_due", "unpaid"):
            return SubscriptionStatus.SUSPENDED
        if status == "trialing":
            return SubscriptionStatus.TRIAL
        if status == "active":
            return SubscriptionStatus.ACTIVE
        return None

    if event.kind is CanonicalEvent.SUBSCRIPTION_DELETED:
        return SubscriptionStatus.CANCELLED

    if event.kind is CanonicalEvent.INVOICE_PAYMENT_FAILED:
        return SubscriptionStatus.SUSPENDED

    return None


def is_allowed(current: SubscriptionStatus, target: SubscriptionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def _snapshot(subscription):
    return (
        subscription.status,
        as_utc(subscription.current_period_start),
        as_utc(subscription.current_period_end),
        as_utc(subscription.trial_ends_at),
        as_utc(subscription.cancelled_at),
    )


def _settle_cancelled_at(subscription, cancelled_at=None):
    # cancelled_at is set iff the status is cancelled
    if subscription.status == SubscriptionStatus.CANCELLED.value:
        if subscription.cancelled_at is None:
            subscription.cancelled_at = cancelled_at or utcnow()
    else:
        subscription.cancelled_at = None


class SubscriptionStateMachine:
    def __init__(self, store, lock_timeout: int = 30):
        self.store = store
        self.lock_timeout = lock_timeout

    # ---- webhook events ----

    def apply(self, event: NormalizedEvent) -> TransitionResult:
        """
        Apply one normalized event to the owning tenant's subscription.

        Raises TenantResolutionError when no tenant owns ``customer_ref``.
        Re-delivered events (same provider event id) are no-ops.
        """
        tenant_id = self.store.find_tenant_by_customer(event.provider, event.customer_ref)
        if tenant_id is None:
            raise TenantResolutionError(
                f"No tenant for {event.provider} customer {event.customer_ref}",
                provider=event.provider,
                operation="apply_event",
                details={"customer_ref": event.customer_ref, "event_type": event.raw_type},
            )

        with tenant_lock(tenant_id, timeout=self.lock_timeout):
            try:
                return self._apply_locked(tenant_id, event)
            except Exception:
                self.store.rollback()
                raise

    def _apply_locked(self, tenant_id: str, event: NormalizedEvent) -> TransitionResult:
        if event.external_event_id and self.store.has_processed_event(
            event.provider, event.external_event_id
        ):
            logger.info(
                "Duplicate webhook event skipped",
                extra={"provider": event.provider, "event_id": event.external_event_id},
            )
            return TransitionResult(tenant_id, None, None, False, Outcome.DUPLICATE)

        subscription = self.store.get_subscription_for_update(tenant_id)
        previous = SubscriptionStatus(subscription.status)
        outcome = self._transition(subscription, event)
        current = SubscriptionStatus(subscription.status)

        if event.external_event_id:
            self.store.record_event(
                event.provider, event.external_event_id, event.raw_type, outcome.value
            )

        if not self.store.commit_or_duplicate():
            return TransitionResult(tenant_id, previous, previous, False, Outcome.DUPLICATE)

        logger.info(
            "Subscription event applied",
            extra={
                "tenant_id": tenant_id,
                "event_type": event.raw_type,
                "previous": previous.value,
                "current": current.value,
                "outcome": outcome.value,
            },
        )
        return TransitionResult(
            tenant_id, previous, current, outcome is Outcome.APPLIED, outcome
        )

    def _transition(self, subscription, event: NormalizedEvent) -> Outcome:
        occurred_at = as_utc(event.occurred_at)
        last_event_at = as_utc(subscription.last_event_at)

        if occurred_at and last_event_at and occurred_at < last_event_at:
            logger.info(
                "Stale webhook event ignored",
                extra={
                    "tenant_id": subscription.tenant_id,
                    "event_type": event.raw_type,
                    "occurred_at": occurred_at.isoformat(),
                    "last_event_at": last_event_at.isoformat(),
                },
            )
            return Outcome.STALE

        current = SubscriptionStatus(subscription.status)
        target = resolve_status(event)

        if target is not None and not is_allowed(current, target):
            logger.warning(
                "Disallowed subscription transition ignored",
                extra={
                    "tenant_id": subscription.tenant_id,
                    "from": current.value,
                    "to": target.value,
                    "event_type": event.raw_type,
                },
            )
            return Outcome.REJECTED

        before = _snapshot(subscription)

        if target is not None:
            subscription.status = target.value
        if event.current_period_start:
            subscription.current_period_start = event.current_period_start
        if event.current_period_end:
            subscription.current_period_end = event.current_period_end
        if event.trial_end:
            subscription.trial_ends_at = event.trial_end
        _settle_cancelled_at(subscription, event.canceled_at or occurred_at)

        if occurred_at:
            subscription.last_event_at = occurred_at

        return Outcome.APPLIED if _snapshot(subscription) != before else Outcome.UNCHANGED

    # ---- explicit user actions ----

    def set_status(self, tenant_id: str, target: SubscriptionStatus, patch: Optional[dict] = None):
        """
        Move a tenant to ``target`` outside the webhook path.

        Raises ConflictError when the transition graph forbids it.
        """
        with tenant_lock(tenant_id, timeout=self.lock_timeout):
            try:
                subscription = self.store.get_subscription_for_update(tenant_id)
                if subscription is None:
                    raise ConflictError(f"Tenant {tenant_id} has no subscription")

                current = SubscriptionStatus(subscription.status)
                if not is_allowed(current, target):
                    raise ConflictError(
                        f"Cannot move subscription from {current.value} to {target.value}",
                        details={"from": current.value, "to": target.value},
                    )

                patch = dict(patch or {})
                patch["status"] = target.value
                if target is SubscriptionStatus.CANCELLED:
                    patch["cancelled_at"] = (
                        subscription.cancelled_at or patch.get("cancelled_at") or utcnow()
                    )
                else:
                    patch["cancelled_at"] = None

                subscription = self.store.upsert_subscription(tenant_id, patch)
                self.store.commit()
            except Exception:
                self.store.rollback()
                raise

        logger.info(
            "Subscription status set",
            extra={"tenant_id": tenant_id, "from": current.value, "to": target.value},
        )
        return subscription
