"""
Webhook processing with the always-acknowledge policy.

Once a delivery is authentic, every processing failure is reported to the
observability side-channel and the provider still gets a 200. Only an
invalid Stripe signature (and, when configured, an invalid Mercado Pago
signature) is refused.
"""

import json
import logging
from typing import Any, Dict, Mapping, Optional, Tuple

from estate_billing.errors import AuthenticationError, ValidationError
from estate_billing.observability import record_webhook, report_failure
from estate_billing.providers import get_provider
from estate_billing.webhooks.normalizer import (
    CanonicalEvent,
    NormalizedEvent,
    normalize_mercadopago_ipn,
    normalize_mercadopago_notification,
    normalize_stripe_event,
)
from estate_billing.webhooks.verifier import MERCADOPAGO_REQUEST_ID_HEADER, header

logger = logging.getLogger(__name__)

ACK = {"received": True}


class WebhookProcessor:
    def __init__(
        self,
        store,
        state_machine,
        providers: dict,
        stripe_verifier,
        mercadopago_verifier,
        reject_invalid_mercadopago_signature: bool = False,
    ):
        self.store = store
        self.state_machine = state_machine
        self.providers = providers
        self.stripe_verifier = stripe_verifier
        self.mercadopago_verifier = mercadopago_verifier
        self.reject_invalid_mercadopago_signature = reject_invalid_mercadopago_signature

    # ---- entry points ----

    def handle_stripe(self, headers: Mapping[str, str], raw_body: bytes) -> Dict[str, Any]:
        if not self.stripe_verifier.verify(headers, raw_body):
            record_webhook("stripe", "invalid_signature")
            raise AuthenticationError("Invalid Stripe webhook signature", provider="stripe")

        try:
            envelope = json.loads(raw_body)
            event = normalize_stripe_event(envelope)
        except Exception as exc:
            record_webhook("stripe", "failed")
            report_failure(exc, {"webhook": "stripe", "handler": "parse"})
            return {**ACK, "outcome": "failed"}

        return {**ACK, "outcome": self.process(event)}

    def handle_mercadopago(
        self,
        headers: Mapping[str, str],
        raw_body: bytes,
        query: Optional[Mapping[str, str]] = None,
    ) -> Dict[str, Any]:
        try:
            body = json.loads(raw_body) if raw_body else {}
            if not isinstance(body, dict) or not isinstance(body.get("data") or {}, dict):
                raise ValueError("Mercado Pago notification body must be an object with an object 'data'")
        except ValueError as exc:
            record_webhook("mercadopago", "failed")
            report_failure(exc, {"webhook": "mercadopago", "handler": "parse"})
            return {**ACK, "outcome": "failed"}

        data_id = (query or {}).get("data.id") or (body.get("data") or {}).get("id")

        if not self.mercadopago_verifier.verify(headers, raw_body, data_id=data_id):
            record_webhook("mercadopago", "invalid_signature")
            if self.reject_invalid_mercadopago_signature:
                raise AuthenticationError(
                    "Invalid Mercado Pago webhook signature", provider="mercadopago"
                )
            # Acknowledged so the provider stops redelivering, never processed
            return {**ACK, "outcome": "invalid_signature"}

        request_id = header(headers, MERCADOPAGO_REQUEST_ID_HEADER)
        event = normalize_mercadopago_notification(body, request_id=request_id)
        return {**ACK, "outcome": self.process(event)}

    def handle_mercadopago_ipn(self, topic: Optional[str], resource_id: Optional[str]) -> Dict[str, Any]:
        if not topic or not resource_id:
            raise ValidationError("Missing id or topic parameter", provider="mercadopago")

        event = normalize_mercadopago_ipn(topic, resource_id)
        return {**ACK, "outcome": self.process(event)}

    # ---- processing ----

    def process(self, event: NormalizedEvent) -> str:
        """Apply a verified event. Never raises; failures are reported."""
        try:
            if event.kind is CanonicalEvent.PAYMENT_UPDATED:
                outcome = self._sync_payment(event)
            elif event.is_subscription_event:
                outcome = self.state_machine.apply(event).outcome.value
            else:
                logger.info(
                    "Unhandled webhook event type",
                    extra={"provider": event.provider, "event_type": event.raw_type},
                )
                outcome = "ignored"
        except Exception as exc:
            record_webhook(event.provider, "failed")
            report_failure(
                exc,
                {"webhook": event.provider, "event": event.raw_type},
                {
                    "event_id": event.external_event_id,
                    "customer_ref": event.customer_ref,
                    "resource_id": event.resource_id,
                },
            )
            return "failed"

        record_webhook(event.provider, outcome)
        return outcome

    def _sync_payment(self, event: NormalizedEvent) -> str:
        if not event.resource_id:
            logger.warning("Payment notification without resource id", extra={"provider": event.provider})
            return "ignored"

        if event.external_event_id and self.store.has_processed_event(
            event.provider, event.external_event_id
        ):
            return "duplicate"

        provider = get_provider(self.providers, event.provider)
        result = provider.get_payment_status(event.resource_id)

        try:
            payment = self.store.get_payment(event.provider, event.resource_id)
            if payment is None:
                logger.warning(
                    "Notification for unknown payment",
                    extra={"provider": event.provider, "payment_id": event.resource_id},
                )
                outcome = "unknown_payment"
            else:
                changed = self.store.update_payment_status(payment, result)
                outcome = "applied" if changed else "unchanged"
                logger.info(
                    "Payment status synced",
                    extra={
                        "payment_id": event.resource_id,
                        "status": result.status,
                        "status_detail": result.status_detail,
                    },
                )

            if event.external_event_id:
                self.store.record_event(
                    event.provider, event.external_event_id, event.raw_type, outcome
                )
            if not self.store.commit_or_duplicate():
                return "duplicate"
        except Exception:
            self.store.rollback()
            raise

        return outcome


def parse_ipn_args(args: Mapping[str, str]) -> Tuple[Optional[str], Optional[str]]:
    return args.get("topic") or args.get("type"), args.get("id") or args.get("data.id")
