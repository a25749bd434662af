"""
Webhook authenticity checks.

Both verifiers take the raw request headers and the raw, unparsed body; no
event is trusted (or even JSON-decoded) before ``verify`` returns True.
"""

import hashlib
import hmac
import logging
from typing import Mapping, Optional

import stripe

from estate_billing.errors import ConfigurationError

logger = logging.getLogger(__name__)

STRIPE_SIGNATURE_HEADER = "Stripe-Signature"
MERCADOPAGO_SIGNATURE_HEADER = "x-signature"
MERCADOPAGO_REQUEST_ID_HEADER = "x-request-id"


def header(headers: Mapping[str, str], name: str) -> Optional[str]:
    """Case-insensitive header lookup over any mapping."""
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, candidate in headers.items():
        if key.lower() == lowered:
            return candidate
    return None


class StripeWebhookVerifier:
    def __init__(self, secret: Optional[str], tolerance: int = 300):
        self.secret = secret
        self.tolerance = tolerance

    def verify(self, headers: Mapping[str, str], raw_body: bytes) -> bool:
        if not self.secret:
            raise ConfigurationError("STRIPE_WEBHOOK_SECRET is not configured")

        signature = header(headers, STRIPE_SIGNATURE_HEADER)
        if not signature:
            logger.warning("Stripe webhook without signature header")
            return False

        payload = raw_body.decode("utf-8") if isinstance(raw_body, bytes) else raw_body
        try:
            stripe.WebhookSignature.verify_header(
                payload, signature, self.secret, tolerance=self.tolerance
            )
        except stripe.SignatureVerificationError as e:
            logger.warning("Invalid Stripe webhook signature: %s", e)
            return False

        return True


class MercadoPagoWebhookVerifier:
    """
    HMAC-SHA256 over ``id:<dataId>;request-id:<requestId>;ts:<ts>;``.

    With no secret configured every delivery passes while
    ``allow_unsigned`` is on. That fallback is logged on every call.
    """

    def __init__(self, secret: Optional[str], allow_unsigned: bool = True):
        self.secret = secret or ""
        self.allow_unsigned = allow_unsigned

    @staticmethod
    def manifest(data_id: str, request_id: str, ts: str) -> str:
        return f"id:{data_id};request-id:{request_id};ts:{ts};"

    @staticmethod
    def parse_signature(value: str) -> dict:
        parts = {}
        for chunk in value.split(","):
            key, sep, val = chunk.strip().partition("=")
            if sep:
                parts[key.strip()] = val.strip()
        return parts

    def sign(self, data_id: str, request_id: str, ts: str) -> str:
        return hmac.new(
            self.secret.encode("utf-8"),
            self.manifest(data_id, request_id, ts).encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    def verify(self, headers: Mapping[str, str], raw_body: bytes = b"", data_id: Optional[str] = None) -> bool:
        if not self.secret:
            if self.allow_unsigned:
                logger.warning(
                    "MERCADOPAGO_WEBHOOK_SECRET not set, accepting notification UNVERIFIED",
                    extra={"flag": "MERCADOPAGO_ALLOW_UNSIGNED_WEBHOOKS"},
                )
                return True
            logger.warning("Mercado Pago notification rejected: no webhook secret configured")
            return False

        signature = header(headers, MERCADOPAGO_SIGNATURE_HEADER)
        if not signature:
            logger.warning("Mercado Pago notification without x-signature header")
            return False

        parts = self.parse_signature(signature)
        ts, received = parts.get("ts"), parts.get("v1")
        if not ts or not received:
            logger.warning("Malformed Mercado Pago x-signature header")
            return False

        request_id = header(headers, MERCADOPAGO_REQUEST_ID_HEADER) or ""
        expected = self.sign(str(data_id or ""), request_id, ts)

        if not hmac.compare_digest(expected, received):
            logger.warning(
                "Invalid Mercado Pago webhook signature",
                extra={"data_id": data_id, "request_id": request_id},
            )
            return False

        return True
