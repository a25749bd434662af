import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

import requests

from estate_billing.errors import ConfigurationError, ConflictError, ProviderError, ValidationError
from estate_billing.providers.base import (
    PayerIdentity,
    PaymentMethod,
    PaymentProvider,
    PaymentResult,
    SubscriptionResult,
)

logger = logging.getLogger(__name__)

MERCADOPAGO_BASE_URL = "https://api.mercadopago.com"

PAYMENT_METHOD_IDS = {
    PaymentMethod.PIX: "pix",
    PaymentMethod.BOLETO: "bolbradesco",
}


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class MercadoPagoProvider(PaymentProvider):
    """One-off PIX / Boleto / card provider talking to the Mercado Pago REST API."""

    name = "mercadopago"

    def __init__(
        self,
        access_token: str,
        base_url: str = MERCADOPAGO_BASE_URL,
        timeout: float = 5.0,
        notification_url: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ):
        if not access_token:
            raise ConfigurationError("MERCADOPAGO_ACCESS_TOKEN is not configured")

        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.notification_url = notification_url
        self.session = session or requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        })

    # ---- transport ----

    def _request(self, method: str, path: str, operation: str, json=None, idempotent: bool = False):
        headers = {}
        if idempotent:
            headers["X-Idempotency-Key"] = str(uuid.uuid4())

        try:
            response = self.session.request(
                method,
                f"{self.base_url}{path}",
                json=json,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise ProviderError(
                f"Mercado Pago unreachable: {e}", provider=self.name, operation=operation
            ) from e

        if response.status_code >= 400:
            raise self._error_from_response(response, operation)

        return response.json() if response.content else {}

    def _error_from_response(self, response, operation: str):
        try:
            body = response.json()
        except ValueError:
            body = {}

        message = body.get("message") or f"HTTP {response.status_code}"
        details = {
            "http_status": response.status_code,
            "error": body.get("error"),
            "cause": body.get("cause"),
        }

        # Cancelling a payment the provider already settled is a state conflict
        if operation in ("cancel_payment", "cancel_subscription") and response.status_code in (400, 409):
            return ConflictError(message, provider=self.name, operation=operation, details=details)

        return ProviderError(message, provider=self.name, operation=operation, details=details)

    # ---- result shaping ----

    def _payment_result(self, body: Dict[str, Any]) -> PaymentResult:
        extras: Dict[str, Any] = {}

        transaction_data = (body.get("point_of_interaction") or {}).get("transaction_data") or {}
        if transaction_data.get("qr_code"):
            extras["qr_code"] = transaction_data.get("qr_code")
            extras["qr_code_base64"] = transaction_data.get("qr_code_base64")

        boleto_url = (body.get("transaction_details") or {}).get("external_resource_url")
        if boleto_url:
            extras["boleto_url"] = boleto_url

        return PaymentResult(
            id=str(body["id"]),
            status=body.get("status") or "pending",
            status_detail=body.get("status_detail") or "",
            amount=Decimal(str(body.get("transaction_amount") or 0)),
            created_at=parse_datetime(body.get("date_created")),
            approved_at=parse_datetime(body.get("date_approved")),
            provider_specific_extras=extras,
        )

    def _subscription_result(self, body: Dict[str, Any]) -> SubscriptionResult:
        auto_recurring = body.get("auto_recurring") or {}
        return SubscriptionResult(
            id=str(body["id"]),
            status=body.get("status") or "",
            current_period_start=parse_datetime(auto_recurring.get("start_date")),
            current_period_end=parse_datetime(body.get("next_payment_date")),
            trial_end=None,
        )

    # ---- one-off payments ----

    def create_one_off_payment(
        self,
        amount: Decimal,
        description: str,
        payer: PayerIdentity,
        method: PaymentMethod,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> PaymentResult:
        method = PaymentMethod(method)

        with self.operation("create_one_off_payment", method=method.value):
            payload = self._payment_payload(amount, description, payer, method, metadata)
            body = self._request(
                "POST", "/v1/payments", "create_one_off_payment", json=payload, idempotent=True
            )

        result = self._payment_result(body)
        logger.info(
            "Mercado Pago payment created",
            extra={"payment_id": result.id, "status": result.status, "method": method.value},
        )
        return result

    def _payment_payload(self, amount, description, payer, method, metadata) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "transaction_amount": float(amount),
            "description": description,
            "payer": {"email": payer.email},
            "metadata": dict(metadata or {}),
        }
        if self.notification_url:
            payload["notification_url"] = self.notification_url

        if method is PaymentMethod.CREDIT_CARD:
            if not payer.card_token or not payer.card_brand:
                raise ValidationError(
                    "Credit card payments require a card token and brand",
                    details={"field": "card_token"},
                )
            payload["token"] = payer.card_token
            payload["installments"] = payer.installments
            payload["payment_method_id"] = payer.card_brand
            return payload

        payload["payment_method_id"] = PAYMENT_METHOD_IDS[method]
        payload["payer"]["identification"] = payer.identification()

        if method is PaymentMethod.BOLETO:
            payload["payer"]["first_name"] = payer.first_name
            payload["payer"]["last_name"] = payer.last_name

        return payload

    def get_payment_status(self, payment_id: str) -> PaymentResult:
        with self.operation("get_payment_status", payment_id=payment_id):
            body = self._request("GET", f"/v1/payments/{payment_id}", "get_payment_status")
        return self._payment_result(body)

    def cancel_payment(self, payment_id: str) -> None:
        with self.operation("cancel_payment", payment_id=payment_id):
            self._request(
                "PUT", f"/v1/payments/{payment_id}", "cancel_payment", json={"status": "cancelled"}
            )
        logger.info("Mercado Pago payment cancelled", extra={"payment_id": payment_id})

    # ---- subscriptions (preapproval) ----

    def create_subscription(
        self,
        customer_ref: str,
        plan_ref: str,
        trial_days: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SubscriptionResult:
        # Trial length is configured on the preapproval plan itself
        payload = {
            "preapproval_plan_id": plan_ref,
            "payer_email": customer_ref,
            "external_reference": (metadata or {}).get("tenant_id"),
        }
        with self.operation("create_subscription", plan_id=plan_ref):
            body = self._request(
                "POST", "/preapproval", "create_subscription", json=payload, idempotent=True
            )
        return self._subscription_result(body)

    def update_subscription(
        self,
        subscription_id: str,
        plan_ref: Optional[str] = None,
        cancel_at_period_end: Optional[bool] = None,
    ) -> SubscriptionResult:
        with self.operation("update_subscription", subscription_id=subscription_id):
            if cancel_at_period_end:
                raise ValidationError("Mercado Pago does not support cancelling at period end")
            payload = {}
            if plan_ref:
                payload["preapproval_plan_id"] = plan_ref
            body = self._request(
                "PUT", f"/preapproval/{subscription_id}", "update_subscription", json=payload
            )
        return self._subscription_result(body)

    def cancel_subscription(self, subscription_id: str, immediate: bool) -> SubscriptionResult:
        with self.operation("cancel_subscription", subscription_id=subscription_id):
            if not immediate:
                raise ValidationError("Mercado Pago does not support cancelling at period end")
            body = self._request(
                "PUT",
                f"/preapproval/{subscription_id}",
                "cancel_subscription",
                json={"status": "cancelled"},
            )
        return self._subscription_result(body)

    # ---- checkout ----

    def create_preference(
        self,
        items: List[Dict[str, Any]],
        payer: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        back_urls: Optional[Dict[str, str]] = None,
    ) -> Dict[str, str]:
        """
        Create a hosted checkout preference.

        Returns ``{"id", "init_point"}``; the buyer is redirected to
        ``init_point`` and the resulting payment arrives as a notification.
        """
        payload: Dict[str, Any] = {
            "items": items,
            "metadata": dict(metadata or {}),
        }
        if payer:
            payload["payer"] = payer
        if back_urls:
            payload["back_urls"] = back_urls
            payload["auto_return"] = "approved"
        if self.notification_url:
            payload["notification_url"] = self.notification_url

        with self.operation("create_preference"):
            body = self._request(
                "POST", "/checkout/preferences", "create_preference", json=payload, idempotent=True
            )

        logger.info("Mercado Pago checkout preference created", extra={"preference_id": body.get("id")})
        return {"id": str(body["id"]), "init_point": body.get("init_point")}
