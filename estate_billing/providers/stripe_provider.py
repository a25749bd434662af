import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

import stripe

from estate_billing.errors import (
    ConfigurationError,
    ConflictError,
    NotFoundError,
    ProviderError,
    ValidationError,
)
from estate_billing.models import from_unix
from estate_billing.providers.base import (
    PayerIdentity,
    PaymentMethod,
    PaymentProvider,
    PaymentResult,
    SubscriptionResult,
)

logger = logging.getLogger(__name__)

# Stripe codes meaning "the object is in a state that forbids this call"
CONFLICT_CODES = {"payment_intent_unexpected_state", "subscription_canceled"}


def as_dict(obj) -> Dict[str, Any]:
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    return obj.to_dict()


def subscription_period(subscription: Dict[str, Any], key: str):
    # Newer API versions report billing periods on the subscription items
    value = subscription.get(key)
    if value is None:
        items = (as_dict(subscription.get("items")) or {}).get("data") or []
        if items:
            value = as_dict(items[0]).get(key)
    return from_unix(value)


class StripeProvider(PaymentProvider):
    """Recurring-subscription provider backed by the Stripe SDK."""

    name = "stripe"

    def __init__(self, api_key: str, currency: str = "brl"):
        if not api_key:
            raise ConfigurationError("STRIPE_SECRET_KEY is not configured")

        self.api_key = api_key
        self.currency = currency.lower()
        # Single attempt; callers surface failures immediately
        stripe.max_network_retries = 0

        logger.info(
            "Stripe client initialized",
            extra={"api_key_prefix": api_key[:8] + "...", "currency": self.currency},
        )

    # ---- error translation ----

    def _translate(self, exc: stripe.StripeError, operation: str):
        code = getattr(exc, "code", None)
        message = getattr(exc, "user_message", None) or str(exc)
        details = {"code": code}

        if isinstance(exc, stripe.CardError):
            details["decline_code"] = getattr(exc, "decline_code", None)
            return ProviderError(message, provider=self.name, operation=operation, details=details)

        if code in CONFLICT_CODES:
            return ConflictError(message, provider=self.name, operation=operation, details=details)

        return ProviderError(message, provider=self.name, operation=operation, details=details)

    # ---- result shaping ----

    def _payment_result(self, intent) -> PaymentResult:
        intent = as_dict(intent)
        next_action = as_dict(intent.get("next_action"))
        extras: Dict[str, Any] = {}

        pix = as_dict(next_action.get("pix_display_qr_code"))
        if pix:
            extras["qr_code"] = pix.get("data")
            extras["qr_code_image_url"] = pix.get("image_url_png")

        boleto = as_dict(next_action.get("boleto_display_details"))
        if boleto:
            extras["boleto_url"] = boleto.get("hosted_voucher_url")
            extras["boleto_number"] = boleto.get("number")

        error = as_dict(intent.get("last_payment_error"))
        status_detail = error.get("decline_code") or error.get("code") or next_action.get("type") or ""

        return PaymentResult(
            id=intent["id"],
            status=intent.get("status") or "",
            status_detail=status_detail,
            amount=Decimal(intent.get("amount") or 0) / 100,
            created_at=from_unix(intent.get("created")),
            approved_at=None,
            provider_specific_extras=extras,
        )

    def _subscription_result(self, subscription) -> SubscriptionResult:
        subscription = as_dict(subscription)
        return SubscriptionResult(
            id=subscription["id"],
            status=subscription.get("status") or "",
            current_period_start=subscription_period(subscription, "current_period_start"),
            current_period_end=subscription_period(subscription, "current_period_end"),
            trial_end=from_unix(subscription.get("trial_end")),
            cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
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
            params = self._payment_params(amount, description, payer, method, metadata)
            try:
                intent = stripe.PaymentIntent.create(api_key=self.api_key, **params)
            except stripe.StripeError as e:
                raise self._translate(e, "create_one_off_payment")

        result = self._payment_result(intent)
        logger.info(
            "Stripe payment created",
            extra={"payment_id": result.id, "status": result.status, "method": method.value},
        )
        return result

    def _payment_params(self, amount, description, payer, method, metadata) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "amount": int((Decimal(amount) * 100).quantize(Decimal("1"))),
            "currency": self.currency,
            "description": description,
            "receipt_email": payer.email,
            "metadata": dict(metadata or {}),
            "confirm": True,
        }

        if method is PaymentMethod.PIX:
            identification = payer.identification()
            params["metadata"]["tax_id_type"] = identification["type"]
            params["payment_method_types"] = ["pix"]
            params["payment_method_data"] = {"type": "pix"}
        elif method is PaymentMethod.BOLETO:
            identification = payer.identification()
            params["metadata"]["tax_id_type"] = identification["type"]
            params["payment_method_types"] = ["boleto"]
            params["payment_method_data"] = {
                "type": "boleto",
                "boleto": {"tax_id": identification["number"]},
                "billing_details": {
                    "email": payer.email,
                    "name": " ".join(p for p in (payer.first_name, payer.last_name) if p) or None,
                },
            }
        else:
            if not payer.card_token:
                raise ValidationError(
                    "Credit card payments require a card token",
                    provider=self.name,
                    operation="create_one_off_payment",
                    details={"field": "card_token"},
                )
            params["payment_method_types"] = ["card"]
            params["payment_method"] = payer.card_token

        return params

    def get_payment_status(self, payment_id: str) -> PaymentResult:
        with self.operation("get_payment_status", payment_id=payment_id):
            try:
                intent = stripe.PaymentIntent.retrieve(payment_id, api_key=self.api_key)
            except stripe.StripeError as e:
                raise self._translate(e, "get_payment_status")
        return self._payment_result(intent)

    def cancel_payment(self, payment_id: str) -> None:
        with self.operation("cancel_payment", payment_id=payment_id):
            try:
                stripe.PaymentIntent.cancel(payment_id, api_key=self.api_key)
            except stripe.StripeError as e:
                raise self._translate(e, "cancel_payment")
        logger.info("Stripe payment cancelled", extra={"payment_id": payment_id})

    # ---- subscriptions ----

    def ensure_customer(self, tenant_id: str, email: Optional[str], name: Optional[str]) -> str:
        """Create a customer tagged with the tenant id and return its id."""
        with self.operation("create_customer", tenant_id=tenant_id):
            try:
                customer = stripe.Customer.create(
                    api_key=self.api_key,
                    email=email,
                    name=name,
                    metadata={"tenant_id": tenant_id},
                )
            except stripe.StripeError as e:
                raise self._translate(e, "create_customer")

        customer_id = as_dict(customer)["id"]
        logger.info("Stripe customer created", extra={"customer_id": customer_id, "tenant_id": tenant_id})
        return customer_id

    def create_subscription(
        self,
        customer_ref: str,
        plan_ref: str,
        trial_days: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SubscriptionResult:
        params: Dict[str, Any] = {
            "customer": customer_ref,
            "items": [{"price": plan_ref}],
            "metadata": dict(metadata or {}),
            "payment_behavior": "default_incomplete",
            "payment_settings": {"save_default_payment_method": "on_subscription"},
            "expand": ["latest_invoice.payment_intent"],
        }
        if trial_days:
            params["trial_period_days"] = trial_days

        with self.operation("create_subscription", customer_id=customer_ref, price_id=plan_ref):
            try:
                subscription = stripe.Subscription.create(api_key=self.api_key, **params)
            except stripe.StripeError as e:
                raise self._translate(e, "create_subscription")

        result = self._subscription_result(subscription)
        logger.info(
            "Stripe subscription created",
            extra={"subscription_id": result.id, "customer_id": customer_ref, "status": result.status},
        )
        return result

    def update_subscription(
        self,
        subscription_id: str,
        plan_ref: Optional[str] = None,
        cancel_at_period_end: Optional[bool] = None,
    ) -> SubscriptionResult:
        params: Dict[str, Any] = {}

        with self.operation("update_subscription", subscription_id=subscription_id):
            try:
                if plan_ref:
                    current = as_dict(
                        stripe.Subscription.retrieve(subscription_id, api_key=self.api_key)
                    )
                    item = as_dict(as_dict(current.get("items"))["data"][0])
                    params["items"] = [{"id": item["id"], "price": plan_ref}]
                if cancel_at_period_end is not None:
                    params["cancel_at_period_end"] = cancel_at_period_end

                subscription = stripe.Subscription.modify(
                    subscription_id, api_key=self.api_key, **params
                )
            except stripe.StripeError as e:
                raise self._translate(e, "update_subscription")

        return self._subscription_result(subscription)

    def cancel_subscription(self, subscription_id: str, immediate: bool) -> SubscriptionResult:
        with self.operation("cancel_subscription", subscription_id=subscription_id, immediate=immediate):
            try:
                if immediate:
                    subscription = stripe.Subscription.cancel(subscription_id, api_key=self.api_key)
                else:
                    subscription = stripe.Subscription.modify(
                        subscription_id, api_key=self.api_key, cancel_at_period_end=True
                    )
            except stripe.StripeError as e:
                raise self._translate(e, "cancel_subscription")

        logger.info(
            "Stripe subscription cancelled",
            extra={"subscription_id": subscription_id, "immediate": immediate},
        )
        return self._subscription_result(subscription)

    def list_invoices(self, customer_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        with self.operation("list_invoices", customer_id=customer_id):
            try:
                invoices = stripe.Invoice.list(customer=customer_id, limit=limit, api_key=self.api_key)
            except stripe.StripeError as e:
                raise self._translate(e, "list_invoices")

        return [
            {
                "id": invoice.get("id"),
                "amount": float(Decimal(invoice.get("amount_paid") or 0) / 100),
                "currency": invoice.get("currency"),
                "status": invoice.get("status"),
                "date": from_unix(invoice.get("created")).isoformat() if invoice.get("created") else None,
                "pdf_url": invoice.get("invoice_pdf"),
                "hosted_url": invoice.get("hosted_invoice_url"),
            }
            for invoice in (as_dict(i) for i in as_dict(invoices).get("data") or [])
        ]

    # ---- payment methods ----

    def _payment_method(self, payment_method) -> Dict[str, Any]:
        payment_method = as_dict(payment_method)
        card = as_dict(payment_method.get("card"))
        return {
            "id": payment_method.get("id"),
            "type": payment_method.get("type"),
            "brand": card.get("brand"),
            "last4": card.get("last4"),
            "exp_month": card.get("exp_month"),
            "exp_year": card.get("exp_year"),
        }

    def attach_payment_method(self, customer_id: str, payment_method_id: str) -> Dict[str, Any]:
        """Attach a card to the customer and make it the default for invoices."""
        with self.operation("attach_payment_method", customer_id=customer_id):
            try:
                payment_method = stripe.PaymentMethod.attach(
                    payment_method_id, customer=customer_id, api_key=self.api_key
                )
                stripe.Customer.modify(
                    customer_id,
                    api_key=self.api_key,
                    invoice_settings={"default_payment_method": payment_method_id},
                )
            except stripe.StripeError as e:
                raise self._translate(e, "attach_payment_method")

        logger.info(
            "Stripe default payment method updated",
            extra={"customer_id": customer_id, "payment_method_id": payment_method_id},
        )
        return self._payment_method(payment_method)

    def list_payment_methods(self, customer_id: str) -> List[Dict[str, Any]]:
        with self.operation("list_payment_methods", customer_id=customer_id):
            try:
                payment_methods = stripe.PaymentMethod.list(
                    customer=customer_id, type="card", api_key=self.api_key
                )
            except stripe.StripeError as e:
                raise self._translate(e, "list_payment_methods")

        return [self._payment_method(pm) for pm in as_dict(payment_methods).get("data") or []]

    def detach_payment_method(self, customer_id: str, payment_method_id: str) -> None:
        """Detach a card, refusing cards that belong to another customer."""
        with self.operation("detach_payment_method", customer_id=customer_id):
            try:
                payment_method = as_dict(
                    stripe.PaymentMethod.retrieve(payment_method_id, api_key=self.api_key)
                )
                if payment_method.get("customer") != customer_id:
                    raise NotFoundError(f"Payment method {payment_method_id} not found")
                stripe.PaymentMethod.detach(payment_method_id, api_key=self.api_key)
            except stripe.StripeError as e:
                raise self._translate(e, "detach_payment_method")

        logger.info(
            "Stripe payment method detached",
            extra={"customer_id": customer_id, "payment_method_id": payment_method_id},
        )
