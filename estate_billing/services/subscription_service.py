import logging
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from estate_billing.errors import ConflictError, NotFoundError, ValidationError
from estate_billing.models import utcnow
from estate_billing.providers import PayerIdentity, PaymentMethod, get_provider
from estate_billing.state_machine import SubscriptionStatus
from estate_billing.storage import CUSTOMER_REF_KEYS, SUBSCRIPTION_REF_KEYS

logger = logging.getLogger(__name__)

# Provider subscription status -> local status on an explicit create
PROVIDER_STATUSES = {
    "trialing": SubscriptionStatus.TRIAL,
    "active": SubscriptionStatus.ACTIVE,
    "authorized": SubscriptionStatus.ACTIVE,
}

PLAN_REF_FIELDS = {
    "stripe": "stripe_price_id",
    "mercadopago": "mercadopago_plan_id",
}


class SubscriptionService:
    """Explicit user actions on subscriptions and one-off payments."""

    def __init__(self, store, state_machine, providers: dict, settings):
        self.store = store
        self.state_machine = state_machine
        self.providers = providers
        self.settings = settings

    @property
    def subscription_provider_name(self) -> str:
        return self.settings.SUBSCRIPTION_PROVIDER

    @property
    def one_off_provider_name(self) -> str:
        return self.settings.ONE_OFF_PROVIDER

    # ---- lookups ----

    def _require_tenant(self, tenant_id: str):
        tenant = self.store.get_tenant(tenant_id)
        if tenant is None:
            raise NotFoundError(f"Tenant {tenant_id} not found")
        return tenant

    def _require_subscription(self, tenant_id: str):
        subscription = self.store.get_subscription(tenant_id)
        if subscription is None:
            raise NotFoundError(f"Tenant {tenant_id} has no subscription")
        return subscription

    def _require_plan(self, plan_id: str):
        plan = self.store.get_plan(plan_id)
        if plan is None:
            raise ValidationError(f"Unknown plan: {plan_id}", details={"field": "plan_id"})
        return plan

    def _plan_ref(self, plan, provider_name: str) -> str:
        ref = getattr(plan, PLAN_REF_FIELDS[provider_name])
        if not ref:
            raise ValidationError(
                f"Plan {plan.id} is not available on {provider_name}",
                details={"plan_id": plan.id},
            )
        return ref

    # ---- tenants ----

    def provision_tenant(
        self, tenant_id: str, name: str, email: Optional[str] = None, plan_id: Optional[str] = None
    ):
        """Create a tenant on a trial subscription. No provider call is made."""
        if self.store.get_tenant(tenant_id) is not None:
            raise ConflictError(f"Tenant {tenant_id} already exists")

        plan = self._require_plan(plan_id or self.settings.DEFAULT_PLAN_ID)

        try:
            self.store.create_tenant(tenant_id, name, email)
            subscription = self.store.upsert_subscription(
                tenant_id,
                {
                    "plan_id": plan.id,
                    "status": SubscriptionStatus.TRIAL.value,
                    "trial_ends_at": utcnow() + timedelta(days=self.settings.TRIAL_DAYS),
                },
            )
            self.store.commit()
        except Exception:
            self.store.rollback()
            raise

        logger.info("Tenant provisioned", extra={"tenant_id": tenant_id, "plan_id": plan.id})
        return subscription

    # ---- subscriptions ----

    def get_subscription(self, tenant_id: str) -> Dict[str, Any]:
        subscription = self.store.get_subscription(tenant_id)
        if subscription is None:
            return {"tenant_id": tenant_id, "status": SubscriptionStatus.TRIAL.value, "plan": None}

        plan = self.store.get_plan(subscription.plan_id)
        return {
            **subscription.to_dict(),
            "plan": plan.to_dict() if plan else None,
        }

    def start_subscription(self, tenant_id: str, plan_id: str, trial_days: Optional[int] = None):
        tenant = self._require_tenant(tenant_id)
        subscription = self._require_subscription(tenant_id)
        plan = self._require_plan(plan_id)

        provider_name = self.subscription_provider_name
        provider = get_provider(self.providers, provider_name)
        metadata = dict(subscription.provider_metadata or {})

        if subscription.status == SubscriptionStatus.CANCELLED.value:
            raise ConflictError("Subscription is cancelled", details={"tenant_id": tenant_id})
        if metadata.get(SUBSCRIPTION_REF_KEYS[provider_name]):
            raise ConflictError(
                "Tenant already has a provider subscription, change the plan instead",
                details={"tenant_id": tenant_id},
            )

        customer_key = CUSTOMER_REF_KEYS[provider_name]
        customer_ref = metadata.get(customer_key)
        if not customer_ref:
            if provider_name == "stripe":
                customer_ref = provider.ensure_customer(tenant_id, tenant.email, tenant.name)
            else:
                customer_ref = tenant.email
            if not customer_ref:
                raise ValidationError("Tenant has no billing email", details={"tenant_id": tenant_id})
            # Stored before the provider call so early webhooks resolve the tenant
            self.store.upsert_subscription(tenant_id, {"provider_metadata": {customer_key: customer_ref}})
            self.store.commit()

        result = provider.create_subscription(
            customer_ref,
            self._plan_ref(plan, provider_name),
            trial_days=trial_days,
            metadata={"tenant_id": tenant_id},
        )

        patch = {
            "plan_id": plan.id,
            "provider_metadata": {SUBSCRIPTION_REF_KEYS[provider_name]: result.id},
        }
        if result.current_period_start:
            patch["current_period_start"] = result.current_period_start
        if result.current_period_end:
            patch["current_period_end"] = result.current_period_end
        if result.trial_end:
            patch["trial_ends_at"] = result.trial_end

        try:
            self.store.upsert_subscription(tenant_id, patch)
            self.store.commit()
        except Exception:
            self.store.rollback()
            raise

        target = PROVIDER_STATUSES.get(result.status)
        if target is not None and subscription.status != target.value:
            self.state_machine.set_status(tenant_id, target)

        logger.info(
            "Subscription started",
            extra={"tenant_id": tenant_id, "plan_id": plan.id, "provider_status": result.status},
        )
        return result

    def _provider_subscription(self, subscription):
        provider_name = self.subscription_provider_name
        subscription_ref = (subscription.provider_metadata or {}).get(
            SUBSCRIPTION_REF_KEYS[provider_name]
        )
        return provider_name, subscription_ref

    def change_plan(self, tenant_id: str, plan_id: str):
        subscription = self._require_subscription(tenant_id)
        plan = self._require_plan(plan_id)

        if subscription.status == SubscriptionStatus.CANCELLED.value:
            raise ConflictError("Subscription is cancelled", details={"tenant_id": tenant_id})

        provider_name, subscription_ref = self._provider_subscription(subscription)
        if not subscription_ref:
            raise ConflictError(
                "Tenant has no provider subscription to change",
                details={"tenant_id": tenant_id},
            )

        provider = get_provider(self.providers, provider_name)
        result = provider.update_subscription(
            subscription_ref, plan_ref=self._plan_ref(plan, provider_name)
        )

        try:
            self.store.upsert_subscription(tenant_id, {"plan_id": plan.id})
            self.store.commit()
        except Exception:
            self.store.rollback()
            raise

        logger.info("Subscription plan changed", extra={"tenant_id": tenant_id, "plan_id": plan.id})
        return result

    def cancel_subscription(self, tenant_id: str, immediate: bool = False) -> Dict[str, Any]:
        """
        Cancel the tenant's subscription.

        A deferred cancellation only flags the provider subscription; the
        local status follows the provider's webhook.
        """
        subscription = self._require_subscription(tenant_id)
        if subscription.status == SubscriptionStatus.CANCELLED.value:
            raise ConflictError("Subscription is already cancelled", details={"tenant_id": tenant_id})

        provider_name, subscription_ref = self._provider_subscription(subscription)
        cancel_at_period_end = False

        if subscription_ref:
            provider = get_provider(self.providers, provider_name)
            result = provider.cancel_subscription(subscription_ref, immediate=immediate)
            cancel_at_period_end = result.cancel_at_period_end

        if immediate or not subscription_ref:
            subscription = self.state_machine.set_status(tenant_id, SubscriptionStatus.CANCELLED)

        logger.info(
            "Subscription cancellation requested",
            extra={"tenant_id": tenant_id, "immediate": immediate},
        )
        return {**subscription.to_dict(), "cancel_at_period_end": cancel_at_period_end}

    def list_invoices(self, tenant_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        subscription = self._require_subscription(tenant_id)
        customer_id = (subscription.provider_metadata or {}).get(CUSTOMER_REF_KEYS["stripe"])
        if not customer_id or "stripe" not in self.providers:
            return []
        return self.providers["stripe"].list_invoices(customer_id, limit=limit)

    # ---- one-off payments ----

    def create_payment(
        self,
        tenant_id: str,
        method: str,
        amount,
        description: str,
        payer: Dict[str, Any],
    ):
        self._require_tenant(tenant_id)

        try:
            method = PaymentMethod(method)
        except ValueError:
            raise ValidationError(f"Unsupported payment method: {method}", details={"field": "method"})

        try:
            amount = Decimal(str(amount))
        except (InvalidOperation, TypeError):
            raise ValidationError("Invalid amount", details={"field": "amount"})
        if amount <= 0:
            raise ValidationError("Amount must be positive", details={"field": "amount"})

        if not payer.get("email"):
            raise ValidationError("Payer email is required", details={"field": "payer.email"})

        identity = PayerIdentity(
            email=payer["email"],
            tax_id=payer.get("tax_id"),
            first_name=payer.get("first_name"),
            last_name=payer.get("last_name"),
            card_token=payer.get("card_token"),
            card_brand=payer.get("card_brand"),
            installments=int(payer.get("installments") or 1),
        )

        provider_name = self.one_off_provider_name
        provider = get_provider(self.providers, provider_name)
        result = provider.create_one_off_payment(
            amount, description, identity, method, metadata={"tenant_id": tenant_id}
        )

        try:
            payment = self.store.save_payment(
                tenant_id, provider_name, method.value, self.settings.DEFAULT_CURRENCY, result
            )
            self.store.commit()
        except Exception:
            self.store.rollback()
            raise

        logger.info(
            "One-off payment created",
            extra={"tenant_id": tenant_id, "payment_id": result.id, "method": method.value},
        )
        return payment

    def _require_payment(self, tenant_id: str, payment_id: str):
        payment = self.store.get_payment(self.one_off_provider_name, payment_id)
        if payment is None or payment.tenant_id != tenant_id:
            raise NotFoundError(f"Payment {payment_id} not found")
        return payment

    def refresh_payment(self, tenant_id: str, payment_id: str):
        """Poll the provider and copy its status onto the local record."""
        payment = self._require_payment(tenant_id, payment_id)
        provider = get_provider(self.providers, payment.provider)
        result = provider.get_payment_status(payment.external_id)

        try:
            self.store.update_payment_status(payment, result)
            self.store.commit()
        except Exception:
            self.store.rollback()
            raise
        return payment

    def cancel_payment(self, tenant_id: str, payment_id: str):
        payment = self._require_payment(tenant_id, payment_id)
        provider = get_provider(self.providers, payment.provider)
        provider.cancel_payment(payment.external_id)
        return self.refresh_payment(tenant_id, payment_id)

    # ---- payment methods ----

    def _stripe_customer(self, tenant_id: str):
        subscription = self._require_subscription(tenant_id)
        customer_id = (subscription.provider_metadata or {}).get(CUSTOMER_REF_KEYS["stripe"])
        if not customer_id:
            raise NotFoundError("Stripe customer not found", details={"tenant_id": tenant_id})
        return customer_id, get_provider(self.providers, "stripe")

    def update_payment_method(self, tenant_id: str, payment_method_id: str) -> Dict[str, Any]:
        """
        Make ``payment_method_id`` the tenant's default card.

        A suspended tenant recovers when Stripe retries the open invoice with
        the new card and the resulting webhooks reactivate the subscription.
        """
        customer_id, provider = self._stripe_customer(tenant_id)
        payment_method = provider.attach_payment_method(customer_id, payment_method_id)
        logger.info(
            "Payment method updated",
            extra={"tenant_id": tenant_id, "payment_method_id": payment_method_id},
        )
        return payment_method

    def list_payment_methods(self, tenant_id: str) -> List[Dict[str, Any]]:
        customer_id, provider = self._stripe_customer(tenant_id)
        return provider.list_payment_methods(customer_id)

    def remove_payment_method(self, tenant_id: str, payment_method_id: str) -> None:
        customer_id, provider = self._stripe_customer(tenant_id)
        provider.detach_payment_method(customer_id, payment_method_id)

    # ---- hosted checkout ----

    def create_checkout(
        self,
        tenant_id: str,
        items: List[Dict[str, Any]],
        payer: Optional[Dict[str, Any]] = None,
        back_urls: Optional[Dict[str, str]] = None,
    ) -> Dict[str, str]:
        """Mercado Pago checkout preference for a one-off purchase."""
        self._require_tenant(tenant_id)

        if not isinstance(items, list) or not items:
            raise ValidationError("items must be a non-empty list", details={"field": "items"})

        checkout_items = []
        for index, item in enumerate(items):
            field = f"items[{index}]"
            if not isinstance(item, dict) or not item.get("title"):
                raise ValidationError(f"{field}.title is required", details={"field": field})
            quantity = item.get("quantity", 1)
            if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
                raise ValidationError(f"{field}.quantity must be a positive integer", details={"field": field})
            try:
                unit_price = Decimal(str(item.get("unit_price")))
            except (InvalidOperation, TypeError):
                raise ValidationError(f"{field}.unit_price is invalid", details={"field": field})
            if not unit_price.is_finite() or unit_price <= 0:
                raise ValidationError(f"{field}.unit_price must be positive", details={"field": field})

            checkout_items.append({
                "title": str(item["title"]),
                "quantity": quantity,
                "unit_price": float(unit_price),
                "currency_id": self.settings.DEFAULT_CURRENCY.upper(),
            })

        provider = get_provider(self.providers, "mercadopago")
        preference = provider.create_preference(
            checkout_items,
            payer=payer or None,
            metadata={"tenant_id": tenant_id},
            back_urls=back_urls or None,
        )
        logger.info(
            "Checkout preference created",
            extra={"tenant_id": tenant_id, "preference_id": preference["id"]},
        )
        return preference
