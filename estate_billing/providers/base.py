import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from estate_billing import tax_id
from estate_billing.errors import BillingError, ProviderError
from estate_billing.observability import record_provider_error, report_failure

logger = logging.getLogger(__name__)


class PaymentMethod(str, Enum):
    PIX = "pix"
    BOLETO = "boleto"
    CREDIT_CARD = "credit_card"


@dataclass
class PayerIdentity:
    email: str
    tax_id: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    # Tokenized card and installments, credit card only
    card_token: Optional[str] = None
    card_brand: Optional[str] = None
    installments: int = 1

    def identification(self) -> Dict[str, str]:
        """Validated ``{"type": "CPF"|"CNPJ", "number": digits}``."""
        kind, digits = tax_id.classify(self.tax_id or "")
        return {"type": kind, "number": digits}


@dataclass
class PaymentResult:
    id: str
    status: str
    status_detail: str
    amount: Decimal
    created_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    provider_specific_extras: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status,
            "status_detail": self.status_detail,
            "amount": float(self.amount),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "approved_at": self.approved_at.isoformat() if self.approved_at else None,
            **self.provider_specific_extras,
        }


@dataclass
class SubscriptionResult:
    id: str
    status: str
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    cancel_at_period_end: bool = False

    def to_dict(self) -> Dict[str, Any]:
        def iso(value):
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "status": self.status,
            "current_period_start": iso(self.current_period_start),
            "current_period_end": iso(self.current_period_end),
            "trial_end": iso(self.trial_end),
            "cancel_at_period_end": self.cancel_at_period_end,
        }


class PaymentProvider(ABC):
    """
    Common shape of both payment providers.

    Implementations never mutate local state; they translate one canonical
    request into provider calls and the provider response back into
    PaymentResult / SubscriptionResult.
    """

    name: str = ""

    @abstractmethod
    def create_one_off_payment(
        self,
        amount: Decimal,
        description: str,
        payer: PayerIdentity,
        method: PaymentMethod,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> PaymentResult:
        ...

    @abstractmethod
    def get_payment_status(self, payment_id: str) -> PaymentResult:
        ...

    @abstractmethod
    def cancel_payment(self, payment_id: str) -> None:
        ...

    @abstractmethod
    def create_subscription(
        self,
        customer_ref: str,
        plan_ref: str,
        trial_days: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SubscriptionResult:
        ...

    @abstractmethod
    def update_subscription(
        self,
        subscription_id: str,
        plan_ref: Optional[str] = None,
        cancel_at_period_end: Optional[bool] = None,
    ) -> SubscriptionResult:
        ...

    @abstractmethod
    def cancel_subscription(self, subscription_id: str, immediate: bool) -> SubscriptionResult:
        ...

    @contextmanager
    def operation(self, name: str, **context):
        """
        Wrap one provider call.

        BillingErrors raised inside get the provider/operation context;
        anything else is wrapped in a ProviderError. Both are reported.
        """
        try:
            yield
        except BillingError as exc:
            exc.provider = exc.provider or self.name
            exc.operation = exc.operation or name
            if not isinstance(exc, ProviderError) and exc.status_code < 500:
                logger.info(
                    "Provider call rejected: %s", exc.message,
                    extra={"provider": self.name, "operation": name, **context},
                )
                raise
            record_provider_error(self.name, name)
            report_failure(exc, {"service": self.name, "operation": name}, context)
            raise
        except Exception as exc:
            record_provider_error(self.name, name)
            report_failure(exc, {"service": self.name, "operation": name}, context)
            raise ProviderError(
                f"{self.name} {name} failed: {exc}",
                provider=self.name,
                operation=name,
            ) from exc
