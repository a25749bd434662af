from dataclasses import dataclass

from estate_billing.config import BillingSettings
from estate_billing.enforcement import PlanLimitEnforcer
from estate_billing.services.subscription_service import SubscriptionService
from estate_billing.state_machine import SubscriptionStateMachine
from estate_billing.storage import SubscriptionStore
from estate_billing.webhooks.processor import WebhookProcessor


@dataclass
class BillingServices:
    """Everything the blueprints need, stored under ``app.extensions["billing"]``."""

    settings: BillingSettings
    store: SubscriptionStore
    providers: dict
    state_machine: SubscriptionStateMachine
    enforcer: PlanLimitEnforcer
    processor: WebhookProcessor
    subscriptions: SubscriptionService


__all__ = ["BillingServices", "SubscriptionService"]
