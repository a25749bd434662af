"""
Plan limit enforcement.

check_limit and check_feature are pure: given a subscription, a plan and a
usage count they return a decision object. PlanLimitEnforcer loads those
inputs from the store, and the decorators turn rejections into 403s.
"""

import functools
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, FrozenSet, Optional, Union

from flask import current_app, jsonify, request

from estate_billing.errors import ValidationError
from estate_billing.observability import record_decision

logger = logging.getLogger(__name__)

TENANT_HEADER = "X-Tenant-ID"

ACTIVE_STATUSES = frozenset({"trial", "active"})


class ResourceKind(str, Enum):
    USERS = "users"
    PROPERTIES = "properties"
    INTEGRATIONS = "integrations"


@dataclass(frozen=True)
class PlanLimits:
    max_users: int
    max_properties: int
    max_integrations: int
    features: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def from_plan(cls, plan) -> "PlanLimits":
        return cls(
            max_users=plan.max_users,
            max_properties=plan.max_properties,
            max_integrations=plan.max_integrations,
            features=frozenset(plan.features or []),
        )

    def limit_for(self, resource: ResourceKind) -> int:
        return getattr(self, f"max_{ResourceKind(resource).value}")


# Applies while a tenant has no subscription row yet
TRIAL_DEFAULT_LIMITS = PlanLimits(
    max_users=2,
    max_properties=10,
    max_integrations=0,
    features=frozenset({"basic"}),
)


@dataclass(frozen=True)
class Allowed:
    allowed: ClassVar[bool] = True
    code: ClassVar[str] = "ALLOWED"

    def to_dict(self) -> Dict[str, Any]:
        return {"allowed": True}


@dataclass(frozen=True)
class SubscriptionInactive:
    status: str
    allowed: ClassVar[bool] = False
    code: ClassVar[str] = "SUBSCRIPTION_INACTIVE"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "status": self.status,
            "message": "Your subscription is not active. Please update your payment method.",
        }


@dataclass(frozen=True)
class LimitReached:
    resource: str
    current_usage: int
    max_allowed: int
    allowed: ClassVar[bool] = False
    code: ClassVar[str] = "LIMIT_REACHED"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "resource": self.resource,
            "limit_reached": True,
            "current_usage": self.current_usage,
            "max_allowed": self.max_allowed,
            "message": (
                f"You have reached the maximum number of {self.resource} "
                f"({self.max_allowed}) for your plan. Please upgrade to add more."
            ),
        }


@dataclass(frozen=True)
class FeatureNotAvailable:
    feature: str
    allowed: ClassVar[bool] = False
    code: ClassVar[str] = "FEATURE_NOT_AVAILABLE"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "feature": self.feature,
            "message": f"The feature '{self.feature}' is not included in your plan. Please upgrade.",
        }


Decision = Union[Allowed, SubscriptionInactive, LimitReached, FeatureNotAvailable]


def _limits(subscription, plan) -> PlanLimits:
    if subscription is None or plan is None:
        return TRIAL_DEFAULT_LIMITS
    return PlanLimits.from_plan(plan)


def _inactive(subscription) -> Optional[SubscriptionInactive]:
    if subscription is not None and subscription.status not in ACTIVE_STATUSES:
        return SubscriptionInactive(status=subscription.status)
    return None


def check_limit(subscription, plan, usage: int, resource: ResourceKind) -> Decision:
    resource = ResourceKind(resource)

    inactive = _inactive(subscription)
    if inactive:
        return inactive

    limit = _limits(subscription, plan).limit_for(resource)
    if usage >= limit:
        return LimitReached(resource=resource.value, current_usage=usage, max_allowed=limit)
    return Allowed()


def check_feature(subscription, plan, feature: str) -> Decision:
    inactive = _inactive(subscription)
    if inactive:
        return inactive

    if feature not in _limits(subscription, plan).features:
        return FeatureNotAvailable(feature=feature)
    return Allowed()


class PlanLimitEnforcer:
    def __init__(self, store):
        self.store = store

    def _load(self, tenant_id: str):
        subscription = self.store.get_subscription(tenant_id)
        plan = self.store.get_plan(subscription.plan_id) if subscription else None
        if subscription is not None and plan is None:
            logger.error(
                "Subscription references unknown plan, applying trial defaults",
                extra={"tenant_id": tenant_id, "plan_id": subscription.plan_id},
            )
        return subscription, plan

    def check(self, tenant_id: str, resource: ResourceKind) -> Decision:
        subscription, plan = self._load(tenant_id)
        usage = self.store.count_usage(tenant_id, ResourceKind(resource).value)
        decision = check_limit(subscription, plan, usage, resource)
        record_decision(ResourceKind(resource).value, decision.code)
        return decision

    def check_feature(self, tenant_id: str, feature: str) -> Decision:
        subscription, plan = self._load(tenant_id)
        decision = check_feature(subscription, plan, feature)
        record_decision(f"feature:{feature}", decision.code)
        return decision

    def usage_summary(self, tenant_id: str) -> Dict[str, Any]:
        """Current usage against limits for every resource kind."""
        subscription, plan = self._load(tenant_id)
        limits = _limits(subscription, plan)

        return {
            "tenant_id": tenant_id,
            "status": subscription.status if subscription else "trial",
            "plan_id": subscription.plan_id if subscription else None,
            "resources": {
                kind.value: {
                    "current": self.store.count_usage(tenant_id, kind.value),
                    "max": limits.limit_for(kind),
                }
                for kind in ResourceKind
            },
            "features": sorted(limits.features),
        }


# ---- Flask integration ----

def tenant_id_from_request() -> str:
    tenant_id = request.headers.get(TENANT_HEADER)
    if not tenant_id:
        raise ValidationError(f"{TENANT_HEADER} header is required")
    return tenant_id


def _enforcer() -> PlanLimitEnforcer:
    return current_app.extensions["billing"].enforcer


def _reject(decision: Decision):
    logger.info("Request blocked by plan enforcement", extra={"decision": decision.code})
    return jsonify(decision.to_dict()), 403


def enforce_limit(resource: ResourceKind):
    """
    Block the view when the tenant has used up ``resource``.

    Usage:
        @enforce_limit(ResourceKind.PROPERTIES)
        def create_property():
            ...
    """
    def decorator(f):
        @functools.wraps(f)
        def decorated_function(*args, **kwargs):
            decision = _enforcer().check(tenant_id_from_request(), resource)
            if not decision.allowed:
                return _reject(decision)
            return f(*args, **kwargs)
        return decorated_function
    return decorator


def require_feature(feature: str):
    def decorator(f):
        @functools.wraps(f)
        def decorated_function(*args, **kwargs):
            decision = _enforcer().check_feature(tenant_id_from_request(), feature)
            if not decision.allowed:
                return _reject(decision)
            return f(*args, **kwargs)
        return decorated_function
    return decorator
