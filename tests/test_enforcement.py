import pytest
from types import SimpleNamespace

from estate_billing.enforcement import (
    Allowed,
    FeatureNotAvailable,
    LimitReached,
    ResourceKind,
    SubscriptionInactive,
    TRIAL_DEFAULT_LIMITS,
    check_feature,
    check_limit,
    enforce_limit,
    require_feature,
)
from estate_billing.state_machine import SubscriptionStatus


def _plan(max_users=3, max_properties=10, max_integrations=1, features=("basic", "reports")):
    return SimpleNamespace(
        max_users=max_users,
        max_properties=max_properties,
        max_integrations=max_integrations,
        features=list(features),
    )


def _subscription(status="active"):
    return SimpleNamespace(status=status, plan_id="basic")


# ---- pure checks ----

def test_under_limit_is_allowed():
    decision = check_limit(_subscription(), _plan(), 9, ResourceKind.PROPERTIES)
    assert isinstance(decision, Allowed)
    assert decision.allowed


def test_at_limit_is_rejected():
    """Test that usage equal to the limit blocks the next create"""
    decision = check_limit(_subscription(), _plan(), 10, ResourceKind.PROPERTIES)

    assert decision == LimitReached(resource="properties", current_usage=10, max_allowed=10)
    assert not decision.allowed
    body = decision.to_dict()
    assert body["error"] == "LIMIT_REACHED"
    assert body["limit_reached"] is True
    assert body["current_usage"] == 10
    assert body["max_allowed"] == 10


@pytest.mark.parametrize("status", ["suspended", "cancelled"])
def test_inactive_subscription_is_rejected_before_counting(status):
    decision = check_limit(_subscription(status), _plan(), 0, ResourceKind.USERS)

    assert decision == SubscriptionInactive(status=status)
    assert decision.to_dict()["error"] == "SUBSCRIPTION_INACTIVE"


def test_trial_subscription_is_active():
    decision = check_limit(_subscription("trial"), _plan(), 0, ResourceKind.USERS)
    assert decision.allowed


def test_missing_subscription_uses_trial_defaults():
    assert check_limit(None, None, TRIAL_DEFAULT_LIMITS.max_users - 1, ResourceKind.USERS).allowed

    decision = check_limit(None, None, TRIAL_DEFAULT_LIMITS.max_users, ResourceKind.USERS)
    assert decision == LimitReached(
        resource="users",
        current_usage=TRIAL_DEFAULT_LIMITS.max_users,
        max_allowed=TRIAL_DEFAULT_LIMITS.max_users,
    )


def test_zero_limit_blocks_first_create():
    decision = check_limit(_subscription(), _plan(max_integrations=0), 0, ResourceKind.INTEGRATIONS)
    assert isinstance(decision, LimitReached)


def test_feature_checks():
    assert check_feature(_subscription(), _plan(), "reports").allowed

    decision = check_feature(_subscription(), _plan(), "api_access")
    assert decision == FeatureNotAvailable(feature="api_access")
    assert decision.to_dict()["feature"] == "api_access"

    assert isinstance(check_feature(_subscription("suspended"), _plan(), "reports"), SubscriptionInactive)


# ---- enforcer against the store ----

def test_enforcer_counts_usage_from_registered_counter(billing, tenant, usage):
    # Trial plan: 10 properties
    usage[(tenant, "properties")] = 9
    assert billing.enforcer.check(tenant, ResourceKind.PROPERTIES).allowed

    usage[(tenant, "properties")] = 10
    decision = billing.enforcer.check(tenant, ResourceKind.PROPERTIES)
    assert decision == LimitReached(resource="properties", current_usage=10, max_allowed=10)


def test_enforcer_blocks_suspended_tenant(billing, tenant):
    billing.state_machine.set_status(tenant, SubscriptionStatus.SUSPENDED)

    decision = billing.enforcer.check(tenant, ResourceKind.USERS)

    assert decision == SubscriptionInactive(status="suspended")


def test_enforcer_unknown_tenant_gets_trial_defaults(billing):
    decision = billing.enforcer.check("tenant-without-subscription", ResourceKind.INTEGRATIONS)
    assert decision == LimitReached(resource="integrations", current_usage=0, max_allowed=0)


def test_usage_summary(billing, tenant, usage):
    usage[(tenant, "users")] = 1

    summary = billing.enforcer.usage_summary(tenant)

    assert summary["status"] == "trial"
    assert summary["plan_id"] == "trial"
    assert summary["resources"]["users"] == {"current": 1, "max": 2}
    assert summary["resources"]["properties"] == {"current": 0, "max": 10}
    assert summary["features"] == ["basic"]


# ---- decorators ----

@pytest.fixture
def guarded_client(app):
    @app.route("/properties", methods=["POST"])
    @enforce_limit(ResourceKind.PROPERTIES)
    def create_property():
        return {"created": True}, 201

    @app.route("/reports/advanced")
    @require_feature("advanced_reports")
    def advanced_report():
        return {"report": []}

    return app.test_client()


def test_decorator_lets_request_through(guarded_client, tenant_headers):
    response = guarded_client.post("/properties", headers=tenant_headers)
    assert response.status_code == 201


def test_decorator_returns_403_at_limit(guarded_client, tenant, tenant_headers, usage):
    usage[(tenant, "properties")] = 10

    response = guarded_client.post("/properties", headers=tenant_headers)

    assert response.status_code == 403
    data = response.get_json()
    assert data["error"] == "LIMIT_REACHED"
    assert data["max_allowed"] == 10


def test_feature_decorator_returns_403(guarded_client, tenant_headers):
    response = guarded_client.get("/reports/advanced", headers=tenant_headers)

    assert response.status_code == 403
    assert response.get_json()["error"] == "FEATURE_NOT_AVAILABLE"


def test_decorator_requires_tenant_header(guarded_client):
    response = guarded_client.post("/properties")

    assert response.status_code == 400
    assert response.get_json()["error"] == "VALIDATION_ERROR"
