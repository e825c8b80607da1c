import pytest

from conftest import TENANT_A, TENANT_B
from salon_payments.errors import DatabaseUnavailableError, PlanLimitError
from salon_payments.models import Employee, SubscriptionPlan, TenantSubscription
from salon_payments.plan_limits import (
    FREE_FEATURES,
    SmsQuotaPolicy,
    can_add_employee,
    check_sms_quota,
    enforce_active_subscription,
    enforce_employee_limit,
    enforce_feature_access,
    get_available_features,
    get_subscription_limits,
    has_feature_access,
    has_sms_quota,
)


@pytest.fixture
def basic_plan(db, tenants):
    plan = SubscriptionPlan(
        name="Basic",
        max_employees=2,
        max_locations=1,
        sms_quota=100,
        features=["appointments", "customers", "services", "online_booking"],
    )
    db.add(plan)
    db.commit()
    return plan


def subscribe(db, plan, tenant_id=TENANT_A, status="active"):
    db.add(TenantSubscription(tenant_id=tenant_id, plan_id=plan.id, status=status))
    db.commit()


def test_no_subscription_means_free_tier(db, tenants):
    assert get_subscription_limits(db, TENANT_A) is None
    assert can_add_employee(db, TENANT_A) is True
    assert has_feature_access(db, TENANT_A, "appointments") is True
    assert has_feature_access(db, TENANT_A, "online_booking") is False
    assert get_available_features(db, TENANT_A) == FREE_FEATURES


def test_limits_come_from_plan(db, basic_plan):
    subscribe(db, basic_plan)
    info = get_subscription_limits(db, TENANT_A)
    assert info.plan_name == "Basic"
    assert info.limits.max_employees == 2
    assert info.is_active is True
    assert has_feature_access(db, TENANT_A, "online_booking") is True


def test_employee_limit_uses_live_count(db, basic_plan):
    subscribe(db, basic_plan)
    db.add(Employee(tenant_id=TENANT_A, name="Kari"))
    db.add(Employee(tenant_id=TENANT_B, name="Per"))
    db.commit()
    assert can_add_employee(db, TENANT_A) is True

    db.add(Employee(tenant_id=TENANT_A, name="Ola"))
    db.commit()
    assert can_add_employee(db, TENANT_A) is False

    with pytest.raises(PlanLimitError) as exc_info:
        enforce_employee_limit(db, TENANT_A)
    assert exc_info.value.code == "FORBIDDEN"
    assert exc_info.value.context == {"limit": 2}


def test_unlimited_plan(db, tenants):
    plan = SubscriptionPlan(name="Pro", max_employees=None, features=[])
    db.add(plan)
    db.commit()
    subscribe(db, plan)
    for i in range(5):
        db.add(Employee(tenant_id=TENANT_A, name=f"E{i}"))
    db.commit()
    assert can_add_employee(db, TENANT_A) is True


def test_feature_gate(db, basic_plan):
    subscribe(db, basic_plan)
    enforce_feature_access(db, TENANT_A, "online_booking")
    with pytest.raises(PlanLimitError) as exc_info:
        enforce_feature_access(db, TENANT_A, "inventory")
    assert exc_info.value.context == {"feature": "inventory"}


@pytest.mark.parametrize("status,message_key", [
    ("past_due", "errors.subscriptionPastDue"),
    ("canceled", "errors.subscriptionInactive"),
])
def test_inactive_subscription_is_rejected(db, basic_plan, status, message_key):
    subscribe(db, basic_plan, status=status)
    with pytest.raises(PlanLimitError) as exc_info:
        enforce_active_subscription(db, TENANT_A)
    assert exc_info.value.message_key == message_key


def test_missing_subscription_is_rejected(db, tenants):
    with pytest.raises(PlanLimitError) as exc_info:
        enforce_active_subscription(db, TENANT_A)
    assert exc_info.value.message_key == "errors.noActiveSubscription"


def test_sms_quota_policy_is_explicit(db, basic_plan):
    assert check_sms_quota(db, TENANT_A).policy == SmsQuotaPolicy.UNBOUNDED

    subscribe(db, basic_plan)
    check = check_sms_quota(db, TENANT_A, required_count=500)
    assert check.policy == SmsQuotaPolicy.NOT_IMPLEMENTED
    assert check.quota == 100
    assert has_sms_quota(db, TENANT_A, 500) is True


def test_limiter_requires_database():
    with pytest.raises(DatabaseUnavailableError):
        can_add_employee(None, TENANT_A)
