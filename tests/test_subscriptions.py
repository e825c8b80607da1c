import pytest

from conftest import TENANT_A
from salon_payments.errors import BadRequestError
from salon_payments.models import SubscriptionPlan, Tenant, TenantSubscription
from salon_payments.subscriptions import (
    handle_subscription_deleted,
    handle_subscription_update,
    map_subscription_status,
)


@pytest.fixture
def plan(db, tenants):
    plan = SubscriptionPlan(name="Basic", features=[])
    db.add(plan)
    db.commit()
    return plan


def subscription_payload(plan_id, status="active", tenant_id=TENANT_A):
    return {
        "id": "sub_1",
        "customer": "cus_1",
        "status": status,
        "metadata": {"tenantId": tenant_id, "planId": str(plan_id)},
        "current_period_start": 1767225600,
        "current_period_end": 1769904000,
        "cancel_at_period_end": False,
        "canceled_at": None,
    }


@pytest.mark.parametrize("stripe_status,expected", [
    ("active", "active"),
    ("trialing", "active"),
    ("past_due", "past_due"),
    ("unpaid", "canceled"),
    ("canceled", "canceled"),
    ("paused", "paused"),
])
def test_status_mapping(stripe_status, expected):
    assert map_subscription_status(stripe_status) == expected


def test_update_creates_then_updates_subscription(db, plan):
    handle_subscription_update(db, subscription_payload(plan.id))
    handle_subscription_update(db, subscription_payload(plan.id, status="past_due"))

    records = db.query(TenantSubscription).filter_by(tenant_id=TENANT_A).all()
    assert len(records) == 1
    assert records[0].status == "past_due"
    assert records[0].stripe_subscription_id == "sub_1"
    assert records[0].current_period_start.year == 2026
    assert db.get(Tenant, TENANT_A).status == "suspended"


def test_update_requires_tenant_metadata(db, plan):
    payload = subscription_payload(plan.id)
    payload["metadata"] = {"planId": str(plan.id)}
    with pytest.raises(BadRequestError):
        handle_subscription_update(db, payload)


def test_delete_cancels_subscription_and_tenant(db, plan):
    handle_subscription_update(db, subscription_payload(plan.id))
    handle_subscription_deleted(db, subscription_payload(plan.id))

    record = db.query(TenantSubscription).filter_by(tenant_id=TENANT_A).one()
    assert record.status == "canceled"
    assert record.canceled_at is not None
    assert db.get(Tenant, TENANT_A).status == "canceled"
