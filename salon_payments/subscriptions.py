"""
Tenant subscription state, driven by Stripe Billing webhooks.

Subscriptions carry ``tenantId`` and ``planId`` in their metadata; both are
set when the checkout session is created.
"""

from datetime import datetime, timezone

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from salon_payments.errors import BadRequestError, DatabaseUnavailableError
from salon_payments.models import Tenant, TenantSubscription, utcnow
from salon_payments.stripe_connect import stripe_field

logger = structlog.get_logger(__name__)

STATUS_MAP = {
    "past_due": "past_due",
    "canceled": "canceled",
    "unpaid": "canceled",
    "paused": "paused",
}


def map_subscription_status(stripe_status: str) -> str:
    return STATUS_MAP.get(stripe_status, "active")


def tenant_status_for(subscription_status: str) -> str:
    if subscription_status == "active":
        return "active"
    if subscription_status == "canceled":
        return "canceled"
    return "suspended"


def _timestamp(value) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)


def _tenant_id(subscription) -> str:
    tenant_id = stripe_field(stripe_field(subscription, "metadata", {}), "tenantId")
    if not tenant_id:
        raise BadRequestError("Tenant ID not found in subscription metadata")
    return tenant_id


def _set_tenant_status(db: Session, tenant_id: str, status: str) -> None:
    tenant = db.get(Tenant, tenant_id)
    if tenant is not None:
        tenant.status = status


def handle_subscription_update(db: Session | None, subscription) -> TenantSubscription:
    if db is None:
        raise DatabaseUnavailableError()

    tenant_id = _tenant_id(subscription)
    metadata = stripe_field(subscription, "metadata", {})
    try:
        plan_id = int(stripe_field(metadata, "planId") or 0)
    except ValueError:
        plan_id = 0
    if not plan_id:
        raise BadRequestError("Plan ID not found in subscription metadata")

    status = map_subscription_status(stripe_field(subscription, "status"))
    values = {
        "plan_id": plan_id,
        "status": status,
        "current_period_start": _timestamp(stripe_field(subscription, "current_period_start")),
        "current_period_end": _timestamp(stripe_field(subscription, "current_period_end")),
        "stripe_subscription_id": stripe_field(subscription, "id"),
        "stripe_customer_id": stripe_field(subscription, "customer"),
        "cancel_at_period_end": bool(stripe_field(subscription, "cancel_at_period_end")),
        "canceled_at": _timestamp(stripe_field(subscription, "canceled_at")),
    }

    record = db.execute(
        select(TenantSubscription).where(TenantSubscription.tenant_id == tenant_id)
    ).scalars().first()
    if record is None:
        record = TenantSubscription(tenant_id=tenant_id, **values)
        db.add(record)
    else:
        for name, value in values.items():
            setattr(record, name, value)

    _set_tenant_status(db, tenant_id, tenant_status_for(status))
    db.commit()

    logger.info("subscriptions.updated", tenant_id=tenant_id, plan_id=plan_id, status=status)
    return record


def handle_subscription_deleted(db: Session | None, subscription) -> None:
    if db is None:
        raise DatabaseUnavailableError()

    tenant_id = _tenant_id(subscription)
    record = db.execute(
        select(TenantSubscription).where(TenantSubscription.tenant_id == tenant_id)
    ).scalars().first()
    if record is not None:
        record.status = "canceled"
        record.canceled_at = utcnow()

    _set_tenant_status(db, tenant_id, "canceled")
    db.commit()

    logger.info("subscriptions.canceled", tenant_id=tenant_id)
