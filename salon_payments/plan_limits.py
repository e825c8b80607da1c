"""
Subscription plan limits and feature gates.

``None`` limits mean unlimited. Tenants without a subscription get the free
feature allowlist and no employee cap.
"""

from dataclasses import dataclass
from enum import Enum

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from salon_payments.errors import DatabaseUnavailableError, PlanLimitError
from salon_payments.models import SubscriptionPlan, TenantSubscription
from salon_payments.tenant_isolation import count_employees

logger = structlog.get_logger(__name__)

FREE_FEATURES = ["appointments", "customers", "services"]


@dataclass
class PlanLimits:
    max_employees: int | None
    max_locations: int | None
    sms_quota: int | None
    features: list[str]


@dataclass
class SubscriptionInfo:
    plan_id: int
    plan_name: str
    limits: PlanLimits
    is_active: bool
    is_past_due: bool


class SmsQuotaPolicy(str, Enum):
    UNBOUNDED = "unbounded"
    # Usage is not tracked yet, so a quota cannot be enforced
    NOT_IMPLEMENTED = "not_implemented"


@dataclass
class SmsQuotaCheck:
    allowed: bool
    policy: SmsQuotaPolicy
    quota: int | None = None


def get_subscription_limits(db: Session | None, tenant_id: str) -> SubscriptionInfo | None:
    if db is None:
        raise DatabaseUnavailableError()

    subscription = db.execute(
        select(TenantSubscription).where(TenantSubscription.tenant_id == tenant_id)
    ).scalars().first()
    if subscription is None:
        return None

    plan = db.get(SubscriptionPlan, subscription.plan_id)
    if plan is None:
        return None

    return SubscriptionInfo(
        plan_id=plan.id,
        plan_name=plan.name,
        limits=PlanLimits(
            max_employees=plan.max_employees,
            max_locations=plan.max_locations,
            sms_quota=plan.sms_quota,
            features=list(plan.features or []),
        ),
        is_active=subscription.status == "active",
        is_past_due=subscription.status == "past_due",
    )


def can_add_employee(db: Session | None, tenant_id: str) -> bool:
    info = get_subscription_limits(db, tenant_id)
    if info is None or info.limits.max_employees is None:
        return True
    # Live count on every call; no cached counter to drift
    return count_employees(db, tenant_id) < info.limits.max_employees


def has_feature_access(db: Session | None, tenant_id: str, feature_name: str) -> bool:
    info = get_subscription_limits(db, tenant_id)
    if info is None:
        return feature_name in FREE_FEATURES
    return feature_name in info.limits.features


def check_sms_quota(db: Session | None, tenant_id: str, required_count: int = 1) -> SmsQuotaCheck:
    info = get_subscription_limits(db, tenant_id)
    if info is None or info.limits.sms_quota is None:
        return SmsQuotaCheck(allowed=True, policy=SmsQuotaPolicy.UNBOUNDED)

    # TODO: enforce once SMS usage is recorded per billing period
    logger.warning(
        "plan_limits.sms_quota_not_enforced",
        tenant_id=tenant_id,
        required=required_count,
        quota=info.limits.sms_quota,
    )
    return SmsQuotaCheck(allowed=True, policy=SmsQuotaPolicy.NOT_IMPLEMENTED, quota=info.limits.sms_quota)


def has_sms_quota(db: Session | None, tenant_id: str, required_count: int = 1) -> bool:
    return check_sms_quota(db, tenant_id, required_count).allowed


def enforce_employee_limit(db: Session | None, tenant_id: str) -> None:
    if can_add_employee(db, tenant_id):
        return
    limit = get_subscription_limits(db, tenant_id).limits.max_employees
    raise PlanLimitError(
        f"Employee limit reached ({limit}). Please upgrade your plan.",
        message_key="errors.employeeLimitReached",
        context={"limit": limit},
    )


def enforce_feature_access(db: Session | None, tenant_id: str, feature_name: str) -> None:
    if not has_feature_access(db, tenant_id, feature_name):
        raise PlanLimitError(
            f'Feature "{feature_name}" is not available in your plan. Please upgrade.',
            message_key="errors.featureNotAvailable",
            context={"feature": feature_name},
        )


def enforce_active_subscription(db: Session | None, tenant_id: str) -> None:
    info = get_subscription_limits(db, tenant_id)
    if info is None:
        raise PlanLimitError(
            "No active subscription found. Please subscribe to a plan.",
            message_key="errors.noActiveSubscription",
        )
    if info.is_past_due:
        raise PlanLimitError(
            "Your subscription payment is past due. Please update your payment method.",
            message_key="errors.subscriptionPastDue",
        )
    if not info.is_active:
        raise PlanLimitError(
            "Your subscription is not active. Please contact support.",
            message_key="errors.subscriptionInactive",
        )


def get_available_features(db: Session | None, tenant_id: str) -> list[str]:
    info = get_subscription_limits(db, tenant_id)
    if info is None:
        return list(FREE_FEATURES)
    return info.limits.features
