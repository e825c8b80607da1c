"""
Tenant-scoped data access.

Every query against payment related tables goes through this module so the
``tenant_id`` predicate is never forgotten. Secure lookups return ``None``
both when a row does not exist and when it belongs to another tenant.

When the store is unavailable (``db is None``) reads return ``None``/``[]``
and writes raise ``DatabaseUnavailableError``.
"""

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from salon_payments.errors import DatabaseUnavailableError, NotFoundError, TenantIsolationError
from salon_payments.models import (
    Employee,
    Order,
    Payment,
    PaymentSettings,
    PaymentSplit,
    Refund,
    utcnow,
)
from salon_payments.payment_log import PaymentLogger

DEFAULT_PAYMENT_SETTINGS = {
    "vipps_enabled": False,
    "card_enabled": False,
    "cash_enabled": True,
    "pay_at_salon_enabled": True,
    "stripe_connected_account_id": None,
    "stripe_account_status": "disconnected",
    "stripe_connected_at": None,
    "stripe_charges_enabled": False,
    "stripe_payouts_enabled": False,
    "default_payment_method": "pay_at_salon",
}

SETTINGS_FIELDS = tuple(DEFAULT_PAYMENT_SETTINGS)


def validate_tenant_ownership(record, tenant_id: str, entity_name: str,
                              payment_logger: PaymentLogger | None = None):
    """
    Return ``record`` if it belongs to ``tenant_id``.

    A mismatch is logged as a critical ``security_breach`` carrying both
    tenant ids, then raised as an error the API renders as NOT_FOUND.
    """
    if record is None:
        raise NotFoundError(f"{entity_name} not found")

    if record.tenant_id != tenant_id:
        if payment_logger is not None:
            payment_logger.security_breach(
                tenant_id,
                breach_type="tenant_isolation_violation",
                requested_resource=f"{entity_name}:{getattr(record, 'id', None)}",
                actual_owner=record.tenant_id,
            )
        raise TenantIsolationError(entity_name)

    return record


def _require(db: Session | None) -> Session:
    if db is None:
        raise DatabaseUnavailableError()
    return db


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------

def get_payment_by_id_secure(db: Session | None, payment_id: int, tenant_id: str,
                             for_update: bool = False) -> Payment | None:
    if db is None:
        return None
    stmt = select(Payment).where(Payment.id == payment_id, Payment.tenant_id == tenant_id)
    if for_update:
        # Locking read; also refresh whatever the session already holds
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    return db.execute(stmt).scalars().first()


def get_payment_by_gateway_id(db: Session | None, gateway_payment_id: str,
                              tenant_id: str) -> Payment | None:
    if db is None:
        return None
    return db.execute(
        select(Payment).where(
            Payment.tenant_id == tenant_id,
            Payment.gateway_payment_id == gateway_payment_id,
        )
    ).scalars().first()


def get_payments_by_tenant(db: Session | None, tenant_id: str, limit: int = 50, offset: int = 0,
                           status: str | None = None, order_id: int | None = None,
                           appointment_id: int | None = None) -> list[Payment]:
    if db is None:
        return []
    stmt = select(Payment).where(Payment.tenant_id == tenant_id)
    if status:
        stmt = stmt.where(Payment.status == status)
    if order_id:
        stmt = stmt.where(Payment.order_id == order_id)
    if appointment_id:
        stmt = stmt.where(Payment.appointment_id == appointment_id)
    stmt = stmt.order_by(Payment.created_at.desc(), Payment.id.desc()).limit(limit).offset(offset)
    return list(db.execute(stmt).scalars())


def count_payments_by_tenant(db: Session | None, tenant_id: str, status: str | None = None) -> int:
    if db is None:
        return 0
    stmt = select(func.count()).select_from(Payment).where(Payment.tenant_id == tenant_id)
    if status:
        stmt = stmt.where(Payment.status == status)
    return db.execute(stmt).scalar_one()


def get_splits_by_payment(db: Session | None, payment_id: int, tenant_id: str) -> list[PaymentSplit]:
    if db is None:
        return []
    return list(db.execute(
        select(PaymentSplit).where(
            PaymentSplit.tenant_id == tenant_id,
            PaymentSplit.payment_id == payment_id,
        )
    ).scalars())


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------

def get_order_by_id_secure(db: Session | None, order_id: int, tenant_id: str) -> Order | None:
    if db is None:
        return None
    return db.execute(
        select(Order).where(Order.id == order_id, Order.tenant_id == tenant_id)
    ).scalars().first()


def get_orders_by_tenant(db: Session | None, tenant_id: str, limit: int = 50, offset: int = 0,
                         status: str | None = None, employee_id: int | None = None,
                         customer_id: int | None = None) -> list[Order]:
    if db is None:
        return []
    stmt = select(Order).where(Order.tenant_id == tenant_id)
    if status:
        stmt = stmt.where(Order.status == status)
    if employee_id:
        stmt = stmt.where(Order.employee_id == employee_id)
    if customer_id:
        stmt = stmt.where(Order.customer_id == customer_id)
    return list(db.execute(stmt.limit(limit).offset(offset)).scalars())


def set_order_status(db: Session | None, order_id: int, tenant_id: str, status: str) -> None:
    order = get_order_by_id_secure(_require(db), order_id, tenant_id)
    if order is not None:
        order.status = status


# ---------------------------------------------------------------------------
# Refunds
# ---------------------------------------------------------------------------

def get_refund_by_id_secure(db: Session | None, refund_id: int, tenant_id: str) -> Refund | None:
    if db is None:
        return None
    return db.execute(
        select(Refund).where(Refund.id == refund_id, Refund.tenant_id == tenant_id)
    ).scalars().first()


def get_refunds_by_payment(db: Session | None, payment_id: int, tenant_id: str) -> list[Refund]:
    if db is None:
        return []
    return list(db.execute(
        select(Refund).where(Refund.payment_id == payment_id, Refund.tenant_id == tenant_id)
    ).scalars())


# ---------------------------------------------------------------------------
# Payment settings
# ---------------------------------------------------------------------------

def get_payment_settings_secure(db: Session | None, tenant_id: str) -> PaymentSettings | None:
    if db is None:
        return None
    return db.execute(
        select(PaymentSettings).where(PaymentSettings.tenant_id == tenant_id)
    ).scalars().first()


def resolve_tenant_by_account_id(db: Session | None, account_id: str) -> str | None:
    """Tenant owning a connected account; the one lookup that starts without a tenant."""
    if db is None or not account_id:
        return None
    return db.execute(
        select(PaymentSettings.tenant_id).where(PaymentSettings.stripe_connected_account_id == account_id)
    ).scalars().first()


def payment_settings_view(settings: PaymentSettings | None) -> dict:
    """Settings as a plain dict; defaults apply when the tenant has no row."""
    if settings is None:
        return dict(DEFAULT_PAYMENT_SETTINGS)
    return {name: getattr(settings, name) for name in SETTINGS_FIELDS}


def upsert_payment_settings(db: Session | None, tenant_id: str, /, **patch) -> PaymentSettings:
    """Merge ``patch`` into the tenant's settings row, creating it from defaults.

    Flushes but does not commit; the caller owns the transaction.
    """
    db = _require(db)
    unknown = set(patch) - set(SETTINGS_FIELDS)
    if unknown:
        raise ValueError(f"Unknown payment settings: {', '.join(sorted(unknown))}")

    settings = get_payment_settings_secure(db, tenant_id)
    if settings is None:
        settings = PaymentSettings(tenant_id=tenant_id, **{**DEFAULT_PAYMENT_SETTINGS, **patch})
        db.add(settings)
    else:
        for name, value in patch.items():
            setattr(settings, name, value)
        settings.updated_at = utcnow()
    db.flush()
    return settings


# ---------------------------------------------------------------------------
# Employees
# ---------------------------------------------------------------------------

def get_employees_by_tenant(db: Session | None, tenant_id: str) -> list[Employee]:
    if db is None:
        return []
    return list(db.execute(
        select(Employee).where(Employee.tenant_id == tenant_id, Employee.is_active.is_(True))
    ).scalars())


def count_employees(db: Session | None, tenant_id: str) -> int:
    db = _require(db)
    return db.execute(
        select(func.count()).select_from(Employee).where(Employee.tenant_id == tenant_id)
    ).scalar_one()
