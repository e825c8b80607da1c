from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    event,
)

from salon_payments.database import Base


def utcnow() -> datetime:
    # Naive UTC; SQLite drops tzinfo on the way back
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Tenant(Base):
    __tablename__ = "tenants"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    email = Column(String)
    status = Column(String, default="active")      # active | suspended | canceled
    created_at = Column(DateTime, default=utcnow)


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String, ForeignKey("tenants.id"), nullable=False)
    total_amount = Column(Integer, default=0)      # øre
    status = Column(String, default="pending")     # pending | completed | refunded | partially_refunded
    customer_id = Column(Integer)
    employee_id = Column(Integer)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (Index("ix_orders_tenant_status", "tenant_id", "status"),)


class Employee(Base):
    __tablename__ = "employees"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String, ForeignKey("tenants.id"), nullable=False)
    name = Column(String)
    role = Column(String, default="employee")
    is_active = Column(Boolean, default=True)

    __table_args__ = (Index("ix_employees_tenant_active", "tenant_id", "is_active"),)


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String, ForeignKey("tenants.id"), nullable=False)
    order_id = Column(Integer, ForeignKey("orders.id"))
    appointment_id = Column(Integer)
    amount = Column(Integer, nullable=False)       # øre
    currency = Column(String, default="NOK")
    payment_method = Column(String, nullable=False)  # cash | card | vipps | stripe | split
    status = Column(String, default="pending")     # pending | completed | failed | refunded | partially_refunded
    payment_gateway = Column(String)
    gateway_session_id = Column(String)
    gateway_payment_id = Column(String, index=True)  # Stripe PaymentIntent ID
    card_last4 = Column(String(4))
    card_brand = Column(String)
    notes = Column(Text)
    refunded_at = Column(DateTime)
    refund_amount = Column(Integer, default=0)     # cumulative, øre
    refund_reason = Column(Text)
    processed_by = Column(String)
    processed_at = Column(DateTime)
    paid_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index("ix_payments_tenant_status", "tenant_id", "status"),
        Index("ix_payments_tenant_order", "tenant_id", "order_id"),
        Index("ix_payments_tenant_created", "tenant_id", "created_at"),
    )


class PaymentSplit(Base):
    __tablename__ = "payment_splits"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String, ForeignKey("tenants.id"), nullable=False)
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=False)
    order_id = Column(Integer, ForeignKey("orders.id"))
    amount = Column(Integer, nullable=False)       # øre
    payment_method = Column(String, nullable=False)
    transaction_id = Column(String)
    card_last4 = Column(String(4))
    card_brand = Column(String)
    status = Column(String, default="completed")
    processed_by = Column(String)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (Index("ix_payment_splits_tenant_payment", "tenant_id", "payment_id"),)


class Refund(Base):
    __tablename__ = "refunds"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String, ForeignKey("tenants.id"), nullable=False)
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=False)
    order_id = Column(Integer, ForeignKey("orders.id"))
    appointment_id = Column(Integer)
    amount = Column(Integer, nullable=False)       # øre
    reason = Column(Text, nullable=False)
    refund_method = Column(String, nullable=False)  # stripe | manual
    status = Column(String, default="completed")
    gateway_refund_id = Column(String, unique=True)  # NULL for manual refunds
    processed_by = Column(String)
    processed_at = Column(DateTime, default=utcnow)

    __table_args__ = (Index("ix_refunds_tenant_payment", "tenant_id", "payment_id"),)


class RefundIntent(Base):
    """Written before a gateway refund is attempted so a retry can reconcile."""

    __tablename__ = "refund_intents"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String, ForeignKey("tenants.id"), nullable=False)
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=False)
    amount = Column(Integer, nullable=False)       # øre
    attempt_number = Column(Integer, nullable=False, default=1)
    idempotency_key = Column(String, unique=True, nullable=False)
    reason = Column(Text)
    status = Column(String, default="pending")     # pending | completed | failed
    gateway_refund_id = Column(String)
    error_code = Column(String)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (Index("ix_refund_intents_tenant_payment", "tenant_id", "payment_id", "status"),)


class PaymentSettings(Base):
    __tablename__ = "payment_settings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String, ForeignKey("tenants.id"), unique=True, nullable=False)
    vipps_enabled = Column(Boolean, default=False)
    card_enabled = Column(Boolean, default=False)
    cash_enabled = Column(Boolean, default=True)
    pay_at_salon_enabled = Column(Boolean, default=True)
    stripe_connected_account_id = Column(String)
    stripe_account_status = Column(String, default="disconnected")  # connected | disconnected | pending
    stripe_connected_at = Column(DateTime)
    stripe_charges_enabled = Column(Boolean, default=False)
    stripe_payouts_enabled = Column(Boolean, default=False)
    default_payment_method = Column(String, default="pay_at_salon")  # vipps | card | cash | pay_at_salon
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class PaymentLog(Base):
    __tablename__ = "payment_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String, nullable=False)
    level = Column(String, nullable=False)
    category = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    details = Column(JSON)
    payment_id = Column(Integer)
    order_id = Column(Integer)
    appointment_id = Column(Integer)
    user_id = Column(String)
    stripe_payment_intent_id = Column(String)
    error_code = Column(String)
    error_message = Column(Text)
    ip_address = Column(String)
    user_agent = Column(String)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index("ix_payment_logs_tenant_created", "tenant_id", "created_at"),
        Index("ix_payment_logs_tenant_category", "tenant_id", "category"),
    )


class SubscriptionPlan(Base):
    __tablename__ = "subscription_plans"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    price_monthly = Column(Integer, default=0)     # øre
    max_employees = Column(Integer)                # NULL = unlimited
    max_locations = Column(Integer)
    sms_quota = Column(Integer)
    features = Column(JSON, default=list)
    stripe_price_id = Column(String)
    is_active = Column(Boolean, default=True)


class TenantSubscription(Base):
    __tablename__ = "tenant_subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String, ForeignKey("tenants.id"), unique=True, nullable=False)
    plan_id = Column(Integer, ForeignKey("subscription_plans.id"), nullable=False)
    status = Column(String, default="active")      # active | past_due | canceled | paused
    current_period_start = Column(DateTime)
    current_period_end = Column(DateTime)
    stripe_subscription_id = Column(String)
    stripe_customer_id = Column(String)
    cancel_at_period_end = Column(Boolean, default=False)
    canceled_at = Column(DateTime)


def _freeze_tenant_id(target, value, oldvalue, initiator):
    # oldvalue is a sentinel symbol until the attribute is first assigned
    if isinstance(oldvalue, str) and oldvalue != value:
        raise ValueError(f"{type(target).__name__}.tenant_id is immutable")
    return value


for _model in (Order, Employee, Payment, PaymentSplit, Refund, RefundIntent,
               PaymentSettings, TenantSubscription):
    event.listen(_model.tenant_id, "set", _freeze_tenant_id, retval=True, active_history=True)
