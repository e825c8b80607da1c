from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field

PaymentMethod = Literal["cash", "card", "vipps", "stripe"]
PaymentStatus = Literal["pending", "completed", "failed", "refunded", "partially_refunded"]


class RecordPaymentRequest(BaseModel):
    order_id: int | None = None
    appointment_id: int | None = None
    amount: Decimal = Field(ge=Decimal("0.01"))
    payment_method: PaymentMethod
    gateway_payment_id: str | None = None
    card_last4: str | None = Field(default=None, max_length=4)
    card_brand: str | None = None
    notes: str | None = None


class SplitPart(BaseModel):
    amount: Decimal = Field(ge=Decimal("0.01"))
    payment_method: PaymentMethod
    transaction_id: str | None = None
    card_last4: str | None = Field(default=None, max_length=4)
    card_brand: str | None = None


class SplitPaymentRequest(BaseModel):
    order_id: int | None = None
    appointment_id: int | None = None
    total_amount: Decimal = Field(ge=Decimal("0.01"))
    splits: list[SplitPart] = Field(min_length=1)
    notes: str | None = None


class RefundRequest(BaseModel):
    payment_id: int
    # Omitted: refund whatever has not been refunded yet
    amount: Decimal | None = Field(default=None, ge=Decimal("0.01"))
    reason: str = Field(min_length=1)


class PaymentIntentRequest(BaseModel):
    amount: Decimal = Field(ge=Decimal("1"))
    customer_id: int | None = None
    appointment_id: int | None = None
    order_id: int | None = None
    description: str | None = None
    metadata: dict[str, str] | None = None
    idempotency_key: str | None = None


class TerminalIntentRequest(BaseModel):
    amount: Decimal = Field(ge=Decimal("1"))
    currency: str = "nok"
    metadata: dict[str, str] | None = None
    idempotency_key: str | None = None


class StatusUpdateRequest(BaseModel):
    status: PaymentStatus


class ConnectCallbackRequest(BaseModel):
    code: str
    state: str


class AccountLinkRequest(BaseModel):
    refresh_url: str
    return_url: str


class PaymentSettingsUpdate(BaseModel):
    vipps_enabled: bool | None = None
    card_enabled: bool | None = None
    cash_enabled: bool | None = None
    pay_at_salon_enabled: bool | None = None
    default_payment_method: Literal["vipps", "card", "cash", "pay_at_salon"] | None = None
