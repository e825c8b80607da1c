"""
Payment orchestration.

Composes tenant-scoped data access, the Stripe Connect adapter and the
payment log into the record, split and refund workflows. Each workflow
commits its local writes in a single transaction.

Gateway refunds run in three steps: a ``RefundIntent`` row carrying a
deterministic idempotency key is committed first, then Stripe is called,
then the refund is applied locally. A retry after a crash or timeout finds
the pending intent and reuses its key, so Stripe never refunds twice.
"""

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from salon_payments.auth import TenantContext
from salon_payments.errors import (
    BadRequestError,
    DatabaseUnavailableError,
    GatewayError,
    InvalidStatusTransition,
    NotFoundError,
    PaymentServiceError,
)
from salon_payments.models import Order, Payment, PaymentSplit, Refund, RefundIntent, utcnow
from salon_payments.money import amounts_match, to_major_units, to_minor_units
from salon_payments.payment_log import LogCategory, LogLevel, PaymentLogEntry, PaymentLogger
from salon_payments.schemas import (
    PaymentIntentRequest,
    RecordPaymentRequest,
    RefundRequest,
    SplitPaymentRequest,
    TerminalIntentRequest,
)
from salon_payments.stripe_connect import StripeConnectService
from salon_payments.tenant_isolation import (
    count_payments_by_tenant,
    get_order_by_id_secure,
    get_payment_by_id_secure,
    get_payments_by_tenant,
    get_refunds_by_payment,
    get_splits_by_payment,
    set_order_status,
)

logger = structlog.get_logger(__name__)

ALLOWED_TRANSITIONS = {
    "pending": {"completed", "failed"},
    "completed": {"refunded", "partially_refunded"},
    "partially_refunded": {"partially_refunded", "refunded"},
    "failed": set(),
    "refunded": set(),
}

REFUNDABLE_STATUSES = {"completed", "partially_refunded"}

# Refund statuses are only reachable through process_refund
STATUS_UPDATE_TARGETS = {"completed", "failed"}


def check_transition(current: str, requested: str) -> None:
    if requested not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidStatusTransition(current, requested)


def refund_idempotency_key(payment_id: int, amount_minor: int, attempt_number: int) -> str:
    return f"refund-{payment_id}-{amount_minor}-{attempt_number}"


def payment_to_dict(payment: Payment) -> dict:
    return {
        "id": payment.id,
        "tenant_id": payment.tenant_id,
        "order_id": payment.order_id,
        "appointment_id": payment.appointment_id,
        "amount": to_major_units(payment.amount),
        "currency": payment.currency,
        "payment_method": payment.payment_method,
        "status": payment.status,
        "gateway_payment_id": payment.gateway_payment_id,
        "card_last4": payment.card_last4,
        "card_brand": payment.card_brand,
        "refund_amount": to_major_units(payment.refund_amount or 0),
        "refunded_at": payment.refunded_at,
        "refund_reason": payment.refund_reason,
        "processed_by": payment.processed_by,
        "processed_at": payment.processed_at,
        "created_at": payment.created_at,
    }


class PaymentService:
    def __init__(self, db: Session | None, payment_logger: PaymentLogger,
                 gateway: StripeConnectService | None = None):
        self.db = db
        self.payment_logger = payment_logger
        self.gateway = gateway or StripeConnectService(db, payment_logger)

    def _session(self) -> Session:
        if self.db is None:
            raise DatabaseUnavailableError()
        return self.db

    def _require_order(self, order_id: int | None, tenant_id: str) -> Order | None:
        if not order_id:
            return None
        order = get_order_by_id_secure(self.db, order_id, tenant_id)
        if order is None:
            raise NotFoundError("Order not found", message_key="errors.orderNotFound")
        return order

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record_payment(self, ctx: TenantContext, data: RecordPaymentRequest) -> dict:
        db = self._session()
        order = self._require_order(data.order_id, ctx.tenant_id)
        if data.payment_method == "stripe" and data.gateway_payment_id:
            # Only intents settling into this tenant's account may be recorded
            self.gateway.verify_payment_intent_owner(ctx.tenant_id, data.gateway_payment_id)
        now = utcnow()

        try:
            payment = Payment(
                tenant_id=ctx.tenant_id,
                order_id=data.order_id,
                appointment_id=data.appointment_id,
                amount=to_minor_units(data.amount),
                currency="NOK",
                payment_method=data.payment_method,
                # Cash and manual flows are recorded after the fact
                status="completed",
                payment_gateway="stripe" if data.payment_method == "stripe" else None,
                gateway_payment_id=data.gateway_payment_id,
                card_last4=data.card_last4,
                card_brand=data.card_brand,
                notes=data.notes,
                processed_by=ctx.user_id,
                processed_at=now,
                paid_at=now,
            )
            db.add(payment)
            if order is not None:
                order.status = "completed"
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            self.payment_logger.payment_failed(
                ctx.tenant_id, None, data.amount, data.payment_method, "DB_ERROR", str(exc)
            )
            raise PaymentServiceError(
                "Failed to record payment", message_key="errors.recordPaymentFailed"
            ) from exc

        self.payment_logger.payment_completed(
            ctx.tenant_id, payment.id, data.amount, data.payment_method,
            gateway_payment_id=data.gateway_payment_id, user_id=ctx.user_id,
        )
        return {"success": True, "payment_id": payment.id, "receipt_number": f"RCP-{payment.id}"}

    def process_split_payment(self, ctx: TenantContext, data: SplitPaymentRequest) -> dict:
        db = self._session()

        total_minor = to_minor_units(data.total_amount)
        parts_minor = [to_minor_units(split.amount) for split in data.splits]
        if not amounts_match(total_minor, parts_minor):
            raise BadRequestError(
                "Split amounts must equal total amount",
                message_key="errors.splitAmountMismatch",
                context={
                    "total_amount": str(data.total_amount),
                    "split_total": str(to_major_units(sum(parts_minor))),
                },
            )

        order = self._require_order(data.order_id, ctx.tenant_id)
        now = utcnow()

        try:
            payment = Payment(
                tenant_id=ctx.tenant_id,
                order_id=data.order_id,
                appointment_id=data.appointment_id,
                amount=total_minor,
                currency="NOK",
                payment_method="split",
                status="completed",
                notes=data.notes,
                processed_by=ctx.user_id,
                processed_at=now,
                paid_at=now,
            )
            db.add(payment)
            db.flush()

            for split, amount_minor in zip(data.splits, parts_minor):
                db.add(PaymentSplit(
                    tenant_id=ctx.tenant_id,
                    payment_id=payment.id,
                    order_id=data.order_id,
                    amount=amount_minor,
                    payment_method=split.payment_method,
                    transaction_id=split.transaction_id,
                    card_last4=split.card_last4,
                    card_brand=split.card_brand,
                    status="completed",
                    processed_by=ctx.user_id,
                ))

            if order is not None:
                order.status = "completed"
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            self.payment_logger.payment_failed(
                ctx.tenant_id, None, data.total_amount, "split", "DB_ERROR", str(exc)
            )
            raise PaymentServiceError(
                "Failed to process split payment", message_key="errors.splitPaymentFailed"
            ) from exc

        self.payment_logger.payment_completed(
            ctx.tenant_id, payment.id, data.total_amount, "split", user_id=ctx.user_id
        )
        return {"success": True, "payment_id": payment.id, "receipt_number": f"RCP-{payment.id}"}

    # ------------------------------------------------------------------
    # Online and terminal intents
    # ------------------------------------------------------------------

    def create_payment_intent(self, ctx: TenantContext, data: PaymentIntentRequest) -> dict:
        self._session()
        self._require_order(data.order_id, ctx.tenant_id)
        result = self.gateway.create_destination_payment_intent(
            ctx.tenant_id,
            data.amount,
            customer_id=data.customer_id,
            appointment_id=data.appointment_id,
            order_id=data.order_id,
            description=data.description,
            metadata=data.metadata,
            idempotency_key=data.idempotency_key,
        )
        payment = self._persist_pending(ctx, result, data.order_id, data.appointment_id, "stripe")
        return {
            "payment_id": payment.id,
            "id": result.id,
            "client_secret": result.client_secret,
            "amount": result.amount,
            "application_fee_amount": result.application_fee_amount,
            "currency": result.currency,
            "status": result.status,
            "connected_account_id": result.connected_account_id,
        }

    def create_terminal_payment_intent(self, ctx: TenantContext, data: TerminalIntentRequest) -> dict:
        self._session()
        result = self.gateway.create_terminal_destination_payment_intent(
            ctx.tenant_id,
            data.amount,
            currency=data.currency,
            metadata=data.metadata,
            idempotency_key=data.idempotency_key,
        )
        payment = self._persist_pending(ctx, result, None, None, "stripe_terminal")
        return {
            "payment_id": payment.id,
            "id": result.id,
            "client_secret": result.client_secret,
            "amount": result.amount,
            "application_fee_amount": result.application_fee_amount,
            "currency": result.currency,
            "status": result.status,
            "connected_account_id": result.connected_account_id,
        }

    def _persist_pending(self, ctx, result, order_id, appointment_id, gateway_name) -> Payment:
        db = self._session()
        try:
            payment = Payment(
                tenant_id=ctx.tenant_id,
                order_id=order_id,
                appointment_id=appointment_id,
                amount=result.amount,
                currency=result.currency.upper(),
                payment_method="stripe",
                status="pending",
                payment_gateway=gateway_name,
                gateway_payment_id=result.id,
                processed_by=ctx.user_id,
            )
            db.add(payment)
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            # The intent exists at Stripe; the webhook cannot match it without this row
            logger.critical(
                "payment_service.pending_persist_failed",
                tenant_id=ctx.tenant_id,
                payment_intent=result.id,
                error=str(exc),
            )
            self.payment_logger.payment_failed(
                ctx.tenant_id, None, to_major_units(result.amount), "stripe", "DB_ERROR", str(exc),
                details={"payment_intent": result.id},
            )
            raise PaymentServiceError(
                "Failed to record payment", message_key="errors.recordPaymentFailed"
            ) from exc
        return payment

    # ------------------------------------------------------------------
    # Status updates
    # ------------------------------------------------------------------

    def update_payment_status(self, ctx: TenantContext, payment_id: int, status: str,
                              error_code: str | None = None, error_message: str | None = None) -> dict:
        db = self._session()
        payment = get_payment_by_id_secure(db, payment_id, ctx.tenant_id, for_update=True)
        if payment is None:
            raise NotFoundError("Payment not found", message_key="errors.paymentNotFound")

        if status not in STATUS_UPDATE_TARGETS:
            db.rollback()
            raise InvalidStatusTransition(payment.status, status)
        check_transition(payment.status, status)
        payment.status = status
        if status == "completed":
            payment.paid_at = payment.processed_at = utcnow()
        db.commit()

        amount = to_major_units(payment.amount)
        if status == "completed":
            self.payment_logger.payment_completed(
                ctx.tenant_id, payment.id, amount, payment.payment_method,
                gateway_payment_id=payment.gateway_payment_id, user_id=ctx.user_id,
            )
        elif status == "failed":
            self.payment_logger.payment_failed(
                ctx.tenant_id, payment.id, amount, payment.payment_method,
                error_code or "PAYMENT_FAILED", error_message or "Payment failed",
            )
        return payment_to_dict(payment)

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    def process_refund(self, ctx: TenantContext, data: RefundRequest) -> dict:
        db = self._session()
        payment = get_payment_by_id_secure(db, data.payment_id, ctx.tenant_id)
        if payment is None:
            raise NotFoundError("Payment not found", message_key="errors.paymentNotFound")

        if data.amount is not None:
            refund_minor = to_minor_units(data.amount)
        else:
            refund_minor = payment.amount - (payment.refund_amount or 0)

        if refund_minor > payment.amount:
            raise BadRequestError(
                "Refund amount cannot exceed original payment",
                message_key="errors.refundExceedsPayment",
                context={"original_amount": str(to_major_units(payment.amount))},
            )

        uses_gateway = payment.payment_method == "stripe" and bool(payment.gateway_payment_id)
        if not uses_gateway:
            return self._apply_refund(ctx, data.payment_id, refund_minor, data.reason, "manual")

        intent = self._open_refund_intent(ctx, data.payment_id, refund_minor, data.reason)
        try:
            result = self.gateway.process_stripe_refund(
                ctx.tenant_id,
                payment.gateway_payment_id,
                amount=to_major_units(refund_minor),
                reason=data.reason,
                idempotency_key=intent.idempotency_key,
            )
        except GatewayError as exc:
            if not exc.outcome_unknown:
                intent.status = "failed"
                intent.error_code = exc.gateway_code
                db.commit()
            self.payment_logger.log(PaymentLogEntry(
                tenant_id=ctx.tenant_id,
                level=LogLevel.ERROR,
                category=LogCategory.PAYMENT_REFUNDED,
                message=f"Refund failed: {to_major_units(refund_minor)} NOK - {exc.message}",
                amount=to_major_units(refund_minor),
                payment_method=payment.payment_method,
                payment_id=payment.id,
                user_id=ctx.user_id,
                error_code=exc.gateway_code,
                error_message=exc.message,
                details={
                    "idempotency_key": intent.idempotency_key,
                    "outcome_unknown": exc.outcome_unknown,
                },
            ))
            raise
        except PaymentServiceError as exc:
            # Rejected before Stripe was asked to move money
            intent.status = "failed"
            intent.error_code = exc.code
            db.commit()
            raise

        return self._apply_refund(
            ctx, data.payment_id, refund_minor, data.reason, "stripe",
            gateway_refund_id=result.refund_id, intent_id=intent.id,
        )

    def _pending_intent_total(self, payment_id: int, tenant_id: str, exclude_id: int | None = None) -> int:
        stmt = select(func.coalesce(func.sum(RefundIntent.amount), 0)).where(
            RefundIntent.tenant_id == tenant_id,
            RefundIntent.payment_id == payment_id,
            RefundIntent.status == "pending",
        )
        if exclude_id is not None:
            stmt = stmt.where(RefundIntent.id != exclude_id)
        return self.db.execute(stmt).scalar_one()

    def _check_refund_bound(self, payment: Payment, refund_minor: int, exclude_intent_id=None) -> None:
        if payment.status not in REFUNDABLE_STATUSES:
            if payment.status == "refunded":
                raise BadRequestError(
                    "Payment has already been fully refunded", message_key="errors.alreadyRefunded"
                )
            raise InvalidStatusTransition(payment.status, "refunded")

        committed = (payment.refund_amount or 0) + self._pending_intent_total(
            payment.id, payment.tenant_id, exclude_intent_id
        )
        if committed + refund_minor > payment.amount:
            raise BadRequestError(
                "Refund amount exceeds the remaining refundable amount",
                message_key="errors.refundExceedsRemaining",
                context={"remaining_amount": str(to_major_units(max(payment.amount - committed, 0)))},
            )

    def _open_refund_intent(self, ctx: TenantContext, payment_id: int, refund_minor: int,
                            reason: str) -> RefundIntent:
        db = self.db
        payment = get_payment_by_id_secure(db, payment_id, ctx.tenant_id, for_update=True)

        existing = db.execute(
            select(RefundIntent).where(
                RefundIntent.tenant_id == ctx.tenant_id,
                RefundIntent.payment_id == payment_id,
                RefundIntent.amount == refund_minor,
                RefundIntent.status == "pending",
            )
        ).scalars().first()
        if existing is not None:
            # A previous attempt never finished; reuse its key so Stripe deduplicates
            logger.warning(
                "payment_service.refund_intent_reused",
                tenant_id=ctx.tenant_id,
                payment_id=payment_id,
                idempotency_key=existing.idempotency_key,
            )
            try:
                self._check_refund_bound(payment, refund_minor, exclude_intent_id=existing.id)
            finally:
                db.rollback()
            return existing

        try:
            self._check_refund_bound(payment, refund_minor)
        except PaymentServiceError:
            db.rollback()
            raise

        previous_attempts = db.execute(
            select(func.count()).select_from(RefundIntent).where(
                RefundIntent.tenant_id == ctx.tenant_id,
                RefundIntent.payment_id == payment_id,
                RefundIntent.amount == refund_minor,
            )
        ).scalar_one()
        attempt_number = previous_attempts + 1
        intent = RefundIntent(
            tenant_id=ctx.tenant_id,
            payment_id=payment_id,
            amount=refund_minor,
            attempt_number=attempt_number,
            idempotency_key=refund_idempotency_key(payment_id, refund_minor, attempt_number),
            reason=reason,
            status="pending",
        )
        db.add(intent)
        db.commit()
        return intent

    def _apply_refund(self, ctx: TenantContext, payment_id: int, refund_minor: int, reason: str,
                      refund_method: str, gateway_refund_id: str | None = None,
                      intent_id: int | None = None) -> dict:
        db = self.db
        try:
            payment = get_payment_by_id_secure(db, payment_id, ctx.tenant_id, for_update=True)

            intent = None
            if intent_id is not None:
                intent = db.execute(
                    select(RefundIntent)
                    .where(RefundIntent.id == intent_id, RefundIntent.tenant_id == ctx.tenant_id)
                    .with_for_update()
                    .execution_options(populate_existing=True)
                ).scalars().one()
                if intent.status == "completed":
                    # Another request shared this idempotency key and already applied it
                    existing = self._refund_for_intent(intent)
                    db.rollback()
                    logger.info(
                        "payment_service.refund_already_applied",
                        tenant_id=ctx.tenant_id,
                        payment_id=payment_id,
                        idempotency_key=intent.idempotency_key,
                        refund_id=existing.id,
                    )
                    return self._refund_response(existing, payment)

            self._check_refund_bound(payment, refund_minor, exclude_intent_id=intent_id)

            refund = Refund(
                tenant_id=ctx.tenant_id,
                payment_id=payment.id,
                order_id=payment.order_id,
                appointment_id=payment.appointment_id,
                amount=refund_minor,
                reason=reason,
                refund_method=refund_method,
                status="completed",
                gateway_refund_id=gateway_refund_id,
                processed_by=ctx.user_id,
                processed_at=utcnow(),
            )
            db.add(refund)

            total_refunded = (payment.refund_amount or 0) + refund_minor
            is_full_refund = total_refunded >= payment.amount
            if is_full_refund:
                check_transition(payment.status, "refunded")
                payment.status = "refunded"
            payment.refund_amount = total_refunded
            payment.refunded_at = utcnow()
            payment.refund_reason = reason

            if payment.order_id:
                set_order_status(
                    db, payment.order_id, ctx.tenant_id,
                    "refunded" if is_full_refund else "partially_refunded",
                )

            if intent is not None:
                intent.status = "completed"
                intent.gateway_refund_id = gateway_refund_id

            db.flush()
            refund_id = refund.id
            db.commit()
        except PaymentServiceError:
            db.rollback()
            raise
        except SQLAlchemyError as exc:
            db.rollback()
            # With a gateway refund id this means money moved without a local record
            logger.critical(
                "payment_service.refund_persist_failed",
                tenant_id=ctx.tenant_id,
                payment_id=payment_id,
                gateway_refund_id=gateway_refund_id,
                error=str(exc),
            )
            raise PaymentServiceError(
                "Failed to process refund", message_key="errors.refundFailed"
            ) from exc

        self.payment_logger.payment_refunded(
            ctx.tenant_id, payment_id, to_major_units(refund_minor), reason,
            refund_id=refund_id, gateway_refund_id=gateway_refund_id, user_id=ctx.user_id,
        )
        return self._refund_response(refund, payment)

    def _refund_for_intent(self, intent: RefundIntent) -> Refund:
        return self.db.execute(
            select(Refund).where(
                Refund.tenant_id == intent.tenant_id,
                Refund.payment_id == intent.payment_id,
                Refund.gateway_refund_id == intent.gateway_refund_id,
            )
        ).scalars().one()

    @staticmethod
    def _refund_response(refund: Refund, payment: Payment) -> dict:
        return {
            "success": True,
            "refund_id": refund.id,
            "gateway_refund_id": refund.gateway_refund_id,
            "amount": to_major_units(refund.amount),
            "payment_status": payment.status,
            "total_refunded": to_major_units(payment.refund_amount or 0),
        }

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def get_history(self, ctx: TenantContext, limit: int = 50, offset: int = 0,
                    status: str | None = None) -> dict:
        payments = get_payments_by_tenant(self.db, ctx.tenant_id, limit=limit, offset=offset, status=status)
        return {
            "payments": [payment_to_dict(p) for p in payments],
            "total": count_payments_by_tenant(self.db, ctx.tenant_id, status=status),
        }

    def get_payment(self, ctx: TenantContext, payment_id: int) -> dict:
        payment = get_payment_by_id_secure(self.db, payment_id, ctx.tenant_id)
        if payment is None:
            raise NotFoundError("Payment not found", message_key="errors.paymentNotFound")
        result = payment_to_dict(payment)
        result["splits"] = [
            {
                "id": s.id,
                "amount": to_major_units(s.amount),
                "payment_method": s.payment_method,
                "transaction_id": s.transaction_id,
                "status": s.status,
            }
            for s in get_splits_by_payment(self.db, payment.id, ctx.tenant_id)
        ]
        result["refunds"] = [
            {
                "id": r.id,
                "amount": to_major_units(r.amount),
                "reason": r.reason,
                "refund_method": r.refund_method,
                "gateway_refund_id": r.gateway_refund_id,
                "processed_at": r.processed_at,
            }
            for r in get_refunds_by_payment(self.db, payment.id, ctx.tenant_id)
        ]
        return result
