from decimal import Decimal

import pytest
import stripe
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from conftest import TENANT_A, TENANT_B, TestingSessionLocal, add_payment, payment_intent, stripe_account
from salon_payments.auth import TenantContext
from salon_payments.errors import (
    BadRequestError,
    DatabaseUnavailableError,
    GatewayError,
    InvalidStatusTransition,
    NotFoundError,
)
from salon_payments.models import Order, Payment, PaymentSettings, PaymentSplit, Refund, RefundIntent
from salon_payments.payment_log import LogCategory
from salon_payments.payment_service import PaymentService, check_transition, refund_idempotency_key
from salon_payments.schemas import (
    PaymentIntentRequest,
    RecordPaymentRequest,
    RefundRequest,
    SplitPart,
    SplitPaymentRequest,
)


@pytest.fixture
def service(db, payment_logger):
    return PaymentService(db, payment_logger)


@pytest.fixture
def order(db, tenants):
    order = Order(tenant_id=TENANT_A, total_amount=50000)
    db.add(order)
    db.commit()
    return order


def split_request(total, *parts, order_id=None):
    return SplitPaymentRequest(
        order_id=order_id,
        total_amount=Decimal(total),
        splits=[SplitPart(amount=Decimal(p), payment_method="cash") for p in parts],
    )


# ---------------------------------------------------------------------------
# Recording
# ---------------------------------------------------------------------------

def test_record_payment_completes_order(service, ctx, db, order, payment_logger):
    result = service.record_payment(ctx, RecordPaymentRequest(
        order_id=order.id, amount=Decimal("500.00"), payment_method="cash"
    ))

    assert result["success"] is True
    assert result["receipt_number"] == f"RCP-{result['payment_id']}"
    payment = db.get(Payment, result["payment_id"])
    db.refresh(order)
    assert payment.amount == 50000
    assert payment.status == "completed"
    assert payment.processed_by == "user-1"
    assert order.status == "completed"
    assert payment_logger.recent_logs(TENANT_A)[0].category == LogCategory.PAYMENT_COMPLETED


def test_record_payment_against_foreign_order_is_not_found(service, db, tenants):
    foreign = Order(tenant_id=TENANT_B, total_amount=1000)
    db.add(foreign)
    db.commit()

    with pytest.raises(NotFoundError):
        service.record_payment(
            TenantContext(TENANT_A, "user-1", "owner"),
            RecordPaymentRequest(order_id=foreign.id, amount=Decimal("10.00"), payment_method="cash"),
        )
    assert db.execute(select(Payment)).first() is None


def test_record_payment_without_database(payment_logger, ctx):
    with pytest.raises(DatabaseUnavailableError):
        PaymentService(None, payment_logger).record_payment(
            ctx, RecordPaymentRequest(amount=Decimal("10.00"), payment_method="cash")
        )


def test_split_payment_within_tolerance(service, ctx, db, order):
    result = service.process_split_payment(ctx, split_request("100.00", "60.00", "40.00", order_id=order.id))

    payment = db.get(Payment, result["payment_id"])
    splits = db.execute(select(PaymentSplit).where(PaymentSplit.payment_id == payment.id)).scalars().all()
    assert payment.payment_method == "split"
    assert payment.amount == 10000
    assert sorted(s.amount for s in splits) == [4000, 6000]
    assert all(s.tenant_id == TENANT_A for s in splits)


def test_split_payment_mismatch_is_bad_request(service, ctx, db, tenants):
    with pytest.raises(BadRequestError) as exc_info:
        service.process_split_payment(ctx, split_request("100.00", "60.00", "39.98"))

    assert exc_info.value.message == "Split amounts must equal total amount"
    assert exc_info.value.message_key == "errors.splitAmountMismatch"
    assert db.execute(select(Payment)).first() is None


def test_split_payment_accepts_one_minor_unit_difference(service, ctx, tenants):
    result = service.process_split_payment(ctx, split_request("100.00", "33.33", "33.33", "33.33"))
    assert result["success"] is True


# ---------------------------------------------------------------------------
# Status machine
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("current,requested", [
    ("pending", "completed"),
    ("pending", "failed"),
    ("completed", "refunded"),
    ("completed", "partially_refunded"),
    ("partially_refunded", "refunded"),
])
def test_allowed_transitions(current, requested):
    check_transition(current, requested)


@pytest.mark.parametrize("current,requested", [
    ("failed", "completed"),
    ("refunded", "completed"),
    ("completed", "pending"),
    ("pending", "refunded"),
])
def test_rejected_transitions(current, requested):
    with pytest.raises(InvalidStatusTransition):
        check_transition(current, requested)


def test_update_status_to_failed_is_logged(service, ctx, db, tenants, payment_logger):
    payment = add_payment(db, status="pending", method="stripe", gateway_payment_id="pi_1")

    service.update_payment_status(ctx, payment.id, "failed", "card_declined", "Declined")

    db.refresh(payment)
    assert payment.status == "failed"
    assert payment_logger.recent_logs(TENANT_A)[0].error_code == "card_declined"
    with pytest.raises(InvalidStatusTransition):
        service.update_payment_status(ctx, payment.id, "completed")


@pytest.mark.parametrize("status", ["refunded", "partially_refunded"])
def test_status_update_cannot_mark_refunds(service, ctx, db, tenants, status):
    payment = add_payment(db, amount=10000, method="stripe", gateway_payment_id="pi_1")

    with pytest.raises(InvalidStatusTransition):
        service.update_payment_status(ctx, payment.id, status)

    db.refresh(payment)
    assert payment.status == "completed"
    assert payment.refund_amount == 0
    assert db.execute(select(Refund)).first() is None


# ---------------------------------------------------------------------------
# Refunds
# ---------------------------------------------------------------------------

def test_manual_partial_then_full_refund(service, ctx, db, tenants):
    order = Order(tenant_id=TENANT_A, total_amount=10000, status="completed")
    db.add(order)
    db.commit()
    payment = add_payment(db, amount=10000, order_id=order.id)

    first = service.process_refund(ctx, RefundRequest(payment_id=payment.id, amount=Decimal("30.00"), reason="Partial"))
    assert first["payment_status"] == "completed"
    assert first["total_refunded"] == Decimal("30.00")
    db.refresh(order)
    assert order.status == "partially_refunded"

    # Omitted amount refunds the remainder
    second = service.process_refund(ctx, RefundRequest(payment_id=payment.id, reason="Rest"))
    assert second["amount"] == Decimal("70.00")
    assert second["payment_status"] == "refunded"
    db.refresh(order)
    assert order.status == "refunded"

    with pytest.raises(BadRequestError) as exc_info:
        service.process_refund(ctx, RefundRequest(payment_id=payment.id, amount=Decimal("1.00"), reason="More"))
    assert exc_info.value.message == "Payment has already been fully refunded"


def test_refund_larger_than_payment_is_rejected(service, ctx, db, tenants):
    payment = add_payment(db, amount=10000)
    with pytest.raises(BadRequestError) as exc_info:
        service.process_refund(ctx, RefundRequest(payment_id=payment.id, amount=Decimal("100.01"), reason="x"))
    assert exc_info.value.message == "Refund amount cannot exceed original payment"


def test_cumulative_refunds_cannot_exceed_original(service, ctx, db, tenants):
    payment = add_payment(db, amount=10000)
    service.process_refund(ctx, RefundRequest(payment_id=payment.id, amount=Decimal("60.00"), reason="a"))

    with pytest.raises(BadRequestError) as exc_info:
        service.process_refund(ctx, RefundRequest(payment_id=payment.id, amount=Decimal("60.00"), reason="b"))

    assert exc_info.value.message_key == "errors.refundExceedsRemaining"
    refunds = db.execute(select(Refund).where(Refund.payment_id == payment.id)).scalars().all()
    assert sum(r.amount for r in refunds) == 6000


def test_refund_of_other_tenants_payment_is_not_found(service, ctx, db, tenants):
    payment = add_payment(db, tenant_id=TENANT_B)
    with pytest.raises(NotFoundError):
        service.process_refund(ctx, RefundRequest(payment_id=payment.id, reason="x"))


def test_refund_of_pending_payment_is_rejected(service, ctx, db, tenants):
    payment = add_payment(db, status="pending")
    with pytest.raises(InvalidStatusTransition):
        service.process_refund(ctx, RefundRequest(payment_id=payment.id, reason="x"))


def test_gateway_refund_uses_deterministic_key(service, ctx, db, connected, own_intents, mocker):
    payment = add_payment(db, amount=10000, method="stripe", gateway_payment_id="pi_1")
    create = mocker.patch("stripe.Refund.create", return_value=mocker.Mock(id="re_1"))

    result = service.process_refund(ctx, RefundRequest(payment_id=payment.id, amount=Decimal("25.00"), reason="x"))

    assert result["gateway_refund_id"] == "re_1"
    assert create.call_args.kwargs["idempotency_key"] == refund_idempotency_key(payment.id, 2500, 1)
    intent = db.execute(select(RefundIntent)).scalars().one()
    assert intent.status == "completed"
    assert intent.gateway_refund_id == "re_1"


def test_gateway_timeout_leaves_intent_pending_and_retry_reuses_key(service, ctx, db, connected, own_intents, mocker):
    payment = add_payment(db, amount=10000, method="stripe", gateway_payment_id="pi_1")
    create = mocker.patch("stripe.Refund.create", side_effect=stripe.APIConnectionError("timeout"))
    request = RefundRequest(payment_id=payment.id, amount=Decimal("100.00"), reason="x")

    with pytest.raises(GatewayError):
        service.process_refund(ctx, request)

    intent = db.execute(select(RefundIntent)).scalars().one()
    assert intent.status == "pending"
    db.refresh(payment)
    assert payment.status == "completed"
    assert payment.refund_amount == 0
    first_key = create.call_args.kwargs["idempotency_key"]

    create.side_effect = None
    create.return_value = mocker.Mock(id="re_1")
    result = service.process_refund(ctx, request)

    assert create.call_args.kwargs["idempotency_key"] == first_key
    assert result["payment_status"] == "refunded"
    assert len(db.execute(select(Refund)).scalars().all()) == 1


def test_gateway_decline_fails_intent_and_allows_new_attempt(service, ctx, db, connected, own_intents, mocker):
    payment = add_payment(db, amount=10000, method="stripe", gateway_payment_id="pi_1")
    create = mocker.patch(
        "stripe.Refund.create",
        side_effect=stripe.InvalidRequestError("charge already refunded", "charge", code="charge_already_refunded"),
    )
    request = RefundRequest(payment_id=payment.id, amount=Decimal("10.00"), reason="x")

    with pytest.raises(GatewayError):
        service.process_refund(ctx, request)
    intent = db.execute(select(RefundIntent)).scalars().one()
    assert intent.status == "failed"
    assert intent.error_code == "charge_already_refunded"

    create.side_effect = None
    create.return_value = mocker.Mock(id="re_2")
    service.process_refund(ctx, request)
    assert create.call_args.kwargs["idempotency_key"] == refund_idempotency_key(payment.id, 1000, 2)


def test_pending_intent_counts_against_refund_bound(service, ctx, db, connected, own_intents, mocker):
    payment = add_payment(db, amount=10000, method="stripe", gateway_payment_id="pi_1")
    mocker.patch("stripe.Refund.create", side_effect=stripe.APIConnectionError("timeout"))

    with pytest.raises(GatewayError):
        service.process_refund(ctx, RefundRequest(payment_id=payment.id, amount=Decimal("80.00"), reason="x"))

    with pytest.raises(BadRequestError):
        service.process_refund(ctx, RefundRequest(payment_id=payment.id, amount=Decimal("30.00"), reason="y"))


def test_concurrent_refunds_sharing_a_key_are_applied_once(service, ctx, db, connected, own_intents,
                                                           payment_logger, mocker):
    payment = add_payment(db, amount=10000, method="stripe", gateway_payment_id="pi_1")
    request = RefundRequest(payment_id=payment.id, amount=Decimal("30.00"), reason="x")
    keys = []
    overlapping = []

    def refund_create(**params):
        keys.append(params["idempotency_key"])
        if len(keys) == 1:
            # Same request arrives again while the first one waits on Stripe
            other_db = TestingSessionLocal()
            try:
                overlapping.append(PaymentService(other_db, payment_logger).process_refund(ctx, request))
            finally:
                other_db.close()
        return mocker.Mock(id="re_same")

    mocker.patch("stripe.Refund.create", side_effect=refund_create)

    result = service.process_refund(ctx, request)

    assert keys == [refund_idempotency_key(payment.id, 3000, 1)] * 2
    assert result["refund_id"] == overlapping[0]["refund_id"]
    assert result["total_refunded"] == Decimal("30.00")
    refunds = db.execute(select(Refund)).scalars().all()
    assert [(r.amount, r.gateway_refund_id) for r in refunds] == [(3000, "re_same")]
    db.refresh(payment)
    assert payment.refund_amount == 3000


def test_gateway_refund_ids_are_unique(db, tenants):
    payment = add_payment(db)
    db.add_all([
        Refund(tenant_id=TENANT_A, payment_id=payment.id, amount=100, reason="x",
               refund_method="stripe", gateway_refund_id="re_1")
        for _ in range(2)
    ])

    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()


@pytest.fixture
def foreign_intent(db, connected, mocker):
    db.add(PaymentSettings(tenant_id=TENANT_B, stripe_connected_account_id="acct_b"))
    db.commit()
    return mocker.patch("stripe.PaymentIntent.retrieve", return_value=payment_intent("pi_tenant_b", "acct_b"))


def test_record_stripe_payment_checks_intent_owner(service, ctx, db, connected, own_intents):
    result = service.record_payment(ctx, RecordPaymentRequest(
        amount=Decimal("100.00"), payment_method="stripe", gateway_payment_id="pi_7"
    ))

    own_intents.assert_called_once_with("pi_7")
    assert db.get(Payment, result["payment_id"]).gateway_payment_id == "pi_7"


def test_recording_another_tenants_intent_is_not_found(service, ctx, db, foreign_intent):
    with pytest.raises(NotFoundError):
        service.record_payment(ctx, RecordPaymentRequest(
            amount=Decimal("100.00"), payment_method="stripe", gateway_payment_id="pi_tenant_b"
        ))

    assert db.execute(select(Payment)).first() is None


def test_refund_against_another_tenants_intent_never_reaches_stripe(service, ctx, db, foreign_intent,
                                                                    payment_logger, mocker):
    payment = add_payment(db, amount=10000, method="stripe", gateway_payment_id="pi_tenant_b")
    create = mocker.patch("stripe.Refund.create")

    with pytest.raises(NotFoundError):
        service.process_refund(ctx, RefundRequest(payment_id=payment.id, reason="x"))

    create.assert_not_called()
    intent = db.execute(select(RefundIntent)).scalars().one()
    assert intent.status == "failed"
    assert intent.error_code == "NOT_FOUND"
    db.refresh(payment)
    assert payment.refund_amount == 0
    assert payment_logger.recent_logs(TENANT_A, category=LogCategory.SECURITY_BREACH.value)


# ---------------------------------------------------------------------------
# Intents and history
# ---------------------------------------------------------------------------

def test_payment_intent_persists_pending_payment(service, ctx, db, connected, mocker):
    mocker.patch("stripe.Account.retrieve", return_value=stripe_account())
    mocker.patch(
        "stripe.PaymentIntent.create",
        return_value=mocker.Mock(id="pi_42", client_secret="cs_42", currency="nok",
                                 status="requires_payment_method"),
    )

    result = service.create_payment_intent(ctx, PaymentIntentRequest(amount=Decimal("250.00")))

    payment = db.get(Payment, result["payment_id"])
    assert payment.status == "pending"
    assert payment.gateway_payment_id == "pi_42"
    assert payment.amount == 25000
    assert result["client_secret"] == "cs_42"
    assert result["application_fee_amount"] == 625


def test_history_and_detail_are_tenant_scoped(service, ctx, db, tenants):
    own = add_payment(db, amount=1000)
    add_payment(db, tenant_id=TENANT_B, amount=2000)

    history = service.get_history(ctx)
    assert history["total"] == 1
    assert history["payments"][0]["amount"] == Decimal("10.00")

    detail = service.get_payment(ctx, own.id)
    assert detail["splits"] == []
    assert detail["refunds"] == []
