from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from salon_payments import onboarding
from salon_payments.auth import TenantContext, require_admin, require_tenant
from salon_payments.database import get_db
from salon_payments.errors import ForbiddenError
from salon_payments.payment_log import PaymentLogger
from salon_payments.payment_service import PaymentService
from salon_payments.plan_limits import (
    can_add_employee,
    check_sms_quota,
    enforce_employee_limit,
    get_available_features,
    get_subscription_limits,
    has_feature_access,
)
from salon_payments.schemas import (
    AccountLinkRequest,
    ConnectCallbackRequest,
    PaymentIntentRequest,
    PaymentSettingsUpdate,
    PaymentStatus,
    RecordPaymentRequest,
    RefundRequest,
    SplitPaymentRequest,
    StatusUpdateRequest,
    TerminalIntentRequest,
)
from salon_payments.stripe_connect import StripeConnectService
from salon_payments.tenant_isolation import (
    get_payment_settings_secure,
    payment_settings_view,
    upsert_payment_settings,
)

router = APIRouter(prefix="/payments")
plan_router = APIRouter(prefix="/plan")


def get_payment_logger(request: Request) -> PaymentLogger:
    return request.app.state.payment_logger


# ---------------------------------------------------------------------------
# Stripe Connect
# ---------------------------------------------------------------------------

@router.get("/connect/url")
def connect_url(ctx: TenantContext = Depends(require_admin), db: Session = Depends(get_db),
                payment_logger: PaymentLogger = Depends(get_payment_logger)):
    return onboarding.get_connect_url(StripeConnectService(db, payment_logger), ctx.tenant_id)


@router.post("/connect/callback")
def connect_callback(body: ConnectCallbackRequest, request: Request,
                     ctx: TenantContext = Depends(require_admin), db: Session = Depends(get_db),
                     payment_logger: PaymentLogger = Depends(get_payment_logger)):
    if body.state != ctx.tenant_id:
        payment_logger.security_breach(
            ctx.tenant_id,
            breach_type="connect_state_mismatch",
            requested_resource="stripe_connect_callback",
            actual_owner=body.state,
            ip_address=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
        )
        raise ForbiddenError("Invalid connect state", message_key="errors.invalidConnectState")
    return StripeConnectService(db, payment_logger).handle_connect_callback(body.code, ctx.tenant_id)


@router.get("/connect/status")
def connect_status(ctx: TenantContext = Depends(require_tenant), db: Session = Depends(get_db),
                   payment_logger: PaymentLogger = Depends(get_payment_logger)):
    gateway = StripeConnectService(db, payment_logger)
    status = gateway.get_connect_status(ctx.tenant_id)
    readiness = gateway.can_accept_payments(ctx.tenant_id, status)
    return {**status.to_dict(), "can_accept_payments": readiness.can_accept, "reason": readiness.reason}


@router.post("/connect/disconnect")
def connect_disconnect(ctx: TenantContext = Depends(require_admin), db: Session = Depends(get_db),
                       payment_logger: PaymentLogger = Depends(get_payment_logger)):
    StripeConnectService(db, payment_logger).disconnect_stripe_account(ctx.tenant_id)
    return {"success": True}


@router.post("/connect/account-link")
def connect_account_link(body: AccountLinkRequest, ctx: TenantContext = Depends(require_admin),
                         db: Session = Depends(get_db),
                         payment_logger: PaymentLogger = Depends(get_payment_logger)):
    url = StripeConnectService(db, payment_logger).create_account_link(
        ctx.tenant_id, body.refresh_url, body.return_url
    )
    return {"url": url}


@router.post("/connect/dashboard-link")
def connect_dashboard_link(ctx: TenantContext = Depends(require_admin), db: Session = Depends(get_db),
                           payment_logger: PaymentLogger = Depends(get_payment_logger)):
    return {"url": StripeConnectService(db, payment_logger).create_dashboard_link(ctx.tenant_id)}


@router.get("/onboarding")
def onboarding_status(ctx: TenantContext = Depends(require_tenant), db: Session = Depends(get_db),
                      payment_logger: PaymentLogger = Depends(get_payment_logger)):
    return onboarding.get_onboarding_status(StripeConnectService(db, payment_logger), ctx.tenant_id)


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

@router.get("/settings")
def get_settings(ctx: TenantContext = Depends(require_tenant), db: Session = Depends(get_db)):
    return payment_settings_view(get_payment_settings_secure(db, ctx.tenant_id))


@router.put("/settings")
def update_settings(body: PaymentSettingsUpdate, ctx: TenantContext = Depends(require_admin),
                    db: Session = Depends(get_db)):
    settings = upsert_payment_settings(db, ctx.tenant_id, **body.model_dump(exclude_none=True))
    db.commit()
    return payment_settings_view(settings)


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------

@router.post("/intents")
def create_intent(body: PaymentIntentRequest, ctx: TenantContext = Depends(require_tenant),
                  db: Session = Depends(get_db),
                  payment_logger: PaymentLogger = Depends(get_payment_logger)):
    return PaymentService(db, payment_logger).create_payment_intent(ctx, body)


@router.post("/terminal-intents")
def create_terminal_intent(body: TerminalIntentRequest, ctx: TenantContext = Depends(require_tenant),
                           db: Session = Depends(get_db),
                           payment_logger: PaymentLogger = Depends(get_payment_logger)):
    return PaymentService(db, payment_logger).create_terminal_payment_intent(ctx, body)


@router.post("/record")
def record_payment(body: RecordPaymentRequest, ctx: TenantContext = Depends(require_tenant),
                   db: Session = Depends(get_db),
                   payment_logger: PaymentLogger = Depends(get_payment_logger)):
    return PaymentService(db, payment_logger).record_payment(ctx, body)


@router.post("/split")
def split_payment(body: SplitPaymentRequest, ctx: TenantContext = Depends(require_tenant),
                  db: Session = Depends(get_db),
                  payment_logger: PaymentLogger = Depends(get_payment_logger)):
    return PaymentService(db, payment_logger).process_split_payment(ctx, body)


@router.post("/refund")
def refund_payment(body: RefundRequest, ctx: TenantContext = Depends(require_admin),
                   db: Session = Depends(get_db),
                   payment_logger: PaymentLogger = Depends(get_payment_logger)):
    return PaymentService(db, payment_logger).process_refund(ctx, body)


@router.get("")
def payment_history(limit: int = Query(50, ge=1, le=200), offset: int = Query(0, ge=0),
                    status: PaymentStatus | None = None,
                    ctx: TenantContext = Depends(require_tenant), db: Session = Depends(get_db),
                    payment_logger: PaymentLogger = Depends(get_payment_logger)):
    return PaymentService(db, payment_logger).get_history(ctx, limit=limit, offset=offset, status=status)


@router.get("/{payment_id}")
def get_payment(payment_id: int, ctx: TenantContext = Depends(require_tenant),
                db: Session = Depends(get_db),
                payment_logger: PaymentLogger = Depends(get_payment_logger)):
    return PaymentService(db, payment_logger).get_payment(ctx, payment_id)


@router.patch("/{payment_id}/status")
def update_status(payment_id: int, body: StatusUpdateRequest,
                  ctx: TenantContext = Depends(require_admin), db: Session = Depends(get_db),
                  payment_logger: PaymentLogger = Depends(get_payment_logger)):
    return PaymentService(db, payment_logger).update_payment_status(ctx, payment_id, body.status)


# ---------------------------------------------------------------------------
# Plan limits
# ---------------------------------------------------------------------------

@plan_router.get("")
def plan_overview(ctx: TenantContext = Depends(require_tenant), db: Session = Depends(get_db)):
    info = get_subscription_limits(db, ctx.tenant_id)
    sms = check_sms_quota(db, ctx.tenant_id)
    return {
        "plan_id": info.plan_id if info else None,
        "plan_name": info.plan_name if info else None,
        "is_active": info.is_active if info else False,
        "is_past_due": info.is_past_due if info else False,
        "max_employees": info.limits.max_employees if info else None,
        "max_locations": info.limits.max_locations if info else None,
        "features": get_available_features(db, ctx.tenant_id),
        "can_add_employee": can_add_employee(db, ctx.tenant_id),
        "sms_quota": {"allowed": sms.allowed, "policy": sms.policy.value, "quota": sms.quota},
    }


@plan_router.post("/employees/check")
def check_employee_limit(ctx: TenantContext = Depends(require_admin), db: Session = Depends(get_db)):
    enforce_employee_limit(db, ctx.tenant_id)
    return {"allowed": True}


@plan_router.get("/features/{feature_name}")
def check_feature(feature_name: str, ctx: TenantContext = Depends(require_tenant),
                  db: Session = Depends(get_db)):
    return {"feature": feature_name, "has_access": has_feature_access(db, ctx.tenant_id, feature_name)}
