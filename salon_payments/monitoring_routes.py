from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from salon_payments.auth import TenantContext, require_admin
from salon_payments.database import get_db
from salon_payments.monitoring import PaymentMonitor
from salon_payments.payment_log import LogCategory, LogLevel, PaymentLogger
from salon_payments.routes import get_payment_logger

router = APIRouter(prefix="/monitoring")


def get_monitor(db: Session = Depends(get_db),
                payment_logger: PaymentLogger = Depends(get_payment_logger)) -> PaymentMonitor:
    return PaymentMonitor(db, payment_logger)


@router.get("/health")
def health(ctx: TenantContext = Depends(require_admin), monitor: PaymentMonitor = Depends(get_monitor)):
    return monitor.get_health_status(ctx.tenant_id)


@router.get("/metrics")
def metrics(hours_back: float = Query(24, gt=0, le=720), ctx: TenantContext = Depends(require_admin),
            monitor: PaymentMonitor = Depends(get_monitor)):
    return monitor.get_metrics(ctx.tenant_id, hours_back)


@router.get("/logs")
def logs(limit: int = Query(100, ge=1, le=1000), level: LogLevel | None = None,
         category: LogCategory | None = None, ctx: TenantContext = Depends(require_admin),
         monitor: PaymentMonitor = Depends(get_monitor)):
    return monitor.get_logs(
        ctx.tenant_id,
        limit=limit,
        level=level.value if level else None,
        category=category.value if category else None,
    )


@router.get("/failures")
def failure_analysis(hours_back: float = Query(24, gt=0, le=720), ctx: TenantContext = Depends(require_admin),
                     monitor: PaymentMonitor = Depends(get_monitor)):
    return monitor.get_failure_analysis(ctx.tenant_id, hours_back)


@router.get("/alerts")
def alerts(ctx: TenantContext = Depends(require_admin), monitor: PaymentMonitor = Depends(get_monitor)):
    return monitor.get_alerts(ctx.tenant_id)


@router.get("/dashboard")
def dashboard(ctx: TenantContext = Depends(require_admin), monitor: PaymentMonitor = Depends(get_monitor)):
    return monitor.get_dashboard_summary(ctx.tenant_id)
