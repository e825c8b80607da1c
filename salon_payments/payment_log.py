"""
Payment event log.

Every payment lifecycle event is appended to a bounded in-memory ring buffer
for fast recent-activity queries, mirrored to structlog, and written to the
``payment_logs`` table on a best-effort basis. Entries are never mutated.
"""

import threading
from collections import Counter, deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Callable

import structlog
from sqlalchemy.exc import SQLAlchemyError

from salon_payments.models import PaymentLog, utcnow

logger = structlog.get_logger(__name__)

MAX_BUFFER_SIZE = 1000


class LogLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class LogCategory(str, Enum):
    PAYMENT_CREATED = "payment_created"
    PAYMENT_COMPLETED = "payment_completed"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_REFUNDED = "payment_refunded"
    STRIPE_CONNECT = "stripe_connect"
    STRIPE_WEBHOOK = "stripe_webhook"
    TERMINAL_PAYMENT = "terminal_payment"
    SECURITY_BREACH = "security_breach"
    TENANT_ISOLATION = "tenant_isolation"


@dataclass(frozen=True)
class PaymentLogEntry:
    tenant_id: str
    level: LogLevel
    category: LogCategory
    message: str
    # Structured fields shared by the payment categories
    amount: Decimal | None = None
    payment_method: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    payment_id: int | None = None
    order_id: int | None = None
    appointment_id: int | None = None
    user_id: str | None = None
    stripe_payment_intent_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    # Free-form gateway payloads and category specific extras
    details: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "level": self.level.value,
            "category": self.category.value,
            "message": self.message,
            "amount": str(self.amount) if self.amount is not None else None,
            "payment_method": self.payment_method,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "payment_id": self.payment_id,
            "order_id": self.order_id,
            "appointment_id": self.appointment_id,
            "user_id": self.user_id,
            "stripe_payment_intent_id": self.stripe_payment_intent_id,
            "details": self.details,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class PaymentLogBuffer:
    """Bounded, append-only, thread-safe ring buffer of log entries."""

    def __init__(self, max_size: int = MAX_BUFFER_SIZE):
        self._entries: deque[PaymentLogEntry] = deque(maxlen=max_size)
        self._lock = threading.Lock()

    def append(self, entry: PaymentLogEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    def for_tenant(self, tenant_id: str, since: datetime | None = None) -> list[PaymentLogEntry]:
        """Entries for one tenant, oldest first."""
        with self._lock:
            snapshot = list(self._entries)
        return [
            e for e in snapshot
            if e.tenant_id == tenant_id and (since is None or e.created_at >= since)
        ]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class PaymentLogger:
    """
    Writes payment events.

    One instance is created per process and handed to every component that
    logs payment activity. ``session_factory`` is optional; without it the
    log lives in memory only.
    """

    def __init__(
        self,
        buffer: PaymentLogBuffer | None = None,
        session_factory: Callable | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.buffer = buffer or PaymentLogBuffer()
        self.session_factory = session_factory
        self.clock = clock

    def log(self, entry: PaymentLogEntry) -> PaymentLogEntry:
        stamped = replace(entry, created_at=self.clock())
        self.buffer.append(stamped)
        self._emit(stamped)
        self._persist(stamped)
        return stamped

    def _emit(self, entry: PaymentLogEntry) -> None:
        event = f"[Payment {entry.level.value.upper()}] [{entry.category.value}] {entry.message}"
        if entry.level in (LogLevel.CRITICAL, LogLevel.ERROR):
            log_method = logger.critical if entry.level == LogLevel.CRITICAL else logger.error
            log_method(
                event,
                tenant_id=entry.tenant_id,
                payment_id=entry.payment_id,
                order_id=entry.order_id,
                error_code=entry.error_code,
                error_message=entry.error_message,
                details=entry.details,
            )
        elif entry.level == LogLevel.WARNING:
            logger.warning(event, tenant_id=entry.tenant_id, details=entry.details)
        else:
            logger.info(event, tenant_id=entry.tenant_id, payment_id=entry.payment_id)

    def _persist(self, entry: PaymentLogEntry) -> None:
        if self.session_factory is None:
            return
        db = self.session_factory()
        try:
            details = dict(entry.details)
            if entry.amount is not None:
                details.setdefault("amount", str(entry.amount))
            if entry.payment_method:
                details.setdefault("payment_method", entry.payment_method)
            db.add(PaymentLog(
                tenant_id=entry.tenant_id,
                level=entry.level.value,
                category=entry.category.value,
                message=entry.message,
                details=details,
                payment_id=entry.payment_id,
                order_id=entry.order_id,
                appointment_id=entry.appointment_id,
                user_id=entry.user_id,
                stripe_payment_intent_id=entry.stripe_payment_intent_id,
                error_code=entry.error_code,
                error_message=entry.error_message,
                ip_address=entry.ip_address,
                user_agent=entry.user_agent,
                created_at=entry.created_at,
            ))
            db.commit()
        except SQLAlchemyError as exc:
            # The buffer already holds the entry; durability is best effort
            db.rollback()
            logger.error("payment_log.persist_failed", error=str(exc))
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Typed helpers
    # ------------------------------------------------------------------

    def payment_created(self, tenant_id, payment_id, amount, payment_method,
                        order_id=None, appointment_id=None, user_id=None,
                        gateway_payment_id=None):
        return self.log(PaymentLogEntry(
            tenant_id=tenant_id,
            level=LogLevel.INFO,
            category=LogCategory.PAYMENT_CREATED,
            message=f"Payment created: {amount} NOK via {payment_method}",
            amount=amount,
            payment_method=payment_method,
            payment_id=payment_id,
            order_id=order_id,
            appointment_id=appointment_id,
            user_id=user_id,
            stripe_payment_intent_id=gateway_payment_id,
        ))

    def payment_completed(self, tenant_id, payment_id, amount, payment_method,
                          gateway_payment_id=None, user_id=None):
        return self.log(PaymentLogEntry(
            tenant_id=tenant_id,
            level=LogLevel.INFO,
            category=LogCategory.PAYMENT_COMPLETED,
            message=f"Payment completed: {amount} NOK via {payment_method}",
            amount=amount,
            payment_method=payment_method,
            payment_id=payment_id,
            user_id=user_id,
            stripe_payment_intent_id=gateway_payment_id,
        ))

    def payment_failed(self, tenant_id, payment_id, amount, payment_method,
                       error_code, error_message, details=None):
        return self.log(PaymentLogEntry(
            tenant_id=tenant_id,
            level=LogLevel.ERROR,
            category=LogCategory.PAYMENT_FAILED,
            message=f"Payment failed: {amount} NOK via {payment_method} - {error_message}",
            amount=amount,
            payment_method=payment_method,
            payment_id=payment_id,
            error_code=error_code,
            error_message=error_message,
            details=details or {},
        ))

    def payment_refunded(self, tenant_id, payment_id, refund_amount, reason,
                         refund_id=None, gateway_refund_id=None, user_id=None):
        return self.log(PaymentLogEntry(
            tenant_id=tenant_id,
            level=LogLevel.INFO,
            category=LogCategory.PAYMENT_REFUNDED,
            message=f"Payment refunded: {refund_amount} NOK - {reason}",
            amount=refund_amount,
            payment_id=payment_id,
            user_id=user_id,
            details={
                "reason": reason,
                "refund_id": refund_id,
                "gateway_refund_id": gateway_refund_id,
            },
        ))

    def stripe_connect(self, tenant_id, event, account_id=None, details=None, level=LogLevel.INFO):
        return self.log(PaymentLogEntry(
            tenant_id=tenant_id,
            level=level,
            category=LogCategory.STRIPE_CONNECT,
            message=f"Stripe Connect: {event}",
            details={"event": event, "account_id": account_id, **(details or {})},
        ))

    def stripe_webhook(self, tenant_id, event_type, event_id, success, error_message=None):
        return self.log(PaymentLogEntry(
            tenant_id=tenant_id,
            level=LogLevel.INFO if success else LogLevel.ERROR,
            category=LogCategory.STRIPE_WEBHOOK,
            message=f"Stripe webhook: {event_type} - {'processed' if success else 'failed'}",
            error_message=error_message,
            details={"event_type": event_type, "event_id": event_id, "success": success},
        ))

    def security_breach(self, tenant_id, breach_type, requested_resource, actual_owner,
                        ip_address=None, user_agent=None):
        return self.log(PaymentLogEntry(
            tenant_id=tenant_id,
            level=LogLevel.CRITICAL,
            category=LogCategory.SECURITY_BREACH,
            message=f"Security breach attempt: {breach_type}",
            ip_address=ip_address,
            user_agent=user_agent,
            details={
                "breach_type": breach_type,
                "requested_resource": requested_resource,
                "requested_tenant_id": tenant_id,
                "actual_tenant_id": actual_owner,
                "timestamp": self.clock().isoformat(),
            },
        ))

    def tenant_isolation(self, tenant_id, action, resource_type, resource_id, success):
        return self.log(PaymentLogEntry(
            tenant_id=tenant_id,
            level=LogLevel.INFO if success else LogLevel.WARNING,
            category=LogCategory.TENANT_ISOLATION,
            message=f"Tenant isolation: {action} {resource_type} {resource_id}",
            details={
                "action": action,
                "resource_type": resource_type,
                "resource_id": resource_id,
                "success": success,
            },
        ))

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    def recent_logs(self, tenant_id: str, limit: int = 100,
                    level: str | None = None, category: str | None = None) -> list[PaymentLogEntry]:
        """Newest first."""
        entries = self.buffer.for_tenant(tenant_id)
        if level:
            entries = [e for e in entries if e.level.value == level]
        if category:
            entries = [e for e in entries if e.category.value == category]
        return list(reversed(entries[-limit:]))

    def entries_since(self, tenant_id: str, hours_back: float) -> list[PaymentLogEntry]:
        return self.buffer.for_tenant(tenant_id, since=self.clock() - timedelta(hours=hours_back))

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def success_rate(self, tenant_id: str, hours_back: float = 24) -> dict:
        entries = self.entries_since(tenant_id, hours_back)
        successful = sum(1 for e in entries if e.category == LogCategory.PAYMENT_COMPLETED)
        failed = sum(1 for e in entries if e.category == LogCategory.PAYMENT_FAILED)
        total = successful + failed
        return {
            "success_rate": (successful / total) * 100 if total else 100.0,
            "total_attempts": total,
            "successful": successful,
            "failed": failed,
        }

    def failure_summary(self, tenant_id: str, hours_back: float = 24) -> dict:
        failures = [
            e for e in self.entries_since(tenant_id, hours_back)
            if e.category == LogCategory.PAYMENT_FAILED
        ]
        return {
            "total_failures": len(failures),
            "by_error_code": dict(Counter(e.error_code or "unknown" for e in failures)),
            "by_payment_method": dict(Counter(e.payment_method or "unknown" for e in failures)),
            "recent_failures": [e.to_dict() for e in reversed(failures[-10:])],
        }

    def should_alert_on_failure_rate(self, tenant_id: str, threshold_percent: float = 20,
                                     min_attempts: int = 5) -> bool:
        stats = self.success_rate(tenant_id, hours_back=1)
        # Low-traffic tenants would otherwise alert on a single decline
        if stats["total_attempts"] < min_attempts:
            return False
        return 100 - stats["success_rate"] >= threshold_percent

    def failure_rate_alert_message(self, tenant_id: str, threshold_percent: float = 20,
                                   min_attempts: int = 5) -> str | None:
        if not self.should_alert_on_failure_rate(tenant_id, threshold_percent, min_attempts):
            return None

        stats = self.success_rate(tenant_id, hours_back=1)
        by_code = Counter(self.failure_summary(tenant_id, hours_back=1)["by_error_code"])
        top_codes = ", ".join(f"{code}: {count}" for code, count in by_code.most_common(3))
        return (
            f"High payment failure rate detected: {100 - stats['success_rate']:.1f}% failures in the last hour. "
            f"Total attempts: {stats['total_attempts']}, Failed: {stats['failed']}. "
            f"Top error codes: {top_codes or 'N/A'}"
        )
