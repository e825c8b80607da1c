"""
Payment monitoring and alerting.

Everything here is computed on demand from the payment log buffer and the
payments table; nothing is stored.
"""

from collections import Counter
from datetime import timedelta

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from salon_payments.models import Payment
from salon_payments.money import to_major_units
from salon_payments.payment_log import PaymentLogger
from salon_payments.stripe_connect import ConnectStatus, StripeConnectService

HEALTHY_SCORE = 80
WARNING_SCORE = 50

ERROR_DESCRIPTIONS = {
    "card_declined": {
        "description": "Card was declined by the issuing bank",
        "description_no": "Kortet ble avvist av utstedende bank",
        "recommendation": "Ask customer to try a different card or contact their bank",
        "recommendation_no": "Be kunden prøve et annet kort eller kontakte banken sin",
    },
    "insufficient_funds": {
        "description": "Customer has insufficient funds",
        "description_no": "Kunden har ikke nok penger på kontoen",
        "recommendation": "Offer alternative payment methods or payment plans",
        "recommendation_no": "Tilby alternative betalingsmetoder eller betalingsplaner",
    },
    "expired_card": {
        "description": "Card has expired",
        "description_no": "Kortet har utløpt",
        "recommendation": "Ask customer to update their card information",
        "recommendation_no": "Be kunden oppdatere kortinformasjonen sin",
    },
    "incorrect_cvc": {
        "description": "Incorrect security code (CVC)",
        "description_no": "Feil sikkerhetskode (CVC)",
        "recommendation": "Ask customer to re-enter their card details",
        "recommendation_no": "Be kunden skrive inn kortdetaljene på nytt",
    },
    "ACCOUNT_NOT_READY": {
        "description": "Stripe account not fully set up",
        "description_no": "Stripe-kontoen er ikke fullstendig konfigurert",
        "recommendation": "Complete your Stripe account verification",
        "recommendation_no": "Fullfør verifiseringen av Stripe-kontoen din",
    },
    "STRIPE_ERROR": {
        "description": "General Stripe processing error",
        "description_no": "Generell Stripe-behandlingsfeil",
        "recommendation": "If this persists, contact support",
        "recommendation_no": "Hvis dette vedvarer, kontakt support",
    },
    "DB_ERROR": {
        "description": "Database error during payment processing",
        "description_no": "Databasefeil under betalingsbehandling",
        "recommendation": "This is a system issue. Contact support if it persists.",
        "recommendation_no": "Dette er en systemfeil. Kontakt support hvis det vedvarer.",
    },
}

ERROR_RECOMMENDATIONS = {
    "card_declined": "Multiple card declines detected. Consider offering alternative payment methods.",
    "insufficient_funds": "Some customers have insufficient funds. Consider offering payment plans.",
    "ACCOUNT_NOT_READY": "Complete your Stripe account setup to resolve payment issues.",
}


# ---------------------------------------------------------------------------
# Health and dashboards
# ---------------------------------------------------------------------------

class PaymentMonitor:
    def __init__(self, db: Session | None, payment_logger: PaymentLogger,
                 gateway: StripeConnectService | None = None):
        self.db = db
        self.payment_logger = payment_logger
        self.gateway = gateway or StripeConnectService(db, payment_logger)

    def get_health_status(self, tenant_id: str, stripe_status: ConnectStatus | None = None) -> dict:
        stripe_status = stripe_status or self.gateway.get_connect_status(tenant_id)
        success = self.payment_logger.success_rate(tenant_id, 24)
        failures = self.payment_logger.failure_summary(tenant_id, 24)

        issues = []
        recommendations = []
        score = 100

        if not stripe_status.connected:
            issues.append("Stripe account not connected")
            recommendations.append("Connect your Stripe account to accept card payments")
            score -= 30
        elif not stripe_status.charges_enabled:
            issues.append("Stripe account verification incomplete")
            recommendations.append("Complete your Stripe account verification to enable payments")
            score -= 20

        if success["total_attempts"] > 0:
            if success["success_rate"] < 80:
                issues.append(f"Low payment success rate: {success['success_rate']:.1f}%")
                recommendations.append("Review failed payments and address common issues")
                score -= 25
            elif success["success_rate"] < 95:
                issues.append(f"Payment success rate below optimal: {success['success_rate']:.1f}%")
                score -= 10

        if failures["total_failures"] > 5:
            issues.append(f"{failures['total_failures']} payment failures in the last 24 hours")
            for code, _count in Counter(failures["by_error_code"]).most_common(3):
                if code in ERROR_RECOMMENDATIONS:
                    recommendations.append(ERROR_RECOMMENDATIONS[code])
            score -= min(failures["total_failures"] * 2, 20)

        score = max(0, score)
        if score < WARNING_SCORE:
            status = "critical"
        elif score < HEALTHY_SCORE:
            status = "warning"
        else:
            status = "healthy"

        return {"status": status, "score": score, "issues": issues, "recommendations": recommendations}

    def get_metrics(self, tenant_id: str, hours_back: float = 24) -> dict:
        empty = {
            "total_payments": 0,
            "successful_payments": 0,
            "failed_payments": 0,
            "refunded_payments": 0,
            "total_revenue": to_major_units(0),
            "average_payment_amount": to_major_units(0),
            "success_rate": 100.0,
            "refund_rate": 0.0,
        }
        if self.db is None:
            return empty

        cutoff = self.payment_logger.clock() - timedelta(hours=hours_back)
        rows = self.db.execute(
            select(Payment.status, func.count(), func.coalesce(func.sum(Payment.amount), 0))
            .where(Payment.tenant_id == tenant_id, Payment.created_at >= cutoff)
            .group_by(Payment.status)
        ).all()

        total = successful = failed = refunded = revenue_minor = 0
        for status, count, amount in rows:
            total += count
            if status in ("completed", "partially_refunded"):
                successful += count
                revenue_minor += amount
            elif status == "failed":
                failed += count
            elif status == "refunded":
                refunded += count

        return {
            **empty,
            "total_payments": total,
            "successful_payments": successful,
            "failed_payments": failed,
            "refunded_payments": refunded,
            "total_revenue": to_major_units(revenue_minor),
            "average_payment_amount": to_major_units(revenue_minor // successful) if successful else empty["average_payment_amount"],
            "success_rate": (successful / total) * 100 if total else 100.0,
            "refund_rate": (refunded / successful) * 100 if successful else 0.0,
        }

    def get_logs(self, tenant_id: str, limit: int = 100, level: str | None = None,
                 category: str | None = None) -> list[dict]:
        return [e.to_dict() for e in self.payment_logger.recent_logs(tenant_id, limit, level, category)]

    def get_failure_analysis(self, tenant_id: str, hours_back: float = 24) -> dict:
        summary = self.payment_logger.failure_summary(tenant_id, hours_back)
        analysis = []
        for code, count in summary["by_error_code"].items():
            info = ERROR_DESCRIPTIONS.get(code, {
                "description": f"Unknown error: {code}",
                "description_no": f"Ukjent feil: {code}",
                "recommendation": "Contact support for assistance",
                "recommendation_no": "Kontakt support for hjelp",
            })
            analysis.append({"error_code": code, "count": count, **info})
        analysis.sort(key=lambda item: item["count"], reverse=True)

        return {
            "total_failures": summary["total_failures"],
            "analysis": analysis,
            "recent_failures": summary["recent_failures"][:5],
        }

    def get_alerts(self, tenant_id: str, stripe_status: ConnectStatus | None = None) -> list[dict]:
        now = self.payment_logger.clock()
        alerts = []

        message = self.payment_logger.failure_rate_alert_message(tenant_id)
        if message:
            alerts.append({
                "id": "high_failure_rate",
                "type": "error",
                "title": "High Payment Failure Rate",
                "title_no": "Høy betalingsfeilrate",
                "message": message,
                "message_no": "Høy betalingsfeilrate oppdaget. Sjekk betalingsloggene for detaljer.",
                "timestamp": now,
            })

        stripe_status = stripe_status or self.gateway.get_connect_status(tenant_id)
        if not stripe_status.connected:
            alerts.append({
                "id": "stripe_not_connected",
                "type": "warning",
                "title": "Stripe Not Connected",
                "title_no": "Stripe ikke tilkoblet",
                "message": "Connect your Stripe account to accept card payments.",
                "message_no": "Koble til Stripe-kontoen din for å motta kortbetalinger.",
                "timestamp": now,
            })
        elif not stripe_status.charges_enabled:
            alerts.append({
                "id": "stripe_verification_pending",
                "type": "warning",
                "title": "Stripe Verification Pending",
                "title_no": "Stripe-verifisering venter",
                "message": "Complete your Stripe account verification to enable payments.",
                "message_no": "Fullfør verifiseringen av Stripe-kontoen din for å aktivere betalinger.",
                "timestamp": now,
            })
            past_due = (stripe_status.requirements or {}).get("past_due") or []
            if past_due:
                alerts.append({
                    "id": "stripe_requirements_past_due",
                    "type": "critical",
                    "title": "Stripe Requirements Past Due",
                    "title_no": "Stripe-krav forfalt",
                    "message": f"Missing required information: {', '.join(past_due)}",
                    "message_no": f"Manglende påkrevd informasjon: {', '.join(past_due)}",
                    "timestamp": now,
                })

        return alerts

    def get_dashboard_summary(self, tenant_id: str) -> dict:
        # One gateway round-trip shared by health and alerts
        stripe_status = self.gateway.get_connect_status(tenant_id)
        health = self.get_health_status(tenant_id, stripe_status)
        today = self.get_metrics(tenant_id, 24)
        week = self.get_metrics(tenant_id, 168)
        alerts = self.get_alerts(tenant_id, stripe_status)

        return {
            "health": health,
            "today": {
                "revenue": today["total_revenue"],
                "transactions": today["total_payments"],
                "success_rate": today["success_rate"],
            },
            "week": {
                "revenue": week["total_revenue"],
                "transactions": week["total_payments"],
                "success_rate": week["success_rate"],
                "refund_rate": week["refund_rate"],
            },
            "alerts": alerts,
            "alert_count": len(alerts),
            "critical_alerts": sum(1 for a in alerts if a["type"] == "critical"),
        }
