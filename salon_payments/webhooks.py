"""
Stripe webhook processing.

The signature is verified before the payload is trusted or the database is
touched. Handlers are idempotent: Stripe redelivers events, and a replayed
``payment_intent.succeeded`` for a completed payment is a no-op.
"""

import stripe
import structlog
from sqlalchemy.orm import Session

from salon_payments import config
from salon_payments.auth import TenantContext
from salon_payments.errors import BadRequestError, GatewayError, PaymentServiceError
from salon_payments.payment_log import PaymentLogger
from salon_payments.payment_service import PaymentService
from salon_payments.stripe_connect import StripeConnectService, configure_stripe, stripe_field
from salon_payments.subscriptions import handle_subscription_deleted, handle_subscription_update
from salon_payments.tenant_isolation import get_payment_by_gateway_id, resolve_tenant_by_account_id

logger = structlog.get_logger(__name__)

SUBSCRIPTION_EVENTS = {"customer.subscription.created", "customer.subscription.updated"}
INVOICE_EVENTS = {"invoice.paid", "invoice.payment_succeeded", "invoice.payment_failed"}


def construct_event(payload: bytes, signature: str | None):
    secret = config.stripe_webhook_secret()
    if not secret:
        raise PaymentServiceError("Webhook secret not configured")
    if not signature:
        raise BadRequestError("Missing signature")

    try:
        return stripe.Webhook.construct_event(payload, signature, secret)
    except ValueError as exc:
        raise BadRequestError("Invalid payload") from exc
    except stripe.SignatureVerificationError as exc:
        logger.warning("webhooks.invalid_signature", error=str(exc))
        raise BadRequestError("Invalid signature") from exc


class WebhookProcessor:
    def __init__(self, db: Session | None, payment_logger: PaymentLogger):
        self.db = db
        self.payment_logger = payment_logger

    def process(self, event) -> dict:
        event_type = event["type"]
        event_id = stripe_field(event, "id")
        obj = event["data"]["object"]
        tenant_id = self._tenant_for(event_type, obj)

        try:
            handled = self._dispatch(event_type, obj, tenant_id)
        except PaymentServiceError as exc:
            if tenant_id:
                self.payment_logger.stripe_webhook(tenant_id, event_type, event_id, False, exc.message)
            raise

        if tenant_id:
            self.payment_logger.stripe_webhook(tenant_id, event_type, event_id, True)
        logger.info("webhooks.processed", event_type=event_type, event_id=event_id, handled=handled)
        return {"received": True}

    def _tenant_for(self, event_type: str, obj) -> str | None:
        if event_type == "account.updated":
            return resolve_tenant_by_account_id(self.db, stripe_field(obj, "id"))
        metadata = stripe_field(obj, "metadata", {})
        return stripe_field(metadata, "tenant_id") or stripe_field(metadata, "tenantId")

    def _dispatch(self, event_type: str, obj, tenant_id: str | None) -> bool:
        if event_type == "payment_intent.succeeded":
            return self._payment_succeeded(obj, tenant_id)
        if event_type == "payment_intent.payment_failed":
            return self._payment_failed(obj, tenant_id)
        if event_type == "account.updated":
            return self._account_updated(obj, tenant_id)
        if event_type in SUBSCRIPTION_EVENTS:
            handle_subscription_update(self.db, obj)
            return True
        if event_type == "customer.subscription.deleted":
            handle_subscription_deleted(self.db, obj)
            return True
        if event_type in INVOICE_EVENTS:
            return self._invoice_event(obj)

        logger.info("webhooks.unhandled_event", event_type=event_type)
        return False

    def _pending_payment(self, intent, tenant_id: str | None):
        if not tenant_id:
            logger.warning("webhooks.missing_tenant", payment_intent=stripe_field(intent, "id"))
            return None
        payment = get_payment_by_gateway_id(self.db, stripe_field(intent, "id"), tenant_id)
        if payment is None:
            logger.warning("webhooks.unknown_payment", tenant_id=tenant_id, payment_intent=stripe_field(intent, "id"))
            return None
        if payment.status != "pending":
            return None
        return payment

    def _payment_succeeded(self, intent, tenant_id: str | None) -> bool:
        payment = self._pending_payment(intent, tenant_id)
        if payment is None:
            return False
        service = PaymentService(self.db, self.payment_logger)
        service.update_payment_status(TenantContext(tenant_id, None, "system"), payment.id, "completed")
        return True

    def _payment_failed(self, intent, tenant_id: str | None) -> bool:
        payment = self._pending_payment(intent, tenant_id)
        if payment is None:
            return False
        error = stripe_field(intent, "last_payment_error", {})
        service = PaymentService(self.db, self.payment_logger)
        service.update_payment_status(
            TenantContext(tenant_id, None, "system"),
            payment.id,
            "failed",
            error_code=stripe_field(error, "decline_code") or stripe_field(error, "code") or "STRIPE_ERROR",
            error_message=stripe_field(error, "message") or "Payment failed",
        )
        return True

    def _account_updated(self, account, tenant_id: str | None) -> bool:
        if not tenant_id:
            logger.warning("webhooks.unknown_account", account_id=stripe_field(account, "id"))
            return False
        StripeConnectService(self.db, self.payment_logger).sync_account(
            tenant_id,
            stripe_field(account, "id"),
            charges_enabled=bool(stripe_field(account, "charges_enabled", False)),
            payouts_enabled=bool(stripe_field(account, "payouts_enabled", False)),
        )
        return True

    def _invoice_event(self, invoice) -> bool:
        subscription_id = stripe_field(invoice, "subscription")
        if not subscription_id:
            return False
        configure_stripe()
        # Invoice payloads omit the subscription metadata, so fetch the subscription itself
        try:
            subscription = stripe.Subscription.retrieve(subscription_id)
        except stripe.StripeError as exc:
            logger.error("webhooks.subscription_fetch_failed", subscription_id=subscription_id, error=str(exc))
            raise GatewayError("Failed to fetch subscription", gateway_code=exc.code) from exc
        handle_subscription_update(self.db, subscription)
        return True
