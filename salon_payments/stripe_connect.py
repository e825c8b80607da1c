"""
Stripe Connect gateway adapter.

All calls to the Stripe API live here. Charges are created as destination
charges so the money settles in the tenant's own connected account, with
the platform fee withheld as ``application_fee_amount``.

Amounts in this module's public methods are major units (NOK); they are
converted to øre with ``money.to_minor_units`` before any API call.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from urllib.parse import urlencode

import stripe
import structlog
from sqlalchemy.orm import Session

from salon_payments import config
from salon_payments.errors import GatewayError, NotFoundError, PreconditionFailedError
from salon_payments.models import Tenant, utcnow
from salon_payments.money import application_fee, to_minor_units
from salon_payments.payment_log import LogLevel, PaymentLogger
from salon_payments.tenant_isolation import (
    get_payment_settings_secure,
    resolve_tenant_by_account_id,
    upsert_payment_settings,
)

logger = structlog.get_logger(__name__)

CONNECT_AUTHORIZE_URL = "https://connect.stripe.com/oauth/authorize"
NO_ACCOUNT_MESSAGE = "No connected Stripe account found"


@dataclass
class ConnectStatus:
    connected: bool
    account_id: str | None
    status: str                      # connected | disconnected | pending | restricted
    charges_enabled: bool = False
    payouts_enabled: bool = False
    details_submitted: bool = False
    requirements: dict | None = None
    connected_at: datetime | None = None
    status_query_failed: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class PaymentReadiness:
    can_accept: bool
    reason: str | None = None


@dataclass
class PaymentIntentResult:
    id: str
    client_secret: str
    amount: int                      # øre
    application_fee_amount: int      # øre
    currency: str
    status: str
    connected_account_id: str
    metadata: dict = field(default_factory=dict)


@dataclass
class RefundResult:
    success: bool
    refund_id: str


def stripe_field(obj, key: str, default=None):
    """Read a key from a Stripe object or plain dict, tolerating absence."""
    if obj is None:
        return default
    try:
        value = obj[key]
    except KeyError:
        return default
    return default if value is None else value


def configure_stripe() -> None:
    secret_key = config.stripe_secret_key()
    if not secret_key:
        raise PreconditionFailedError(
            "Stripe secret key not configured", message_key="errors.stripeNotConfigured"
        )
    stripe.api_key = secret_key
    stripe.max_network_retries = config.stripe_max_network_retries()


def _disconnected() -> ConnectStatus:
    return ConnectStatus(connected=False, account_id=None, status="disconnected")


def derive_account_status(charges_enabled: bool, details_submitted: bool) -> str:
    if charges_enabled:
        return "connected"
    return "restricted" if details_submitted else "pending"


class StripeConnectService:
    def __init__(self, db: Session | None, payment_logger: PaymentLogger):
        self.db = db
        self.payment_logger = payment_logger

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    def get_connect_auth_url(self, tenant_id: str) -> str:
        client_id = config.stripe_connect_client_id()
        if not client_id:
            raise PreconditionFailedError(
                "Stripe Connect client ID not configured", message_key="errors.stripeNotConfigured"
            )

        params = {
            "response_type": "code",
            "client_id": client_id,
            "scope": "read_write",
            "redirect_uri": f"{config.frontend_url()}/stripe/callback",
            # Echoed back on the callback and checked against the caller
            "state": tenant_id,
            "stripe_user[business_type]": "company",
            "stripe_user[country]": "NO",
            "stripe_user[currency]": "nok",
        }
        return f"{CONNECT_AUTHORIZE_URL}?{urlencode(params)}"

    def handle_connect_callback(self, code: str, tenant_id: str) -> dict:
        configure_stripe()
        try:
            response = stripe.OAuth.token(grant_type="authorization_code", code=code)
            account_id = response.get("stripe_user_id")
            if not account_id:
                raise GatewayError("No account ID received from Stripe", gateway_code="NO_ACCOUNT_ID")
            account = stripe.Account.retrieve(account_id)
        except (stripe.StripeError, GatewayError) as exc:
            message = getattr(exc, "user_message", None) or str(exc)
            logger.error("stripe_connect.callback_failed", tenant_id=tenant_id, error=message)
            self.payment_logger.stripe_connect(
                tenant_id, "connect_failed", details={"error": message}, level=LogLevel.ERROR
            )
            raise GatewayError(
                f"Failed to connect Stripe account: {message}",
                gateway_code=getattr(exc, "code", None),
                message_key="errors.stripeConnectFailed",
            ) from exc

        charges_enabled = bool(getattr(account, "charges_enabled", False))
        payouts_enabled = bool(getattr(account, "payouts_enabled", False))
        upsert_payment_settings(
            self.db,
            tenant_id,
            stripe_connected_account_id=account_id,
            stripe_account_status="connected" if charges_enabled else "pending",
            stripe_connected_at=utcnow(),
            stripe_charges_enabled=charges_enabled,
            stripe_payouts_enabled=payouts_enabled,
            card_enabled=True,
        )
        self.db.commit()

        self.payment_logger.stripe_connect(
            tenant_id,
            "connected",
            account_id,
            {"charges_enabled": charges_enabled, "payouts_enabled": payouts_enabled},
        )
        return {"success": True, "account_id": account_id}

    # ------------------------------------------------------------------
    # Account status
    # ------------------------------------------------------------------

    def get_connect_status(self, tenant_id: str) -> ConnectStatus:
        settings = get_payment_settings_secure(self.db, tenant_id)
        if settings is None or not settings.stripe_connected_account_id:
            return _disconnected()

        account_id = settings.stripe_connected_account_id
        try:
            configure_stripe()
            account = stripe.Account.retrieve(account_id)
        except (stripe.StripeError, PreconditionFailedError) as exc:
            logger.error("stripe_connect.status_failed", tenant_id=tenant_id, error=str(exc))
            return ConnectStatus(
                connected=True,
                account_id=account_id,
                status="disconnected",
                connected_at=settings.stripe_connected_at,
                status_query_failed=True,
            )

        charges_enabled = bool(getattr(account, "charges_enabled", False))
        details_submitted = bool(getattr(account, "details_submitted", False))
        requirements = getattr(account, "requirements", None)
        return ConnectStatus(
            connected=True,
            account_id=account_id,
            status=derive_account_status(charges_enabled, details_submitted),
            charges_enabled=charges_enabled,
            payouts_enabled=bool(getattr(account, "payouts_enabled", False)),
            details_submitted=details_submitted,
            requirements={
                "currently_due": list(getattr(requirements, "currently_due", None) or []),
                "eventually_due": list(getattr(requirements, "eventually_due", None) or []),
                "past_due": list(getattr(requirements, "past_due", None) or []),
            } if requirements is not None else None,
            connected_at=settings.stripe_connected_at,
        )

    def can_accept_payments(self, tenant_id: str, status: ConnectStatus | None = None) -> PaymentReadiness:
        status = status or self.get_connect_status(tenant_id)

        if not status.connected:
            return PaymentReadiness(
                False,
                "Stripe account not connected. Please connect your Stripe account in Settings.",
            )

        if not status.charges_enabled:
            currently_due = (status.requirements or {}).get("currently_due") or []
            if currently_due:
                return PaymentReadiness(
                    False,
                    f"Please complete your Stripe account setup. Missing: {', '.join(currently_due)}",
                )
            return PaymentReadiness(
                False,
                "Stripe account is pending verification. Please check your Stripe dashboard.",
            )

        return PaymentReadiness(True)

    def sync_account(self, tenant_id: str, account_id: str, charges_enabled: bool,
                     payouts_enabled: bool) -> None:
        """Apply an ``account.updated`` payload to the stored settings."""
        upsert_payment_settings(
            self.db,
            tenant_id,
            stripe_account_status="connected" if charges_enabled else "pending",
            stripe_charges_enabled=charges_enabled,
            stripe_payouts_enabled=payouts_enabled,
        )
        self.db.commit()
        self.payment_logger.stripe_connect(
            tenant_id, "account_updated", account_id, {"charges_enabled": charges_enabled},
        )

    # ------------------------------------------------------------------
    # Destination charges
    # ------------------------------------------------------------------

    def create_destination_payment_intent(self, tenant_id: str, amount, currency: str | None = None,
                                          customer_id=None, appointment_id=None, order_id=None,
                                          description: str | None = None, metadata: dict | None = None,
                                          application_fee_percent=None,
                                          idempotency_key: str | None = None) -> PaymentIntentResult:
        return self._create_intent(
            tenant_id,
            amount,
            currency=currency,
            metadata={
                "customer_id": str(customer_id or ""),
                "appointment_id": str(appointment_id or ""),
                "order_id": str(order_id or ""),
                **(metadata or {}),
            },
            description=description,
            application_fee_percent=application_fee_percent,
            order_id=order_id,
            appointment_id=appointment_id,
            idempotency_key=idempotency_key,
            intent_params={"automatic_payment_methods": {"enabled": True}},
        )

    def create_terminal_destination_payment_intent(self, tenant_id: str, amount, currency: str | None = None,
                                                   metadata: dict | None = None,
                                                   application_fee_percent=None,
                                                   idempotency_key: str | None = None) -> PaymentIntentResult:
        return self._create_intent(
            tenant_id,
            amount,
            currency=currency,
            metadata=metadata or {},
            description=None,
            application_fee_percent=application_fee_percent,
            idempotency_key=idempotency_key,
            intent_params={"payment_method_types": ["card_present"], "capture_method": "automatic"},
        )

    def _create_intent(self, tenant_id, amount, currency, metadata, description,
                       application_fee_percent, intent_params, order_id=None,
                       appointment_id=None, idempotency_key=None) -> PaymentIntentResult:
        status = self.get_connect_status(tenant_id)
        readiness = self.can_accept_payments(tenant_id, status)
        if not readiness.can_accept:
            self.payment_logger.payment_failed(
                tenant_id, None, amount, "stripe", "ACCOUNT_NOT_READY", readiness.reason,
            )
            raise PreconditionFailedError(readiness.reason, message_key="errors.accountNotReady")

        configure_stripe()
        currency = (currency or config.default_currency()).lower()
        fee_percent = config.platform_fee_percent() if application_fee_percent is None else application_fee_percent
        amount_minor = to_minor_units(amount)
        fee_minor = application_fee(amount_minor, fee_percent)

        try:
            intent = stripe.PaymentIntent.create(
                amount=amount_minor,
                currency=currency,
                description=description or f"Payment to {self._tenant_name(tenant_id)}",
                metadata={"tenant_id": tenant_id, **metadata},
                transfer_data={"destination": status.account_id},
                application_fee_amount=fee_minor,
                idempotency_key=idempotency_key,
                **intent_params,
            )
        except stripe.StripeError as exc:
            error_code = exc.code or "STRIPE_ERROR"
            logger.error("stripe_connect.intent_failed", tenant_id=tenant_id, error_code=error_code)
            self.payment_logger.payment_failed(
                tenant_id, None, amount, "stripe", error_code, str(exc),
                details={"stripe_error": exc.json_body or {}},
            )
            raise GatewayError("Failed to create payment", gateway_code=error_code) from exc

        # The local payment row does not exist yet, hence payment id 0
        self.payment_logger.payment_created(
            tenant_id, 0, amount, "stripe",
            order_id=order_id, appointment_id=appointment_id, gateway_payment_id=intent.id,
        )

        return PaymentIntentResult(
            id=intent.id,
            client_secret=getattr(intent, "client_secret", None) or "",
            amount=amount_minor,
            application_fee_amount=fee_minor,
            currency=getattr(intent, "currency", currency),
            status=getattr(intent, "status", "requires_payment_method"),
            connected_account_id=status.account_id,
            metadata=metadata,
        )

    def _tenant_name(self, tenant_id: str) -> str:
        tenant = self.db.get(Tenant, tenant_id) if self.db is not None else None
        return tenant.name if tenant else "Stylora Salon"

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    def verify_payment_intent_owner(self, tenant_id: str, gateway_payment_id: str) -> str:
        """
        Confirm that a payment intent settles into the tenant's connected account.

        Destination charges live on the platform account, so the platform key
        can read and refund every tenant's intents. The intent's
        ``transfer_data.destination`` is the only proof of ownership. A
        mismatch is logged as a ``security_breach`` and reported as NOT_FOUND,
        the same answer as for an intent that does not exist.
        """
        settings = get_payment_settings_secure(self.db, tenant_id)
        if settings is None or not settings.stripe_connected_account_id:
            raise PreconditionFailedError(NO_ACCOUNT_MESSAGE, message_key="errors.stripeNotConnected")
        account_id = settings.stripe_connected_account_id

        configure_stripe()
        try:
            intent = stripe.PaymentIntent.retrieve(gateway_payment_id)
        except stripe.InvalidRequestError as exc:
            raise NotFoundError(
                "Payment intent not found", message_key="errors.paymentNotFound"
            ) from exc
        except stripe.StripeError as exc:
            logger.error(
                "stripe_connect.intent_lookup_failed",
                tenant_id=tenant_id,
                payment_intent=gateway_payment_id,
                error=str(exc),
            )
            raise GatewayError(
                "Failed to retrieve payment intent",
                gateway_code=exc.code or "STRIPE_ERROR",
                outcome_unknown=isinstance(exc, stripe.APIConnectionError),
            ) from exc

        destination = stripe_field(stripe_field(intent, "transfer_data"), "destination")
        if destination is not None and not isinstance(destination, str):
            destination = stripe_field(destination, "id")

        if destination != account_id:
            self.payment_logger.security_breach(
                tenant_id,
                breach_type="foreign_payment_intent",
                requested_resource=f"payment_intent:{gateway_payment_id}",
                actual_owner=resolve_tenant_by_account_id(self.db, destination),
            )
            raise NotFoundError("Payment intent not found", message_key="errors.paymentNotFound")
        return account_id

    def process_stripe_refund(self, tenant_id: str, gateway_payment_id: str, amount=None,
                              reason: str | None = None,
                              idempotency_key: str | None = None) -> RefundResult:
        """Refund a payment intent; ``amount=None`` refunds it in full."""
        self.verify_payment_intent_owner(tenant_id, gateway_payment_id)

        params = {
            "payment_intent": gateway_payment_id,
            "reason": "requested_by_customer",
            "metadata": {
                "tenant_id": tenant_id,
                "refund_reason": reason or "Customer requested refund",
            },
        }
        if amount is not None:
            params["amount"] = to_minor_units(amount)

        try:
            refund = stripe.Refund.create(idempotency_key=idempotency_key, **params)
        except stripe.StripeError as exc:
            logger.error(
                "stripe_connect.refund_failed",
                tenant_id=tenant_id,
                payment_intent=gateway_payment_id,
                error_code=exc.code,
                error=str(exc),
            )
            raise GatewayError(
                "Failed to process refund",
                gateway_code=exc.code or "STRIPE_ERROR",
                outcome_unknown=isinstance(exc, stripe.APIConnectionError),
            ) from exc

        return RefundResult(success=True, refund_id=refund.id)

    # ------------------------------------------------------------------
    # Disconnect and links
    # ------------------------------------------------------------------

    def disconnect_stripe_account(self, tenant_id: str) -> None:
        settings = get_payment_settings_secure(self.db, tenant_id)
        if settings is None or not settings.stripe_connected_account_id:
            return

        account_id = settings.stripe_connected_account_id
        upsert_payment_settings(
            self.db,
            tenant_id,
            stripe_connected_account_id=None,
            stripe_account_status="disconnected",
            stripe_connected_at=None,
            stripe_charges_enabled=False,
            stripe_payouts_enabled=False,
            card_enabled=False,
        )
        self.db.commit()
        self.payment_logger.stripe_connect(tenant_id, "disconnected", account_id)

    def _require_account_id(self, tenant_id: str) -> str:
        settings = get_payment_settings_secure(self.db, tenant_id)
        if settings is None or not settings.stripe_connected_account_id:
            raise PreconditionFailedError(NO_ACCOUNT_MESSAGE, message_key="errors.stripeNotConnected")
        return settings.stripe_connected_account_id

    def create_account_link(self, tenant_id: str, refresh_url: str, return_url: str) -> str:
        account_id = self._require_account_id(tenant_id)
        configure_stripe()
        try:
            link = stripe.AccountLink.create(
                account=account_id,
                refresh_url=refresh_url,
                return_url=return_url,
                type="account_onboarding",
            )
        except stripe.StripeError as exc:
            logger.error("stripe_connect.account_link_failed", tenant_id=tenant_id, error=str(exc))
            raise GatewayError("Failed to create account link", gateway_code=exc.code) from exc
        return link.url

    def create_dashboard_link(self, tenant_id: str) -> str:
        account_id = self._require_account_id(tenant_id)
        configure_stripe()
        try:
            link = stripe.Account.create_login_link(account_id)
        except stripe.StripeError as exc:
            logger.error("stripe_connect.dashboard_link_failed", tenant_id=tenant_id, error=str(exc))
            raise GatewayError("Failed to create dashboard link", gateway_code=exc.code) from exc
        return link.url
