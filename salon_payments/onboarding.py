"""Step-by-step payment setup guide shown to salon owners."""

from salon_payments import config
from salon_payments.stripe_connect import StripeConnectService
from salon_payments.tenant_isolation import get_payment_settings_secure


def _step(step_id, title, title_no, description, description_no, status="pending"):
    return {
        "id": step_id,
        "title": title,
        "title_no": title_no,
        "description": description,
        "description_no": description_no,
        "status": status,
        "action": None,
        "action_url": None,
        "error_message": None,
    }


def get_onboarding_status(gateway: StripeConnectService, tenant_id: str) -> dict:
    status = gateway.get_connect_status(tenant_id)
    readiness = gateway.can_accept_payments(tenant_id, status)
    settings = get_payment_settings_secure(gateway.db, tenant_id)
    current_step = 0

    connect = _step(
        "connect_stripe",
        "Connect Stripe Account", "Koble til Stripe-konto",
        "Link your Stripe account to receive payments directly",
        "Koble Stripe-kontoen din for å motta betalinger direkte",
        "completed" if status.connected else "pending",
    )
    if not status.connected:
        connect["action"] = "Connect Stripe"
        connect["action_url"] = gateway.get_connect_auth_url(tenant_id)

    verify = _step(
        "verify_account",
        "Complete Account Verification", "Fullfør kontoverifisering",
        "Verify your identity to enable payouts",
        "Verifiser identiteten din for å aktivere utbetalinger",
    )
    if status.connected:
        current_step = 1
        if status.details_submitted and status.charges_enabled:
            verify["status"] = "completed"
            current_step = 2
        elif status.details_submitted:
            verify["status"] = "in_progress"
            verify["description"] = "Verification in progress. This may take 1-2 business days."
            verify["description_no"] = "Verifisering pågår. Dette kan ta 1-2 virkedager."
        else:
            verify["status"] = "in_progress"
            verify["action"] = "Complete Verification"
            currently_due = (status.requirements or {}).get("currently_due") or []
            if currently_due:
                verify["error_message"] = f"Missing: {', '.join(currently_due)}"

    methods = _step(
        "configure_methods",
        "Configure Payment Methods", "Konfigurer betalingsmetoder",
        "Enable the payment methods you want to accept",
        "Aktiver betalingsmetodene du vil akseptere",
    )
    if status.charges_enabled:
        current_step = 2
        if settings is not None and (settings.card_enabled or settings.vipps_enabled or settings.cash_enabled):
            methods["status"] = "completed"
            current_step = 3
        else:
            methods["status"] = "in_progress"
            methods["action"] = "Configure Methods"

    ready = _step(
        "ready",
        "Ready to Accept Payments", "Klar til å motta betalinger",
        "Your payment setup is complete!",
        "Betalingsoppsettet ditt er fullført!",
        "completed" if readiness.can_accept else "pending",
    )

    if not status.connected:
        next_action = {
            "type": "connect_stripe",
            "url": connect["action_url"],
            "message": "Click the button below to connect your Stripe account and start accepting payments.",
            "message_no": "Klikk på knappen nedenfor for å koble til Stripe-kontoen din og begynne å motta betalinger.",
        }
    elif not status.charges_enabled:
        next_action = {
            "type": "complete_verification",
            "url": None,
            "message": "Complete your Stripe account verification to enable payments.",
            "message_no": "Fullfør verifiseringen av Stripe-kontoen din for å aktivere betalinger.",
        }
    elif settings is None or not (settings.card_enabled or settings.vipps_enabled):
        next_action = {
            "type": "configure_methods",
            "url": None,
            "message": "Configure which payment methods you want to accept.",
            "message_no": "Konfigurer hvilke betalingsmetoder du vil akseptere.",
        }
    else:
        next_action = {
            "type": "ready",
            "url": None,
            "message": "You're all set! Your salon can now accept payments.",
            "message_no": "Alt er klart! Salongen din kan nå motta betalinger.",
        }

    steps = [connect, verify, methods, ready]
    return {
        "current_step": current_step,
        "total_steps": len(steps),
        "is_complete": readiness.can_accept,
        "can_accept_payments": readiness.can_accept,
        "steps": steps,
        "next_action": next_action,
    }


def get_connect_url(gateway: StripeConnectService, tenant_id: str) -> dict:
    status = gateway.get_connect_status(tenant_id)
    if not status.connected:
        return {
            "type": "oauth",
            "url": gateway.get_connect_auth_url(tenant_id),
            "message": "Connect your Stripe account",
            "message_no": "Koble til Stripe-kontoen din",
        }

    if not status.charges_enabled:
        # Already linked but verification is unfinished: send them back to Stripe
        settings_url = f"{config.frontend_url()}/settings/payments"
        return {
            "type": "account_link",
            "url": gateway.create_account_link(tenant_id, settings_url, settings_url),
            "message": "Complete your account verification",
            "message_no": "Fullfør kontoverifiseringen din",
        }

    return {
        "type": "already_connected",
        "url": None,
        "message": "Your Stripe account is already connected",
        "message_no": "Stripe-kontoen din er allerede tilkoblet",
    }
