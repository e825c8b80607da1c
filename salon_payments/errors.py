"""
Payment service exceptions.

Every client-facing error carries a stable ``code``, the HTTP status it maps
to, a ``message_key`` for localisation lookup and optional ``context``.
"""

from typing import Any


class PaymentServiceError(Exception):
    code = "INTERNAL_SERVER_ERROR"
    status_code = 500
    message_key = "errors.internal"

    def __init__(
        self,
        message: str,
        message_key: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        self.message = message
        if message_key:
            self.message_key = message_key
        self.context = context or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "message_key": self.message_key,
            "context": self.context,
        }


class BadRequestError(PaymentServiceError):
    code = "BAD_REQUEST"
    status_code = 400
    message_key = "errors.badRequest"


class NotFoundError(PaymentServiceError):
    code = "NOT_FOUND"
    status_code = 404
    message_key = "errors.notFound"


class ForbiddenError(PaymentServiceError):
    code = "FORBIDDEN"
    status_code = 403
    message_key = "errors.forbidden"


class PreconditionFailedError(PaymentServiceError):
    code = "PRECONDITION_FAILED"
    status_code = 412
    message_key = "errors.preconditionFailed"


class InvalidStatusTransition(PreconditionFailedError):
    message_key = "errors.invalidStatusTransition"

    def __init__(self, current: str, requested: str):
        super().__init__(
            f"Cannot move payment from {current} to {requested}",
            context={"current": current, "requested": requested},
        )


class PlanLimitError(ForbiddenError):
    """Raised by the plan limiter; ``context`` carries the limit value."""


class TenantIsolationError(NotFoundError):
    """Cross-tenant access. Rendered exactly like an ordinary NOT_FOUND."""

    def __init__(self, entity_name: str):
        super().__init__(f"{entity_name} not found")


class DatabaseUnavailableError(PaymentServiceError):
    message_key = "errors.databaseUnavailable"

    def __init__(self, message: str = "Database not available"):
        super().__init__(message)


class GatewayError(PaymentServiceError):
    """External payment processor failure; ``gateway_code`` only goes to the logs."""

    message_key = "errors.gateway"

    def __init__(self, message: str, gateway_code: str | None = None,
                 message_key: str | None = None, outcome_unknown: bool = False):
        super().__init__(message, message_key=message_key)
        self.gateway_code = gateway_code
        # True when the request may have succeeded upstream (e.g. a timeout)
        self.outcome_unknown = outcome_unknown
