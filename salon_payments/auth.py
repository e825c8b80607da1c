from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException
from jose import JWTError, jwt

from salon_payments.config import jwt_secret
from salon_payments.errors import ForbiddenError

ADMIN_ROLES = {"owner", "admin"}


@dataclass(frozen=True)
class TenantContext:
    """Caller identity handed explicitly to every payment operation."""

    tenant_id: str
    user_id: str | None
    role: str | None

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES


def verify_token(authorization: str = Header(...)) -> dict:
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("Unsupported authorization scheme")
        return jwt.decode(token, jwt_secret(), algorithms=["HS256"])
    except (ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")


def require_tenant(claims: dict = Depends(verify_token)) -> TenantContext:
    tenant_id = claims.get("tenant_id")
    if not tenant_id:
        raise ForbiddenError("No tenant access", message_key="errors.noTenantAccess")
    return TenantContext(
        tenant_id=str(tenant_id),
        user_id=str(claims["sub"]) if claims.get("sub") is not None else None,
        role=claims.get("role"),
    )


def require_admin(ctx: TenantContext = Depends(require_tenant)) -> TenantContext:
    if not ctx.is_admin:
        raise ForbiddenError("Admin access required", message_key="errors.adminRequired")
    return ctx
