"""
Supabase JWT verification and RBAC.
Expect Authorization: Bearer <access_token>.
Set SUPABASE_JWT_SECRET (HS256). Organization and role come from the users table,
never from the token, so a role change takes effect on the next request.
Internal callers (cron, workers) send X-Internal-Secret instead.
"""
from __future__ import annotations

import hmac
import os
from dataclasses import dataclass
from typing import Annotated, Optional

import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer, APIKeyHeader
from pydantic import BaseModel
from sqlalchemy.orm import Session

from audit import record_event
from db.session import get_db
from db.models import User, Role
from errors import ApiError

security = HTTPBearer(auto_error=False)
internal_key_header = APIKeyHeader(name="X-Internal-Secret", auto_error=False)

JWT_AUDIENCE = os.environ.get("SUPABASE_JWT_AUDIENCE", "authenticated")


class TokenClaims(BaseModel):
    sub: str  # auth user id
    email: Optional[str] = None
    role: Optional[str] = None  # supabase role ("authenticated"), not the org role


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    organization_id: str
    role: str
    email: Optional[str] = None


def verify_token(token: str) -> TokenClaims:
    """Verify Supabase access token and return claims."""
    secret = os.environ.get("SUPABASE_JWT_SECRET")
    if not secret:
        raise ApiError("INTERNAL_ERROR", status=503, message="SUPABASE_JWT_SECRET not set")
    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=["HS256"],
            audience=JWT_AUDIENCE,
            options={"require": ["sub", "exp"]},
        )
    except jwt.InvalidTokenError as e:
        raise ApiError("UNAUTHORIZED", message=f"Invalid token: {e}")
    return TokenClaims(
        sub=payload.get("sub", ""),
        email=payload.get("email"),
        role=payload.get("role"),
    )


def get_optional_claims(
    creds: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
) -> Optional[TokenClaims]:
    if not creds or not creds.credentials:
        return None
    return verify_token(creds.credentials)


def require_auth(
    claims: Annotated[Optional[TokenClaims], Depends(get_optional_claims)],
) -> TokenClaims:
    if not claims:
        raise ApiError("UNAUTHORIZED", message="Not authenticated")
    return claims


def require_org_context(
    request: Request,
    claims: Annotated[TokenClaims, Depends(require_auth)],
    db: Annotated[Session, Depends(get_db)],
) -> AuthContext:
    """Resolve the caller's organization and role from the users table."""
    user = db.query(User).filter(User.id == claims.sub).first()
    if not user:
        raise ApiError("FORBIDDEN", message="User not in database")
    if not user.organization_id:
        raise ApiError("FORBIDDEN", message="Organization context required")
    ctx = AuthContext(
        user_id=user.id,
        organization_id=user.organization_id,
        role=user.role or Role.member.value,
        email=user.email or claims.email,
    )
    request.state.organization_id = ctx.organization_id
    return ctx


def require_roles(*roles: Role):
    """Dependency factory: 403 (with a role_violation ledger event) unless the caller holds one of roles."""
    allowed = {r.value for r in roles}

    def _dependency(
        request: Request,
        ctx: Annotated[AuthContext, Depends(require_org_context)],
        db: Annotated[Session, Depends(get_db)],
    ) -> AuthContext:
        if ctx.role in allowed:
            return ctx
        record_event(
            db,
            organization_id=ctx.organization_id,
            actor_id=ctx.user_id,
            event_name="auth.role_violation",
            target_type="route",
            target_id=request.url.path,
            metadata={
                "role": ctx.role,
                "required_roles": sorted(allowed),
                "attempted_action": request.url.path.strip("/").replace("/", "."),
            },
        )
        raise ApiError(
            "FORBIDDEN",
            message=f"Requires one of: {', '.join(sorted(allowed))}",
            details={"role": ctx.role},
        )

    return _dependency


def verify_internal_secret(
    secret: Annotated[Optional[str], Depends(internal_key_header)],
) -> bool:
    """True when X-Internal-Secret matches INTERNAL_API_SECRET."""
    expected = (os.environ.get("INTERNAL_API_SECRET") or "").strip()
    if not expected or not secret:
        return False
    return hmac.compare_digest(secret.strip(), expected)


def require_internal_secret(
    internal: Annotated[bool, Depends(verify_internal_secret)],
) -> None:
    """Operator-only endpoints: cron jobs and platform monitoring, never tenant users."""
    if not internal:
        raise ApiError("UNAUTHORIZED", message="Valid X-Internal-Secret required")
