"""
Short-lived signed tokens that let the headless renderer load a report print page
without a user session. HS256 via PyJWT, secret from PRINT_TOKEN_SECRET
(falls back to SUPABASE_JWT_SECRET).
"""
from __future__ import annotations

import os
import time
from typing import Optional

import jwt
from pydantic import BaseModel

from errors import ApiError

PRINT_TOKEN_TTL_SECONDS = int(os.environ.get("PRINT_TOKEN_TTL_SECONDS", "600"))
PRINT_TOKEN_PURPOSE = "report_print"


class PrintClaims(BaseModel):
    job_id: str
    org_id: str
    report_run_id: Optional[str] = None


def _secret() -> str:
    secret = os.environ.get("PRINT_TOKEN_SECRET") or os.environ.get("SUPABASE_JWT_SECRET")
    if not secret:
        raise ApiError("INTERNAL_ERROR", status=503, message="PRINT_TOKEN_SECRET not set")
    return secret


def sign_print_token(
    job_id: str,
    organization_id: str,
    report_run_id: Optional[str] = None,
    ttl_seconds: int = PRINT_TOKEN_TTL_SECONDS,
    now: Optional[float] = None,
) -> str:
    issued = int(now if now is not None else time.time())
    payload = {
        "job_id": job_id,
        "org_id": organization_id,
        "purpose": PRINT_TOKEN_PURPOSE,
        "iat": issued,
        "exp": issued + ttl_seconds,
    }
    if report_run_id:
        payload["report_run_id"] = report_run_id
    return jwt.encode(payload, _secret(), algorithm="HS256")


def verify_print_token(token: str, job_id: Optional[str] = None) -> PrintClaims:
    """Decode and check a print token; 401 when invalid, expired or for another job."""
    try:
        payload = jwt.decode(
            token,
            _secret(),
            algorithms=["HS256"],
            options={"require": ["job_id", "org_id", "exp"]},
        )
    except jwt.InvalidTokenError as e:
        raise ApiError("UNAUTHORIZED", message=f"Invalid print token: {e}")
    if payload.get("purpose") != PRINT_TOKEN_PURPOSE:
        raise ApiError("UNAUTHORIZED", message="Invalid print token: wrong purpose")
    claims = PrintClaims(
        job_id=payload["job_id"],
        org_id=payload["org_id"],
        report_run_id=payload.get("report_run_id"),
    )
    if job_id is not None and claims.job_id != job_id:
        raise ApiError("UNAUTHORIZED", message="Print token does not match job")
    return claims
