"""
Error codes, registry metadata, and the JSON error envelope.

Every failed API response has the shape
  {"ok": false, "message", "code", "error_id", "severity", "category",
   "classification", "retryable", "retry_strategy", "error_hint", "support_url", ...}
install_error_handlers(app) wires HTTPException / ApiError / RenderError / anything else into it.
"""
from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from reporting.remote_renderer import RenderError

_LOG = logging.getLogger("uvicorn.error")

SUPPORT_BASE_PATH = "/support/runbooks"

# code -> (default message, status, retryable)
API_ERROR_CODES: dict[str, tuple[str, int, bool]] = {
    "UNAUTHORIZED": ("Unauthorized", 401, False),
    "AUTH_INVALID_TOKEN": ("Invalid or expired session", 401, False),
    "FORBIDDEN": ("Forbidden", 403, False),
    "AUTH_ROLE_FORBIDDEN": ("Your role does not allow this action", 403, False),
    "NOT_FOUND": ("Resource not found", 404, False),
    "VALIDATION_ERROR": ("Invalid request", 400, False),
    "MISSING_REQUIRED_FIELD": ("A required field is missing", 400, False),
    "INVALID_FORMAT": ("A field has an invalid format", 400, False),
    "RATE_LIMIT_EXCEEDED": ("Rate limit exceeded", 429, True),
    "QUERY_ERROR": ("Database query failed", 500, True),
    "RLS_RECURSION_ERROR": ("Database policy error", 500, False),
    "CONNECTION_ERROR": ("Database connection failed", 503, True),
    "EXPORT_ERROR": ("Export failed", 500, True),
    "PDF_GENERATION_ERROR": ("PDF generation failed", 500, True),
    "BROWSERLESS_RATE_LIMITED": ("PDF renderer is busy", 429, True),
    "CONTENT_NOT_LOADED": ("Report content did not load", 502, True),
    "AUTH_REDIRECT": ("Report page required authentication", 500, False),
    "RENDERER_NOT_CONFIGURED": ("PDF renderer is not configured", 503, False),
    "ENTITLEMENTS_JOB_LIMIT_REACHED": ("Monthly job limit reached", 403, False),
    "ENTITLEMENTS_PLAN_PAST_DUE": ("Subscription is past due", 403, False),
    "ENTITLEMENTS_PLAN_INACTIVE": ("Subscription is not active", 403, False),
    "ENTITLEMENTS_FEATURE_NOT_ALLOWED": ("Your plan does not include this feature", 403, False),
    "PAGINATION_CURSOR_NOT_SUPPORTED": ("Cursor pagination is not supported here", 400, False),
    "WEBHOOK_SIGNATURE_INVALID": ("Invalid webhook signature", 400, False),
    "INTERNAL_ERROR": ("Internal server error", 500, True),
}

CATEGORY_AUTH = "auth"
CATEGORY_VALIDATION = "validation"
CATEGORY_ENTITLEMENTS = "entitlements"
CATEGORY_INTERNAL = "internal"
CATEGORY_PAGINATION = "pagination"
CATEGORY_RATE_LIMIT = "rate_limit"
CATEGORY_EXPORT = "export"

USER_ACTION_REQUIRED = "user_action_required"
DEVELOPER_BUG = "developer_bug"
SYSTEM_TRANSIENT = "system_transient"


def _meta(hint: Optional[str], anchor: str, category: str, classification: str) -> dict[str, Any]:
    return {
        "hint": hint,
        "support_url": f"{SUPPORT_BASE_PATH}/{anchor}",
        "category": category,
        "classification": classification,
    }


ERROR_CODE_REGISTRY: dict[str, dict[str, Any]] = {
    "UNAUTHORIZED": _meta("Log in again and retry", "auth#unauthorized", CATEGORY_AUTH, USER_ACTION_REQUIRED),
    "AUTH_INVALID_TOKEN": _meta("Log in again and retry", "auth#invalid-token", CATEGORY_AUTH, USER_ACTION_REQUIRED),
    "AUTH_ROLE_FORBIDDEN": _meta(
        "This action requires a higher role. Contact your organization owner",
        "auth#role-forbidden", CATEGORY_AUTH, USER_ACTION_REQUIRED,
    ),
    "FORBIDDEN": _meta(
        "You do not have permission to perform this action",
        "auth#forbidden", CATEGORY_AUTH, USER_ACTION_REQUIRED,
    ),
    "VALIDATION_ERROR": _meta(
        "Check request parameters and retry", "validation#validation-error", CATEGORY_VALIDATION, DEVELOPER_BUG,
    ),
    "MISSING_REQUIRED_FIELD": _meta(
        "Provide all required fields and retry", "validation#missing-field", CATEGORY_VALIDATION, DEVELOPER_BUG,
    ),
    "INVALID_FORMAT": _meta(
        "Check field format and allowed values", "validation#invalid-format", CATEGORY_VALIDATION, DEVELOPER_BUG,
    ),
    "QUERY_ERROR": _meta(
        "Retry the request. If the problem persists, contact support.",
        "database#query-error", CATEGORY_INTERNAL, SYSTEM_TRANSIENT,
    ),
    "RLS_RECURSION_ERROR": _meta(
        "Database policy configuration issue. Contact support with error ID.",
        "database#rls-recursion", CATEGORY_INTERNAL, DEVELOPER_BUG,
    ),
    "CONNECTION_ERROR": _meta(
        "Database connection failed. Retry the request.", "database#connection", CATEGORY_INTERNAL, SYSTEM_TRANSIENT,
    ),
    "RATE_LIMIT_EXCEEDED": _meta(
        "Wait for the rate limit to reset or upgrade your plan.",
        "rate-limits#exceeded", CATEGORY_RATE_LIMIT, USER_ACTION_REQUIRED,
    ),
    "EXPORT_ERROR": _meta(
        "Retry the export. If the problem persists, contact support.",
        "export#export-error", CATEGORY_EXPORT, SYSTEM_TRANSIENT,
    ),
    "PDF_GENERATION_ERROR": _meta(
        "Retry generating the PDF. If the problem persists, contact support.",
        "export#pdf-generation", CATEGORY_EXPORT, SYSTEM_TRANSIENT,
    ),
    "BROWSERLESS_RATE_LIMITED": _meta(
        "The PDF renderer is busy. Retry in a few seconds.",
        "export#renderer-rate-limited", CATEGORY_EXPORT, SYSTEM_TRANSIENT,
    ),
    "CONTENT_NOT_LOADED": _meta(
        "The report page did not finish loading. Retry the export.",
        "export#content-not-loaded", CATEGORY_EXPORT, SYSTEM_TRANSIENT,
    ),
    "AUTH_REDIRECT": _meta(
        "The renderer was sent to a login page. Check REPORT_BASE_URL and PRINT_TOKEN_SECRET.",
        "export#auth-redirect", CATEGORY_EXPORT, DEVELOPER_BUG,
    ),
    "RENDERER_NOT_CONFIGURED": _meta(
        "Set BROWSERLESS_TOKEN on the backend.", "export#renderer-config", CATEGORY_EXPORT, DEVELOPER_BUG,
    ),
    "NOT_FOUND": _meta(None, "resources#not-found", CATEGORY_VALIDATION, DEVELOPER_BUG),
    "ENTITLEMENTS_JOB_LIMIT_REACHED": _meta(
        "Upgrade plan or wait for monthly limit reset",
        "entitlements#job-limit-reached", CATEGORY_ENTITLEMENTS, USER_ACTION_REQUIRED,
    ),
    "ENTITLEMENTS_PLAN_PAST_DUE": _meta(
        "Update payment method in billing settings",
        "entitlements#plan-past-due", CATEGORY_ENTITLEMENTS, USER_ACTION_REQUIRED,
    ),
    "ENTITLEMENTS_PLAN_INACTIVE": _meta(
        "Reactivate subscription or upgrade plan",
        "entitlements#plan-inactive", CATEGORY_ENTITLEMENTS, USER_ACTION_REQUIRED,
    ),
    "ENTITLEMENTS_FEATURE_NOT_ALLOWED": _meta(
        "Upgrade plan to access this feature",
        "entitlements#feature-not-allowed", CATEGORY_ENTITLEMENTS, USER_ACTION_REQUIRED,
    ),
    "PAGINATION_CURSOR_NOT_SUPPORTED": _meta(
        "Remove cursor param or switch to page-based pagination",
        "pagination#cursor-not-supported", CATEGORY_PAGINATION, DEVELOPER_BUG,
    ),
    "WEBHOOK_SIGNATURE_INVALID": _meta(
        "Check STRIPE_WEBHOOK_SECRET matches the endpoint secret.",
        "billing#webhook-signature", CATEGORY_VALIDATION, DEVELOPER_BUG,
    ),
    "INTERNAL_ERROR": _meta(
        "Retry the request. If the problem persists, contact support with the error ID.",
        "general#internal-error", CATEGORY_INTERNAL, SYSTEM_TRANSIENT,
    ),
}

_STATUS_TO_CODE = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMIT_EXCEEDED",
}


class ApiError(HTTPException):
    """HTTPException carrying a registry code, machine-readable details and retry metadata."""

    def __init__(
        self,
        code: str,
        status: Optional[int] = None,
        message: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        retry_after_seconds: Optional[int] = None,
        headers: Optional[dict[str, str]] = None,
    ):
        default_message, default_status, _ = API_ERROR_CODES.get(code, API_ERROR_CODES["INTERNAL_ERROR"])
        self.code = code
        self.message = message or default_message
        self.details = details
        self.retry_after_seconds = retry_after_seconds
        hdrs = dict(headers or {})
        if retry_after_seconds is not None:
            hdrs.setdefault("Retry-After", str(retry_after_seconds))
        super().__init__(status_code=status or default_status, detail=self.message, headers=hdrs or None)


def is_retryable(code: str) -> bool:
    entry = API_ERROR_CODES.get(code)
    return bool(entry and entry[2])


def retry_strategy(status: int, code: str, retry_after: Optional[int] = None) -> str:
    if retry_after is not None:
        return "after_retry_after"
    if status >= 500:
        return "exponential_backoff"
    if is_retryable(code):
        return "immediate"
    return "none"


def error_severity(status: int) -> str:
    return "error" if status >= 500 else "warn"


def code_for_status(status: int) -> str:
    if status >= 500:
        return "INTERNAL_ERROR"
    return _STATUS_TO_CODE.get(status, "VALIDATION_ERROR")


def build_error_response(
    *,
    message: str,
    code: str,
    status: int,
    request_id: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
    retry_after_seconds: Optional[int] = None,
    error_id: Optional[str] = None,
) -> dict[str, Any]:
    meta = ERROR_CODE_REGISTRY.get(code) or ERROR_CODE_REGISTRY["INTERNAL_ERROR"]
    body: dict[str, Any] = {
        "ok": False,
        "message": message,
        "code": code,
        "error_id": error_id or str(uuid.uuid4()),
        "request_id": request_id,
        "severity": error_severity(status),
        "category": meta["category"],
        "classification": meta["classification"],
        "retryable": is_retryable(code),
        "retry_strategy": retry_strategy(status, code, retry_after_seconds),
        "error_hint": meta["hint"],
        "support_url": meta["support_url"],
    }
    if details:
        body["details"] = details
    if retry_after_seconds is not None:
        body["retry_after_seconds"] = retry_after_seconds
    return body


def normalize_error(exc: BaseException) -> ApiError:
    """Coerce any exception into an ApiError; unknown errors become INTERNAL_ERROR."""
    if isinstance(exc, ApiError):
        return exc
    if isinstance(exc, RenderError):
        return ApiError(
            exc.code if exc.code in API_ERROR_CODES else "PDF_GENERATION_ERROR",
            message=str(exc),
            details={"stage": exc.stage, **exc.details},
        )
    if isinstance(exc, StarletteHTTPException):
        code = code_for_status(exc.status_code)
        message = exc.detail if isinstance(exc.detail, str) else API_ERROR_CODES[code][0]
        retry_after = None
        if exc.headers and "Retry-After" in exc.headers:
            try:
                retry_after = int(exc.headers["Retry-After"])
            except ValueError:
                retry_after = None
        details = exc.detail if isinstance(exc.detail, dict) else None
        return ApiError(
            code,
            status=exc.status_code,
            message=message,
            details=details,
            retry_after_seconds=retry_after,
            headers=exc.headers,
        )
    return ApiError("INTERNAL_ERROR")


def log_error_for_support(
    status: int,
    code: str,
    error_id: str,
    *,
    request_id: Optional[str] = None,
    organization_id: Optional[str] = None,
    message: str = "",
    internal_message: Optional[str] = None,
    route: Optional[str] = None,
) -> None:
    meta = ERROR_CODE_REGISTRY.get(code) or ERROR_CODE_REGISTRY["INTERNAL_ERROR"]
    entry: dict[str, Any] = {
        "level": error_severity(status),
        "ts": datetime.now(timezone.utc).isoformat(),
        "status": status,
        "code": code,
        "error_id": error_id,
        "request_id": request_id,
        "organization_id": organization_id,
        "message": message,
        "internal_message": internal_message,
        "category": meta["category"],
        "classification": meta["classification"],
        "route": route,
    }
    if status >= 500:
        entry["error_budget"] = {"counts_against_slo": True, "route": route, "status": status}
        _LOG.error("support_error %s", json.dumps(entry, default=str))
    else:
        _LOG.warning("support_error %s", json.dumps(entry, default=str))


def _error_json(request: Request, err: ApiError, internal_message: Optional[str] = None) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None)
    organization_id = getattr(request.state, "organization_id", None)
    body = build_error_response(
        message=err.message,
        code=err.code,
        status=err.status_code,
        request_id=request_id,
        details=err.details,
        retry_after_seconds=err.retry_after_seconds,
    )
    log_error_for_support(
        err.status_code,
        err.code,
        body["error_id"],
        request_id=request_id,
        organization_id=organization_id,
        message=err.message,
        internal_message=internal_message,
        route=request.url.path,
    )
    headers = dict(err.headers or {})
    headers["X-Error-ID"] = body["error_id"]
    return JSONResponse(status_code=err.status_code, content=body, headers=headers)


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(StarletteHTTPException)
    async def _http_exception(request: Request, exc: StarletteHTTPException):
        return _error_json(request, normalize_error(exc))

    @app.exception_handler(RequestValidationError)
    async def _validation_exception(request: Request, exc: RequestValidationError):
        err = ApiError("VALIDATION_ERROR", details={"errors": jsonable_encoder(exc.errors())})
        return _error_json(request, err)

    @app.exception_handler(RenderError)
    async def _render_exception(request: Request, exc: RenderError):
        return _error_json(request, normalize_error(exc), internal_message=f"stage={exc.stage}")

    @app.exception_handler(Exception)
    async def _unhandled_exception(request: Request, exc: Exception):
        return _error_json(request, normalize_error(exc), internal_message=repr(exc))
