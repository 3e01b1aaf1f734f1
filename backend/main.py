from __future__ import annotations

import logging
import os
import time
import uuid
from pathlib import Path

from dotenv import load_dotenv

# Load .env from backend directory so SUPABASE_JWT_SECRET, STRIPE_* etc. are available
load_dotenv(Path(__file__).resolve().parent / ".env")

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from db.session import SessionLocal
from demo_data import seed_demo_organization
from errors import ApiError, install_error_handlers
from reporting.remote_renderer import RenderError, get_renderer_config
from routes.api import router as api_router
from routes.executive import router as executive_router
from routes.reports import router as reports_router
from routes.webhooks import router as webhooks_router

_LOG = logging.getLogger("uvicorn.error")

# Version for /health and startup log (Render sets RENDER_GIT_COMMIT)
VERSION = (os.environ.get("RENDER_GIT_COMMIT") or os.environ.get("GIT_SHA") or "").strip() or "unknown"

app = FastAPI(title="RiskMate Backend", version="0.1.0")

# CORS: use ALLOWED_ORIGINS env (comma-separated) if set, else default
_origins_env = os.environ.get("ALLOWED_ORIGINS", "").strip()
if _origins_env:
    ALLOWED_ORIGINS = [o.strip() for o in _origins_env.split(",") if o.strip()]
else:
    ALLOWED_ORIGINS = [
        "https://riskmate.app",
        "https://www.riskmate.app",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=[
        "X-Request-Id",
        "X-Error-ID",
        "X-PDF-Hash",
        "X-Report-Run-Id",
        "X-Executive-Brief-ReportId",
        "X-Data-Window-Start",
        "X-Data-Window-End",
        "Retry-After",
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-RateLimit-Reset",
    ],
)


class RequestLogMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())[:8]
        request.state.request_id = request_id
        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000
        _LOG.info(
            "request_id=%s method=%s path=%s status=%s duration_ms=%.0f",
            request_id,
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
        )
        response.headers["X-Request-Id"] = request_id
        return response


app.add_middleware(RequestLogMiddleware)
install_error_handlers(app)
app.include_router(api_router)
app.include_router(executive_router)
app.include_router(reports_router)
app.include_router(webhooks_router)


@app.on_event("startup")
def startup_log() -> None:
    _LOG.info(
        "Backend starting version=%s stripe_configured=%s s3_bucket_configured=%s",
        VERSION,
        bool(os.environ.get("STRIPE_SECRET_KEY")),
        bool(os.environ.get("S3_BUCKET")),
    )
    if not os.environ.get("SUPABASE_JWT_SECRET"):
        _LOG.warning("SUPABASE_JWT_SECRET is not set. Authenticated endpoints will return 503.")
    seed_demo_if_enabled()


def seed_demo_if_enabled(session_factory=SessionLocal) -> bool:
    """Seed the demo organization when SEED_DEMO_ORG is set (demo and preview deployments)."""
    if (os.environ.get("SEED_DEMO_ORG") or "").strip().lower() not in ("1", "true", "yes"):
        return False
    db = session_factory()
    try:
        org = seed_demo_organization(db)
        _LOG.info("demo_org_seeded org_id=%s", org.id)
    finally:
        db.close()
    return True


@app.get("/health")
def health():
    return {"status": "ok", "version": VERSION}


@app.get("/health/pdf")
def health_pdf():
    """Configuration check for the remote PDF renderer; does not open a browser session."""
    try:
        cfg = get_renderer_config()
    except RenderError as e:
        raise ApiError("RENDERER_NOT_CONFIGURED", message=str(e), details={"stage": e.stage})
    return {"status": "ok", "pdf_runtime": "remote", "renderer_host": cfg.base_url}


def get_app():
    """
    Convenience accessor for ASGI servers.
    """
    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="127.0.0.1",
        port=int(os.environ.get("PORT", "8010")),
        reload=True,
    )
