"""
Job reports (remote-rendered PDF + server-rendered print page) and the audit ledger export.
"""
from __future__ import annotations

import base64
import csv
import io
import logging
import os
import uuid
from datetime import datetime, timedelta
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import HTMLResponse, JSONResponse, Response
from pydantic import BaseModel
from sqlalchemy.orm import Session

from audit import ledger_row_dict, load_ledger, record_event, verify_chain
from auth import AuthContext, require_org_context
from cache.disk_cache import get_cached_report, set_cached_report
from db.models import ReportRun, ReportRunStatus
from db.session import get_db
from entitlements import require_feature
from errors import ApiError
from posture import TIME_RANGES, time_window
from print_tokens import sign_print_token, verify_print_token
from rate_limiter import EXPORT_RATE_LIMIT, PDF_RATE_LIMIT, rate_limit
from reporting.canonical import sha256_hex
from reporting.job_report import build_job_report, job_report_hash, render_job_report_html
from reporting.remote_renderer import RenderError, render_pdf_from_url
from s3_client import job_report_key, upload_bytes

_LOG = logging.getLogger("uvicorn.error")

router = APIRouter(tags=["reports"])

IDEMPOTENCY_WINDOW = timedelta(seconds=30)
EXPORT_FORMATS = ("csv", "json")
EXPORT_COLUMNS = (
    "id", "created_at", "event_name", "title", "category", "outcome", "severity",
    "actor_id", "target_type", "target_id", "hash", "prev_hash",
)


class GenerateReportRequest(BaseModel):
    status: str = ReportRunStatus.draft.value


def _print_origin(request: Request) -> str:
    configured = os.environ.get("REPORT_PRINT_BASE_URL")
    if configured:
        return configured.rstrip("/")
    proto = request.headers.get("x-forwarded-proto") or request.url.scheme
    host = request.headers.get("host") or request.url.netloc
    return f"{proto}://{host}"


def _recent_run(db: Session, ctx: AuthContext, job_id: str, data_hash: str, status: str) -> Optional[ReportRun]:
    since = datetime.utcnow() - IDEMPOTENCY_WINDOW
    return (
        db.query(ReportRun)
        .filter(
            ReportRun.job_id == job_id,
            ReportRun.organization_id == ctx.organization_id,
            ReportRun.data_hash == data_hash,
            ReportRun.status == status,
            ReportRun.generated_by == ctx.user_id,
            ReportRun.generated_at >= since,
        )
        .order_by(ReportRun.generated_at.desc())
        .first()
    )


@router.post("/api/reports/generate/{job_id}")
def generate_job_report(
    job_id: str,
    request: Request,
    body: Optional[GenerateReportRequest] = None,
    ctx: AuthContext = Depends(require_org_context),
    _entitled=Depends(require_feature("evidence_verification")),
    _limit=Depends(rate_limit(PDF_RATE_LIMIT)),
    db: Session = Depends(get_db),
):
    """Freeze the job payload into a report run and capture its print page as PDF."""
    status = (body or GenerateReportRequest()).status
    payload = build_job_report(db, ctx.organization_id, job_id)
    data_hash = job_report_hash(payload)

    run = _recent_run(db, ctx, job_id, data_hash, status)
    if run is not None:
        _LOG.info("report_run_reused run_id=%s job_id=%s", run.id, job_id)
    else:
        run = ReportRun(
            id=str(uuid.uuid4()),
            organization_id=ctx.organization_id,
            job_id=job_id,
            packet_type="job_report",
            status=status,
            generated_by=ctx.user_id,
            data_hash=data_hash,
            generated_at=datetime.utcnow(),
        )
        db.add(run)
        db.commit()
        _LOG.info("report_run_created run_id=%s job_id=%s hash=%s status=%s", run.id, job_id, data_hash[:12], status)

    pdf = get_cached_report(run.id, data_hash)
    if pdf is None:
        token = sign_print_token(job_id, ctx.organization_id, run.id)
        print_url = (
            f"{_print_origin(request)}/reports/{job_id}/print"
            f"?token={quote(token, safe='')}&report_run_id={run.id}"
        )
        try:
            pdf = render_pdf_from_url(print_url, job_id=job_id, organization_id=ctx.organization_id)
        except RenderError as e:
            run.status = ReportRunStatus.failed.value
            run.error = f"{e.stage}: {e}"
            db.commit()
            _LOG.error("job_report_render_failed run_id=%s job_id=%s stage=%s error=%s", run.id, job_id, e.stage, e)
            raise
        set_cached_report(run.id, data_hash, pdf)

    pdf_hash = sha256_hex(pdf)
    storage_path = job_report_key(ctx.organization_id, job_id, run.id, pdf_hash)
    if upload_bytes(storage_path, pdf):
        run.pdf_path = storage_path
    run.pdf_hash = pdf_hash
    run.completed_at = datetime.utcnow()
    db.commit()

    record_event(
        db,
        organization_id=ctx.organization_id,
        actor_id=ctx.user_id,
        event_name="report.generated",
        target_type="report_run",
        target_id=run.id,
        metadata={"job_id": job_id, "data_hash": data_hash, "pdf_hash": pdf_hash},
    )
    return JSONResponse(
        {
            "ok": True,
            "data": {
                "report_run_id": run.id,
                "storage_path": run.pdf_path,
                "pdf_base64": base64.b64encode(pdf).decode("ascii"),
                "data_hash": data_hash,
                "pdf_hash": pdf_hash,
                "generated_at": run.generated_at.isoformat() if run.generated_at else None,
                "status": run.status,
            },
        },
        headers={"Cache-Control": "no-store, no-cache, must-revalidate, proxy-revalidate"},
    )


@router.get("/reports/{job_id}/print", response_class=HTMLResponse)
def print_job_report(
    job_id: str,
    token: str = Query(...),
    report_run_id: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    """Print page for the remote renderer; authorized by the signed token, not a session."""
    claims = verify_print_token(token, job_id)
    payload = build_job_report(db, claims.org_id, job_id)
    data_hash = None
    if report_run_id:
        run = (
            db.query(ReportRun)
            .filter(ReportRun.id == report_run_id, ReportRun.organization_id == claims.org_id)
            .first()
        )
        if run is None:
            raise ApiError("NOT_FOUND", message="Report run not found")
        data_hash = run.data_hash
    return HTMLResponse(render_job_report_html(payload, report_run_id=report_run_id, data_hash=data_hash))


def _csv_body(rows: list[dict]) -> str:
    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=list(EXPORT_COLUMNS), extrasaction="ignore")
    writer.writeheader()
    for row in rows:
        writer.writerow(row)
    return buf.getvalue()


@router.get("/api/audit/export")
def export_audit_ledger(
    format: str = Query("csv"),
    category: Optional[str] = Query(None),
    outcome: Optional[str] = Query(None),
    severity: Optional[str] = Query(None),
    time_range: str = Query("all"),
    ctx: AuthContext = Depends(require_org_context),
    _limit=Depends(rate_limit(EXPORT_RATE_LIMIT)),
    db: Session = Depends(get_db),
):
    """Filtered ledger export with the chain verification result for the whole ledger."""
    if format not in EXPORT_FORMATS:
        raise ApiError("INVALID_FORMAT", message="format must be csv or json")
    if time_range not in TIME_RANGES:
        raise ApiError("VALIDATION_ERROR", message=f"time_range must be one of {', '.join(TIME_RANGES)}")

    ledger = load_ledger(db, ctx.organization_id)
    integrity = verify_chain(ledger)
    since, _ = time_window(time_range)
    rows = [
        ledger_row_dict(r) for r in ledger
        if (r.created_at is None or r.created_at >= since)
        and (category is None or r.category == category)
        and (outcome is None or r.outcome == outcome)
        and (severity is None or r.severity == severity)
    ]
    _LOG.info(
        "audit_export org_id=%s format=%s rows=%s chain=%s",
        ctx.organization_id, format, len(rows), integrity["status"],
    )
    stamp = f"{datetime.utcnow():%Y-%m-%d}"
    if format == "json":
        return JSONResponse(
            {
                "ok": True,
                "data": {
                    "organization_id": ctx.organization_id,
                    "exported_at": datetime.utcnow().isoformat(),
                    "filters": {"category": category, "outcome": outcome, "severity": severity, "time_range": time_range},
                    "ledger_integrity": integrity,
                    "count": len(rows),
                    "events": rows,
                },
            },
            headers={"Content-Disposition": f'attachment; filename="audit-ledger-{stamp}.json"'},
        )
    return Response(
        content=_csv_body(rows),
        media_type="text/csv",
        headers={
            "Content-Disposition": f'attachment; filename="audit-ledger-{stamp}.csv"',
            "X-Ledger-Integrity": integrity["status"],
        },
    )
