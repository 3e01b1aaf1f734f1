"""
Executive API: risk posture JSON, the board-ready brief PDF, and public report verification.
"""
from __future__ import annotations

import logging
import os
import time
import uuid
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response
from pydantic import BaseModel, field_validator
from sqlalchemy.orm import Session

from audit import record_event
from auth import AuthContext, require_roles
from db.models import Organization, ReportRun, ReportRunStatus, Role
from db.session import get_db
from errors import ApiError
from posture import DEFAULT_TIME_RANGE, TIME_RANGES, compute_risk_posture
from rate_limiter import PDF_RATE_LIMIT, rate_limit
from reporting.executive_brief import build_executive_brief_pdf, short_report_id
from s3_client import executive_brief_key, upload_bytes

_LOG = logging.getLogger("uvicorn.error")

router = APIRouter(tags=["executive"])

EXECUTIVE_ROLES = (Role.owner, Role.admin, Role.executive)
BUILD_SHA = os.environ.get("GIT_SHA") or os.environ.get("VERCEL_GIT_COMMIT_SHA") or ""
PUBLIC_BASE_URL = os.environ.get("RISKMATE_PUBLIC_URL") or None


class BriefRequest(BaseModel):
    time_range: str = DEFAULT_TIME_RANGE

    @field_validator("time_range")
    @classmethod
    def _known_range(cls, v: str) -> str:
        if v not in TIME_RANGES:
            raise ValueError(f"time_range must be one of {', '.join(TIME_RANGES)}")
        return v


@router.get("/api/executive/risk-posture")
def risk_posture(
    time_range: str = Query(DEFAULT_TIME_RANGE),
    ctx: AuthContext = Depends(require_roles(*EXECUTIVE_ROLES)),
    db: Session = Depends(get_db),
):
    if time_range not in TIME_RANGES:
        raise ApiError("VALIDATION_ERROR", message=f"time_range must be one of {', '.join(TIME_RANGES)}")
    posture = compute_risk_posture(db, ctx.organization_id, time_range)
    return {"ok": True, "data": posture.model_dump(mode="json")}


@router.post("/api/executive/brief/pdf")
def executive_brief_pdf(
    body: Optional[BriefRequest] = None,
    ctx: AuthContext = Depends(require_roles(*EXECUTIVE_ROLES)),
    _limit=Depends(rate_limit(PDF_RATE_LIMIT)),
    db: Session = Depends(get_db),
):
    """Render the 2-page executive brief and record it as a report run."""
    started = time.perf_counter()
    time_range = (body or BriefRequest()).time_range
    org = db.query(Organization).filter(Organization.id == ctx.organization_id).first()
    if org is None:
        raise ApiError("NOT_FOUND", message="Organization not found")

    posture = compute_risk_posture(db, ctx.organization_id, time_range)
    generated_at = datetime.utcnow()
    run = ReportRun(
        id=str(uuid.uuid4()),
        organization_id=ctx.organization_id,
        packet_type="executive_brief",
        status=ReportRunStatus.generating.value,
        generated_by=ctx.user_id,
        generated_at=generated_at,
        metadata_={"time_range": time_range},
    )
    db.add(run)
    db.commit()

    try:
        result = build_executive_brief_pdf(
            posture,
            org.name,
            time_range,
            run.id,
            generated_at=generated_at,
            build_sha=BUILD_SHA,
            base_url=PUBLIC_BASE_URL,
        )
    except Exception as e:
        run.status = ReportRunStatus.failed.value
        run.error = str(e)
        db.commit()
        _LOG.error("executive_brief_failed org_id=%s run_id=%s error=%s", ctx.organization_id, run.id, e)
        raise ApiError("PDF_GENERATION_ERROR", details={"report_run_id": run.id})

    key = executive_brief_key(ctx.organization_id, run.id, result.pdf_hash)
    stored = upload_bytes(key, result.pdf_bytes)
    latency_ms = int((time.perf_counter() - started) * 1000)
    run.status = ReportRunStatus.ready_for_signatures.value
    run.data_hash = result.metadata_hash
    run.pdf_hash = result.pdf_hash
    run.pdf_path = key if stored else None
    run.completed_at = datetime.utcnow()
    run.metadata_ = {
        "time_range": time_range,
        "time_window_start": result.window_start.isoformat(),
        "time_window_end": result.window_end.isoformat(),
        "api_latency_ms": latency_ms,
        "pdf_size_bytes": len(result.pdf_bytes),
        "pdf_hash": result.pdf_hash,
        "page_count": result.page_count,
    }
    db.commit()

    record_event(
        db,
        organization_id=ctx.organization_id,
        actor_id=ctx.user_id,
        event_name="executive.brief_generated",
        target_type="report_run",
        target_id=run.id,
        metadata={"time_range": time_range, "pdf_hash": result.pdf_hash, "report_id": short_report_id(run.id)},
    )
    _LOG.info(
        "executive_brief org_id=%s run_id=%s pages=%s bytes=%s latency_ms=%s",
        ctx.organization_id, run.id, result.page_count, len(result.pdf_bytes), latency_ms,
    )
    filename = f"executive-brief-{time_range}-{generated_at:%Y-%m-%d}.pdf"
    return Response(
        content=result.pdf_bytes,
        media_type="application/pdf",
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "Cache-Control": "no-store",
            "X-PDF-Hash": result.pdf_hash,
            "X-Report-Run-Id": run.id,
            "X-Executive-Brief-ReportId": short_report_id(run.id),
            "X-Data-Window-Start": f"{result.window_start:%Y-%m-%d}",
            "X-Data-Window-End": f"{result.window_end:%Y-%m-%d}",
        },
    )


def _find_report_run(db: Session, report_id: str) -> Optional[ReportRun]:
    value = report_id.strip()
    if value.upper().startswith("RM-"):
        prefix = value[3:].lower()
        if len(prefix) < 8 or not all(ch in "0123456789abcdef" for ch in prefix[:8]):
            return None
        matches = db.query(ReportRun).filter(ReportRun.id.like(f"{prefix[:8]}%")).limit(2).all()
        # an ambiguous short id verifies nothing
        return matches[0] if len(matches) == 1 else None
    return db.query(ReportRun).filter(ReportRun.id == value).first()


@router.get("/api/verify/{report_id}")
def verify_report(report_id: str, db: Session = Depends(get_db)):
    """Public lookup behind the brief's QR code: RM-xxxxxxxx or a full report run id."""
    run = _find_report_run(db, report_id)
    # only completed runs with a stored PDF hash are verifiable
    if run is None or run.status == ReportRunStatus.failed.value or not run.pdf_hash:
        raise ApiError("NOT_FOUND", message="Report not found")
    org = db.query(Organization).filter(Organization.id == run.organization_id).first()
    meta = run.metadata_ or {}
    return {
        "ok": True,
        "data": {
            "report_id": run.id,
            "short_id": f"RM-{short_report_id(run.id)}",
            "packet_type": run.packet_type,
            "status": run.status,
            "organization_id": run.organization_id,
            "organization_name": org.name if org else None,
            "time_range": meta.get("time_range"),
            "window_start": meta.get("time_window_start"),
            "window_end": meta.get("time_window_end"),
            "generated_at": run.generated_at.isoformat() if run.generated_at else None,
            "metadata_hash": run.data_hash,
            "pdf_hash": run.pdf_hash,
            "verified_at": datetime.utcnow().isoformat(),
        },
    }
