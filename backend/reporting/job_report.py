"""
Job report: the frozen payload a report run is hashed from, and the server-rendered
print page the remote renderer captures. Strings go through sanitize_text before
they reach the page; every interpolated value is HTML-escaped.
"""
from __future__ import annotations

import html
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from sqlalchemy.orm import Session

from db.models import AuditLog, Job, JobRiskScore, JobSignoff, MitigationItem, Organization, User
from errors import ApiError

from .canonical import canonical_hash
from .sanitize import RISK_HIGH, RISK_LOW, RISK_MEDIUM, normalize_severity, sanitize_text

_TEMPLATE_DIR = Path(__file__).resolve().parent / "templates"
_JOB_REPORT_HTML = (_TEMPLATE_DIR / "job_report.html").read_text(encoding="utf-8")

AUDIT_SCAN_LIMIT = 250


def _escape(s: Any) -> str:
    return html.escape(sanitize_text(s), quote=True)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _job_dict(job: Job) -> dict[str, Any]:
    return {
        "id": job.id,
        "client_name": job.client_name,
        "job_type": job.job_type,
        "location": job.location,
        "description": job.description,
        "status": job.status,
        "risk_score": job.risk_score,
        "risk_level": job.risk_level,
        "review_flag": bool(job.review_flag),
        "start_date": _iso(job.start_date),
        "end_date": _iso(job.end_date),
        "created_at": _iso(job.created_at),
    }


def build_job_report(db: Session, organization_id: str, job_id: str) -> dict[str, Any]:
    """Collect job, risk score, mitigations, signoffs and the job's audit trail."""
    job = (
        db.query(Job)
        .filter(Job.id == job_id, Job.organization_id == organization_id, Job.deleted_at.is_(None))
        .first()
    )
    if job is None:
        raise ApiError("NOT_FOUND", message="Job not found")

    risk = (
        db.query(JobRiskScore)
        .filter(JobRiskScore.job_id == job_id)
        .order_by(JobRiskScore.created_at.desc())
        .first()
    )
    mitigations = (
        db.query(MitigationItem)
        .filter(MitigationItem.job_id == job_id)
        .order_by(MitigationItem.created_at.asc(), MitigationItem.id.asc())
        .all()
    )
    signoffs = (
        db.query(JobSignoff)
        .filter(JobSignoff.job_id == job_id, JobSignoff.organization_id == organization_id)
        .order_by(JobSignoff.created_at.asc(), JobSignoff.id.asc())
        .all()
    )
    logs = (
        db.query(AuditLog)
        .filter(AuditLog.organization_id == organization_id)
        .order_by(AuditLog.seq.desc())
        .limit(AUDIT_SCAN_LIMIT)
        .all()
    )
    logs = [
        log for log in logs
        if log.target_id == job_id or (log.metadata_ or {}).get("job_id") == job_id
    ]
    actor_ids = {log.actor_id for log in logs if log.actor_id}
    users = {u.id: u for u in db.query(User).filter(User.id.in_(actor_ids)).all()} if actor_ids else {}
    org = db.query(Organization).filter(Organization.id == organization_id).first()

    risk_score = None
    if risk is not None:
        risk_score = {
            "overall_score": risk.overall_score,
            "risk_level": risk.risk_level,
            "created_at": _iso(risk.created_at),
        }
    return {
        "job": _job_dict(job),
        "risk_score": risk_score,
        "risk_factors": list((risk.factors if risk is not None else None) or []),
        "mitigations": [
            {
                "id": m.id,
                "title": m.title,
                "description": m.description,
                "done": bool(m.done),
                "completed_at": _iso(m.completed_at),
            }
            for m in mitigations
        ],
        "signoffs": [
            {
                "id": s.id,
                "signoff_type": s.signoff_type,
                "status": s.status,
                "signer_id": s.signer_id,
                "signed_at": _iso(s.signed_at),
            }
            for s in signoffs
        ],
        "audit": [
            {
                "id": log.id,
                "event_name": log.event_name,
                "target_type": log.target_type,
                "target_id": log.target_id,
                "actor_id": log.actor_id,
                "actor_name": users[log.actor_id].full_name if log.actor_id in users else None,
                "actor_email": users[log.actor_id].email if log.actor_id in users else None,
                "created_at": _iso(log.created_at),
            }
            for log in logs
        ],
        "organization": {"id": org.id, "name": org.name, "subscription_tier": org.subscription_tier} if org else None,
    }


def job_report_hash(payload: dict[str, Any]) -> str:
    return canonical_hash(payload)


def _risk_color(level: str) -> str:
    if level in ("critical", "high"):
        return RISK_HIGH
    if level == "medium":
        return RISK_MEDIUM
    return RISK_LOW


def _rows(cells: list[list[str]], empty: str, columns: int) -> str:
    if not cells:
        return f'<tr><td colspan="{columns}">{_escape(empty)}</td></tr>'
    return "".join("<tr>" + "".join(f"<td>{c}</td>" for c in row) + "</tr>" for row in cells)


def _factor_rows(factors: list[Any]) -> str:
    cells = []
    for f in factors:
        if isinstance(f, dict):
            name = f.get("name") or f.get("code") or f.get("title") or "Factor"
            severity = normalize_severity(f.get("severity"))
        else:
            name, severity = f, "info"
        cells.append([_escape(name), _escape(severity.title())])
    return _rows(cells, "No risk factors recorded", 2)


def _mitigation_rows(items: list[dict]) -> str:
    cells = [
        [
            _escape(m["title"]),
            '<span class="done">Done</span>' if m["done"] else '<span class="open">Open</span>',
            _escape((m.get("completed_at") or "")[:10] or "-"),
        ]
        for m in items
    ]
    return _rows(cells, "No mitigation items", 3)


def _signoff_rows(items: list[dict]) -> str:
    cells = [
        [
            _escape(s.get("signoff_type") or "Sign-off"),
            _escape((s.get("status") or "pending").title()),
            _escape((s.get("signed_at") or "")[:10] or "-"),
        ]
        for s in items
    ]
    return _rows(cells, "No attestations requested", 3)


def _audit_rows(items: list[dict]) -> str:
    cells = [
        [
            _escape((a.get("created_at") or "")[:16].replace("T", " ")),
            _escape(a["event_name"]),
            _escape(a.get("actor_name") or a.get("actor_email") or "System"),
        ]
        for a in items
    ]
    return _rows(cells, "No audit events for this job", 3)


def render_job_report_html(
    payload: dict[str, Any],
    report_run_id: Optional[str] = None,
    data_hash: Optional[str] = None,
) -> str:
    """Print page HTML. The body carries data-report-ready="true" for the renderer."""
    job = payload["job"]
    risk = payload.get("risk_score") or {}
    org = payload.get("organization") or {}
    level = normalize_severity(risk.get("risk_level") or job.get("risk_level"))
    score = risk.get("overall_score", job.get("risk_score"))
    if score is None:
        risk_label = "Not assessed"
        risk_summary = "No risk assessment has been recorded for this job."
    else:
        risk_label = f"{level.title()} risk ({score})"
        risk_summary = f"Overall risk score {score} ({level})."
    client = job.get("client_name") or "Job"

    return (
        _JOB_REPORT_HTML.replace("__REPORT_TITLE__", _escape(f"Job Report - {client}"))
        .replace("__RISK_COLOR__", _risk_color(level))
        .replace("__ORGANIZATION_NAME__", _escape(org.get("name") or "RiskMate"))
        .replace("__CLIENT_NAME__", _escape(client))
        .replace("__JOB_TYPE__", _escape(job.get("job_type") or "-"))
        .replace("__LOCATION__", _escape(job.get("location") or "-"))
        .replace("__JOB_STATUS__", _escape((job.get("status") or "draft").title()))
        .replace("__RISK_LABEL__", _escape(risk_label))
        .replace("__RISK_SUMMARY__", _escape(risk_summary))
        .replace("__RISK_FACTOR_ROWS__", _factor_rows(payload.get("risk_factors") or []))
        .replace("__MITIGATION_ROWS__", _mitigation_rows(payload.get("mitigations") or []))
        .replace("__SIGNOFF_ROWS__", _signoff_rows(payload.get("signoffs") or []))
        .replace("__AUDIT_ROWS__", _audit_rows(payload.get("audit") or []))
        .replace("__REPORT_RUN_ID__", _escape(report_run_id or "-"))
        .replace("__DATA_HASH__", _escape(data_hash or job_report_hash(payload)))
    )
