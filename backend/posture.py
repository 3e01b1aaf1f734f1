"""
Executive risk posture: counts, period-over-period deltas, drivers and the action plan
for an organization over a 7d / 30d / 90d / all window.
"""
from __future__ import annotations

import re
from collections import Counter
from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from audit import load_ledger, verify_chain
from db.models import AuditLog, Job, JobSignoff
from reporting.sanitize import pluralize

TIME_RANGES = ("7d", "30d", "90d", "all")
DEFAULT_TIME_RANGE = "30d"
RANGE_DAYS = {"7d": 7, "30d": 30, "90d": 90}
ALL_TIME_START = datetime(2020, 1, 1)
HIGH_RISK_THRESHOLD = 75
MAX_ACTIONS = 3


class Driver(BaseModel):
    key: str
    label: str
    count: int
    href: Optional[str] = None


class Drivers(BaseModel):
    high_risk_jobs: list[Driver] = Field(default_factory=list)
    open_incidents: list[Driver] = Field(default_factory=list)
    violations: list[Driver] = Field(default_factory=list)
    flagged: list[Driver] = Field(default_factory=list)
    pending: list[Driver] = Field(default_factory=list)
    signed: list[Driver] = Field(default_factory=list)
    proof_packs: list[Driver] = Field(default_factory=list)


class Deltas(BaseModel):
    high_risk_jobs: int = 0
    open_incidents: int = 0
    violations: int = 0
    flagged_jobs: int = 0
    pending_signoffs: int = 0
    signed_signoffs: int = 0
    proof_packs: int = 0


class RecommendedAction(BaseModel):
    priority: int
    action: str
    reason: str
    href: Optional[str] = None


class RiskPosture(BaseModel):
    time_range: str = DEFAULT_TIME_RANGE
    window_start: datetime
    window_end: datetime
    exposure_level: str = "low"
    posture_score: Optional[int] = None
    high_risk_jobs: int = 0
    open_incidents: int = 0
    recent_violations: int = 0
    flagged_jobs: int = 0
    pending_signoffs: int = 0
    signed_signoffs: int = 0
    proof_packs_generated: int = 0
    total_jobs: int = 0
    last_job_at: Optional[datetime] = None
    last_material_event_at: Optional[datetime] = None
    confidence_statement: str = ""
    ledger_integrity: str = "not_verified"
    ledger_integrity_last_verified_at: Optional[datetime] = None
    ledger_integrity_verified_through_event_id: Optional[str] = None
    ledger_integrity_error_details: Optional[dict] = None
    drivers: Drivers = Field(default_factory=Drivers)
    deltas: Optional[Deltas] = None
    recommended_actions: list[RecommendedAction] = Field(default_factory=list)

    @property
    def has_sufficient_data(self) -> bool:
        return self.high_risk_jobs > 0 or self.open_incidents > 0 or self.signed_signoffs > 0


def normalize_time_range(time_range: Optional[str]) -> str:
    return time_range if time_range in TIME_RANGES else DEFAULT_TIME_RANGE


def time_window(time_range: str, now: Optional[datetime] = None) -> tuple[datetime, datetime]:
    end = now or datetime.utcnow()
    days = RANGE_DAYS.get(time_range)
    if days is None:
        return ALL_TIME_START, end
    return end - timedelta(days=days), end


def _is_high_risk(job: Job) -> bool:
    return job.risk_score is not None and job.risk_score > HIGH_RISK_THRESHOLD


def _is_open_incident(job: Job) -> bool:
    return job.status == "incident" or (bool(job.review_flag) and _is_high_risk(job))


def _jobs(db: Session, org_id: str, start: datetime, end: Optional[datetime] = None) -> list[Job]:
    q = db.query(Job).filter(
        Job.organization_id == org_id,
        Job.deleted_at.is_(None),
        Job.created_at >= start,
    )
    if end is not None:
        q = q.filter(Job.created_at < end)
    return q.all()


def _events(db: Session, org_id: str, start: datetime, end: Optional[datetime] = None):
    q = db.query(AuditLog).filter(AuditLog.organization_id == org_id, AuditLog.created_at >= start)
    if end is not None:
        q = q.filter(AuditLog.created_at < end)
    return q


def _violations(db: Session, org_id: str, start: datetime, end: Optional[datetime] = None) -> list[AuditLog]:
    return _events(db, org_id, start, end).filter(AuditLog.event_name == "auth.role_violation").all()


def _proof_pack_count(db: Session, org_id: str, start: datetime, end: Optional[datetime] = None) -> int:
    return _events(db, org_id, start, end).filter(AuditLog.event_name.like("proof_pack.%")).count()


def _signoffs(db: Session, jobs: list[Job]) -> list[JobSignoff]:
    if not jobs:
        return []
    return db.query(JobSignoff).filter(JobSignoff.job_id.in_([j.id for j in jobs])).all()


def _signoff_counts(signoffs: list[JobSignoff], job_count: int) -> tuple[int, int]:
    signed = sum(1 for s in signoffs if s.status == "signed")
    return signed, max(0, job_count - signed)


def exposure_level(violations: int, high_risk_jobs: int, open_incidents: int) -> str:
    if violations > 0:
        return "high"
    if high_risk_jobs > 0 or open_incidents > 0:
        return "moderate"
    return "low"


def confidence_statement(violations: int, pending: int, high_risk: int, flagged: int) -> str:
    if violations > 0:
        return "Blocked role violations detected in the selected window."
    if pending > 3:
        return f"{pending} pending sign-offs affecting audit defensibility."
    jobs_word = pluralize(high_risk, "job")
    if high_risk > 0 and flagged == 0:
        return f"{high_risk} high-risk {jobs_word} not yet flagged for review."
    if high_risk > 0:
        return f"No unresolved governance violations. {high_risk} high-risk {jobs_word} under active review."
    return "No unresolved governance violations. All jobs within acceptable risk thresholds."


def posture_score(
    high_risk: int, open_incidents: int, violations: int, pending: int, signed: int
) -> Optional[int]:
    """0-100, higher is healthier. None when there is nothing to score."""
    if not (high_risk > 0 or open_incidents > 0 or signed > 0):
        return None
    score = 100
    score -= min(40, high_risk * 8)
    score -= min(30, open_incidents * 10)
    score -= min(20, pending * 4)
    if violations > 0:
        score -= 20
    return max(0, min(100, score))


def _reason_label(reason: str) -> str:
    spaced = reason.replace(".", " ").replace("_", " ")
    return re.sub(r"\b\w", lambda m: m.group(0).upper(), spaced)


def _range_suffix(time_range: str) -> str:
    return "" if time_range == "all" else f"&time_range={time_range}"


def top_drivers(
    jobs: list[Job],
    violations: list[AuditLog],
    signoffs: list[JobSignoff],
    signed: int,
    proof_packs: int,
    time_range: str,
) -> Drivers:
    suffix = _range_suffix(time_range)
    drivers = Drivers()

    high_risk = [j for j in jobs if _is_high_risk(j)]
    if high_risk:
        drivers.high_risk_jobs.append(Driver(
            key="MISSING_EVIDENCE.HIGH_RISK",
            label="Missing evidence on high-risk records",
            count=len(high_risk),
            href=f"/operations/audit/readiness?category=evidence&severity=high{suffix}",
        ))

    incidents = [j for j in jobs if j.status == "incident"]
    if incidents:
        drivers.open_incidents.append(Driver(
            key="INCIDENT.OPEN",
            label="Open incidents requiring resolution",
            count=len(incidents),
            href=f"/operations/audit?view=incident-review&status=open{suffix}",
        ))

    if violations:
        reasons = Counter(
            (v.metadata_ or {}).get("attempted_action") or (v.metadata_ or {}).get("reason") or "Unknown violation"
            for v in violations
        )
        reason, count = reasons.most_common(1)[0]
        drivers.violations.append(Driver(
            key=f"VIOLATION.{reason}",
            label=f"{_reason_label(reason)} blocked",
            count=count,
            href=f"/operations/audit?tab=governance&outcome=blocked{suffix}",
        ))

    flagged = [j for j in jobs if j.review_flag]
    if flagged:
        drivers.flagged.append(Driver(
            key="FLAGGED.REVIEW_REQUIRED",
            label="Jobs flagged for safety review",
            count=len(flagged),
            href=f"/operations/audit?view=review-queue{suffix}",
        ))

    pending_rows = sum(1 for s in signoffs if s.status != "signed")
    if pending_rows:
        drivers.pending.append(Driver(
            key="PENDING.ATTESTATIONS",
            label="Attestations overdue",
            count=pending_rows,
            href=f"/operations/audit/readiness?category=attestations&status=open{suffix}",
        ))

    if signed:
        drivers.signed.append(Driver(
            key="SIGNED.COMPLETED",
            label="Completed attestations",
            count=signed,
            href=f"/operations/audit?tab=operations&event_name=signoff&status=signed{suffix}",
        ))

    if proof_packs:
        drivers.proof_packs.append(Driver(
            key="PROOF_PACKS.GENERATED",
            label="Proof packs generated",
            count=proof_packs,
            href=f"/operations/audit?view=insurance-ready{suffix}",
        ))
    else:
        drivers.proof_packs.append(Driver(key="PROOF_PACKS.NONE", label="No proof packs generated", count=0))
    return drivers


def action_plan(
    violations: int, high_risk: int, pending: int, drivers: Drivers, time_range: str
) -> list[RecommendedAction]:
    suffix = _range_suffix(time_range)
    actions: list[RecommendedAction] = []
    if violations > 0:
        actions.append(RecommendedAction(
            priority=1,
            action=f"Review {violations} blocked {pluralize(violations, 'violation')}",
            reason="Role violations indicate unauthorized access attempts",
            href=f"/operations/audit?tab=governance&outcome=blocked{suffix}",
        ))
    if high_risk > 0 and drivers.high_risk_jobs and drivers.high_risk_jobs[0].key == "MISSING_EVIDENCE.HIGH_RISK":
        actions.append(RecommendedAction(
            priority=2,
            action=f"Add evidence to {high_risk} high-risk {pluralize(high_risk, 'job')}",
            reason="High-risk jobs require documented evidence for defensibility",
            href=f"/operations/audit/readiness?category=evidence&severity=high{suffix}",
        ))
    if pending > 0:
        actions.append(RecommendedAction(
            priority=3,
            action=f"Request {pending} pending {pluralize(pending, 'attestation')}",
            reason="Unsigned approvals weaken audit defensibility",
            href=f"/operations/audit/readiness?category=attestations&status=open{suffix}",
        ))
    return sorted(actions, key=lambda a: a.priority)[:MAX_ACTIONS]


def _period_counts(db: Session, org_id: str, start: datetime, end: datetime) -> Deltas:
    jobs = _jobs(db, org_id, start, end)
    signed, pending = _signoff_counts(_signoffs(db, jobs), len(jobs))
    return Deltas(
        high_risk_jobs=sum(1 for j in jobs if _is_high_risk(j)),
        open_incidents=sum(1 for j in jobs if _is_open_incident(j)),
        violations=len(_violations(db, org_id, start, end)),
        flagged_jobs=sum(1 for j in jobs if j.review_flag),
        pending_signoffs=pending,
        signed_signoffs=signed,
        proof_packs=_proof_pack_count(db, org_id, start, end),
    )


def compute_risk_posture(
    db: Session,
    organization_id: str,
    time_range: Optional[str] = DEFAULT_TIME_RANGE,
    now: Optional[datetime] = None,
) -> RiskPosture:
    time_range = normalize_time_range(time_range)
    now = now or datetime.utcnow()
    start, end = time_window(time_range, now)

    jobs = _jobs(db, organization_id, start)
    high_risk = sum(1 for j in jobs if _is_high_risk(j))
    flagged = sum(1 for j in jobs if j.review_flag)
    incidents = sum(1 for j in jobs if _is_open_incident(j))
    signoffs = _signoffs(db, jobs)
    signed, pending = _signoff_counts(signoffs, len(jobs))
    violation_rows = _violations(db, organization_id, start)
    violations = len(violation_rows)
    proof_packs = _proof_pack_count(db, organization_id, start)

    last_material = (
        _events(db, organization_id, start)
        .filter(AuditLog.severity.in_(("material", "critical")))
        .order_by(AuditLog.created_at.desc())
        .first()
    )

    deltas = None
    if time_range != "all":
        previous_start = start - timedelta(days=RANGE_DAYS[time_range])
        prev = _period_counts(db, organization_id, previous_start, start)
        deltas = Deltas(
            high_risk_jobs=high_risk - prev.high_risk_jobs,
            open_incidents=incidents - prev.open_incidents,
            violations=violations - prev.violations,
            flagged_jobs=flagged - prev.flagged_jobs,
            pending_signoffs=pending - prev.pending_signoffs,
            signed_signoffs=signed - prev.signed_signoffs,
            proof_packs=proof_packs - prev.proof_packs,
        )

    integrity = verify_chain(load_ledger(db, organization_id))
    failure = integrity.get("failure")
    verified_through = None
    if integrity["status"] == "verified":
        verified_through = load_ledger_tail_id(db, organization_id)
    elif failure:
        verified_through = failure.get("event_id")

    drivers = top_drivers(jobs, violation_rows, signoffs, signed, proof_packs, time_range)
    return RiskPosture(
        time_range=time_range,
        window_start=start,
        window_end=end,
        exposure_level=exposure_level(violations, high_risk, incidents),
        posture_score=posture_score(high_risk, incidents, violations, pending, signed),
        high_risk_jobs=high_risk,
        open_incidents=incidents,
        recent_violations=violations,
        flagged_jobs=flagged,
        pending_signoffs=pending,
        signed_signoffs=signed,
        proof_packs_generated=proof_packs,
        total_jobs=len(jobs),
        last_job_at=max((j.created_at for j in jobs if j.created_at), default=None),
        last_material_event_at=last_material.created_at if last_material else None,
        confidence_statement=confidence_statement(violations, pending, high_risk, flagged),
        ledger_integrity=integrity["status"],
        ledger_integrity_last_verified_at=now if integrity["status"] != "not_verified" else None,
        ledger_integrity_verified_through_event_id=verified_through,
        ledger_integrity_error_details=failure if integrity["status"] == "error" else None,
        drivers=drivers,
        deltas=deltas,
        recommended_actions=action_plan(violations, high_risk, pending, drivers, time_range),
    )


def load_ledger_tail_id(db: Session, organization_id: str) -> Optional[str]:
    row = (
        db.query(AuditLog.id)
        .filter(AuditLog.organization_id == organization_id)
        .order_by(AuditLog.seq.desc())
        .first()
    )
    return row[0] if row else None
