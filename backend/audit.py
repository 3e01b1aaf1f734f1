"""
Audit ledger. Call record_event after mutations; it never raises.

Each row is chained to the previous row of the same organization:
hash = sha256(prev_hash + canonical_json(entry)). verify_chain() walks the rows
in order and reports the first break.
"""
from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Optional

from sqlalchemy.orm import Session

from db.models import AuditLog
from reporting.canonical import canonical_stringify, sha256_hex

_LOG = logging.getLogger("uvicorn.error")

MAX_METADATA_CHARS = 8000


@dataclass(frozen=True)
class EventMapping:
    title: str
    category: str  # governance | operations | access
    severity: str  # critical | material | info
    outcome: str  # blocked | allowed


def _m(title: str, category: str, severity: str, outcome: str = "allowed") -> EventMapping:
    return EventMapping(title=title, category=category, severity=severity, outcome=outcome)


EVENT_MAPPINGS: dict[str, EventMapping] = {
    # Governance
    "auth.role_violation": _m("Capability Blocked: Unauthorized Action Attempted", "governance", "critical", "blocked"),
    "job.flagged_for_review": _m("Job Flagged for Review", "governance", "material"),
    "job.unflagged": _m("Job Review Flag Removed", "governance", "info"),
    "job.review_assigned": _m("Review Assigned", "governance", "info"),
    "job.review_note_added": _m("Review Note Added", "governance", "info"),
    "job.review_resolved": _m("Review Resolved", "governance", "material"),
    "account.organization_updated": _m("Organization Settings Changed", "governance", "material"),
    # Operations
    "job.risk_score_changed": _m("Risk Score Changed", "operations", "material"),
    "job.created": _m("Job Created", "operations", "info"),
    "job.updated": _m("Job Updated", "operations", "info"),
    "job.archived": _m("Job Archived", "operations", "info"),
    "job.deleted": _m("Job Deleted", "operations", "material"),
    "hazard.added": _m("Hazard Identified", "operations", "info"),
    "hazard.removed": _m("Hazard Removed", "operations", "info"),
    "mitigation.completed": _m("Mitigation Completed", "operations", "info"),
    "mitigation.updated": _m("Mitigation Updated", "operations", "info"),
    "photo.uploaded": _m("Photo Uploaded", "operations", "info"),
    "document.uploaded": _m("Document Uploaded", "operations", "info"),
    "proof_pack.generated": _m("Proof Pack Generated", "operations", "material"),
    "signoff.created": _m("Sign-off Recorded", "operations", "material"),
    "report.generated": _m("Report Generated", "operations", "info"),
    "executive.brief_generated": _m("Executive Brief Generated", "operations", "info"),
    # Access
    "team.invite_sent": _m("Team Invitation Sent", "access", "info"),
    "team.invite_accepted": _m("Team Invitation Accepted", "access", "info"),
    "team.member_removed": _m("Access Revoked", "access", "material"),
    "team.role_changed": _m("Role Changed", "access", "material"),
    "security.login": _m("User Login", "access", "info"),
    "security.password_changed": _m("Password Changed", "access", "material"),
    "security.session_revoked": _m("Session Revoked", "access", "info"),
}

_ACTION_SUFFIXES = {
    ".created": ".create",
    ".updated": ".update",
    ".deleted": ".delete",
    ".flagged": ".flag",
    ".unflagged": ".unflag",
}


def normalize_action(event_name: str) -> str:
    for suffix, replacement in _ACTION_SUFFIXES.items():
        if event_name.endswith(suffix):
            return event_name[: -len(suffix)] + replacement
    return event_name


def rule_category(event_name: str) -> str:
    name = event_name.lower()
    if "auth." in name or "violation" in name or "policy." in name or "user_role_changed" in name:
        return "governance"
    if any(t in name for t in ("access.", "security.", "login", "team.", "account.")):
        return "access"
    return "operations"


def rule_outcome(event_name: str) -> str:
    name = event_name.lower()
    if "violation" in name or "blocked" in name or "denied" in name:
        return "blocked"
    return "allowed"


def rule_severity(event_name: str) -> str:
    name = event_name.lower()
    if "violation" in name or "critical" in name:
        return "critical"
    if "flag" in name or "change" in name or "remove" in name:
        return "material"
    return "info"


def _fallback_title(event_name: str) -> str:
    if not event_name:
        return "Unknown Event"
    words = event_name.replace("_", " ").replace(".", " ").split()
    return " ".join(w[:1].upper() + w[1:] for w in words) or "Unknown Event"


def classify_event(event_name: str) -> EventMapping:
    """Mapping table first; unknown names fall back to substring rules."""
    mapping = EVENT_MAPPINGS.get(event_name)
    if mapping is not None:
        return mapping
    return EventMapping(
        title=_fallback_title(event_name),
        category=rule_category(event_name),
        severity=rule_severity(event_name),
        outcome=rule_outcome(event_name),
    )


def _bounded_metadata(metadata: Optional[dict]) -> dict:
    meta = dict(metadata or {})
    meta.setdefault("client", "unknown")
    size = len(json.dumps(meta, default=str))
    if size > MAX_METADATA_CHARS:
        return {"truncated": True, "original_size": size}
    return meta


def _field(entry: Any, name: str) -> Any:
    if isinstance(entry, dict):
        if name == "metadata":
            return entry.get("metadata", entry.get("metadata_"))
        return entry.get(name)
    if name == "metadata":
        return getattr(entry, "metadata_", None)
    return getattr(entry, name, None)


def entry_payload(entry: Any) -> dict[str, Any]:
    """The fields covered by an entry's hash."""
    return {
        "id": _field(entry, "id"),
        "organization_id": _field(entry, "organization_id"),
        "actor_id": _field(entry, "actor_id"),
        "event_name": _field(entry, "event_name"),
        "category": _field(entry, "category"),
        "outcome": _field(entry, "outcome"),
        "severity": _field(entry, "severity"),
        "target_type": _field(entry, "target_type"),
        "target_id": _field(entry, "target_id"),
        "metadata": _field(entry, "metadata") or {},
        "created_at": _field(entry, "created_at"),
    }


def compute_entry_hash(prev_hash: Optional[str], entry: Any) -> str:
    return sha256_hex(((prev_hash or "") + canonical_stringify(entry_payload(entry))).encode("utf-8"))


def _chain_tail(db: Session, organization_id: str) -> tuple[Optional[str], int]:
    row = (
        db.query(AuditLog.hash, AuditLog.seq)
        .filter(AuditLog.organization_id == organization_id)
        .order_by(AuditLog.seq.desc())
        .first()
    )
    return (row[0], row[1]) if row else (None, 0)


def record_event(
    db: Session,
    organization_id: str,
    actor_id: Optional[str],
    event_name: str,
    target_type: str,
    target_id: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> Optional[AuditLog]:
    """Append a hash-chained ledger row. Returns None (and logs) on failure."""
    try:
        mapping = classify_event(event_name)
        entry = AuditLog(
            id=str(uuid.uuid4()),
            organization_id=organization_id,
            actor_id=actor_id,
            event_name=normalize_action(event_name),
            category=mapping.category,
            outcome=mapping.outcome,
            severity=mapping.severity,
            target_type=target_type,
            target_id=target_id,
            metadata_=_bounded_metadata(metadata),
            created_at=datetime.utcnow(),
        )
        entry.prev_hash, last_seq = _chain_tail(db, organization_id)
        entry.seq = last_seq + 1
        entry.hash = compute_entry_hash(entry.prev_hash, entry)
        db.add(entry)
        db.commit()
        return entry
    except Exception as e:
        db.rollback()
        _LOG.warning(
            "audit_write_failed org_id=%s event=%s target=%s:%s error=%s",
            organization_id, event_name, target_type, target_id, e,
        )
        return None


def verify_chain(entries: Iterable[Any]) -> dict[str, Any]:
    """Check prev_hash links and recompute hashes over entries in ledger order.

    status: verified (every link holds), error (first break reported in "failure"),
    not_verified (nothing to check, or rows predate hashing).
    """
    rows = list(entries)
    if not rows:
        return {"status": "not_verified", "checked": 0, "failure": None}
    prev: Optional[str] = None
    for index, row in enumerate(rows):
        row_hash = _field(row, "hash")
        row_prev = _field(row, "prev_hash")
        if row_hash is None:
            return {
                "status": "not_verified",
                "checked": index,
                "failure": {"event_id": _field(row, "id"), "reason": "missing_hash"},
            }
        if index > 0 and row_prev != prev:
            return {
                "status": "error",
                "checked": index,
                "failure": {
                    "event_id": _field(row, "id"),
                    "event_name": _field(row, "event_name"),
                    "reason": "prev_hash_mismatch",
                    "expected_prev_hash": prev,
                    "actual_prev_hash": row_prev,
                },
            }
        if compute_entry_hash(row_prev, row) != row_hash:
            return {
                "status": "error",
                "checked": index,
                "failure": {
                    "event_id": _field(row, "id"),
                    "event_name": _field(row, "event_name"),
                    "reason": "hash_mismatch",
                },
            }
        prev = row_hash
    return {"status": "verified", "checked": len(rows), "failure": None}


def load_ledger(db: Session, organization_id: str, since: Optional[datetime] = None) -> list[AuditLog]:
    q = db.query(AuditLog).filter(AuditLog.organization_id == organization_id)
    if since is not None:
        q = q.filter(AuditLog.created_at >= since)
    return q.order_by(AuditLog.seq.asc()).all()


def ledger_row_dict(row: AuditLog) -> dict[str, Any]:
    mapping = classify_event(row.event_name)
    return {
        "id": row.id,
        "event_name": row.event_name,
        "title": mapping.title,
        "category": row.category,
        "outcome": row.outcome,
        "severity": row.severity,
        "actor_id": row.actor_id,
        "target_type": row.target_type,
        "target_id": row.target_id,
        "metadata": row.metadata_ or {},
        "hash": row.hash,
        "prev_hash": row.prev_hash,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }
