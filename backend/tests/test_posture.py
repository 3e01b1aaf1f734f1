"""
Risk posture: window counts, deltas against the previous window, drivers, actions, ledger integrity.
"""
from __future__ import annotations

from datetime import datetime, timedelta

from audit import record_event
from db.models import AuditLog, Job, JobSignoff
from posture import (
    ALL_TIME_START,
    compute_risk_posture,
    confidence_statement,
    exposure_level,
    normalize_time_range,
    posture_score,
    time_window,
)


def _job(db, job_id, risk, days_ago, status="active", flagged=False, deleted=False):
    now = datetime.utcnow()
    db.add(Job(
        id=job_id,
        organization_id="org-1",
        client_name=f"Client {job_id}",
        status=status,
        risk_score=risk,
        review_flag=flagged,
        created_at=now - timedelta(days=days_ago),
        deleted_at=now if deleted else None,
    ))


def _seed(db):
    _job(db, "job-a", 90, 2)
    _job(db, "job-b", 80, 3, flagged=True)
    _job(db, "job-c", 20, 5, status="incident")
    _job(db, "job-d", 95, 40)
    _job(db, "job-e", 99, 1, deleted=True)
    db.add(JobSignoff(id="so-1", organization_id="org-1", job_id="job-a", status="signed"))
    db.add(JobSignoff(id="so-2", organization_id="org-1", job_id="job-b", status="pending"))
    db.commit()
    for _ in range(2):
        record_event(
            db, "org-1", "user-member", "auth.role_violation", "route", "/api/executive/brief/pdf",
            {"role": "member", "attempted_action": "api.executive.brief.pdf"},
        )


def test_posture_30d(db, org):
    _seed(db)
    posture = compute_risk_posture(db, org.id, "30d")

    assert posture.total_jobs == 3
    assert posture.high_risk_jobs == 2
    assert posture.flagged_jobs == 1
    assert posture.open_incidents == 2
    assert posture.signed_signoffs == 1
    assert posture.pending_signoffs == 2
    assert posture.recent_violations == 2
    assert posture.proof_packs_generated == 0
    assert posture.exposure_level == "high"
    assert posture.posture_score == 36
    assert posture.confidence_statement == "Blocked role violations detected in the selected window."
    assert posture.last_material_event_at is not None

    deltas = posture.deltas
    assert deltas.high_risk_jobs == 1
    assert deltas.open_incidents == 2
    assert deltas.violations == 2
    assert deltas.pending_signoffs == 1
    assert deltas.signed_signoffs == 1


def test_posture_drivers_and_actions(db, org):
    _seed(db)
    posture = compute_risk_posture(db, org.id, "30d")

    violation = posture.drivers.violations[0]
    assert violation.key == "VIOLATION.api.executive.brief.pdf"
    assert violation.label == "Api Executive Brief Pdf blocked"
    assert violation.count == 2
    assert posture.drivers.high_risk_jobs[0].href.endswith("&time_range=30d")
    assert posture.drivers.proof_packs[0].key == "PROOF_PACKS.NONE"

    actions = posture.recommended_actions
    assert [a.priority for a in actions] == [1, 2, 3]
    assert actions[0].action == "Review 2 blocked violations"
    assert actions[1].action == "Add evidence to 2 high-risk jobs"
    assert actions[2].action == "Request 2 pending attestations"


def test_posture_ledger_integrity(db, org):
    _seed(db)
    posture = compute_risk_posture(db, org.id, "30d")
    tail = db.query(AuditLog).order_by(AuditLog.seq.desc()).first()
    assert posture.ledger_integrity == "verified"
    assert posture.ledger_integrity_verified_through_event_id == tail.id
    assert posture.ledger_integrity_error_details is None

    tail.target_id = "/tampered"
    db.commit()
    broken = compute_risk_posture(db, org.id, "30d")
    assert broken.ledger_integrity == "error"
    assert broken.ledger_integrity_error_details["event_id"] == tail.id


def test_posture_all_time_has_no_deltas(db, org):
    _seed(db)
    posture = compute_risk_posture(db, org.id, "all")
    assert posture.deltas is None
    assert posture.total_jobs == 4
    assert posture.window_start == ALL_TIME_START
    assert posture.drivers.high_risk_jobs[0].href.endswith("severity=high")


def test_posture_empty_org(db, org):
    posture = compute_risk_posture(db, org.id, "7d")
    assert posture.posture_score is None
    assert not posture.has_sufficient_data
    assert posture.exposure_level == "low"
    assert posture.ledger_integrity == "not_verified"
    assert posture.ledger_integrity_last_verified_at is None
    assert posture.recommended_actions == []
    assert posture.confidence_statement.endswith("All jobs within acceptable risk thresholds.")


def test_posture_json_shape(db, org):
    data = compute_risk_posture(db, org.id, "bogus").model_dump(mode="json")
    assert data["time_range"] == "30d"
    assert set(data["drivers"]) == {
        "high_risk_jobs", "open_incidents", "violations", "flagged", "pending", "signed", "proof_packs",
    }


def test_scoring_helpers():
    assert posture_score(0, 0, 0, 0, 0) is None
    assert posture_score(0, 0, 0, 0, 3) == 100
    assert posture_score(10, 10, 5, 10, 0) == 0
    assert exposure_level(0, 0, 1) == "moderate"
    assert exposure_level(0, 0, 0) == "low"
    assert confidence_statement(0, 4, 0, 0) == "4 pending sign-offs affecting audit defensibility."
    assert confidence_statement(0, 0, 1, 0) == "1 high-risk job not yet flagged for review."
    assert "under active review" in confidence_statement(0, 0, 2, 1)


def test_time_window():
    now = datetime(2026, 3, 31)
    assert time_window("7d", now) == (datetime(2026, 3, 24), now)
    assert time_window("all", now) == (ALL_TIME_START, now)
    assert normalize_time_range(None) == "30d"
    assert normalize_time_range("90d") == "90d"
