"""
Demo fixtures for the public /api/demo endpoint and for seeding a local database.
No Stripe, storage or auth is needed to use them.
"""
from __future__ import annotations

import copy
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.orm import Session

from audit import record_event
from db.models import Job, Organization, Role, Subscription, User

DEMO_ROLES = tuple(r.value for r in Role)
DEMO_SCENARIOS = ("normal", "audit_review", "incident", "insurance_packet")
DEMO_ORG_ID = "demo-org-001"

DEMO_DATA: dict[str, Any] = {
    "organization": {
        "id": DEMO_ORG_ID,
        "name": "Acme Construction Co.",
        "created_at": "2024-01-15T10:00:00Z",
    },
    "billing": {
        "tier": "pro",
        "status": "active",
        "seats_used": 8,
        "seats_limit": 5,
        "jobs_limit": None,
        "current_period_end": "2025-02-15T00:00:00Z",
    },
    "profile": {
        "id": "demo-user-001",
        "email": "demo@acmeconstruction.com",
        "full_name": "John Smith",
        "role": "owner",
    },
    "team_members": [
        {"id": "demo-user-001", "email": "demo@acmeconstruction.com", "full_name": "John Smith", "role": "owner"},
        {"id": "demo-user-002", "email": "sarah.jones@acmeconstruction.com", "full_name": "Sarah Jones", "role": "safety_lead"},
        {"id": "demo-user-003", "email": "mike.wilson@acmeconstruction.com", "full_name": "Mike Wilson", "role": "admin"},
        {"id": "demo-user-004", "email": "exec@acmeconstruction.com", "full_name": "Executive View", "role": "executive"},
        {"id": "demo-user-005", "email": "field.worker@acmeconstruction.com", "full_name": "Alex Field", "role": "member"},
    ],
    "jobs": [
        {
            "id": "demo-job-001", "client_name": "Downtown Office Complex", "job_type": "Commercial Renovation",
            "location": "123 Main St, City, ST 12345", "status": "in_progress", "risk_score": 87,
            "risk_level": "high", "review_flag": True, "created_at": "2025-01-10T08:00:00Z",
        },
        {
            "id": "demo-job-002", "client_name": "Residential Deck Installation", "job_type": "Residential Construction",
            "location": "456 Oak Ave, Suburb, ST 67890", "status": "in_progress", "risk_score": 45,
            "risk_level": "medium", "review_flag": False, "created_at": "2025-01-08T09:00:00Z",
        },
        {
            "id": "demo-job-003", "client_name": "Warehouse Electrical Upgrade", "job_type": "Electrical Work",
            "location": "789 Industrial Blvd, City, ST 11111", "status": "completed", "risk_score": 92,
            "risk_level": "high", "review_flag": True, "created_at": "2024-12-20T07:00:00Z",
        },
        {
            "id": "demo-job-004", "client_name": "Kitchen Remodel", "job_type": "Residential Renovation",
            "location": "321 Elm St, Town, ST 22222", "status": "draft", "risk_score": 23,
            "risk_level": "low", "review_flag": False, "created_at": "2025-01-12T10:00:00Z",
        },
        {
            "id": "demo-job-005", "client_name": "Roofing Replacement", "job_type": "Roofing",
            "location": "555 Pine Rd, City, ST 33333", "status": "in_progress", "risk_score": 78,
            "risk_level": "high", "review_flag": False, "created_at": "2025-01-05T06:00:00Z",
        },
    ],
    "audit_logs": [
        {
            "actor_id": "demo-user-002", "event_name": "job.flagged_for_review", "target_type": "job",
            "target_id": "demo-job-001", "metadata": {"flagged": True},
        },
        {
            "actor_id": "demo-user-001", "event_name": "auth.role_violation", "target_type": "job",
            "target_id": "demo-job-002",
            "metadata": {
                "role": "member",
                "attempted_action": "flag_job",
                "result": "denied",
                "reason": "Role does not have flag_job capability",
            },
        },
        {
            "actor_id": "demo-user-003", "event_name": "team.member_removed", "target_type": "user",
            "target_id": "demo-user-removed", "metadata": {"role": "member"},
        },
        {
            "actor_id": "demo-user-001", "event_name": "account.organization_updated", "target_type": "organization",
            "target_id": DEMO_ORG_ID, "metadata": {"field": "name", "new_value": "Acme Construction Co."},
        },
    ],
}


def get_demo_data(role: str = "owner", scenario: Optional[str] = None) -> dict[str, Any]:
    """Demo state as seen by role. Members do not see flagged jobs; executives are read-only."""
    if role not in DEMO_ROLES:
        raise ValueError(f"Unknown demo role: {role}")
    scenario = scenario if scenario in DEMO_SCENARIOS else "normal"
    data = copy.deepcopy(DEMO_DATA)
    data["profile"]["role"] = role
    data["scenario"] = scenario
    data["read_only"] = role == Role.executive.value
    if role == Role.member.value:
        data["jobs"] = [j for j in data["jobs"] if not j["review_flag"]]
    if scenario == "incident":
        data["jobs"][0]["status"] = "incident"
    return data


def _parse(ts: str) -> datetime:
    return datetime.strptime(ts, "%Y-%m-%dT%H:%M:%SZ")


def seed_demo_organization(db: Session) -> Organization:
    """Insert the demo organization, team, jobs, subscription and ledger. Idempotent."""
    org = db.query(Organization).filter(Organization.id == DEMO_ORG_ID).first()
    if org is not None:
        return org
    d = DEMO_DATA
    org = Organization(
        id=DEMO_ORG_ID,
        name=d["organization"]["name"],
        subscription_tier=d["billing"]["tier"],
        subscription_status=d["billing"]["status"],
    )
    db.add(org)
    for m in d["team_members"]:
        db.add(User(id=m["id"], organization_id=DEMO_ORG_ID, email=m["email"], full_name=m["full_name"], role=m["role"]))
    for j in d["jobs"]:
        fields = {k: v for k, v in j.items() if k != "created_at"}
        db.add(Job(organization_id=DEMO_ORG_ID, created_at=_parse(j["created_at"]), **fields))
    db.add(Subscription(
        id="demo-sub-001",
        organization_id=DEMO_ORG_ID,
        tier=d["billing"]["tier"],
        status=d["billing"]["status"],
        seats_limit=d["billing"]["seats_limit"],
        jobs_limit=d["billing"]["jobs_limit"],
        current_period_end=_parse(d["billing"]["current_period_end"]),
    ))
    db.commit()
    for e in d["audit_logs"]:
        record_event(db, organization_id=DEMO_ORG_ID, **e)
    return org
