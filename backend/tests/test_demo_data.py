"""
Demo fixtures: role views, scenarios, idempotent seeding.
"""
from __future__ import annotations

import pytest

from audit import load_ledger, verify_chain
from db.models import Job, Organization, User
from demo_data import DEMO_DATA, DEMO_ORG_ID, get_demo_data, seed_demo_organization


def test_member_view_hides_flagged_jobs():
    data = get_demo_data("member")
    assert all(not j["review_flag"] for j in data["jobs"])
    assert len(data["jobs"]) == 3
    assert data["read_only"] is False


def test_executive_view_is_read_only():
    data = get_demo_data("executive")
    assert data["read_only"] is True
    assert data["profile"]["role"] == "executive"
    assert len(data["jobs"]) == len(DEMO_DATA["jobs"])


def test_incident_scenario_does_not_mutate_fixture():
    data = get_demo_data("owner", "incident")
    assert data["scenario"] == "incident"
    assert data["jobs"][0]["status"] == "incident"
    assert DEMO_DATA["jobs"][0]["status"] == "in_progress"
    assert get_demo_data("owner", "nonsense")["scenario"] == "normal"


def test_unknown_role_rejected():
    with pytest.raises(ValueError):
        get_demo_data("superuser")


def test_seed_is_idempotent_with_verified_ledger(db):
    seed_demo_organization(db)
    seed_demo_organization(db)
    assert db.query(Organization).filter(Organization.id == DEMO_ORG_ID).count() == 1
    assert db.query(User).count() == len(DEMO_DATA["team_members"])
    assert db.query(Job).count() == len(DEMO_DATA["jobs"])
    ledger = load_ledger(db, DEMO_ORG_ID)
    assert len(ledger) == len(DEMO_DATA["audit_logs"])
    assert verify_chain(ledger)["status"] == "verified"


def test_startup_seed_flag(session_factory, monkeypatch):
    from main import seed_demo_if_enabled

    monkeypatch.delenv("SEED_DEMO_ORG", raising=False)
    assert seed_demo_if_enabled(session_factory) is False

    monkeypatch.setenv("SEED_DEMO_ORG", "1")
    assert seed_demo_if_enabled(session_factory) is True
    assert seed_demo_if_enabled(session_factory) is True
    db = session_factory()
    try:
        assert db.query(Organization).filter(Organization.id == DEMO_ORG_ID).count() == 1
        assert verify_chain(load_ledger(db, DEMO_ORG_ID))["status"] == "verified"
    finally:
        db.close()
