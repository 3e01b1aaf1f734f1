"""
HTTP surface through TestClient: auth and roles, executive brief + verify, job reports, ledger export,
billing endpoints and the demo endpoint.
"""
from __future__ import annotations

import base64
import csv
import io
from urllib.parse import urlparse

import pytest

from audit import record_event
from db.models import AuditLog, BillingAlert, Job, Organization, ReportRun, Role, Subscription
from rate_limiter import EXPORT_RATE_LIMIT
from reporting.canonical import sha256_hex
from reporting.remote_renderer import RenderError

INTERNAL = {"X-Internal-Secret": "test-internal-secret"}


def test_health(client):
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json()["status"] == "ok"
    assert res.headers["X-Request-Id"]


def test_health_pdf_reports_renderer_config(client, monkeypatch):
    monkeypatch.delenv("BROWSERLESS_TOKEN", raising=False)
    res = client.get("/health/pdf")
    assert res.status_code == 503
    assert res.json()["code"] == "RENDERER_NOT_CONFIGURED"

    monkeypatch.setenv("BROWSERLESS_TOKEN", "tok")
    monkeypatch.delenv("BROWSERLESS_URL", raising=False)
    assert client.get("/health/pdf").json()["pdf_runtime"] == "remote"


def test_missing_or_bad_token_is_401(client, org):
    res = client.get("/api/executive/risk-posture")
    assert res.status_code == 401
    assert res.json()["ok"] is False
    res = client.get("/api/executive/risk-posture", headers={"Authorization": "Bearer garbage"})
    assert res.status_code == 401


def test_unknown_user_is_403(client, org, token_for):
    res = client.get("/api/entitlements", headers={"Authorization": f"Bearer {token_for('ghost')}"})
    assert res.status_code == 403


def test_risk_posture_for_owner(client, db, make_user):
    _, headers = make_user(Role.owner)
    db.add(Job(id="job-1", organization_id="org-1", client_name="Tower", status="active", risk_score=90))
    db.commit()
    res = client.get("/api/executive/risk-posture", params={"time_range": "7d"}, headers=headers)
    assert res.status_code == 200
    data = res.json()["data"]
    assert data["time_range"] == "7d"
    assert data["high_risk_jobs"] == 1
    assert data["exposure_level"] == "moderate"


def test_risk_posture_rejects_unknown_range(client, make_user):
    _, headers = make_user(Role.owner)
    res = client.get("/api/executive/risk-posture", params={"time_range": "1y"}, headers=headers)
    assert res.status_code == 400
    assert res.json()["code"] == "VALIDATION_ERROR"


def test_member_blocked_and_violation_recorded(client, db, make_user):
    user, headers = make_user(Role.member)
    res = client.get("/api/executive/risk-posture", headers=headers)
    assert res.status_code == 403
    assert res.json()["code"] == "FORBIDDEN"
    assert res.headers["X-Error-ID"]

    event = db.query(AuditLog).filter(AuditLog.event_name == "auth.role_violation").one()
    assert event.actor_id == user.id
    assert event.outcome == "blocked"
    assert event.metadata_["attempted_action"] == "api.executive.risk-posture"


def test_executive_brief_pdf_and_public_verify(client, db, make_user):
    user, headers = make_user(Role.executive)
    res = client.post("/api/executive/brief/pdf", json={"time_range": "90d"}, headers=headers)
    assert res.status_code == 200
    assert res.headers["content-type"] == "application/pdf"
    assert res.content.startswith(b"%PDF")
    assert res.headers["X-PDF-Hash"] == sha256_hex(res.content)
    assert res.headers["Cache-Control"] == "no-store"
    assert "executive-brief-90d-" in res.headers["Content-Disposition"]

    run_id = res.headers["X-Report-Run-Id"]
    short_id = res.headers["X-Executive-Brief-ReportId"]
    assert short_id == run_id.replace("-", "")[:8]

    run = db.query(ReportRun).filter(ReportRun.id == run_id).one()
    assert run.packet_type == "executive_brief"
    assert run.status == "ready_for_signatures"
    assert run.generated_by == user.id
    assert run.metadata_["page_count"] <= 2
    assert run.metadata_["pdf_size_bytes"] == len(res.content)
    assert db.query(AuditLog).filter(AuditLog.event_name == "executive.brief_generated").count() == 1

    verified = client.get(f"/api/verify/RM-{short_id}")
    assert verified.status_code == 200
    data = verified.json()["data"]
    assert data["report_id"] == run_id
    assert data["pdf_hash"] == res.headers["X-PDF-Hash"]
    assert data["metadata_hash"] == run.data_hash
    assert data["organization_name"] == "Acme Construction"
    assert data["time_range"] == "90d"

    assert client.get(f"/api/verify/{run_id}").json()["data"]["short_id"] == f"RM-{short_id}"


def test_executive_brief_rejects_bad_range(client, make_user):
    _, headers = make_user(Role.admin)
    res = client.post("/api/executive/brief/pdf", json={"time_range": "forever"}, headers=headers)
    assert res.status_code == 400
    assert res.json()["code"] == "VALIDATION_ERROR"


@pytest.mark.parametrize("report_id", ["RM-deadbeef", "RM-xyz", "no-such-run"])
def test_verify_unknown_report_is_404(client, report_id):
    res = client.get(f"/api/verify/{report_id}")
    assert res.status_code == 404
    assert res.json()["code"] == "NOT_FOUND"


def _seed_job(db):
    db.add(Job(id="job-1", organization_id="org-1", client_name="Harbor Tower", status="active", risk_score=60))
    db.commit()


def test_generate_job_report_renders_once_and_reuses_run(client, db, make_user, monkeypatch):
    import routes.reports as reports_routes

    _, headers = make_user(Role.safety_lead)
    _seed_job(db)
    rendered: list[str] = []

    def fake_render(url, **kwargs):
        rendered.append(url)
        return b"%PDF-1.7 job report"

    monkeypatch.setattr(reports_routes, "render_pdf_from_url", fake_render)

    first = client.post("/api/reports/generate/job-1", headers=headers)
    assert first.status_code == 200
    data = first.json()["data"]
    assert base64.b64decode(data["pdf_base64"]) == b"%PDF-1.7 job report"
    assert data["pdf_hash"] == sha256_hex(b"%PDF-1.7 job report")
    assert data["storage_path"] is None
    assert first.headers["Cache-Control"].startswith("no-store")

    second = client.post("/api/reports/generate/job-1", headers=headers)
    assert second.json()["data"]["report_run_id"] == data["report_run_id"]
    assert len(rendered) == 1
    assert db.query(ReportRun).count() == 1

    # the renderer's URL opens the print page without a session
    target = urlparse(rendered[0])
    assert target.path == "/reports/job-1/print"
    page = client.get(f"{target.path}?{target.query}")
    assert page.status_code == 200
    assert 'data-report-ready="true"' in page.text
    assert data["data_hash"] in page.text


def test_generate_job_report_other_org_job_is_404(client, db, make_user, monkeypatch):
    import routes.reports as reports_routes

    _, headers = make_user(Role.owner)
    monkeypatch.setattr(reports_routes, "render_pdf_from_url", lambda url, **kw: b"%PDF")
    res = client.post("/api/reports/generate/job-elsewhere", headers=headers)
    assert res.status_code == 404


def test_print_page_rejects_bad_token(client, db, org):
    _seed_job(db)
    res = client.get("/reports/job-1/print", params={"token": "forged"})
    assert res.status_code == 401


def test_generate_job_report_requires_evidence_entitlement(client, db, make_user, monkeypatch):
    import routes.reports as reports_routes

    _, headers = make_user(Role.owner)
    _seed_job(db)
    db.add(Subscription(id="sub-1", organization_id="org-1", tier="pro", status="past_due"))
    db.commit()
    monkeypatch.setattr(reports_routes, "render_pdf_from_url", lambda url, **kw: b"%PDF")
    res = client.post("/api/reports/generate/job-1", headers=headers)
    assert res.status_code == 403
    assert res.json()["code"] == "ENTITLEMENTS_FEATURE_NOT_ALLOWED"
    assert db.query(ReportRun).count() == 0


def test_failed_render_marks_run_failed_and_unverifiable(client, db, make_user, monkeypatch):
    import routes.reports as reports_routes

    _, headers = make_user(Role.owner)
    _seed_job(db)

    def broken_render(url, **kwargs):
        raise RenderError("page never became ready", stage="wait_ready")

    monkeypatch.setattr(reports_routes, "render_pdf_from_url", broken_render)
    res = client.post("/api/reports/generate/job-1", headers=headers)
    assert res.status_code == 500
    assert res.json()["code"] == "PDF_GENERATION_ERROR"

    db.expire_all()
    run = db.query(ReportRun).one()
    assert run.status == "failed"
    assert run.error.startswith("wait_ready:")
    assert run.pdf_hash is None
    assert client.get(f"/api/verify/{run.id}").status_code == 404
    assert client.get(f"/api/verify/RM-{run.id.replace('-', '')[:8]}").status_code == 404


def test_audit_export_csv_and_json(client, db, make_user):
    user, headers = make_user(Role.admin)
    record_event(db, "org-1", user.id, "job.updated", "job", "job-1")
    record_event(db, "org-1", user.id, "auth.role_violation", "route", "/api/x", {"role": "member"})

    res = client.get("/api/audit/export", params={"format": "csv"}, headers=headers)
    assert res.status_code == 200
    assert res.headers["X-Ledger-Integrity"] == "verified"
    rows = list(csv.DictReader(io.StringIO(res.text)))
    assert [r["event_name"] for r in rows] == ["job.update", "auth.role_violation"]
    assert rows[1]["prev_hash"] == rows[0]["hash"]

    res = client.get("/api/audit/export", params={"format": "json", "outcome": "blocked"}, headers=headers)
    body = res.json()["data"]
    assert body["count"] == 1
    assert body["ledger_integrity"]["status"] == "verified"
    assert body["ledger_integrity"]["checked"] == 2
    assert body["events"][0]["title"] == "Capability Blocked: Unauthorized Action Attempted"


def test_audit_export_invalid_format(client, make_user):
    _, headers = make_user(Role.owner)
    res = client.get("/api/audit/export", params={"format": "xml"}, headers=headers)
    assert res.status_code == 400
    assert res.json()["code"] == "INVALID_FORMAT"


def test_audit_export_rate_limited(client, make_user):
    _, headers = make_user(Role.owner)
    for _ in range(EXPORT_RATE_LIMIT.max_requests):
        assert client.get("/api/audit/export", headers=headers).status_code == 200
    res = client.get("/api/audit/export", headers=headers)
    assert res.status_code == 429
    body = res.json()
    assert body["code"] == "RATE_LIMIT_EXCEEDED"
    assert body["retry_strategy"] == "after_retry_after"
    assert int(res.headers["Retry-After"]) > 0
    assert res.headers["X-RateLimit-Remaining"] == "0"


def test_entitlements_endpoint(client, make_user):
    _, headers = make_user(Role.member)
    res = client.get("/api/entitlements", headers=headers)
    assert res.status_code == 200
    assert res.json()["data"]["tier"] == "starter"


def test_reconcile_is_operator_only(client, db, make_user):
    db.add(Organization(id="org-2", name="Other Tenant"))
    db.add(Subscription(
        id="sub-2", organization_id="org-2", tier="business", status="active",
        stripe_subscription_id="sub_OTHER_TENANT",
    ))
    db.commit()

    assert client.post("/api/subscriptions/reconcile").status_code == 401
    for role in (Role.owner, Role.admin):
        _, headers = make_user(role)
        res = client.post("/api/subscriptions/reconcile", headers=headers)
        assert res.status_code == 401
        assert "sub_OTHER_TENANT" not in res.text
        assert "org-2" not in res.text
    wrong = client.post("/api/subscriptions/reconcile", headers={"X-Internal-Secret": "guess"})
    assert wrong.status_code == 401


def test_reconcile_with_internal_secret(client, db):
    res = client.post("/api/subscriptions/reconcile", headers=INTERNAL)
    assert res.status_code == 200
    data = res.json()["data"]
    assert data["total"] == 0
    assert data["monitoring"]["reconcile_stale"] is False


def test_billing_alerts_hidden_from_tenants(client, db, make_user):
    from billing_monitoring import track_webhook_failure

    alert_id = track_webhook_failure(db, "invoice.payment_failed", "evt_org2", "boom", {"organization_id": "org-2"}).id
    for role in (Role.owner, Role.admin):
        _, headers = make_user(role)
        listed = client.get("/api/billing/alerts", headers=headers)
        assert listed.status_code == 401
        assert "evt_org2" not in listed.text
        assert client.post(f"/api/billing/alerts/{alert_id}/resolve", headers=headers).status_code == 401
    db.expire_all()
    assert db.query(BillingAlert).filter(BillingAlert.id == alert_id).one().resolved is False


def test_billing_alerts_for_operator(client, db):
    from billing_monitoring import track_webhook_failure

    alert_id = track_webhook_failure(db, "invoice.payment_failed", "evt_1", "boom").id
    listed = client.get("/api/billing/alerts", headers=INTERNAL).json()["data"]
    assert [a["id"] for a in listed] == [alert_id]
    resolved = client.post(f"/api/billing/alerts/{alert_id}/resolve", headers=INTERNAL)
    assert resolved.json()["data"]["resolved"] is True
    assert client.get("/api/billing/alerts", headers=INTERNAL).json()["data"] == []
    assert client.post("/api/billing/alerts/missing/resolve", headers=INTERNAL).status_code == 404


def test_demo_endpoint(client):
    res = client.get("/api/demo", params={"role": "member", "scenario": "incident"})
    assert res.status_code == 200
    assert res.json()["data"]["scenario"] == "incident"
    bad = client.get("/api/demo", params={"role": "root"})
    assert bad.status_code == 400
    assert bad.json()["code"] == "VALIDATION_ERROR"
