"""
Billing alerts: failure tracking, condition alerts raised and auto-resolved.
"""
from __future__ import annotations

from datetime import datetime, timedelta

from billing_monitoring import (
    check_monitoring_conditions,
    get_unresolved_alerts,
    resolve_alert,
    track_reconcile_drift,
    track_webhook_failure,
)
from db.models import BillingAlert, ReconciliationLog

NOW = datetime(2026, 3, 1, 12, 0, 0)


def test_track_failures_and_resolve(db):
    webhook = track_webhook_failure(db, "invoice.payment_failed", "evt_1", "handler crashed")
    drift = track_reconcile_drift(db, 11, "log-1")
    assert webhook.metadata_["correlation_id"] == "evt_1"
    assert drift.severity == "critical"

    assert {a.alert_type for a in get_unresolved_alerts(db)} == {"webhook_failure", "reconcile_drift"}
    assert [a.id for a in get_unresolved_alerts(db, alert_type="webhook_failure")] == [webhook.id]

    assert resolve_alert(db, webhook.id)
    assert not resolve_alert(db, "missing")
    assert [a.id for a in get_unresolved_alerts(db)] == [drift.id]


def test_reconcile_stale_raised_then_resolved(db):
    result = check_monitoring_conditions(db, now=NOW)
    assert result["reconcile_stale"]
    stale = db.query(BillingAlert).filter(BillingAlert.alert_key == "reconcile_stale").one()
    assert not stale.resolved

    # raising again updates the same row
    check_monitoring_conditions(db, now=NOW)
    assert db.query(BillingAlert).filter(BillingAlert.alert_key == "reconcile_stale").count() == 1

    db.add(ReconciliationLog(id="log-1", started_at=NOW - timedelta(minutes=10)))
    db.commit()
    result = check_monitoring_conditions(db, now=NOW)
    assert not result["reconcile_stale"]
    stale = db.query(BillingAlert).filter(BillingAlert.alert_key == "reconcile_stale").one()
    assert stale.resolved


def test_high_severity_stale(db):
    db.add(ReconciliationLog(id="log-1", started_at=NOW))
    db.add(BillingAlert(
        id="a1", alert_type="webhook_failure", severity="critical", message="x",
        created_at=NOW - timedelta(minutes=45),
    ))
    db.add(BillingAlert(
        id="a2", alert_type="webhook_failure", severity="critical", message="y",
        created_at=NOW - timedelta(minutes=5),
    ))
    db.commit()

    result = check_monitoring_conditions(db, now=NOW)
    assert result == {"reconcile_stale": False, "high_severity_stale": True}
    alert = db.query(BillingAlert).filter(BillingAlert.alert_key == "high_severity_stale").one()
    assert alert.metadata_ == {"stale_count": 1}

    resolve_alert(db, "a1")
    result = check_monitoring_conditions(db, now=NOW)
    assert not result["high_severity_stale"]
