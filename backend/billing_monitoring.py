"""
Billing monitoring: webhook failures, reconciliation drift, stale-condition alerts.
Everything here is best-effort; a monitoring failure is logged and never raised.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy.orm import Session

from db.models import BillingAlert, ReconciliationLog

_LOG = logging.getLogger("uvicorn.error")

RECONCILE_STALE_AFTER = timedelta(hours=2)
HIGH_SEVERITY_STALE_AFTER = timedelta(minutes=30)
DRIFT_CRITICAL_THRESHOLD = 10


def _insert_alert(db: Session, alert_type: str, severity: str, message: str, metadata: dict) -> Optional[BillingAlert]:
    alert = BillingAlert(
        id=str(uuid.uuid4()),
        alert_type=alert_type,
        severity=severity,
        message=message,
        metadata_=metadata,
        resolved=False,
    )
    db.add(alert)
    db.commit()
    return alert


def track_webhook_failure(
    db: Session,
    event_type: str,
    stripe_event_id: str,
    error: str,
    metadata: Optional[dict] = None,
) -> Optional[BillingAlert]:
    try:
        alert = _insert_alert(
            db,
            "webhook_failure",
            "critical",
            f"Webhook failure: {event_type} ({stripe_event_id})",
            {
                "event_type": event_type,
                "stripe_event_id": stripe_event_id,
                "error": error,
                "correlation_id": stripe_event_id,
                **(metadata or {}),
            },
        )
        _LOG.error(
            "billing_webhook_failure event_type=%s stripe_event_id=%s error=%s",
            event_type, stripe_event_id, error,
        )
        return alert
    except Exception as e:
        db.rollback()
        _LOG.warning("billing_monitoring_write_failed kind=webhook_failure error=%s", e)
        return None


def track_reconcile_drift(
    db: Session,
    mismatch_count: int,
    reconciliation_log_id: str,
    metadata: Optional[dict] = None,
) -> Optional[BillingAlert]:
    try:
        severity = "critical" if mismatch_count > DRIFT_CRITICAL_THRESHOLD else "warning"
        alert = _insert_alert(
            db,
            "reconcile_drift",
            severity,
            f"Reconciliation found {mismatch_count} mismatches",
            {
                "reconciliation_log_id": reconciliation_log_id,
                "mismatch_count": mismatch_count,
                "correlation_id": reconciliation_log_id,
                **(metadata or {}),
            },
        )
        _LOG.warning(
            "billing_reconcile_drift mismatch_count=%s reconciliation_log_id=%s",
            mismatch_count, reconciliation_log_id,
        )
        return alert
    except Exception as e:
        db.rollback()
        _LOG.warning("billing_monitoring_write_failed kind=reconcile_drift error=%s", e)
        return None


def get_unresolved_alerts(db: Session, alert_type: Optional[str] = None, limit: int = 50) -> list[BillingAlert]:
    try:
        q = db.query(BillingAlert).filter(BillingAlert.resolved.is_(False))
        if alert_type:
            q = q.filter(BillingAlert.alert_type == alert_type)
        return q.order_by(BillingAlert.created_at.desc()).limit(limit).all()
    except Exception as e:
        _LOG.error("billing_alerts_query_failed error=%s", e)
        return []


def resolve_alert(db: Session, alert_id: str) -> bool:
    try:
        alert = db.query(BillingAlert).filter(BillingAlert.id == alert_id).first()
        if alert is None:
            return False
        alert.resolved = True
        alert.resolved_at = datetime.utcnow()
        db.commit()
        return True
    except Exception as e:
        db.rollback()
        _LOG.warning("billing_alert_resolve_failed alert_id=%s error=%s", alert_id, e)
        return False


def _upsert_condition_alert(db: Session, key: str, severity: str, message: str, metadata: dict) -> None:
    alert = db.query(BillingAlert).filter(BillingAlert.alert_key == key).first()
    if alert is None:
        alert = BillingAlert(id=str(uuid.uuid4()), alert_key=key, alert_type=key)
        db.add(alert)
    alert.severity = severity
    alert.message = message
    alert.metadata_ = metadata
    alert.resolved = False
    alert.resolved_at = None


def _resolve_condition_alert(db: Session, key: str, now: datetime) -> None:
    alert = (
        db.query(BillingAlert)
        .filter(BillingAlert.alert_key == key, BillingAlert.resolved.is_(False))
        .first()
    )
    if alert is not None:
        alert.resolved = True
        alert.resolved_at = now


def check_monitoring_conditions(db: Session, now: Optional[datetime] = None) -> dict[str, Any]:
    """Raise or auto-resolve the reconcile_stale and high_severity_stale condition alerts."""
    now = now or datetime.utcnow()
    try:
        last = db.query(ReconciliationLog).order_by(ReconciliationLog.started_at.desc()).first()
        reconcile_stale = last is None or (now - last.started_at) > RECONCILE_STALE_AFTER
        if reconcile_stale:
            _upsert_condition_alert(
                db,
                "reconcile_stale",
                "warning",
                "No reconciliation run in the last 2 hours. Check cron job configuration.",
                {"last_reconcile_at": last.started_at.isoformat() if last else None},
            )
        else:
            _resolve_condition_alert(db, "reconcile_stale", now)

        high = (
            db.query(BillingAlert)
            .filter(
                BillingAlert.resolved.is_(False),
                BillingAlert.severity.in_(("critical", "high")),
                BillingAlert.alert_key.is_(None),
            )
            .all()
        )
        stale_count = sum(1 for a in high if a.created_at and now - a.created_at > HIGH_SEVERITY_STALE_AFTER)
        if stale_count:
            _upsert_condition_alert(
                db,
                "high_severity_stale",
                "critical",
                f"{stale_count} high severity alert(s) unresolved for 30+ minutes",
                {"stale_count": stale_count},
            )
        else:
            _resolve_condition_alert(db, "high_severity_stale", now)
        db.commit()
        return {"reconcile_stale": reconcile_stale, "high_severity_stale": stale_count > 0}
    except Exception as e:
        db.rollback()
        _LOG.error("billing_monitoring_check_failed error=%s", e)
        return {"reconcile_stale": False, "high_severity_stale": False}
