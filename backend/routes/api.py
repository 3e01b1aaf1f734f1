"""
Tenant API (entitlements), operator API (subscription reconciliation, billing alerts) and public demo state.
"""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from auth import AuthContext, require_internal_secret, require_org_context
from billing_monitoring import check_monitoring_conditions, get_unresolved_alerts, resolve_alert
from db.session import get_db
from demo_data import DEMO_ROLES, get_demo_data
from entitlements import get_org_entitlements
from errors import ApiError
from reconciliation import reconcile_all

_LOG = logging.getLogger("uvicorn.error")

router = APIRouter(prefix="/api", tags=["api"])


@router.get("/entitlements")
def entitlements(
    ctx: AuthContext = Depends(require_org_context),
    db: Session = Depends(get_db),
):
    ent = get_org_entitlements(db, ctx.organization_id)
    return {"ok": True, "data": ent.model_dump(mode="json")}


@router.post("/subscriptions/reconcile", dependencies=[Depends(require_internal_secret)])
def reconcile_subscriptions(db: Session = Depends(get_db)):
    """Cron only: the run spans every organization's subscriptions."""
    result = reconcile_all(db)
    conditions = check_monitoring_conditions(db)
    return {"ok": True, "data": {**result, "monitoring": conditions}}


@router.get("/billing/alerts", dependencies=[Depends(require_internal_secret)])
def billing_alerts(
    alert_type: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    alerts = get_unresolved_alerts(db, alert_type=alert_type)
    return {
        "ok": True,
        "data": [
            {
                "id": a.id,
                "alert_type": a.alert_type,
                "severity": a.severity,
                "message": a.message,
                "metadata": a.metadata_ or {},
                "created_at": a.created_at.isoformat() if a.created_at else None,
            }
            for a in alerts
        ],
    }


@router.post("/billing/alerts/{alert_id}/resolve", dependencies=[Depends(require_internal_secret)])
def resolve_billing_alert(
    alert_id: str,
    db: Session = Depends(get_db),
):
    if not resolve_alert(db, alert_id):
        raise ApiError("NOT_FOUND", message="Alert not found")
    return {"ok": True, "data": {"id": alert_id, "resolved": True}}


@router.get("/demo")
def demo_state(
    role: str = Query("owner"),
    scenario: Optional[str] = Query(None),
):
    if role not in DEMO_ROLES:
        raise ApiError("VALIDATION_ERROR", message=f"role must be one of {', '.join(DEMO_ROLES)}")
    return {"ok": True, "data": get_demo_data(role, scenario)}
