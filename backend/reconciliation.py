"""
Subscription reconciliation: re-read each subscription from Stripe and repair DB drift.
Run from cron via POST /api/subscriptions/reconcile (X-Internal-Secret).
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.orm import Session

from billing_monitoring import track_reconcile_drift
from db.models import ReconciliationLog, Subscription, SubscriptionStatus
from stripe_billing import apply_plan_to_organization, extract_plan_code, get_stripe, normalize_status

_LOG = logging.getLogger("uvicorn.error")

RECONCILABLE_STATUSES = (
    SubscriptionStatus.active.value,
    SubscriptionStatus.trialing.value,
    SubscriptionStatus.past_due.value,
)


@dataclass
class ReconcileResult:
    organization_id: str
    stripe_subscription_id: Optional[str]
    matched: bool
    repaired: bool
    details: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


def _field(obj: Any, key: str) -> Any:
    try:
        return obj[key]
    except (KeyError, TypeError):
        return None


def reconcile_subscription(db: Session, sub: Subscription, stripe_client: Any = None) -> ReconcileResult:
    st = stripe_client or get_stripe()
    base = dict(organization_id=sub.organization_id, stripe_subscription_id=sub.stripe_subscription_id)
    if st is None:
        return ReconcileResult(**base, matched=False, repaired=False, error="Stripe not configured")
    try:
        remote = st.Subscription.retrieve(sub.stripe_subscription_id)
        metadata = _field(remote, "metadata") or {}
        plan = extract_plan_code(_field(metadata, "plan_code"))
        if not plan:
            return ReconcileResult(
                **base,
                matched=False,
                repaired=False,
                details={"stripe_status": _field(remote, "status"), "db_status": sub.status},
            )
        status = normalize_status(_field(remote, "status"))
        details = {
            "stripe_status": status,
            "db_status": sub.status,
            "stripe_tier": plan,
            "db_tier": sub.tier,
        }
        if sub.status == status and sub.tier == plan:
            return ReconcileResult(**base, matched=True, repaired=False, details=details)

        _LOG.warning(
            "subscription_mismatch org_id=%s stripe_tier=%s stripe_status=%s db_tier=%s db_status=%s",
            sub.organization_id, plan, status, sub.tier, sub.status,
        )
        customer = _field(remote, "customer")
        apply_plan_to_organization(
            db,
            sub.organization_id,
            plan,
            stripe_customer_id=customer if isinstance(customer, str) else None,
            stripe_subscription_id=_field(remote, "id"),
            current_period_start=_field(remote, "current_period_start"),
            current_period_end=_field(remote, "current_period_end"),
            status=status,
        )
        return ReconcileResult(**base, matched=False, repaired=True, details=details)
    except Exception as e:
        db.rollback()
        _LOG.error("subscription_reconcile_failed org_id=%s error=%s", sub.organization_id, e)
        return ReconcileResult(**base, matched=False, repaired=False, details={}, error=str(e))


def reconcile_all(db: Session, stripe_client: Any = None) -> dict[str, Any]:
    log_row = ReconciliationLog(id=str(uuid.uuid4()), started_at=datetime.utcnow())
    db.add(log_row)
    db.commit()

    subs = (
        db.query(Subscription)
        .filter(
            Subscription.stripe_subscription_id.isnot(None),
            Subscription.status.in_(RECONCILABLE_STATUSES),
        )
        .all()
    )
    results = [reconcile_subscription(db, s, stripe_client) for s in subs]
    matched = sum(1 for r in results if r.matched)
    repaired = sum(1 for r in results if r.repaired)
    errors = len(results) - matched - repaired

    log_row.total = len(results)
    log_row.matched = matched
    log_row.mismatch_count = repaired
    log_row.error_count = errors
    log_row.completed_at = datetime.utcnow()
    db.commit()

    if repaired:
        track_reconcile_drift(db, repaired, log_row.id, {"errors": errors})
    _LOG.info(
        "reconcile_all total=%s matched=%s repaired=%s errors=%s",
        len(results), matched, repaired, errors,
    )
    return {
        "reconciliation_log_id": log_row.id,
        "total": len(results),
        "matched": matched,
        "repaired": repaired,
        "errors": errors,
        "results": [asdict(r) for r in results],
    }
