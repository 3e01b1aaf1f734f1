"""
Plan-tier entitlements: what an organization's subscription allows right now.
Limits of None mean unlimited.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from auth import AuthContext, require_org_context
from db.models import PlanTier, Subscription, SubscriptionStatus
from db.session import get_db
from errors import ApiError

FEATURES = ("permit_packs", "version_history", "evidence_verification", "job_assignment")

# tier -> (jobs_monthly_limit, seats_limit)
TIER_LIMITS: dict[str, tuple[Optional[int], Optional[int]]] = {
    PlanTier.starter.value: (10, 1),
    PlanTier.pro.value: (None, 5),
    PlanTier.business.value: (None, None),
}


class Entitlements(BaseModel):
    tier: str = PlanTier.starter.value
    status: str = SubscriptionStatus.none.value
    has_access: bool = True
    permit_packs: bool = False
    version_history: bool = False
    evidence_verification: bool = True
    job_assignment: bool = True
    jobs_monthly_limit: Optional[int] = 10
    seats_limit: Optional[int] = 1
    period_end: Optional[datetime] = None


def subscription_has_access(status: str, period_end: Optional[datetime], now: Optional[datetime] = None) -> bool:
    if status in (SubscriptionStatus.active.value, SubscriptionStatus.trialing.value):
        return True
    if status == SubscriptionStatus.canceled.value and period_end is not None:
        return period_end > (now or datetime.utcnow())
    return False


def entitlements_for(
    tier: Optional[str],
    status: Optional[str],
    period_end: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> Entitlements:
    tier = tier if tier in TIER_LIMITS else PlanTier.starter.value
    status = status or SubscriptionStatus.none.value
    access = subscription_has_access(status, period_end, now)
    jobs_limit, seats_limit = TIER_LIMITS[tier]
    business = tier == PlanTier.business.value
    return Entitlements(
        tier=tier,
        status=status,
        has_access=access,
        permit_packs=access and business,
        version_history=access and business,
        evidence_verification=access,
        job_assignment=access,
        jobs_monthly_limit=jobs_limit if access else 0,
        seats_limit=seats_limit if access else 0,
        period_end=period_end,
    )


def get_org_entitlements(db: Session, organization_id: str, now: Optional[datetime] = None) -> Entitlements:
    sub = db.query(Subscription).filter(Subscription.organization_id == organization_id).first()
    if sub is None:
        return Entitlements()
    return entitlements_for(sub.tier, sub.status, sub.current_period_end, now)


def has_entitlement(ent: Entitlements, feature: str) -> bool:
    if feature not in FEATURES:
        raise ValueError(f"Unknown feature: {feature}")
    return bool(getattr(ent, feature))


def assert_entitled(ent: Entitlements, feature: str) -> None:
    if has_entitlement(ent, feature):
        return
    raise ApiError(
        "ENTITLEMENTS_FEATURE_NOT_ALLOWED",
        details={"feature": feature, "tier": ent.tier, "status": ent.status},
    )


def require_feature(feature: str):
    """Dependency factory: ENTITLEMENTS_FEATURE_NOT_ALLOWED (403) unless the caller's org plan includes feature."""
    if feature not in FEATURES:
        raise ValueError(f"Unknown feature: {feature}")

    def _dependency(
        ctx: AuthContext = Depends(require_org_context),
        db: Session = Depends(get_db),
    ) -> Entitlements:
        ent = get_org_entitlements(db, ctx.organization_id)
        assert_entitled(ent, feature)
        return ent

    return _dependency
