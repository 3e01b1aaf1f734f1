"""
Plan entitlements by tier and subscription status.
"""
from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from db.models import Subscription
from entitlements import assert_entitled, entitlements_for, get_org_entitlements, has_entitlement, require_feature
from errors import ApiError

NOW = datetime(2026, 3, 1, 12, 0, 0)


def test_business_active_gets_everything():
    ent = entitlements_for("business", "active", now=NOW)
    assert ent.has_access
    assert ent.permit_packs and ent.version_history
    assert ent.jobs_monthly_limit is None and ent.seats_limit is None


def test_starter_limits():
    ent = entitlements_for("starter", "trialing", now=NOW)
    assert ent.jobs_monthly_limit == 10
    assert ent.seats_limit == 1
    assert not ent.permit_packs


def test_past_due_loses_access_and_limits():
    ent = entitlements_for("pro", "past_due", now=NOW)
    assert not ent.has_access
    assert ent.jobs_monthly_limit == 0
    assert not ent.evidence_verification


def test_canceled_keeps_access_until_period_end():
    assert entitlements_for("pro", "canceled", NOW + timedelta(days=3), now=NOW).has_access
    assert not entitlements_for("pro", "canceled", NOW - timedelta(days=1), now=NOW).has_access


def test_unknown_tier_treated_as_starter():
    assert entitlements_for("platinum", "active", now=NOW).tier == "starter"


def test_org_without_subscription_gets_defaults(db, org):
    ent = get_org_entitlements(db, org.id)
    assert ent.tier == "starter"
    assert ent.status == "none"


def test_org_subscription_read(db, org):
    db.add(Subscription(id="sub-1", organization_id=org.id, tier="business", status="active"))
    db.commit()
    assert get_org_entitlements(db, org.id, now=NOW).permit_packs


def test_assert_entitled():
    ent = entitlements_for("starter", "active", now=NOW)
    assert has_entitlement(ent, "job_assignment")
    with pytest.raises(ApiError) as exc:
        assert_entitled(ent, "permit_packs")
    assert exc.value.code == "ENTITLEMENTS_FEATURE_NOT_ALLOWED"
    assert exc.value.status_code == 403
    with pytest.raises(ValueError):
        has_entitlement(ent, "teleportation")


def test_require_feature_rejects_unknown_feature():
    assert callable(require_feature("evidence_verification"))
    with pytest.raises(ValueError):
        require_feature("teleportation")
