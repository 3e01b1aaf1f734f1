"""
Stripe subscription billing.
Set STRIPE_SECRET_KEY and STRIPE_WEBHOOK_SECRET.
Checkout sessions and subscriptions carry metadata {plan_code (or plan), organization_id};
webhook events apply that plan to the organization's subscription row.
"""
from __future__ import annotations

import logging
import os
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

import stripe
from sqlalchemy.orm import Session

from audit import record_event
from db.models import Organization, PlanTier, Subscription, SubscriptionStatus
from entitlements import TIER_LIMITS

_LOG = logging.getLogger("uvicorn.error")

STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET")

PLAN_CODES = {t.value for t in PlanTier}


def get_stripe():
    if not STRIPE_SECRET_KEY:
        return None
    stripe.api_key = STRIPE_SECRET_KEY
    return stripe


def normalize_status(raw: Optional[str]) -> str:
    value = (raw or "active").lower()
    if value == "trialing":
        return SubscriptionStatus.trialing.value
    if value in ("past_due", "unpaid", "incomplete", "incomplete_expired"):
        return SubscriptionStatus.past_due.value
    if value in ("canceled", "cancelled"):
        return SubscriptionStatus.canceled.value
    return SubscriptionStatus.active.value


def extract_plan_code(value: Optional[str]) -> Optional[str]:
    return value if value in PLAN_CODES else None


def extract_metadata_plan(metadata: Optional[dict]) -> tuple[Optional[str], Optional[str]]:
    """(plan, organization_id) from Stripe metadata; plan is None unless a known tier."""
    metadata = metadata or {}
    plan = metadata.get("plan_code") or metadata.get("plan")
    return extract_plan_code(plan), metadata.get("organization_id")


def _ts(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def _get(obj: Any, key: str) -> Any:
    if obj is None:
        return None
    try:
        return obj[key]
    except (KeyError, TypeError, IndexError):
        return None


def apply_plan_to_organization(
    db: Session,
    organization_id: str,
    plan: str,
    *,
    stripe_customer_id: Optional[str] = None,
    stripe_subscription_id: Optional[str] = None,
    current_period_start: Any = None,
    current_period_end: Any = None,
    status: Optional[str] = None,
) -> Subscription:
    """Upsert the org's subscription row and mirror tier/status on the organization.

    Period values are Stripe epoch seconds. Limits are zeroed unless active or trialing.
    """
    normalized = normalize_status(status)
    jobs_limit, seats_limit = TIER_LIMITS.get(plan, TIER_LIMITS[PlanTier.starter.value])
    if normalized not in (SubscriptionStatus.active.value, SubscriptionStatus.trialing.value):
        jobs_limit, seats_limit = 0, 0

    sub = db.query(Subscription).filter(Subscription.organization_id == organization_id).first()
    if sub is None:
        sub = Subscription(id=str(uuid.uuid4()), organization_id=organization_id)
        db.add(sub)
    sub.tier = plan
    sub.status = normalized
    sub.jobs_limit = jobs_limit
    sub.seats_limit = seats_limit
    if stripe_customer_id:
        sub.stripe_customer_id = stripe_customer_id
    if stripe_subscription_id:
        sub.stripe_subscription_id = stripe_subscription_id
    sub.current_period_start = _ts(current_period_start)
    sub.current_period_end = _ts(current_period_end)

    org = db.query(Organization).filter(Organization.id == organization_id).first()
    if org is not None:
        org.subscription_tier = plan
        org.subscription_status = normalized
        if stripe_customer_id:
            org.stripe_customer_id = stripe_customer_id
    else:
        _LOG.warning("apply_plan_org_missing org_id=%s plan=%s", organization_id, plan)
    db.commit()
    _LOG.info("apply_plan org_id=%s plan=%s status=%s", organization_id, plan, normalized)
    return sub


def _str_or_none(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _retrieve_subscription(st: Any, subscription_id: Optional[str]) -> Any:
    if st is None or not subscription_id:
        return None
    try:
        return st.Subscription.retrieve(subscription_id)
    except stripe.StripeError as e:
        _LOG.warning("stripe_subscription_retrieve_failed id=%s error=%s", subscription_id, e)
        return None


def _handle_checkout_completed(db: Session, obj: dict, st: Any) -> None:
    plan, org_id = extract_metadata_plan(obj.get("metadata"))
    if not plan or not org_id:
        return
    sub_id = _str_or_none(obj.get("subscription"))
    subscription = _retrieve_subscription(st, sub_id)
    status = _get(subscription, "status") or "active"
    apply_plan_to_organization(
        db,
        org_id,
        plan,
        stripe_customer_id=_str_or_none(obj.get("customer")),
        stripe_subscription_id=sub_id,
        current_period_start=_get(subscription, "current_period_start"),
        current_period_end=_get(subscription, "current_period_end"),
        status=status,
    )
    record_event(
        db,
        organization_id=org_id,
        actor_id=None,
        event_name="billing.subscription_created",
        target_type="subscription",
        target_id=sub_id,
        metadata={
            "plan": plan,
            "status": status,
            "stripe_customer_id": _str_or_none(obj.get("customer")),
            "source": "stripe_webhook",
        },
    )


def _handle_subscription_changed(db: Session, obj: dict) -> None:
    plan, org_id = extract_metadata_plan(obj.get("metadata"))
    if not plan or not org_id:
        return
    previous = db.query(Subscription).filter(Subscription.organization_id == org_id).first()
    previous_plan = previous.tier if previous else None
    plan_changed = bool(previous_plan) and previous_plan != plan
    status = obj.get("status") or "active"
    apply_plan_to_organization(
        db,
        org_id,
        plan,
        stripe_customer_id=_str_or_none(obj.get("customer")),
        stripe_subscription_id=_str_or_none(obj.get("id")),
        current_period_start=obj.get("current_period_start"),
        current_period_end=obj.get("current_period_end"),
        status=status,
    )
    record_event(
        db,
        organization_id=org_id,
        actor_id=None,
        event_name="billing.plan_changed" if plan_changed else "billing.subscription_updated",
        target_type="subscription",
        target_id=_str_or_none(obj.get("id")),
        metadata={
            "plan": plan,
            "previous_plan": previous_plan,
            "status": status,
            "stripe_customer_id": _str_or_none(obj.get("customer")),
            "source": "stripe_webhook",
        },
    )


def _handle_invoice(db: Session, obj: dict, st: Any, status: str) -> None:
    lines = (obj.get("lines") or {}).get("data") or []
    first_line = lines[0] if lines else {}
    subscription = obj.get("subscription")
    metadata = first_line.get("metadata") or obj.get("metadata")
    if not metadata and isinstance(subscription, dict):
        metadata = subscription.get("metadata")
    plan, org_id = extract_metadata_plan(metadata)
    sub_id = subscription if isinstance(subscription, str) else _get(subscription, "id")
    if (not plan or not org_id) and sub_id:
        retrieved = _retrieve_subscription(st, sub_id)
        plan2, org2 = extract_metadata_plan(_get(retrieved, "metadata"))
        plan, org_id = plan or plan2, org_id or org2
    if not plan or not org_id:
        return
    period = first_line.get("period") or {}
    apply_plan_to_organization(
        db,
        org_id,
        plan,
        stripe_customer_id=_str_or_none(obj.get("customer")),
        stripe_subscription_id=_str_or_none(subscription),
        current_period_start=period.get("start"),
        current_period_end=period.get("end"),
        status=status,
    )


def _handle_subscription_deleted(db: Session, obj: dict) -> None:
    plan, org_id = extract_metadata_plan(obj.get("metadata"))
    if not plan or not org_id:
        return
    apply_plan_to_organization(
        db,
        org_id,
        plan,
        stripe_customer_id=_str_or_none(obj.get("customer")),
        stripe_subscription_id=_str_or_none(obj.get("id")),
        current_period_start=obj.get("current_period_start"),
        current_period_end=obj.get("current_period_end"),
        status="canceled",
    )
    record_event(
        db,
        organization_id=org_id,
        actor_id=None,
        event_name="billing.subscription_canceled",
        target_type="subscription",
        target_id=_str_or_none(obj.get("id")),
        metadata={
            "plan": plan,
            "stripe_customer_id": _str_or_none(obj.get("customer")),
            "source": "stripe_webhook",
        },
    )


def handle_stripe_event(db: Session, event: dict, st: Any = None) -> bool:
    """Dispatch a verified Stripe event (as a plain dict). Returns False for ignored types."""
    event_type = event.get("type") or ""
    obj = (event.get("data") or {}).get("object") or {}
    if event_type == "checkout.session.completed":
        _handle_checkout_completed(db, obj, st)
    elif event_type in ("customer.subscription.created", "customer.subscription.updated"):
        _handle_subscription_changed(db, obj)
    elif event_type == "invoice.payment_succeeded":
        _handle_invoice(db, obj, st, "active")
    elif event_type == "invoice.payment_failed":
        _handle_invoice(db, obj, st, "past_due")
    elif event_type == "customer.subscription.deleted":
        _handle_subscription_deleted(db, obj)
    else:
        return False
    return True
