"""SQLAlchemy models for organizations, jobs, the audit ledger, billing and report runs."""
from __future__ import annotations

import enum
from datetime import datetime
from sqlalchemy import Boolean, Column, String, DateTime, ForeignKey, Integer, Text, JSON, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from .session import Base

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Role(str, enum.Enum):
    owner = "owner"
    admin = "admin"
    safety_lead = "safety_lead"
    executive = "executive"
    member = "member"


class PlanTier(str, enum.Enum):
    starter = "starter"
    pro = "pro"
    business = "business"


class SubscriptionStatus(str, enum.Enum):
    active = "active"
    trialing = "trialing"
    past_due = "past_due"
    canceled = "canceled"
    none = "none"


class ReportRunStatus(str, enum.Enum):
    draft = "draft"
    generating = "generating"
    ready_for_signatures = "ready_for_signatures"
    final = "final"
    failed = "failed"


class Organization(Base):
    __tablename__ = "organizations"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    subscription_tier = Column("subscription_tier", String, nullable=True)
    subscription_status = Column("subscription_status", String, nullable=True)
    stripe_customer_id = Column("stripe_customer_id", String, nullable=True)
    created_at = Column("created_at", DateTime, default=datetime.utcnow)
    updated_at = Column("updated_at", DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    users = relationship("User", back_populates="organization")
    jobs = relationship("Job", back_populates="organization")
    audit_logs = relationship("AuditLog", back_populates="organization")
    subscription = relationship("Subscription", back_populates="organization", uselist=False)


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True)
    organization_id = Column("organization_id", String, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    email = Column(String, nullable=True)
    full_name = Column("full_name", String, nullable=True)
    role = Column(String, nullable=False, default=Role.member.value)
    created_at = Column("created_at", DateTime, default=datetime.utcnow)
    updated_at = Column("updated_at", DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    organization = relationship("Organization", back_populates="users")


class Job(Base):
    __tablename__ = "jobs"

    id = Column(String, primary_key=True)
    organization_id = Column("organization_id", String, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    client_name = Column("client_name", String, nullable=False)
    job_type = Column("job_type", String, nullable=True)
    location = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    status = Column(String, nullable=False, default="draft")
    risk_score = Column("risk_score", Integer, nullable=True)
    risk_level = Column("risk_level", String, nullable=True)
    review_flag = Column("review_flag", Boolean, nullable=False, default=False)
    created_by = Column("created_by", String, nullable=True)
    start_date = Column("start_date", DateTime, nullable=True)
    end_date = Column("end_date", DateTime, nullable=True)
    deleted_at = Column("deleted_at", DateTime, nullable=True)
    created_at = Column("created_at", DateTime, default=datetime.utcnow)
    updated_at = Column("updated_at", DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    organization = relationship("Organization", back_populates="jobs")
    risk_scores = relationship("JobRiskScore", back_populates="job")
    mitigation_items = relationship("MitigationItem", back_populates="job")
    signoffs = relationship("JobSignoff", back_populates="job")


class JobRiskScore(Base):
    __tablename__ = "job_risk_scores"

    id = Column(String, primary_key=True)
    job_id = Column("job_id", String, ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False)
    overall_score = Column("overall_score", Integer, nullable=False)
    risk_level = Column("risk_level", String, nullable=False)
    factors = Column(JSONType, nullable=True)
    created_at = Column("created_at", DateTime, default=datetime.utcnow)

    job = relationship("Job", back_populates="risk_scores")


class MitigationItem(Base):
    __tablename__ = "mitigation_items"

    id = Column(String, primary_key=True)
    job_id = Column("job_id", String, ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    done = Column(Boolean, nullable=False, default=False)
    completed_at = Column("completed_at", DateTime, nullable=True)
    created_at = Column("created_at", DateTime, default=datetime.utcnow)

    job = relationship("Job", back_populates="mitigation_items")


class JobSignoff(Base):
    __tablename__ = "job_signoffs"

    id = Column(String, primary_key=True)
    organization_id = Column("organization_id", String, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    job_id = Column("job_id", String, ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False)
    signer_id = Column("signer_id", String, nullable=True)
    signoff_type = Column("signoff_type", String, nullable=True)
    status = Column(String, nullable=False, default="pending")
    signed_at = Column("signed_at", DateTime, nullable=True)
    created_at = Column("created_at", DateTime, default=datetime.utcnow)

    job = relationship("Job", back_populates="signoffs")


class AuditLog(Base):
    __tablename__ = "audit_logs"
    __table_args__ = (UniqueConstraint("organization_id", "seq", name="uq_audit_logs_org_seq"),)

    id = Column(String, primary_key=True)
    organization_id = Column("organization_id", String, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    actor_id = Column("actor_id", String, nullable=True)
    event_name = Column("event_name", String, nullable=False)
    category = Column(String, nullable=False, default="operations")
    outcome = Column(String, nullable=False, default="allowed")
    severity = Column(String, nullable=False, default="info")
    target_type = Column("target_type", String, nullable=False)
    target_id = Column("target_id", String, nullable=True)
    seq = Column(Integer, nullable=False, default=0)  # per-organization ledger position
    metadata_ = Column("metadata", JSONType, default=dict)
    hash = Column(String, nullable=True)
    prev_hash = Column("prev_hash", String, nullable=True)
    created_at = Column("created_at", DateTime, default=datetime.utcnow)

    organization = relationship("Organization", back_populates="audit_logs")


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(String, primary_key=True)
    organization_id = Column(
        "organization_id",
        String,
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    tier = Column(String, nullable=False, default=PlanTier.starter.value)
    status = Column(String, nullable=False, default=SubscriptionStatus.active.value)
    stripe_subscription_id = Column("stripe_subscription_id", String, nullable=True)
    stripe_customer_id = Column("stripe_customer_id", String, nullable=True)
    current_period_start = Column("current_period_start", DateTime, nullable=True)
    current_period_end = Column("current_period_end", DateTime, nullable=True)
    seats_limit = Column("seats_limit", Integer, nullable=True)
    jobs_limit = Column("jobs_limit", Integer, nullable=True)
    created_at = Column("created_at", DateTime, default=datetime.utcnow)
    updated_at = Column("updated_at", DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    organization = relationship("Organization", back_populates="subscription")


class StripeWebhookEvent(Base):
    __tablename__ = "stripe_webhook_events"

    id = Column(String, primary_key=True)  # Stripe event id
    type = Column(String, nullable=False)
    processed_at = Column("processed_at", DateTime, default=datetime.utcnow)


class BillingAlert(Base):
    __tablename__ = "billing_alerts"

    id = Column(String, primary_key=True)
    alert_key = Column("alert_key", String, nullable=True, unique=True)  # condition alerts upsert on this
    alert_type = Column("alert_type", String, nullable=False)
    severity = Column(String, nullable=False, default="warning")
    message = Column(Text, nullable=False)
    metadata_ = Column("metadata", JSONType, default=dict)
    resolved = Column(Boolean, nullable=False, default=False)
    resolved_at = Column("resolved_at", DateTime, nullable=True)
    created_at = Column("created_at", DateTime, default=datetime.utcnow)


class ReconciliationLog(Base):
    __tablename__ = "reconciliation_logs"

    id = Column(String, primary_key=True)
    started_at = Column("started_at", DateTime, default=datetime.utcnow)
    completed_at = Column("completed_at", DateTime, nullable=True)
    total = Column(Integer, nullable=False, default=0)
    matched = Column(Integer, nullable=False, default=0)
    mismatch_count = Column("mismatch_count", Integer, nullable=False, default=0)
    error_count = Column("error_count", Integer, nullable=False, default=0)


class ReportRun(Base):
    __tablename__ = "report_runs"

    id = Column(String, primary_key=True)
    organization_id = Column("organization_id", String, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    job_id = Column("job_id", String, nullable=True)
    packet_type = Column("packet_type", String, nullable=False, default="job_report")
    status = Column(String, nullable=False, default=ReportRunStatus.draft.value)
    generated_by = Column("generated_by", String, nullable=True)
    data_hash = Column("data_hash", String, nullable=True)
    pdf_hash = Column("pdf_hash", String, nullable=True)
    pdf_path = Column("pdf_path", String, nullable=True)
    metadata_ = Column("metadata", JSONType, default=dict)
    error = Column(Text, nullable=True)
    generated_at = Column("generated_at", DateTime, default=datetime.utcnow)
    completed_at = Column("completed_at", DateTime, nullable=True)
