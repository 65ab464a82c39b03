"""License plan, organization subscription and usage counter models."""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from compass.core.database import Base


class LicensePlan(Base):
    """Plan limits and feature flags. ``None`` limits mean unlimited."""

    __tablename__ = "license_plans"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    max_assessments_per_month: Mapped[int | None] = mapped_column(Integer)
    max_subscriptions: Mapped[int | None] = mapped_column(Integer)
    max_environments: Mapped[int | None] = mapped_column(Integer)
    includes_api_access: Mapped[bool] = mapped_column(Boolean, default=False)
    includes_white_label: Mapped[bool] = mapped_column(Boolean, default=False)
    includes_custom_branding: Mapped[bool] = mapped_column(Boolean, default=False)
    includes_priority_support: Mapped[bool] = mapped_column(Boolean, default=False)
    # Day of month the billing cycle starts on; None means calendar month
    billing_anchor_day: Mapped[int | None] = mapped_column(Integer)

    def __repr__(self) -> str:
        return f"<LicensePlan {self.name}>"


class OrganizationSubscription(Base):
    """An organization's subscription to a plan."""

    __tablename__ = "organization_subscriptions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    plan_id: Mapped[str] = mapped_column(String(36), ForeignKey("license_plans.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="Active")  # Active, Trial, Expired, Cancelled
    trial_ends_at: Mapped[datetime | None] = mapped_column(DateTime)
    started_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<OrganizationSubscription org={self.organization_id} {self.status}>"


class UsageCounter(Base):
    """Running usage count per organization, metric and billing period."""

    __tablename__ = "usage_counters"
    __table_args__ = (
        UniqueConstraint("organization_id", "metric_type", "billing_period", name="uq_usage_counter"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[str] = mapped_column(String(36), nullable=False)
    metric_type: Mapped[str] = mapped_column(String(50), nullable=False)  # AssessmentRun, APICall
    billing_period: Mapped[str] = mapped_column(String(7), nullable=False)  # YYYY-MM
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    def __repr__(self) -> str:
        return f"<UsageCounter {self.organization_id} {self.metric_type} {self.billing_period}={self.count}>"
