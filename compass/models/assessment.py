"""Assessment run, stored resource and finding models."""

import json
import uuid
from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import DateTime, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from compass.core.database import Base


class AssessmentStatus(str, PyEnum):
    """Lifecycle states of an assessment run."""

    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in (AssessmentStatus.COMPLETED, AssessmentStatus.FAILED)


class AssessmentType(str, PyEnum):
    """Which analyzers an assessment runs."""

    NAMING_CONVENTION = "NamingConvention"
    TAGGING = "Tagging"
    GOVERNANCE_FULL = "GovernanceFull"
    FULL = "Full"


class Assessment(Base):
    """One run of the governance pipeline against an environment."""

    __tablename__ = "assessments"
    __table_args__ = (
        Index("idx_assessments_org_status", "organization_id", "status"),
        Index("idx_assessments_environment", "environment_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id: Mapped[str] = mapped_column(String(36), nullable=False)
    client_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("clients.id"))
    environment_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("azure_environments.id"), nullable=False
    )
    name: Mapped[str | None] = mapped_column(String(255))
    assessment_type: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=AssessmentStatus.PENDING.value)
    use_client_preferences: Mapped[bool] = mapped_column(default=False)
    subscription_ids_json: Mapped[str] = mapped_column(Text, nullable=False)  # JSON list
    options_json: Mapped[str | None] = mapped_column(Text)  # JSON object

    overall_score: Mapped[float | None] = mapped_column(Float)
    naming_score: Mapped[float | None] = mapped_column(Float)
    tagging_score: Mapped[float | None] = mapped_column(Float)
    resource_count: Mapped[int] = mapped_column(Integer, default=0)
    result_summary_json: Mapped[str | None] = mapped_column(Text)  # recommendations + metrics

    # oauth | platform-default
    credential_source: Mapped[str | None] = mapped_column(String(30))
    failure_reason: Mapped[str | None] = mapped_column(String(50))
    failure_detail: Mapped[str | None] = mapped_column(Text)
    remediation_hint: Mapped[str | None] = mapped_column(Text)

    created_by: Mapped[str | None] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    started_at: Mapped[datetime | None] = mapped_column(DateTime)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime)

    resources: Mapped[list["AssessmentResource"]] = relationship(
        "AssessmentResource", cascade="all, delete-orphan"
    )
    findings: Mapped[list["AssessmentFinding"]] = relationship(
        "AssessmentFinding", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<Assessment {self.id} {self.assessment_type}: {self.status}>"

    @property
    def subscription_ids(self) -> list[str]:
        return json.loads(self.subscription_ids_json or "[]")

    @property
    def options(self) -> dict:
        return json.loads(self.options_json) if self.options_json else {}

    @property
    def result_summary(self) -> dict:
        return json.loads(self.result_summary_json) if self.result_summary_json else {}

    @property
    def duration_seconds(self) -> float | None:
        """Run duration in seconds."""
        if self.completed_at and self.started_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None


class AssessmentResource(Base):
    """Resource snapshot captured by one assessment run."""

    __tablename__ = "assessment_resources"
    __table_args__ = (
        Index("idx_assessment_resources_assessment", "assessment_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    assessment_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("assessments.id", ondelete="CASCADE"), nullable=False
    )
    resource_id: Mapped[str] = mapped_column(String(1000), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    resource_type: Mapped[str] = mapped_column(String(255), nullable=False)
    resource_group: Mapped[str | None] = mapped_column(String(255))
    location: Mapped[str | None] = mapped_column(String(100))
    subscription_id: Mapped[str] = mapped_column(String(36), nullable=False)
    kind: Mapped[str | None] = mapped_column(String(100))
    sku: Mapped[str | None] = mapped_column(String(100))
    tags_json: Mapped[str | None] = mapped_column(Text)  # JSON object
    captured_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<AssessmentResource {self.resource_type}/{self.name}>"

    @property
    def tags(self) -> dict[str, str]:
        return json.loads(self.tags_json) if self.tags_json else {}


class AssessmentFinding(Base):
    """One policy violation for one resource in one assessment run."""

    __tablename__ = "assessment_findings"
    __table_args__ = (
        Index("idx_assessment_findings_assessment", "assessment_id"),
        Index("idx_assessment_findings_severity", "assessment_id", "severity"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    assessment_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("assessments.id", ondelete="CASCADE"), nullable=False
    )
    resource_id: Mapped[str] = mapped_column(String(1000), nullable=False)
    resource_name: Mapped[str] = mapped_column(String(255), nullable=False)
    resource_type: Mapped[str] = mapped_column(String(255), nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False)  # NamingConvention, Tagging
    rule: Mapped[str] = mapped_column(String(100), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)  # Critical, High, Medium, Low
    issue: Mapped[str] = mapped_column(Text, nullable=False)
    recommendation: Mapped[str | None] = mapped_column(Text)
    estimated_effort: Mapped[str | None] = mapped_column(String(20))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<AssessmentFinding {self.category}/{self.rule} {self.resource_name}: {self.severity}>"
