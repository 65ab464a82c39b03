"""Assessment request and response schemas."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from compass.models.assessment import AssessmentType


class AssessmentCreate(BaseModel):
    """Body of a start-assessment request."""

    environment_id: str = Field(..., min_length=1, max_length=36)
    client_id: str | None = Field(None, max_length=36)
    name: str | None = Field(None, max_length=255)
    assessment_type: AssessmentType = AssessmentType.FULL
    subscription_ids: list[str] | None = Field(
        None, description="Subset of the environment's subscriptions; defaults to all of them"
    )
    use_client_preferences: bool = False
    options: dict[str, Any] = Field(default_factory=dict)

    @field_validator("subscription_ids")
    @classmethod
    def strip_subscription_ids(cls, v: list[str] | None) -> list[str] | None:
        if v is None:
            return v
        cleaned = [s.strip() for s in v if s and s.strip()]
        if not cleaned:
            raise ValueError("subscription_ids must not be empty when provided")
        return cleaned


class AssessmentStatusResponse(BaseModel):
    """Status view of an assessment."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    organization_id: str
    client_id: str | None = None
    environment_id: str
    name: str | None = None
    assessment_type: str
    status: str
    overall_score: float | None = None
    resource_count: int = 0
    credential_source: str | None = None
    failure_reason: str | None = None
    failure_detail: str | None = None
    remediation_hint: str | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


class RecommendationResponse(BaseModel):
    category: str
    title: str
    description: str
    priority: str
    estimated_effort: str
    affected_resources: int


class AssessmentResultResponse(BaseModel):
    """Completed assessment result."""

    id: str
    status: str
    overall_score: float
    naming_score: float | None = None
    tagging_score: float | None = None
    resource_count: int
    finding_count: int
    credential_source: str | None = None
    completed_at: datetime | None = None
    recommendations: list[RecommendationResponse] = Field(default_factory=list)
    metrics: dict[str, Any] = Field(default_factory=dict)


class FindingResponse(BaseModel):
    """One stored finding."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    assessment_id: str
    resource_id: str
    resource_name: str
    resource_type: str
    category: str
    rule: str
    severity: str
    issue: str
    recommendation: str | None = None
    estimated_effort: str | None = None


class FindingListResponse(BaseModel):
    total: int
    limit: int
    offset: int
    findings: list[FindingResponse]


class ConnectionTestResponse(BaseModel):
    environment_id: str
    success: bool
    credential_source: str | None = None
    error: str | None = None
    remediation_hint: str | None = None
    tested_at: datetime
