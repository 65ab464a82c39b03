"""Pydantic schemas for API request/response validation."""

from compass.schemas.assessment import (
    AssessmentCreate,
    AssessmentResultResponse,
    AssessmentStatusResponse,
    ConnectionTestResponse,
    FindingListResponse,
    FindingResponse,
    RecommendationResponse,
)
from compass.schemas.preferences import PolicyPreferences

__all__ = [
    "AssessmentCreate",
    "AssessmentResultResponse",
    "AssessmentStatusResponse",
    "ConnectionTestResponse",
    "FindingListResponse",
    "FindingResponse",
    "RecommendationResponse",
    "PolicyPreferences",
]
