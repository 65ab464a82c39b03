"""Database models module."""

from compass.models.assessment import (
    Assessment,
    AssessmentFinding,
    AssessmentResource,
    AssessmentStatus,
    AssessmentType,
)
from compass.models.credential import OAuthCredential
from compass.models.environment import AzureEnvironment, Client
from compass.models.license import LicensePlan, OrganizationSubscription, UsageCounter
from compass.models.preferences import ClientPreferences

__all__ = [
    "Assessment",
    "AssessmentFinding",
    "AssessmentResource",
    "AssessmentStatus",
    "AssessmentType",
    "AzureEnvironment",
    "Client",
    "ClientPreferences",
    "OAuthCredential",
    # Licensing
    "LicensePlan",
    "OrganizationSubscription",
    "UsageCounter",
]
