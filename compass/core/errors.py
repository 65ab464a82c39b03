"""Error taxonomy for the assessment engine.

Every error carries a stable ``reason`` code. The orchestrator writes that
code onto the assessment record, so callers see ``status`` plus
``failure_reason`` instead of raw exceptions.
"""

from enum import Enum


class FailureReason(str, Enum):
    """Stable reason codes surfaced to callers."""

    LIMIT_REACHED = "LimitReached"
    NO_SUBSCRIPTION = "NoSubscription"
    SUBSCRIPTION_EXPIRED = "SubscriptionExpired"
    ENVIRONMENT_NOT_FOUND = "EnvironmentNotFound"
    INVALID_REQUEST = "InvalidRequest"
    CREDENTIAL_MISSING = "CredentialMissing"
    CREDENTIAL_INVALID = "CredentialInvalid"
    INSUFFICIENT_PERMISSION = "InsufficientPermission"
    IDENTITY_PROVIDER_UNAVAILABLE = "IdentityProviderUnavailable"
    PROVIDER_UNAVAILABLE = "ProviderUnavailable"
    PERSISTENCE_ERROR = "PersistenceError"
    CANCELLED = "Cancelled"
    INTERRUPTED = "Interrupted"
    INTERNAL_ERROR = "InternalError"


class CompassError(Exception):
    """Base class for engine errors."""

    reason: FailureReason = FailureReason.INTERNAL_ERROR
    remediation_hint: str | None = None

    def __init__(self, message: str, remediation_hint: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if remediation_hint is not None:
            self.remediation_hint = remediation_hint

    def to_dict(self) -> dict:
        """Serializable form used by the HTTP adapter."""
        payload = {"reason": self.reason.value, "message": self.message}
        if self.remediation_hint:
            payload["remediation_hint"] = self.remediation_hint
        return payload


# =========================================================================
# Admission errors: raised before any work starts, never retried
# =========================================================================

class AdmissionError(CompassError):
    """Request rejected before an assessment was created."""


class LimitReachedError(AdmissionError):
    """Plan quota for the current billing period is used up."""

    reason = FailureReason.LIMIT_REACHED

    def __init__(self, current_usage: int, max_allowed: int) -> None:
        super().__init__(
            f"Monthly assessment limit reached ({current_usage}/{max_allowed})",
            remediation_hint="Upgrade the subscription plan or wait for the next billing period",
        )
        self.current_usage = current_usage
        self.max_allowed = max_allowed

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload.update(current_usage=self.current_usage, max_allowed=self.max_allowed)
        return payload


class SubscriptionInactiveError(AdmissionError):
    """Organization has no active plan, or the plan expired."""

    def __init__(self, reason: FailureReason, message: str) -> None:
        super().__init__(message, remediation_hint="Activate or renew the organization's subscription")
        self.reason = reason


class EnvironmentNotFoundError(AdmissionError):
    """Environment missing, deleted or owned by another organization."""

    reason = FailureReason.ENVIRONMENT_NOT_FOUND


class InvalidRequestError(AdmissionError):
    """Structurally invalid start request."""

    reason = FailureReason.INVALID_REQUEST


# =========================================================================
# Credential errors
# =========================================================================

class CredentialError(CompassError):
    """Base class for delegated credential problems."""


class CredentialMissingError(CredentialError):
    reason = FailureReason.CREDENTIAL_MISSING
    remediation_hint = "Connect the client's Azure tenant to grant delegated access"


class CredentialInvalidError(CredentialError):
    reason = FailureReason.CREDENTIAL_INVALID
    remediation_hint = "Re-authenticate the client's Azure consent; the stored refresh token was rejected"


class InsufficientPermissionError(CredentialError):
    reason = FailureReason.INSUFFICIENT_PERMISSION
    remediation_hint = "Grant the Reader role on the subscription to the consenting account"


class IdentityProviderUnavailableError(CredentialError):
    reason = FailureReason.IDENTITY_PROVIDER_UNAVAILABLE
    remediation_hint = "The identity provider could not be reached; retry the assessment later"


# =========================================================================
# Provider and pipeline errors
# =========================================================================

class ProviderUnavailableError(CompassError):
    """Every subscription of the environment failed to return inventory."""

    reason = FailureReason.PROVIDER_UNAVAILABLE


class PersistenceError(CompassError):
    """Writing assessment data failed; fatal to the run."""

    reason = FailureReason.PERSISTENCE_ERROR


class AssessmentCancelledError(CompassError):
    reason = FailureReason.CANCELLED


# =========================================================================
# Read-side errors
# =========================================================================

class AssessmentNotFoundError(CompassError):
    """Assessment does not exist or is not visible to the caller."""


class AssessmentNotReadyError(CompassError):
    """Result requested for an assessment that has not completed."""

    def __init__(self, assessment_id: str, status: str) -> None:
        super().__init__(f"Assessment {assessment_id} is {status}, results are not available")
        self.assessment_id = assessment_id
        self.status = status


class InvalidStateTransition(CompassError):
    """Attempt to move an assessment out of a terminal state."""
