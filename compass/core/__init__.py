"""Core module initialization."""

from compass.core.config import Settings, get_settings
from compass.core.database import Base, get_db_context, init_db
from compass.core.errors import (
    AdmissionError,
    AssessmentNotFoundError,
    AssessmentNotReadyError,
    CompassError,
    CredentialError,
    FailureReason,
    LimitReachedError,
)
from compass.core.retry import RetryPolicy, call_with_retry, retry_with_backoff

__all__ = [
    # Config
    "Settings",
    "get_settings",
    # Database
    "Base",
    "get_db_context",
    "init_db",
    # Errors
    "CompassError",
    "AdmissionError",
    "LimitReachedError",
    "CredentialError",
    "AssessmentNotFoundError",
    "AssessmentNotReadyError",
    "FailureReason",
    # Retry
    "RetryPolicy",
    "call_with_retry",
    "retry_with_backoff",
]
