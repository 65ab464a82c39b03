"""Core configuration settings.

Centralized configuration using Pydantic Settings for environment
variable management with sensible defaults.
"""

import logging
import os
import secrets
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # =========================================================================
    # Environment Detection
    # =========================================================================

    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        alias="ENVIRONMENT",
    )

    # Application
    app_name: str = "Compass Assessment Engine"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # CORS
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000"])

    # Database
    database_url: str = "sqlite:///./data/compass.db"
    database_pool_size: int = Field(default=5, alias="DB_POOL_SIZE")
    database_max_overflow: int = Field(default=10, alias="DB_MAX_OVERFLOW")
    database_pool_timeout: int = Field(default=30, alias="DB_POOL_TIMEOUT")
    slow_query_threshold_ms: float = Field(default=500.0, alias="SLOW_QUERY_THRESHOLD_MS")
    enable_query_logging: bool = Field(default=False, alias="ENABLE_QUERY_LOGGING")

    # =========================================================================
    # Authentication (inbound API)
    # =========================================================================

    jwt_secret_key: str = Field(default_factory=lambda: secrets.token_urlsafe(32))
    jwt_algorithm: str = "HS256"
    jwt_audience: str = "compass-api"
    jwt_issuer: str = "compass"
    jwt_access_token_expire_minutes: int = 30

    # =========================================================================
    # Identity provider (delegated OAuth credentials)
    # =========================================================================

    oauth_token_endpoint: str = Field(
        default="https://login.microsoftonline.com/common/oauth2/v2.0/token",
        alias="OAUTH_TOKEN_ENDPOINT",
    )
    oauth_client_id: str | None = Field(default=None, alias="OAUTH_CLIENT_ID")
    oauth_client_secret: str | None = Field(default=None, alias="OAUTH_CLIENT_SECRET")
    oauth_management_scope: str = Field(
        default="https://management.azure.com/user_impersonation offline_access",
        alias="OAUTH_MANAGEMENT_SCOPE",
    )
    token_refresh_margin_seconds: int = Field(default=300, alias="TOKEN_REFRESH_MARGIN_SECONDS")
    identity_timeout_seconds: float = Field(default=30.0, alias="IDENTITY_TIMEOUT_SECONDS")
    token_refresh_max_attempts: int = Field(default=3, alias="TOKEN_REFRESH_MAX_ATTEMPTS")

    # Where delegated tokens are kept: the database or Azure Key Vault
    credential_store: Literal["database", "key_vault"] = Field(
        default="database", alias="CREDENTIAL_STORE"
    )
    key_vault_url: str | None = None

    # Platform credential (fallback when delegated credentials are unusable)
    azure_tenant_id: str | None = None
    azure_client_id: str | None = None
    azure_client_secret: str | None = None
    allow_platform_credential_fallback: bool = Field(
        default=True, alias="ALLOW_PLATFORM_CREDENTIAL_FALLBACK"
    )

    # =========================================================================
    # Azure Resource Graph
    # =========================================================================

    management_endpoint: str = "https://management.azure.com"
    resource_graph_api_version: str = "2021-03-01"
    resource_graph_page_size: int = Field(default=1000, ge=1, le=1000)
    resource_graph_timeout_seconds: float = Field(default=30.0, alias="RESOURCE_GRAPH_TIMEOUT_SECONDS")
    max_parallel_subscriptions: int = Field(default=4, ge=1, alias="MAX_PARALLEL_SUBSCRIPTIONS")
    resource_graph_max_attempts: int = Field(default=5, ge=1, alias="RESOURCE_GRAPH_MAX_ATTEMPTS")
    resource_graph_base_delay: float = Field(default=1.5, alias="RESOURCE_GRAPH_BASE_DELAY")
    resource_graph_max_delay: float = Field(default=60.0, alias="RESOURCE_GRAPH_MAX_DELAY")

    # =========================================================================
    # Scoring
    # =========================================================================

    naming_score_weight: float = Field(default=0.5, ge=0.0, alias="NAMING_SCORE_WEIGHT")
    tagging_score_weight: float = Field(default=0.5, ge=0.0, alias="TAGGING_SCORE_WEIGHT")

    # =========================================================================
    # Scheduler
    # =========================================================================

    scheduler_enabled: bool = Field(default=True, alias="SCHEDULER_ENABLED")
    pending_assessment_poll_minutes: int = Field(default=5, ge=1)
    stale_assessment_timeout_minutes: int = Field(default=120, ge=1)

    # Usage thresholds (fraction of plan limit)
    usage_warning_threshold: float = 0.8
    usage_critical_threshold: float = 0.9

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("environment", mode="before")
    @classmethod
    def detect_environment(cls, v: str | None) -> str:
        """Auto-detect environment from common environment variables."""
        if v:
            return v.lower()

        if os.getenv("PRODUCTION") or os.getenv("PROD"):
            return "production"
        if os.getenv("STAGING"):
            return "staging"

        return "development"

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: str | list[str]) -> list[str]:
        """Parse CORS origins from string or list."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @model_validator(mode="after")
    def validate_debug_mode(self):
        """Prevent debug mode in production."""
        if self.environment == "production" and self.debug:
            logger.error(
                "CRITICAL SECURITY ERROR: DEBUG mode cannot be enabled in production! "
                "Set DEBUG=false or ENVIRONMENT=development"
            )
            raise ValueError("DEBUG cannot be True in production environment")
        return self

    @model_validator(mode="after")
    def validate_score_weights(self):
        """At least one analyzer must contribute to the overall score."""
        if self.naming_score_weight + self.tagging_score_weight <= 0:
            raise ValueError("naming_score_weight and tagging_score_weight cannot both be zero")
        return self

    @model_validator(mode="after")
    def validate_credential_store(self):
        """Key Vault storage needs a vault URL."""
        if self.credential_store == "key_vault" and not self.key_vault_url:
            raise ValueError("KEY_VAULT_URL is required when CREDENTIAL_STORE=key_vault")
        return self

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == "production"

    @property
    def has_platform_service_principal(self) -> bool:
        """Check if an explicit platform service principal is configured."""
        return all([
            self.azure_tenant_id,
            self.azure_client_id,
            self.azure_client_secret,
        ])

    @property
    def resource_graph_url(self) -> str:
        """Resource Graph query endpoint."""
        return (
            f"{self.management_endpoint}/providers/Microsoft.ResourceGraph/resources"
            f"?api-version={self.resource_graph_api_version}"
        )

    @property
    def management_scope(self) -> str:
        """Scope used when requesting an ARM token with the platform credential."""
        return f"{self.management_endpoint}/.default"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
