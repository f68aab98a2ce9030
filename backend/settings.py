"""
Centralized settings configuration using Pydantic BaseSettings.

All environment variables are defined here with types, defaults, and validation.
Use get_settings() for dependency injection compatibility in FastAPI.

Usage:
    from backend.settings import get_settings, Settings

    # In FastAPI endpoints (dependency injection)
    @app.get("/")
    def read_root(settings: Settings = Depends(get_settings)):
        return {"environment": settings.environment}

    # Direct access (module-level)
    settings = get_settings()
    print(settings.generation_retention_seconds)
"""

import json
from functools import lru_cache
from typing import List, Optional, Union

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # -------------------------------------------------------------------------
    # Core Environment
    # -------------------------------------------------------------------------
    environment: str = Field(
        default="development",
        description="Runtime environment: development, staging, production, test",
    )

    # -------------------------------------------------------------------------
    # Supabase Database
    # -------------------------------------------------------------------------
    supabase_url: Optional[str] = Field(
        default=None,
        description="Supabase project URL",
    )
    supabase_service_role_key: Optional[str] = Field(
        default=None,
        description="Supabase service role key (full access)",
    )

    @property
    def supabase_key(self) -> Optional[str]:
        """Get the Supabase key.

        Ledger and metrics writes happen on behalf of background workers too,
        so only the service role key is accepted.
        """
        return self.supabase_service_role_key

    # -------------------------------------------------------------------------
    # Authentication
    # -------------------------------------------------------------------------
    jwt_secret: Optional[str] = Field(
        default=None,
        description="HS256 secret used to validate session bearer tokens",
    )
    jwt_audience: Optional[str] = Field(
        default=None,
        description="Expected 'aud' claim on session tokens (optional)",
    )

    # -------------------------------------------------------------------------
    # CORS
    # -------------------------------------------------------------------------
    allowed_origins: List[str] = Field(
        default_factory=list,
        description="Allowed CORS origins. If empty, defaults to localhost:3000/3001.",
    )

    # -------------------------------------------------------------------------
    # Observability - Sentry
    # -------------------------------------------------------------------------
    sentry_dsn: Optional[str] = Field(
        default=None,
        description="Sentry DSN for error tracking",
    )

    # -------------------------------------------------------------------------
    # Observability - OpenTelemetry
    # -------------------------------------------------------------------------
    otel_enabled: bool = Field(
        default=False,
        description="Enable OpenTelemetry tracing and metrics",
    )
    otel_service_name: str = Field(
        default="generation-api",
        description="Service name reported to the tracing backend",
    )
    otel_exporter_otlp_endpoint: Optional[str] = Field(
        default=None,
        description="OTLP collector endpoint. Console exporters are used when unset.",
    )
    otel_exporter_otlp_protocol: str = Field(
        default="http/protobuf",
        description="OTLP protocol: 'grpc' or 'http/protobuf'",
    )
    otel_log_correlation: bool = Field(
        default=True,
        description="Inject trace and span ids into log records",
    )
    otel_traces_sample_rate: float = Field(
        default=0.1,
        ge=0.0,
        le=1.0,
        description="Fraction of traces to sample",
    )
    otel_metrics_export_interval_ms: int = Field(
        default=60000,
        description="Interval between metric exports",
    )

    # -------------------------------------------------------------------------
    # Deployment / Render
    # -------------------------------------------------------------------------
    render_git_commit: Optional[str] = Field(
        default=None,
        description="Git commit SHA provided by Render (RENDER_GIT_COMMIT)",
    )

    # -------------------------------------------------------------------------
    # SSE Configuration
    # -------------------------------------------------------------------------
    sse_heartbeat_interval: int = Field(
        default=15,
        description="Seconds between SSE heartbeat pings",
    )

    # -------------------------------------------------------------------------
    # Internal API
    # -------------------------------------------------------------------------
    internal_api_key: Optional[str] = Field(
        default=None,
        description="Shared secret for internal service-to-service calls",
    )

    # -------------------------------------------------------------------------
    # Plan Generator Collaborator
    # -------------------------------------------------------------------------
    plan_generator_url: str = Field(
        default="http://localhost:8010",
        description="Base URL of the plan generator service",
    )
    generation_timeout_seconds: float = Field(
        default=660.0,
        description="Upper bound on a single Generator call before it is treated as a timeout",
    )

    # -------------------------------------------------------------------------
    # Background Worker Hand-off
    # -------------------------------------------------------------------------
    generation_worker_url: Optional[str] = Field(
        default=None,
        description="Worker endpoint receiving generation.requested events. Inline execution when unset.",
    )

    # -------------------------------------------------------------------------
    # Generation Orchestration
    # -------------------------------------------------------------------------
    generation_retention_seconds: int = Field(
        default=600,
        description="Window after the last update during which a request can still be looked up",
    )
    generation_cache_ttl_seconds: int = Field(
        default=600,
        description="TTL of process-local cache entries",
    )
    generation_poll_interval_seconds: float = Field(
        default=2.0,
        description="Ledger poll interval while following work driven elsewhere",
    )
    generation_stream_ceiling_seconds: float = Field(
        default=300.0,
        description="Longest a stream waits for a terminal state before surfacing a timeout",
    )
    generation_tick_interval_seconds: float = Field(
        default=2.0,
        description="Progress simulator tick interval",
    )
    generation_fallback_estimate_ms: int = Field(
        default=120000,
        description="Duration assumed for the Generator call when no historical samples exist",
    )
    generation_simulated_start_percent: int = Field(
        default=45,
        ge=0,
        le=100,
        description="Progress at which the simulated Generator window begins",
    )
    generation_simulated_end_percent: int = Field(
        default=75,
        ge=0,
        le=100,
        description="Progress the simulated Generator window approaches",
    )

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------
    @field_validator("allowed_origins", mode="before")
    @classmethod
    def parse_allowed_origins(cls, v: Union[str, List[str], None]) -> List[str]:
        """Accept JSON array, comma-separated string, or list."""
        if v is None:
            return []
        if isinstance(v, list):
            return v
        v = v.strip()
        if not v:
            return []
        if v.startswith("["):
            return json.loads(v)
        return [origin.strip() for origin in v.split(",") if origin.strip()]

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is a valid value."""
        valid_environments = {"development", "staging", "production", "test"}
        if v.lower() not in valid_environments:
            raise ValueError(
                f"Invalid environment '{v}'. Must be one of: {valid_environments}"
            )
        return v.lower()

    @model_validator(mode="after")
    def validate_simulated_window(self) -> "Settings":
        """The simulated window must move forward."""
        if self.generation_simulated_start_percent >= self.generation_simulated_end_percent:
            raise ValueError(
                "generation_simulated_start_percent must be lower than "
                "generation_simulated_end_percent"
            )
        return self

    # -------------------------------------------------------------------------
    # Helper Properties
    # -------------------------------------------------------------------------
    @property
    def allowed_origins_list(self) -> List[str]:
        """CORS origins with the local development fallback applied."""
        if self.allowed_origins:
            return self.allowed_origins
        return ["http://localhost:3000", "http://localhost:3001"]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment == "development"

    @property
    def is_test(self) -> bool:
        """Check if running in test environment."""
        return self.environment == "test"


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    For testing, you can clear the cache with get_settings.cache_clear().

    Returns:
        Settings: Application settings instance
    """
    return Settings()
