"""Settings for launchpad workers, loaded with pydantic-settings.

Usage:
    from launchpad.config import get_settings

    settings = get_settings()
    settings.redis_url
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings.

    Every platform credential is optional so a worker can start without the
    integrations it does not use; adapters log a warning when unconfigured.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Logging configuration
    service_name: str = Field(default="launchpad", description="Service name for structured logging")
    log_format: Literal["json", "console"] = Field(default="console", description="Log output format")
    log_level: str = Field(default="INFO", description="Log level (DEBUG, INFO, WARNING, ERROR)")

    # Infrastructure
    database_url: str = Field(
        default="postgresql+asyncpg://postgres:postgres@db:5432/launchpad",
        description="SQLAlchemy async database URL",
        examples=["postgresql+asyncpg://user:pass@db:5432/dbname"],
    )
    redis_url: str = Field(
        default="redis://redis:6379/0",
        description="Redis connection URL",
        examples=["redis://redis:6379"],
    )

    # Code generation service
    codegen_url: str = Field(default="http://codegen:8000", description="Code generation service URL")
    codegen_api_key: str = Field(default="", description="Bearer token for the code generation service")
    codegen_timeout: float = Field(default=180.0, gt=0, description="Per-request timeout in seconds")

    # Compute platform (Railway)
    railway_api_token: str = Field(default="", description="Railway API token")
    railway_api_url: str = Field(default="https://backboard.railway.app/graphql/v2")

    # Edge routing (Cloudflare)
    cloudflare_api_token: str = Field(default="", description="Cloudflare API token")
    cloudflare_account_id: str = Field(default="")
    cloudflare_zone_id: str = Field(default="")
    cloudflare_kv_namespace_id: str = Field(default="")
    cloudflare_api_url: str = Field(default="https://api.cloudflare.com/client/v4")
    platform_domain: str = Field(default="imagia.net", description="Domain that hosts app subdomains")

    # Source control (GitHub)
    github_api_url: str = Field(default="https://api.github.com")

    # Secrets
    secrets_encryption_key: str = Field(default="", description="Fernet key for project secrets")

    # Circuit breaker
    circuit_breaker_timeout: float = Field(default=30.0, gt=0, description="Per-call timeout in seconds")
    circuit_breaker_failure_threshold: int = Field(default=5, ge=1, description="Consecutive failures to open")
    circuit_breaker_error_threshold: int = Field(default=50, ge=1, le=100, description="Failure rate percent")
    circuit_breaker_volume_threshold: int = Field(default=5, ge=1)
    circuit_breaker_window: float = Field(default=30.0, gt=0, description="Rolling window in seconds")
    circuit_breaker_reset_timeout: float = Field(default=60.0, gt=0, description="Cool-down in seconds")

    # Retry
    retry_max_retries: int = Field(default=2, ge=0)
    retry_base_delay: float = Field(default=2.0, ge=0)

    # Queues
    build_max_attempts: int = Field(default=3, ge=1)
    build_backoff_seconds: float = Field(default=2.0, ge=0)
    build_timeout_seconds: float = Field(default=300.0, gt=0)
    build_concurrency: int = Field(default=2, ge=1)
    deploy_max_attempts: int = Field(default=2, ge=1)
    deploy_backoff_seconds: float = Field(default=5.0, ge=0)
    deploy_timeout_seconds: float = Field(default=900.0, gt=0, description="Longer than deploy_poll_timeout")
    deploy_concurrency: int = Field(default=2, ge=1)

    # Deploy polling
    deploy_poll_timeout: float = Field(default=600.0, gt=0)
    deploy_poll_interval: float = Field(default=10.0, gt=0)

    # Auto-fix
    autofix_max_iterations: int = Field(default=3, ge=1)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log level is valid."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_v = v.upper()
        if upper_v not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return upper_v


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
