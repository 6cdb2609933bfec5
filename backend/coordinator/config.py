"""
Application configuration for the agent coordinator.

Provides:
- Environment-aware settings
- Hierarchy limits
- Patrol (health monitor) tuning
- CORS and rate limit configuration
"""

from typing import Optional

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",  # Ignore extra env vars not defined in Settings
    )

    # Environment
    app_env: str = "development"
    version: str = "0.1.0"
    environment: str = ""  # Alias for app_env

    # Database
    database_url: str = "sqlite+aiosqlite:///./coordinator_dev.db"
    auto_create_tables: bool = True  # create missing tables at startup (SQLite/dev)

    # Debug
    debug: bool = False

    # CORS
    cors_allowed_origins: list[str] | str = ["http://localhost:3000"]

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json | text
    log_file_enabled: bool = False
    log_file_path: str = "/var/log/coordinator/app.log"

    # Metrics
    metrics_enabled: bool = True

    # Rate limiting (redis:// URIs are supported by slowapi)
    rate_limit_storage_uri: str = "memory://"
    rate_limit_default: str = "600/minute"

    # Agent hierarchy
    max_spawn_depth: int = 3

    # Patrol / health monitor
    patrol_enabled: bool = True
    patrol_agent_name: str = "patrol"
    patrol_interval_seconds: float = 150.0
    liveness_window_seconds: float = 300.0
    escalation_threshold: int = 2
    escalation_cooldown_seconds: Optional[float] = None  # None = one liveness window
    merge_staleness_seconds: float = 900.0

    @field_validator(
        "patrol_interval_seconds",
        "liveness_window_seconds",
        "merge_staleness_seconds",
    )
    @classmethod
    def validate_positive(cls, v: float, info) -> float:
        if v <= 0:
            raise ValueError(f"{info.field_name} must be > 0 (got {v})")
        return v

    @field_validator("escalation_threshold", "max_spawn_depth")
    @classmethod
    def validate_at_least_one(cls, v: int, info) -> int:
        if v < 1:
            raise ValueError(f"{info.field_name} must be >= 1 (got {v})")
        return v

    @model_validator(mode="after")
    def validate_cooldown(self) -> "Settings":
        if self.escalation_cooldown_seconds is not None and self.escalation_cooldown_seconds < 0:
            raise ValueError("escalation_cooldown_seconds must be >= 0")
        return self

    @property
    def effective_env(self) -> str:
        """Get effective environment name."""
        return self.environment or self.app_env

    @property
    def is_production(self) -> bool:
        return self.effective_env in ("production", "prod")

    @property
    def is_development(self) -> bool:
        return self.effective_env in ("development", "dev", "")

    @property
    def effective_escalation_cooldown_seconds(self) -> float:
        """Cool-down between escalations for the same subject."""
        if self.escalation_cooldown_seconds is None:
            return self.liveness_window_seconds
        return self.escalation_cooldown_seconds

    @property
    def cors_origins(self) -> list[str]:
        """Return parsed CORS origins as list."""
        if isinstance(self.cors_allowed_origins, list):
            return self.cors_allowed_origins
        return [origin.strip() for origin in self.cors_allowed_origins.split(",") if origin.strip()]


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Default instance for backwards compatibility
settings = get_settings()
