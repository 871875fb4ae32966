"""Application configuration."""
from functools import lru_cache
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings."""

    # App
    app_env: str = "development"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    app_debug: bool = False
    log_level: str = "INFO"

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./tracker.db",
        description="Database connection URL (asyncpg in production, aiosqlite locally)",
    )
    db_pool_size: int = Field(
        default=20,
        description="DB connection pool size (ignored for SQLite)",
    )
    db_max_overflow: int = Field(
        default=10,
        description="Max overflow connections (ignored for SQLite)",
    )

    # Redis - optional. Without it per-user locks are process-local.
    redis_url: Optional[str] = Field(
        default=None,
        description="Redis URL for cross-process per-user locks (optional)",
    )
    lock_timeout_ms: int = Field(
        default=10000,
        description="How long a per-user lock may be held before it expires",
    )
    lock_acquire_timeout_ms: int = Field(
        default=5000,
        description="How long to wait for a per-user lock before giving up",
    )

    # Calendar
    timezone: str = Field(
        default="Asia/Shanghai",
        description="Reference timezone for day boundaries, weeks and time-of-day badges",
    )

    # Goals
    max_daily_goal_minutes: int = Field(
        default=1440,
        description="Upper bound for a user's daily goal",
    )

    # Time-of-day achievement windows, [start, end) in local hours
    early_bird_start_hour: int = 5
    early_bird_end_hour: int = 8
    night_owl_start_hour: int = 23
    night_owl_end_hour: int = 3

    # Leaderboard / stats
    leaderboard_default_limit: int = 10
    leaderboard_max_limit: int = 50
    recent_entries_limit: int = 5

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        """Reject unknown IANA zone names at startup."""
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone: {v}") from exc
        return v

    @field_validator(
        "early_bird_start_hour",
        "early_bird_end_hour",
        "night_owl_start_hour",
        "night_owl_end_hour",
    )
    @classmethod
    def validate_hour(cls, v: int) -> int:
        if not 0 <= v <= 24:
            raise ValueError("hour must be between 0 and 24")
        return v

    @model_validator(mode="after")
    def validate_limits(self) -> "Settings":
        """Validate cross-field limits."""
        if self.leaderboard_default_limit > self.leaderboard_max_limit:
            raise ValueError(
                "leaderboard_default_limit cannot exceed leaderboard_max_limit"
            )
        if self.app_env == "production" and self.app_debug:
            raise ValueError("app_debug must be False in production environment")
        return self

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    model_config = {
        "env_file": ".env",
        "extra": "ignore",
    }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
