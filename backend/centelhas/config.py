"""Application configuration."""
from functools import lru_cache

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings."""

    # App
    app_env: str = "development"
    log_level: str = "INFO"
    json_logs: bool = False

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./centelhas.db",
        description="Async database URL (postgresql+asyncpg or sqlite+aiosqlite)",
    )
    db_pool_size: int = Field(
        default=20,
        description="DB connection pool size (ignored for SQLite)",
    )
    db_max_overflow: int = Field(
        default=10,
        description="Max overflow connections (ignored for SQLite)",
    )
    db_echo: bool = False

    # Redis (optional) - enables cross-process table locks
    redis_url: str | None = Field(
        default=None,
        description="Redis URL for distributed table locks; in-process locks when unset",
    )

    # Ledger concurrency
    ledger_max_attempts: int = Field(
        default=3,
        description="Attempts for an operation that hits a concurrent modification",
    )
    retry_wait_min_seconds: float = Field(
        default=0.05,
        description="Minimum backoff between conflict retries",
    )
    retry_wait_max_seconds: float = Field(
        default=0.5,
        description="Maximum backoff between conflict retries",
    )
    lock_timeout_seconds: float = Field(
        default=5.0,
        description="Bounded wait for table and row locks",
    )

    # Game rules
    min_table_players: int = Field(
        default=2,
        description="Active participants required to start a table",
    )

    @field_validator("ledger_max_attempts")
    @classmethod
    def validate_max_attempts(cls, v: int) -> int:
        """At least one attempt is always made."""
        if v < 1:
            raise ValueError("ledger_max_attempts must be at least 1")
        return v

    @field_validator("lock_timeout_seconds", "retry_wait_min_seconds", "retry_wait_max_seconds")
    @classmethod
    def validate_positive_seconds(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeouts and waits must be positive")
        return v

    @field_validator("min_table_players")
    @classmethod
    def validate_min_table_players(cls, v: int) -> int:
        """An elimination game needs an opponent."""
        if v < 2:
            raise ValueError("min_table_players must be at least 2")
        return v

    @model_validator(mode="after")
    def validate_retry_window(self) -> "Settings":
        if self.retry_wait_min_seconds > self.retry_wait_max_seconds:
            raise ValueError(
                "retry_wait_min_seconds must not exceed retry_wait_max_seconds"
            )

        if self.app_env == "production" and self.database_url.startswith("sqlite"):
            raise ValueError(
                "SQLite is not supported in production; configure a PostgreSQL database_url"
            )

        return self

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    model_config = {
        "env_file": ".env",
        "extra": "ignore",
    }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
