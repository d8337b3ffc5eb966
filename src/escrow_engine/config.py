"""Application configuration via pydantic-settings.

Reads from .env file or environment variables. All settings are validated
at startup — if a setting has the wrong shape, the app fails fast with a
clear error message.

Usage:
    from escrow_engine.config import get_settings
    settings = get_settings()
    print(settings.database_url)
"""

from __future__ import annotations

from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration for the escrow engine."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Application ---
    app_env: Literal["development", "staging", "production", "test"] = "development"
    app_debug: bool = True
    app_log_level: str = "DEBUG"
    app_host: str = "0.0.0.0"
    app_port: int = 8000

    # --- Database (PostgreSQL) ---
    database_url: str = (
        "postgresql+asyncpg://escrow:escrow_dev"
        "@localhost:5432/escrow_engine"
    )
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_timeout: int = 30
    db_echo_sql: bool = False

    # --- Redis ---
    redis_url: str = "redis://localhost:6379/0"
    redis_sweep_lock_ttl_seconds: int = 300

    # --- Scheduled sweep ---
    # Empty means "not configured": the sweep endpoint refuses to run
    # outside the test environment.
    cron_secret: str = ""
    sweep_batch_size: int = 100

    # --- Fees ---
    platform_fee_rate: Decimal = Field(default=Decimal("0.08"), ge=0, lt=1)

    # --- Milestone defaults ---
    default_review_window_days: int = 3
    default_revision_limit: int = 1

    # --- Deal-level auto-release grace periods ---
    auto_release_grace_hours: int = 72
    auto_release_grace_hours_digital: int = 48

    # --- Payment rail ---
    payment_rail_simulate: bool = True
    payment_rail_timeout_seconds: float = 10.0
    issue_payouts_after_commit: bool = True

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"

    @property
    def is_test(self) -> bool:
        return self.app_env == "test"

    @property
    def sync_database_url(self) -> str:
        """Synchronous database URL for Alembic migrations."""
        return self.database_url.replace("+asyncpg", "+psycopg2")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached singleton of the application settings."""
    return Settings()
