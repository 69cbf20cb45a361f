# freezegate/config/settings.py
"""
Application settings with Pydantic v2 BaseSettings.

Environment variables with FREEZEGATE_ prefix.
"""
from __future__ import annotations

from datetime import timedelta
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """freezegate application settings."""

    model_config = SettingsConfigDict(
        env_prefix="FREEZEGATE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # Core
    ENV: str = Field(default="dev", description="Environment: dev, staging, prod")
    LOG_LEVEL: str = "INFO"

    # Store
    STORE_BACKEND: str = Field(default="memory", description="Store backend: memory or sqlite")
    SQLITE_PATH: str = "var/freezegate/freeze.sqlite"

    # Permissions
    PERMISSIONS_PATH: str = "configs/permissions.yaml"

    # GitHub
    GITHUB_API_URL: str = "https://api.github.com"
    GITHUB_TOKEN: str = ""
    CHECK_NAME: str = "freezegate"
    RULESET_PREFIX: str = "freezegate"

    # Freeze policy
    FREEZE_DEFAULT_DURATION: str = Field(
        default="2h",
        description="Duration applied when /freeze has no --duration. Empty means no expiry.",
    )

    # Adapter calls / reconciliation
    ADAPTER_TIMEOUT_SEC: float = 10.0
    RECONCILE_MAX_CONCURRENCY: int = 10
    RECONCILE_MAX_RETRIES: int = 3
    RECONCILE_RETRY_BASE_MS: int = 1000
    BATCH_MAX_CONCURRENCY: int = 5

    # Scheduler
    TICK_INTERVAL_SEC: int = 60

    # Helpers
    def get_default_freeze_duration(self) -> Optional[timedelta]:
        """Parse FREEZE_DEFAULT_DURATION; None disables automatic expiry."""
        from freezegate.freezer.timeparse import parse_duration

        raw = (self.FREEZE_DEFAULT_DURATION or "").strip()
        if not raw or raw.lower() in ("none", "0"):
            return None
        return parse_duration(raw)

    def is_prod(self) -> bool:
        return self.ENV.lower() == "prod"


# Singleton instance
settings = Settings()


def get_settings() -> Settings:
    return settings


__all__ = ["Settings", "settings", "get_settings"]
