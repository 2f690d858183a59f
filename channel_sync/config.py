"""
Channel Sync Configuration
==========================

Settings for the channel synchronization engine, loaded from environment
variables (prefix ``CHANNEL_SYNC_``) or a ``.env`` file.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime settings for the sync engine."""

    model_config = SettingsConfigDict(
        env_prefix="CHANNEL_SYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Persistence
    DATABASE_URL: str = "sqlite+aiosqlite:///./channel_sync.db"
    DATABASE_ECHO: bool = False

    # Optional Redis for cross-process connection locks
    REDIS_URL: Optional[str] = None
    LOCK_TTL_SECONDS: int = Field(default=600, gt=0)

    # iCal feeds
    ICAL_FETCH_TIMEOUT_SECONDS: float = Field(default=15.0, gt=0)
    ICAL_MAX_FEED_BYTES: int = Field(default=5 * 1024 * 1024, gt=0)
    ICAL_ALLOW_INSECURE: bool = False
    ICAL_USER_AGENT: str = "channel-sync/1.0 (+ical)"

    # Lodgify REST API
    LODGIFY_BASE_URL: str = "https://api.lodgify.com"
    LODGIFY_PAGE_SIZE: int = Field(default=50, gt=0, le=100)
    LODGIFY_MAX_PAGES: int = Field(default=50, gt=0)
    LODGIFY_TIMEOUT_SECONDS: float = Field(default=20.0, gt=0)

    # Scheduling
    SYNC_WORKER_POOL_SIZE: int = Field(default=5, gt=0)
    SCHEDULER_TICK_SECONDS: float = Field(default=60.0, gt=0)
    SCHEDULER_ENABLED: bool = True

    # Per-run limits
    SYNC_FETCH_TIMEOUT_SECONDS: float = Field(default=30.0, gt=0)
    SYNC_PERSIST_TIMEOUT_SECONDS: float = Field(default=15.0, gt=0)

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False


settings = Settings()
