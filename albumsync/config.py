"""Application configuration loaded from environment variables."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from albumsync.services.sync_engine import DeletionPolicy


class Settings(BaseSettings):
    """albumsync service settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Core
    debug: bool = False
    log_level: str = Field(default="info", pattern=r"^(debug|info|warning|warn|error)$")

    # Database
    database_url: str = "sqlite+aiosqlite:///data/state.db"

    # Source (iCloud shared album)
    icloud_album_token: str = Field(min_length=1)
    icloud_download_max_retries: int = Field(default=3, ge=0, le=10)

    # Target (Amazon Photos)
    amazon_cookies_path: Path = Path("./data/amazon-cookies.json")
    amazon_album_name: str = Field(default="Echo Show", min_length=1)
    amazon_auto_refresh_cookies: bool = True
    cookie_refresh_interval_hours: float = Field(default=12.0, gt=0)

    # Sync behaviour
    sync_deletions: bool = True
    poll_interval_seconds: int = Field(default=60, ge=1)
    upload_delay_ms: int = Field(default=0, ge=0)

    # Server
    host: str = "0.0.0.0"
    port: int = Field(default=3000, ge=1, le=65535)
    admin_token: str | None = None

    # Alerts
    alert_webhook_url: str | None = None
    pushover_token: str | None = None
    pushover_user: str | None = None
    alert_throttle_seconds: int = Field(default=3600, ge=0)

    @property
    def deletion_policy(self) -> DeletionPolicy:
        """Removal policy derived from ``SYNC_DELETIONS``."""
        return DeletionPolicy.HARD_DELETE if self.sync_deletions else DeletionPolicy.APPEND_ONLY

    @property
    def poll_interval(self) -> float:
        """Polling interval in seconds."""
        return float(self.poll_interval_seconds)

    @property
    def cookie_refresh_interval(self) -> float:
        """Credential refresh interval in seconds."""
        return self.cookie_refresh_interval_hours * 3600
