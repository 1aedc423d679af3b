"""
Configuration settings for the SukiStudy sync core.

Uses environment variables (prefixed ``SUKISTUDY_``) with sensible defaults.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="SUKISTUDY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Remote API
    api_base_url: str = "https://api.wanikani.com/v2"
    api_revision: str = "20170710"
    api_timeout: float = 30.0

    # Rate limiting (WaniKani allows 60 requests/minute; stay under it)
    requests_per_minute: int = 50
    rate_limit_window: float = 60.0
    rate_limit_margin: float = 0.5
    rate_limit_cooldown: float = 5.0
    max_rate_limit_retries: int = 5

    # Sync
    sync_interval: float = 600.0  # Periodic sync every 10 minutes
    connectivity_poll_interval: float = 5.0
    offline_mode: bool = False

    # Local storage
    data_dir: Path = Field(default_factory=lambda: Path.home() / ".sukistudy")
    db_name: str = "sukistudy.db"

    debug: bool = Field(default=False)

    @field_validator("api_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Endpoints are joined with a leading slash."""
        return v.rstrip("/")

    @property
    def db_path(self) -> Path:
        """Full path to the local store, creating the data directory."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        return self.data_dir / self.db_name


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
