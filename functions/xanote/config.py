"""
Configuration and settings for the XA Note service.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings (``XANOTE_*`` variables or ``.env``)."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="XANOTE_",
        extra="ignore",
    )

    api_prefix: str = Field(default="/api")

    # Persistence backend
    database_backend: Literal["sqlite", "d1"] = Field(default="sqlite")
    sqlite_path: str = Field(default="data/xa-note.db")

    # Cloudflare D1 (remote edge database)
    d1_account_id: Optional[str] = Field(default=None)
    d1_database_id: Optional[str] = Field(default=None)
    d1_api_token: Optional[str] = Field(default=None)
    d1_api_base: str = Field(default="https://api.cloudflare.com/client/v4")
    # None blocks until the server answers.
    d1_timeout_seconds: Optional[float] = Field(default=None)

    # Bootstrap
    backfill_default_settings: bool = Field(default=False)

    # Backups
    backup_timezone: str = Field(default="Asia/Shanghai")
    webdav_timeout_seconds: Optional[float] = Field(default=None)
    webdav_max_retries: int = Field(default=0, ge=0)
    webdav_retry_backoff_seconds: float = Field(default=2.0, ge=0)

    # Audit log
    log_retention_days: int = Field(default=90, ge=1)

    log_level: str = Field(default="INFO")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
