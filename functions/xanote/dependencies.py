"""
Dependency wiring for the FastAPI app and the backup daemon.
"""

from __future__ import annotations

from functools import partial

from xanote.config import Settings, get_settings
from xanote.d1 import D1Adapter
from xanote.db import DatabaseAdapter, SqliteAdapter
from xanote.log_service import LogService
from xanote.scheduler import BackupScheduler
from xanote.settings_store import SettingsStore
from xanote.webdav import WebDavStorage

_database: DatabaseAdapter | None = None
_settings_store: SettingsStore | None = None
_backup_scheduler: BackupScheduler | None = None
_log_service: LogService | None = None


def build_database(settings: Settings) -> DatabaseAdapter:
    if settings.database_backend == "d1":
        return D1Adapter(
            settings.d1_account_id,
            settings.d1_database_id,
            settings.d1_api_token,
            api_base=settings.d1_api_base,
            timeout=settings.d1_timeout_seconds,
            backfill_default_settings=settings.backfill_default_settings,
        )
    return SqliteAdapter(
        settings.sqlite_path,
        backfill_default_settings=settings.backfill_default_settings,
    )


def get_database() -> DatabaseAdapter:
    """
    Return the process-wide adapter. ``initialize()`` is the caller's job
    (the app lifespan or the daemon).
    """
    global _database
    if _database is None:
        _database = build_database(get_settings())
    return _database


def get_settings_store() -> SettingsStore:
    global _settings_store
    if _settings_store is None:
        db = get_database()
        # The remote backend keeps no process-local cache.
        _settings_store = SettingsStore(db, cache_enabled=db.backend != "d1")
    return _settings_store


def get_backup_scheduler() -> BackupScheduler:
    global _backup_scheduler
    if _backup_scheduler is None:
        settings = get_settings()
        _backup_scheduler = BackupScheduler(
            get_database(),
            get_settings_store(),
            timezone=settings.backup_timezone,
            storage_factory=partial(
                WebDavStorage,
                timeout=settings.webdav_timeout_seconds,
                max_retries=settings.webdav_max_retries,
                retry_backoff=settings.webdav_retry_backoff_seconds,
            ),
        )
    return _backup_scheduler


def get_log_service() -> LogService:
    global _log_service
    if _log_service is None:
        _log_service = LogService(get_database())
    return _log_service


def reset_dependencies() -> None:
    """Forget every singleton (tests, config reloads)."""
    global _database, _settings_store, _backup_scheduler, _log_service
    if _backup_scheduler is not None:
        _backup_scheduler.stop()
    _database = None
    _settings_store = None
    _backup_scheduler = None
    _log_service = None
