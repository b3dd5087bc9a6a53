"""
Settings service with a process-local read cache.

The cache is write-through: ``set_setting`` updates storage first and the
cache only after the write succeeded, so the cache is never ahead of the
backend. Absent keys are not cached.
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, Optional

from xanote.db import DatabaseAdapter
from xanote.schema import now_ms

logger = logging.getLogger(__name__)

INSTALLED_KEY = "system.installed"

UPSERT_SETTING_SQL = """
INSERT INTO settings (key, value, updated_at)
VALUES (?, ?, ?)
ON CONFLICT(key) DO UPDATE SET
  value = excluded.value,
  updated_at = excluded.updated_at
"""


class SettingsStore:
    """
    Key/value view of the ``settings`` table.

    ``cache_enabled=False`` turns every read into a backend query; used for the
    remote backend, which keeps no process-local cache.
    """

    def __init__(self, db: DatabaseAdapter, *, cache_enabled: bool = True):
        self.db = db
        self.cache_enabled = cache_enabled
        self._cache: Dict[str, str] = {}
        self._lock = threading.Lock()

    async def get_setting(self, key: str) -> Optional[str]:
        if self.cache_enabled:
            with self._lock:
                if key in self._cache:
                    return self._cache[key]

        try:
            row = await self.db.prepare("SELECT value FROM settings WHERE key = ?").get(key)
        except Exception:
            logger.exception("Error getting setting %s", key)
            raise

        value = row.get("value") if row else None
        if value is not None and self.cache_enabled:
            with self._lock:
                self._cache[key] = value
        return value

    async def set_setting(self, key: str, value: str) -> None:
        try:
            await self.db.prepare(UPSERT_SETTING_SQL).run(key, value, now_ms())
        except Exception:
            logger.exception("Error setting value for %s", key)
            raise
        if self.cache_enabled:
            with self._lock:
                self._cache[key] = value

    async def get_settings(self, prefix: Optional[str] = None) -> Dict[str, str]:
        try:
            if prefix:
                rows = await self.db.prepare(
                    "SELECT key, value FROM settings WHERE key LIKE ? ESCAPE '\\'"
                ).all(_escape_like(prefix) + "%")
            else:
                rows = await self.db.prepare("SELECT key, value FROM settings").all()
        except Exception:
            logger.exception("Error getting settings (prefix=%s)", prefix)
            raise

        settings = {row["key"]: row["value"] for row in rows}
        if self.cache_enabled:
            with self._lock:
                self._cache.update(settings)
        return settings

    async def is_installed(self) -> bool:
        return await self.get_setting(INSTALLED_KEY) == "1"

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def cached_keys(self) -> list[str]:
        with self._lock:
            return sorted(self._cache)


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
