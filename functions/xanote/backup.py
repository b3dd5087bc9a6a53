"""
Backup configuration, dataset exports and firing results.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from xanote.db import DatabaseAdapter
from xanote.settings_store import SettingsStore

logger = logging.getLogger(__name__)

BACKUP_TABLES = ("settings", "categories", "notes", "shares", "trash")
SCHEDULED_FREQUENCIES = ("daily", "weekly", "monthly")
MANUAL_FREQUENCY = "manual"

FREQUENCY_KEY = "backup.frequency"
LAST_BACKUP_KEY = "backup.last_backup"
WEBDAV_URL_KEY = "webdav.url"
WEBDAV_USER_KEY = "webdav.user"
WEBDAV_PASSWORD_KEY = "webdav.password"

BACKUP_SETTING_PREFIXES = ("backup.", "webdav.")


@dataclass(frozen=True)
class BackupConfig:
    frequency: str
    webdav_url: str
    webdav_user: str
    webdav_password: str = field(repr=False)

    @property
    def is_scheduled(self) -> bool:
        return self.frequency in SCHEDULED_FREQUENCIES


def affects_backup(key: str) -> bool:
    return key.startswith(BACKUP_SETTING_PREFIXES)


async def load_backup_config(settings: SettingsStore) -> Optional[BackupConfig]:
    """
    Assemble the backup config from settings.

    Returns None when the frequency or any WebDAV field is missing or empty.
    """
    frequency = await settings.get_setting(FREQUENCY_KEY)
    url = await settings.get_setting(WEBDAV_URL_KEY)
    user = await settings.get_setting(WEBDAV_USER_KEY)
    password = await settings.get_setting(WEBDAV_PASSWORD_KEY)
    if not frequency or not url or not user or not password:
        return None
    return BackupConfig(
        frequency=frequency,
        webdav_url=url,
        webdav_user=user,
        webdav_password=password,
    )


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso_timestamp(moment: datetime) -> str:
    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def backup_file_name(kind: str, moment: datetime) -> str:
    date = moment.astimezone(timezone.utc).strftime("%Y-%m-%d")
    return f"{kind}-backup-{date}.json"


def serialize(payload: Any) -> str:
    return json.dumps(payload, indent=2, ensure_ascii=False, default=str)


async def export_notes(db: DatabaseAdapter, moment: datetime) -> dict:
    notes = await db.prepare("SELECT * FROM notes ORDER BY updated_at DESC").all()
    categories = await db.prepare("SELECT * FROM categories").all()
    return {
        "notes": notes,
        "categories": categories,
        "exportTime": iso_timestamp(moment),
    }


async def export_database(
    db: DatabaseAdapter, tables: tuple[str, ...] = BACKUP_TABLES
) -> tuple[dict, list[str]]:
    """
    Read every row of each table.

    A table that cannot be read is exported as an empty list; its name is
    returned in the second element.
    """
    data: dict[str, list[dict]] = {}
    failed: list[str] = []
    for table in tables:
        try:
            data[table] = await db.prepare(f"SELECT * FROM {table}").all()
        except Exception:
            logger.warning("Could not read table %s for backup", table, exc_info=True)
            data[table] = []
            failed.append(table)
    return data, failed


class StepStatus(str, Enum):
    OK = "ok"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class StepResult:
    name: str
    status: StepStatus
    file_name: Optional[str] = None
    error: Optional[str] = None
    detail: dict = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status is StepStatus.OK

    def as_dict(self) -> dict:
        return {
            "name": self.name,
            "status": self.status.value,
            "file_name": self.file_name,
            "error": self.error,
            "detail": self.detail,
        }


@dataclass
class BackupOutcome:
    started_at: datetime
    finished_at: Optional[datetime] = None
    steps: list[StepResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return bool(self.steps) and all(step.ok for step in self.steps)

    def step(self, name: str) -> Optional[StepResult]:
        for step in self.steps:
            if step.name == name:
                return step
        return None

    def failed_steps(self) -> list[StepResult]:
        return [step for step in self.steps if step.status is StepStatus.FAILED]

    def as_dict(self) -> dict:
        return {
            "ok": self.ok,
            "started_at": iso_timestamp(self.started_at),
            "finished_at": iso_timestamp(self.finished_at) if self.finished_at else None,
            "steps": [step.as_dict() for step in self.steps],
        }
