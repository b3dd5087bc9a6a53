"""
Scheduled WebDAV backups.

One asyncio task per job name. ``update_schedule`` reads the backup settings
first and then swaps the job table without yielding to the event loop, so two
``auto-backup`` timers never coexist.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, tzinfo
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional
from zoneinfo import ZoneInfo

from xanote.backup import (
    LAST_BACKUP_KEY,
    SCHEDULED_FREQUENCIES,
    BackupConfig,
    BackupOutcome,
    StepResult,
    StepStatus,
    backup_file_name,
    export_database,
    export_notes,
    iso_timestamp,
    load_backup_config,
    serialize,
)
from xanote.db import DatabaseAdapter
from xanote.errors import ConfigurationError
from xanote.settings_store import SettingsStore
from xanote.webdav import BackupStorage, WebDavStorage

logger = logging.getLogger(__name__)

AUTO_BACKUP_JOB = "auto-backup"
MAX_TIMER_FAILURES = 3


class JobState(str, Enum):
    IDLE = "idle"
    SCHEDULED = "scheduled"


@dataclass(frozen=True)
class BackupTrigger:
    """
    Midnight trigger in a fixed timezone.

    daily: every day at 00:00; weekly: Mondays at 00:00; monthly: the 1st at 00:00.
    """

    frequency: str
    tz: tzinfo

    def __post_init__(self):
        if self.frequency not in SCHEDULED_FREQUENCIES:
            raise ValueError(f"Unsupported backup frequency: {self.frequency!r}")

    def next_fire_time(self, after: datetime) -> datetime:
        """Return the first fire time strictly after ``after``."""
        local = after.astimezone(self.tz)
        today = local.date()
        if self.frequency == "daily":
            target = today + timedelta(days=1)
        elif self.frequency == "weekly":
            days_ahead = (7 - today.weekday()) % 7 or 7
            target = today + timedelta(days=days_ahead)
        else:
            if today.month == 12:
                target = date(today.year + 1, 1, 1)
            else:
                target = date(today.year, today.month + 1, 1)
        return datetime(target.year, target.month, target.day, tzinfo=self.tz)


@dataclass
class ScheduledJob:
    name: str
    config: BackupConfig
    trigger: BackupTrigger
    task: Optional[asyncio.Task] = None
    next_fire_time: Optional[datetime] = None
    firing: bool = False
    stopped: bool = False
    last_outcome: Optional[BackupOutcome] = None

    @property
    def alive(self) -> bool:
        return not self.stopped and self.task is not None and not self.task.done()

    def cancel(self) -> None:
        # A firing in progress runs to completion; the loop exits afterwards.
        self.stopped = True
        if self.task is not None and not self.firing:
            self.task.cancel()


StorageFactory = Callable[[BackupConfig], BackupStorage]
Clock = Callable[[], datetime]
Sleep = Callable[[float], Awaitable[None]]


class BackupScheduler:
    """Derives the backup timer from settings and runs backup firings."""

    def __init__(
        self,
        db: DatabaseAdapter,
        settings: SettingsStore,
        *,
        timezone: str = "Asia/Shanghai",
        storage_factory: Optional[StorageFactory] = None,
        clock: Optional[Clock] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.db = db
        self.settings = settings
        self.tz = ZoneInfo(timezone)
        self._storage_factory = storage_factory or WebDavStorage
        self._clock = clock or (lambda: datetime.now(self.tz))
        self._sleep = sleep
        self._jobs: Dict[str, ScheduledJob] = {}
        self._lock = asyncio.Lock()
        self.last_outcome: Optional[BackupOutcome] = None

    @property
    def jobs(self) -> Dict[str, ScheduledJob]:
        return dict(self._jobs)

    @property
    def state(self) -> JobState:
        job = self._jobs.get(AUTO_BACKUP_JOB)
        return JobState.SCHEDULED if job is not None and job.alive else JobState.IDLE

    @property
    def next_fire_time(self) -> Optional[datetime]:
        job = self._jobs.get(AUTO_BACKUP_JOB)
        if job is None:
            return None
        return job.next_fire_time or job.trigger.next_fire_time(self._clock())

    async def update_schedule(self) -> None:
        """Re-derive the timer from the current settings. Safe to call repeatedly."""
        async with self._lock:
            try:
                config = await load_backup_config(self.settings)
            except Exception:
                logger.exception("Failed to get backup config")
                config = None
            self._reschedule(config)

    def _reschedule(self, config: Optional[BackupConfig]) -> None:
        self._cancel_all()

        if config is None:
            logger.info("Auto backup disabled: backup settings incomplete")
            return
        if not config.is_scheduled:
            if config.frequency != "manual":
                logger.warning("Unknown backup frequency %r, not scheduling", config.frequency)
            return

        job = ScheduledJob(
            name=AUTO_BACKUP_JOB,
            config=config,
            trigger=BackupTrigger(config.frequency, self.tz),
        )
        job.next_fire_time = job.trigger.next_fire_time(self._clock())
        job.task = asyncio.get_running_loop().create_task(
            self._run_job(job), name=f"xanote-{job.name}"
        )
        self._jobs[job.name] = job
        logger.info(
            "Auto backup scheduled: %s (next run %s)",
            config.frequency,
            job.next_fire_time.isoformat(),
        )

    async def _run_job(self, job: ScheduledJob) -> None:
        failures = 0
        while not job.stopped:
            try:
                await self._wait_and_fire(job)
                failures = 0
            except Exception:
                failures += 1
                if failures >= MAX_TIMER_FAILURES:
                    logger.exception(
                        "Auto backup timer failed %d times in a row, giving up", failures
                    )
                    job.stopped = True
                    return
                logger.exception("Auto backup timer raised unexpectedly")
                await asyncio.sleep(0)

    async def _wait_and_fire(self, job: ScheduledJob) -> None:
        now = self._clock()
        job.next_fire_time = job.trigger.next_fire_time(now)
        # Same-zone aware subtraction ignores offset changes; compare instants.
        delay = job.next_fire_time.timestamp() - now.timestamp()
        await self._sleep(max(delay, 0.0))
        if job.stopped:
            return
        job.firing = True
        try:
            job.last_outcome = await self.perform_auto_backup(job.config)
        finally:
            job.firing = False

    def _cancel_all(self) -> None:
        for job in self._jobs.values():
            job.cancel()
        self._jobs.clear()

    def stop(self) -> None:
        if self._jobs:
            logger.info("Stopping %d backup job(s)", len(self._jobs))
        self._cancel_all()

    async def run_now(self) -> BackupOutcome:
        """Run a backup immediately with the stored WebDAV settings."""
        config = await load_backup_config(self.settings)
        if config is None:
            raise ConfigurationError("WebDAV backup is not configured")
        return await self.perform_auto_backup(config)

    async def perform_auto_backup(self, config: BackupConfig) -> BackupOutcome:
        """
        Export notes, export the database, then record the backup time.

        Both exports are attempted even if one fails. The last-backup time is
        only written when both uploads succeeded. Never raises.
        """
        moment = self._clock()
        outcome = BackupOutcome(started_at=moment)
        storage = self._storage_factory(config)

        notes_step = await self._backup_notes(storage, moment)
        database_step = await self._backup_database(storage, moment)
        outcome.steps.extend([notes_step, database_step])

        if notes_step.ok and database_step.ok:
            outcome.steps.append(await self._update_last_backup_time(moment))
        else:
            outcome.steps.append(StepResult(name="last_backup", status=StepStatus.SKIPPED))

        outcome.finished_at = self._clock()
        self.last_outcome = outcome
        if outcome.ok:
            logger.info("Auto backup completed successfully")
        else:
            logger.error(
                "Auto backup failed: %s",
                "; ".join(f"{step.name}: {step.error}" for step in outcome.failed_steps())
                or "skipped steps",
            )
        return outcome

    async def _backup_notes(self, storage: BackupStorage, moment: datetime) -> StepResult:
        file_name = backup_file_name("notes", moment)
        try:
            payload = await export_notes(self.db, moment)
            await storage.upload(file_name, serialize(payload))
        except Exception as exc:
            return StepResult(
                name="notes", status=StepStatus.FAILED, file_name=file_name, error=str(exc)
            )
        return StepResult(
            name="notes",
            status=StepStatus.OK,
            file_name=file_name,
            detail={
                "notes": len(payload["notes"]),
                "categories": len(payload["categories"]),
            },
        )

    async def _backup_database(self, storage: BackupStorage, moment: datetime) -> StepResult:
        file_name = backup_file_name("database", moment)
        try:
            payload, failed_tables = await export_database(self.db)
            await storage.upload(file_name, serialize(payload))
        except Exception as exc:
            return StepResult(
                name="database", status=StepStatus.FAILED, file_name=file_name, error=str(exc)
            )
        return StepResult(
            name="database",
            status=StepStatus.OK,
            file_name=file_name,
            detail={
                "rows": {table: len(rows) for table, rows in payload.items()},
                "failed_tables": failed_tables,
            },
        )

    async def _update_last_backup_time(self, moment: datetime) -> StepResult:
        try:
            await self.settings.set_setting(LAST_BACKUP_KEY, iso_timestamp(moment))
        except Exception as exc:
            logger.error("Failed to update last backup time: %s", exc)
            return StepResult(name="last_backup", status=StepStatus.FAILED, error=str(exc))
        return StepResult(name="last_backup", status=StepStatus.OK)
