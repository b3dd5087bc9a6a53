"""
HTTP routes for install state, settings, backups and the audit log.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from xanote.backup import (
    BACKUP_TABLES,
    FREQUENCY_KEY,
    LAST_BACKUP_KEY,
    affects_backup,
    export_database,
    iso_timestamp,
    utc_now,
)
from xanote.config import get_settings
from xanote.db import DatabaseAdapter
from xanote.dependencies import (
    get_backup_scheduler,
    get_database,
    get_log_service,
    get_settings_store,
)
from xanote.errors import ConfigurationError, NotInstalledError
from xanote.log_service import LogAction, LogService
from xanote.scheduler import BackupScheduler
from xanote.schemas import (
    BackupRunResponse,
    BackupStatusResponse,
    CleanLogsResponse,
    InstallRequest,
    InstallResponse,
    InstallStatusResponse,
    LogsResponse,
    SettingsResponse,
    UpdateSettingsRequest,
    UpdateSettingsResponse,
)
from xanote.settings_store import INSTALLED_KEY, SettingsStore

logger = logging.getLogger(__name__)

# Single administrative principal; authentication lives outside this service.
ADMIN_USER_ID = "admin"
MASK = "******"
SECRET_SUFFIXES = ("password", "password_hash", "secret", "secret_key")


async def require_installed(
    settings: SettingsStore = Depends(get_settings_store),
) -> None:
    if not await settings.is_installed():
        raise NotInstalledError()


install_router = APIRouter()
router = APIRouter(dependencies=[Depends(require_installed)])


def _install_defaults(payload: InstallRequest) -> dict[str, str]:
    return {
        "site.title": payload.site_title,
        "site.logo": "/logo.png",
        "site.favicon": "/favicon.png",
        "site.avatar_prefix": "https://www.gravatar.com/avatar/",
        "admin.email": payload.admin_email,
        "login.enable_captcha": "0",
        "login.enable_turnstile": "0",
        "login.turnstile_site_key": "",
        "login.turnstile_secret_key": "",
        "login.enable_github": "0",
        "github.client_id": "",
        "github.client_secret": "",
        "lockscreen.enabled": "0",
        "lockscreen.password": "",
        "webdav.url": "",
        "webdav.user": "",
        "webdav.password": "",
        FREQUENCY_KEY: "manual",
        "upload.max_file_size": "10",
    }


@install_router.get("/install/status", response_model=InstallStatusResponse)
async def install_status(settings: SettingsStore = Depends(get_settings_store)):
    return InstallStatusResponse(installed=await settings.is_installed())


@install_router.post("/install", response_model=InstallResponse)
async def install(
    payload: InstallRequest,
    settings: SettingsStore = Depends(get_settings_store),
):
    if await settings.is_installed():
        raise HTTPException(status_code=400, detail="ALREADY_INSTALLED")

    for key, value in _install_defaults(payload).items():
        await settings.set_setting(key, value)
    # Written last so a failed install can be retried.
    await settings.set_setting(INSTALLED_KEY, "1")
    logger.info("Installation completed for %s", payload.site_title)
    return InstallResponse(success=True, message="Installation completed")


def _mask(key: str, value: str) -> str:
    if value and key.endswith(SECRET_SUFFIXES):
        return MASK
    return value


@router.get("/settings", response_model=SettingsResponse)
async def read_settings(
    prefix: Optional[str] = Query(None, max_length=100),
    settings: SettingsStore = Depends(get_settings_store),
):
    values = await settings.get_settings(prefix)
    return SettingsResponse(settings={key: _mask(key, value) for key, value in values.items()})


@router.put("/settings", response_model=UpdateSettingsResponse)
async def update_settings(
    payload: UpdateSettingsRequest,
    settings: SettingsStore = Depends(get_settings_store),
    scheduler: BackupScheduler = Depends(get_backup_scheduler),
    audit: LogService = Depends(get_log_service),
):
    if INSTALLED_KEY in payload.values:
        raise HTTPException(status_code=400, detail=f"{INSTALLED_KEY} cannot be changed")

    updated: list[str] = []
    for key, value in payload.values.items():
        # Masked values come back unchanged from the settings form.
        if value == MASK and key.endswith(SECRET_SUFFIXES):
            continue
        await settings.set_setting(key, value)
        updated.append(key)

    schedule_updated = any(affects_backup(key) for key in updated)
    if schedule_updated:
        await scheduler.update_schedule()

    await audit.log(
        ADMIN_USER_ID,
        LogAction.UPDATE_SETTINGS,
        target_type="settings",
        details={"keys": updated},
    )
    return UpdateSettingsResponse(updated=updated, schedule_updated=schedule_updated)


@router.get("/backup/status", response_model=BackupStatusResponse)
async def backup_status(
    settings: SettingsStore = Depends(get_settings_store),
    scheduler: BackupScheduler = Depends(get_backup_scheduler),
):
    next_run = scheduler.next_fire_time
    return BackupStatusResponse(
        state=scheduler.state.value,
        frequency=await settings.get_setting(FREQUENCY_KEY),
        next_run=next_run.isoformat() if next_run else None,
        last_backup=await settings.get_setting(LAST_BACKUP_KEY),
        last_outcome=scheduler.last_outcome.as_dict() if scheduler.last_outcome else None,
    )


@router.post("/backup/run", response_model=BackupRunResponse)
async def run_backup(
    scheduler: BackupScheduler = Depends(get_backup_scheduler),
    audit: LogService = Depends(get_log_service),
):
    try:
        outcome = await scheduler.run_now()
    except ConfigurationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    await audit.log(
        ADMIN_USER_ID,
        LogAction.BACKUP_DATA,
        target_type="webdav",
        details={"ok": outcome.ok},
    )
    return BackupRunResponse(ok=outcome.ok, outcome=outcome.as_dict())


@router.get("/export")
async def export_data(
    db: DatabaseAdapter = Depends(get_database),
    audit: LogService = Depends(get_log_service),
):
    data, failed_tables = await export_database(db, BACKUP_TABLES)
    await audit.log(ADMIN_USER_ID, LogAction.EXPORT_DATA, target_type="database")
    return {
        "exportTime": iso_timestamp(utc_now()),
        "failedTables": failed_tables,
        **data,
    }


@router.get("/logs", response_model=LogsResponse)
async def list_logs(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    action: Optional[str] = None,
    target_type: Optional[str] = None,
    start_date: Optional[int] = None,
    end_date: Optional[int] = None,
    audit: LogService = Depends(get_log_service),
):
    logs, total = await audit.get_logs(
        ADMIN_USER_ID,
        limit=limit,
        offset=offset,
        action=action,
        target_type=target_type,
        start_date=start_date,
        end_date=end_date,
    )
    return LogsResponse(logs=logs, total=total)


@router.get("/logs/stats")
async def log_stats(
    days: int = Query(30, ge=1, le=365),
    audit: LogService = Depends(get_log_service),
):
    return await audit.get_log_stats(ADMIN_USER_ID, days)


@router.delete("/logs", response_model=CleanLogsResponse)
async def clean_logs(
    days_to_keep: Optional[int] = Query(None, ge=1),
    audit: LogService = Depends(get_log_service),
):
    days = days_to_keep or get_settings().log_retention_days
    return CleanLogsResponse(deleted=await audit.clean_old_logs(days))
