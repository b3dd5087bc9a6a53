"""
Pydantic schemas for the HTTP surface.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class InstallRequest(BaseModel):
    site_title: str = Field(..., max_length=200)
    admin_email: str = Field(..., max_length=320)

    @field_validator("site_title")
    @classmethod
    def _title_required(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Site title is required")
        return value

    @field_validator("admin_email")
    @classmethod
    def _email_shape(cls, value: str) -> str:
        value = value.strip()
        if "@" not in value:
            raise ValueError("Valid admin email is required")
        return value


class InstallResponse(BaseModel):
    success: bool
    message: str


class InstallStatusResponse(BaseModel):
    installed: bool


class SettingsResponse(BaseModel):
    settings: Dict[str, str]


class UpdateSettingsRequest(BaseModel):
    values: Dict[str, str]


class UpdateSettingsResponse(BaseModel):
    updated: List[str]
    schedule_updated: bool


class BackupStatusResponse(BaseModel):
    state: str
    frequency: Optional[str] = None
    next_run: Optional[str] = None
    last_backup: Optional[str] = None
    last_outcome: Optional[Dict[str, Any]] = None


class BackupRunResponse(BaseModel):
    ok: bool
    outcome: Dict[str, Any]


class LogsResponse(BaseModel):
    logs: List[Dict[str, Any]]
    total: int


class CleanLogsResponse(BaseModel):
    deleted: int
