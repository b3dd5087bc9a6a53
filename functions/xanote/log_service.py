"""
Append-only audit log stored in the ``logs`` table.
"""

from __future__ import annotations

import json
import logging
import uuid
from enum import Enum
from typing import Any, Optional

from xanote.db import DatabaseAdapter
from xanote.schema import now_ms

logger = logging.getLogger(__name__)

DAY_MS = 24 * 60 * 60 * 1000


class LogAction(str, Enum):
    LOGIN = "login"
    LOGOUT = "logout"

    CREATE_NOTE = "create_note"
    UPDATE_NOTE = "update_note"
    DELETE_NOTE = "delete_note"
    RESTORE_NOTE = "restore_note"
    PERMANENT_DELETE_NOTE = "permanent_delete_note"

    CREATE_SHARE = "create_share"
    DELETE_SHARE = "delete_share"
    VIEW_SHARE = "view_share"

    CREATE_CATEGORY = "create_category"
    UPDATE_CATEGORY = "update_category"
    DELETE_CATEGORY = "delete_category"

    UPDATE_SETTINGS = "update_settings"

    EXPORT_DATA = "export_data"
    IMPORT_DATA = "import_data"
    BACKUP_DATA = "backup_data"


class LogService:
    def __init__(self, db: DatabaseAdapter):
        self.db = db

    async def log(
        self,
        user_id: str,
        action: LogAction | str,
        *,
        target_type: Optional[str] = None,
        target_id: Optional[str] = None,
        details: Any = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[str]:
        """
        Record an action. Failures are logged and swallowed so auditing never
        breaks the calling request. Returns the entry id on success.
        """
        entry_id = str(uuid.uuid4())
        action_value = action.value if isinstance(action, LogAction) else action
        try:
            await self.db.prepare(
                """
                INSERT INTO logs (id, user_id, action, target_type, target_id, details,
                                  ip_address, user_agent, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """
            ).run(
                entry_id,
                user_id,
                action_value,
                target_type,
                target_id,
                json.dumps(details, ensure_ascii=False, default=str) if details else None,
                ip_address,
                user_agent,
                now_ms(),
            )
        except Exception:
            logger.exception("Failed to log action %s", action_value)
            return None
        return entry_id

    async def get_logs(
        self,
        user_id: str,
        *,
        limit: int = 50,
        offset: int = 0,
        action: Optional[str] = None,
        target_type: Optional[str] = None,
        start_date: Optional[int] = None,
        end_date: Optional[int] = None,
    ) -> tuple[list[dict], int]:
        where = ["user_id = ?"]
        params: list[Any] = [user_id]
        if action:
            where.append("action = ?")
            params.append(action)
        if target_type:
            where.append("target_type = ?")
            params.append(target_type)
        if start_date:
            where.append("created_at >= ?")
            params.append(start_date)
        if end_date:
            where.append("created_at <= ?")
            params.append(end_date)
        clause = " AND ".join(where)

        total_row = await self.db.prepare(
            f"SELECT COUNT(*) AS count FROM logs WHERE {clause}"
        ).get(*params)
        rows = await self.db.prepare(
            f"SELECT * FROM logs WHERE {clause} ORDER BY created_at DESC LIMIT ? OFFSET ?"
        ).all(*params, limit, offset)

        logs = []
        for row in rows:
            entry = dict(row)
            entry["details"] = _parse_details(entry.get("details"))
            logs.append(entry)
        return logs, int(total_row["count"]) if total_row else 0

    async def clean_old_logs(self, days_to_keep: int = 90) -> int:
        cutoff = now_ms() - days_to_keep * DAY_MS
        result = await self.db.prepare("DELETE FROM logs WHERE created_at < ?").run(cutoff)
        if result.changes:
            logger.info("Removed %d audit log entries older than %d days", result.changes, days_to_keep)
        return result.changes

    async def get_log_stats(self, user_id: str, days: int = 30) -> dict:
        start = now_ms() - days * DAY_MS
        total_row = await self.db.prepare(
            "SELECT COUNT(*) AS count FROM logs WHERE user_id = ? AND created_at >= ?"
        ).get(user_id, start)
        action_rows = await self.db.prepare(
            """
            SELECT action, COUNT(*) AS count FROM logs
            WHERE user_id = ? AND created_at >= ?
            GROUP BY action
            ORDER BY count DESC
            """
        ).all(user_id, start)
        daily_rows = await self.db.prepare(
            """
            SELECT strftime('%Y-%m-%d', datetime(created_at / 1000, 'unixepoch')) AS date,
                   COUNT(*) AS count
            FROM logs
            WHERE user_id = ? AND created_at >= ?
            GROUP BY date
            ORDER BY date DESC
            """
        ).all(user_id, start)

        return {
            "total_logs": int(total_row["count"]) if total_row else 0,
            "action_stats": {row["action"]: int(row["count"]) for row in action_rows},
            "daily_stats": [
                {"date": row["date"], "count": int(row["count"])} for row in daily_rows
            ],
        }


def _parse_details(raw: Optional[str]) -> Any:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return raw
