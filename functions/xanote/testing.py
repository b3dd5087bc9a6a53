"""
Test doubles shared by the test suite.
"""

from __future__ import annotations

import json
import sqlite3
from typing import Optional

import httpx


class FakeD1Server:
    """
    In-process stand-in for the D1 HTTP query API.

    Statements run against an in-memory SQLite database and responses use the
    D1 envelope (``result[0].results`` / ``result[0].meta``). Plug it into an
    adapter with ``D1Adapter(..., client=server.client())``.
    """

    def __init__(self, api_token: str = "test-token"):
        self.api_token = api_token
        self.conn = sqlite3.connect(":memory:", check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.requests: list[dict] = []
        self.unavailable_patterns: list[str] = []
        self.rate_limited_patterns: list[str] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.headers.get("Authorization") != f"Bearer {self.api_token}":
            return httpx.Response(
                401,
                json={"success": False, "errors": [{"code": 10000, "message": "Authentication error"}]},
            )

        body = json.loads(request.content)
        self.requests.append(body)
        sql = body["sql"]
        params = body.get("params") or []

        for pattern in self.unavailable_patterns:
            if pattern in sql:
                return httpx.Response(503, text="upstream unavailable")
        for pattern in self.rate_limited_patterns:
            if pattern in sql:
                return httpx.Response(
                    429,
                    json={"success": False, "errors": [{"code": 971, "message": "Too many requests"}]},
                )

        try:
            cursor = self.conn.execute(sql, params)
            rows = [dict(row) for row in cursor.fetchall()] if cursor.description else []
            self.conn.commit()
        except sqlite3.Error as exc:
            return httpx.Response(
                400,
                json={
                    "success": False,
                    "errors": [{"code": 7500, "message": str(exc)}],
                    "result": [],
                },
            )

        changes = cursor.rowcount if cursor.rowcount > 0 else 0
        meta = {
            "changes": changes,
            "last_row_id": cursor.lastrowid or 0,
            "rows_read": len(rows),
            "duration": 0.1,
        }
        return httpx.Response(
            200,
            json={
                "success": True,
                "errors": [],
                "messages": [],
                "result": [{"results": rows, "success": True, "meta": meta}],
            },
        )

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def count(self, table: str) -> int:
        return self.conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]

    def close(self) -> None:
        self.conn.close()


class RecordingWebDav:
    """MockTransport handler that records WebDAV PUTs and replies with queued statuses."""

    def __init__(self, statuses: Optional[list[int]] = None):
        self.statuses = list(statuses or [])
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status = self.statuses.pop(0) if self.statuses else 201
        return httpx.Response(status)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))
