"""
Cloudflare D1 backend over the D1 HTTP query API.

Every statement is an independent HTTPS request, so callers get no atomicity
across calls: a ``get`` followed by a ``run`` can race with another writer.
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Sequence

import httpx

from xanote.db import BaseAdapter, QueryResult
from xanote.errors import ConfigurationError, QueryError, TransientIOError

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://api.cloudflare.com/client/v4"


class D1Adapter(BaseAdapter):
    """Remote edge database backend."""

    backend = "d1"

    def __init__(
        self,
        account_id: Optional[str],
        database_id: Optional[str],
        api_token: Optional[str],
        *,
        api_base: str = DEFAULT_API_BASE,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
        backfill_default_settings: bool = False,
    ):
        super().__init__(backfill_default_settings=backfill_default_settings)
        self.account_id = account_id
        self.database_id = database_id
        self.api_token = api_token
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    @property
    def query_url(self) -> str:
        return (
            f"{self.api_base}/accounts/{self.account_id}"
            f"/d1/database/{self.database_id}/query"
        )

    async def _connect(self) -> None:
        missing = [
            name
            for name, value in (
                ("account id", self.account_id),
                ("database id", self.database_id),
                ("API token", self.api_token),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(
                "D1 database binding not found: missing " + ", ".join(missing)
            )
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
            self._owns_client = True

    async def _execute(self, sql: str, params: Sequence[Any]) -> QueryResult:
        if self._client is None:
            raise TransientIOError("D1 client is not connected")
        logger.debug("D1 query: %s", sql)
        try:
            response = await self._client.post(
                self.query_url,
                json={"sql": sql, "params": list(params)},
                headers={"Authorization": f"Bearer {self.api_token}"},
            )
        except httpx.HTTPError as exc:
            raise TransientIOError(f"D1 request failed: {exc}") from exc

        if response.status_code >= 500 or response.status_code == 429:
            raise TransientIOError(
                f"D1 request failed: {response.status_code} {response.reason_phrase}"
            )
        if response.status_code in (401, 403):
            raise ConfigurationError(
                f"D1 rejected the API token: {response.status_code}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise TransientIOError("D1 returned a non-JSON response") from exc

        if response.is_error or not payload.get("success", False):
            raise QueryError(_error_message(payload, response.status_code))

        results = payload.get("result") or []
        first = results[0] if results else {}
        if first.get("success") is False:
            raise QueryError(_error_message(first, response.status_code))

        meta = first.get("meta") or {}
        changes = int(meta.get("changes") or 0)
        last_row_id = meta.get("last_row_id")
        return QueryResult(
            rows=[dict(row) for row in first.get("results") or []],
            changes=changes,
            last_insert_id=int(last_row_id) if changes and last_row_id is not None else None,
        )

    async def _disconnect(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


def _error_message(payload: dict, status_code: int) -> str:
    errors = payload.get("errors") or []
    messages = [str(err.get("message", err)) if isinstance(err, dict) else str(err) for err in errors]
    if payload.get("error"):
        messages.append(str(payload["error"]))
    if not messages:
        return f"D1 query failed with status {status_code}"
    return "; ".join(messages)
