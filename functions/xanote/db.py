"""
Database abstraction: one async prepared-statement API over the embedded
SQLite store and the remote D1 database.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Protocol, Sequence

from sqlalchemy import create_engine
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import DBAPIError
from sqlalchemy.pool import StaticPool

from xanote.errors import (
    ConfigurationError,
    NotInitializedError,
    QueryError,
    TransientIOError,
)
from xanote.schema import DATABASE_SCHEMA, initialize_default_data, split_statements

logger = logging.getLogger(__name__)


class AdapterState(str, Enum):
    UNINITIALIZED = "uninitialized"
    BOOTSTRAPPING = "bootstrapping"
    READY = "ready"
    CLOSED = "closed"


@dataclass(frozen=True)
class RunResult:
    """Outcome of a write statement."""

    changes: int
    last_insert_id: Optional[int] = None


@dataclass
class QueryResult:
    """Raw result of one statement execution, shared by both backends."""

    rows: list[dict] = field(default_factory=list)
    changes: int = 0
    last_insert_id: Optional[int] = None


class Statement:
    """
    A prepared statement bound to an adapter.

    The adapter state is checked on every call, so a statement prepared before
    ``close()`` fails with ``NotInitializedError`` afterwards.
    """

    def __init__(self, adapter: "BaseAdapter", sql: str, *, bootstrap: bool = False):
        self._adapter = adapter
        self.sql = sql
        self._bootstrap = bootstrap

    async def get(self, *params: Any) -> Optional[dict]:
        result = await self._adapter._run_statement(self.sql, params, self._bootstrap)
        return result.rows[0] if result.rows else None

    async def all(self, *params: Any) -> list[dict]:
        result = await self._adapter._run_statement(self.sql, params, self._bootstrap)
        return list(result.rows)

    async def run(self, *params: Any) -> RunResult:
        result = await self._adapter._run_statement(self.sql, params, self._bootstrap)
        return RunResult(changes=result.changes, last_insert_id=result.last_insert_id)

    def __repr__(self) -> str:
        return f"Statement({self.sql.strip()[:60]!r})"


class DatabaseAdapter(Protocol):
    """Interface consumed by the settings store, scheduler and routes."""

    backend: str

    @property
    def state(self) -> AdapterState:
        ...

    async def initialize(self) -> None:
        ...

    async def is_installed(self) -> bool:
        ...

    def prepare(self, sql: str) -> Statement:
        ...

    async def exec(self, sql: str) -> None:
        ...

    async def close(self) -> None:
        ...


class BaseAdapter:
    """
    Lifecycle shared by both backends.

    Subclasses provide ``_connect``, ``_execute`` and ``_disconnect``; this
    class owns the state machine, schema bootstrap and seed data.
    """

    backend = "base"

    def __init__(self, *, backfill_default_settings: bool = False):
        self.backfill_default_settings = backfill_default_settings
        self._state = AdapterState.UNINITIALIZED

    @property
    def state(self) -> AdapterState:
        return self._state

    async def initialize(self) -> None:
        self._state = AdapterState.BOOTSTRAPPING
        try:
            await self._connect()
            await self._bootstrap()
        except Exception:
            self._state = AdapterState.UNINITIALIZED
            await self._disconnect()
            raise
        self._state = AdapterState.READY
        logger.info("%s database initialized", self.backend)

    async def _bootstrap(self) -> None:
        for stmt in split_statements(DATABASE_SCHEMA):
            await self._execute(stmt, ())

        row = (await self._execute("SELECT COUNT(*) AS count FROM settings", ())).rows
        is_new_database = not row or int(row[0]["count"]) == 0

        await initialize_default_data(
            lambda sql: Statement(self, sql, bootstrap=True),
            is_new_database,
            backfill_settings=self.backfill_default_settings,
        )

    def _check_ready(self, bootstrap: bool = False) -> None:
        if self._state is AdapterState.READY:
            return
        if bootstrap and self._state is AdapterState.BOOTSTRAPPING:
            return
        raise NotInitializedError()

    async def _run_statement(
        self, sql: str, params: Sequence[Any], bootstrap: bool = False
    ) -> QueryResult:
        self._check_ready(bootstrap)
        return await self._execute(sql, params)

    def prepare(self, sql: str) -> Statement:
        self._check_ready()
        return Statement(self, sql)

    async def exec(self, sql: str) -> None:
        """
        Run a multi-statement script one statement at a time.

        Statements that already ran stay committed if a later one fails.
        """
        self._check_ready()
        for stmt in split_statements(sql):
            await self._execute(stmt, ())

    async def is_installed(self) -> bool:
        try:
            row = await self.prepare("SELECT value FROM settings WHERE key = ?").get(
                "system.installed"
            )
        except QueryError:
            logger.warning("Could not read install state", exc_info=True)
            return False
        return bool(row) and row.get("value") == "1"

    async def close(self) -> None:
        await self._disconnect()
        self._state = AdapterState.CLOSED

    async def _connect(self) -> None:
        raise NotImplementedError

    async def _execute(self, sql: str, params: Sequence[Any]) -> QueryResult:
        raise NotImplementedError

    async def _disconnect(self) -> None:
        raise NotImplementedError


class SqliteAdapter(BaseAdapter):
    """
    Embedded SQLite backend built on SQLAlchemy.

    All statements run on a single autocommit connection guarded by a lock, so
    persistence is serialized within the process. Calls complete before the
    coroutine returns.
    """

    backend = "sqlite"

    def __init__(self, path: str, *, backfill_default_settings: bool = False):
        super().__init__(backfill_default_settings=backfill_default_settings)
        self.path = path
        self._engine: Optional[Engine] = None
        self._conn: Optional[Connection] = None
        self._lock = threading.RLock()

    def _database_url(self) -> str:
        if self.path == ":memory:":
            return "sqlite+pysqlite:///:memory:"
        return f"sqlite+pysqlite:///{self.path}"

    async def _connect(self) -> None:
        if self._conn is not None:
            return
        if not self.path:
            raise ConfigurationError("SQLite database path is not configured")
        if self.path != ":memory:":
            directory = os.path.dirname(os.path.abspath(self.path))
            os.makedirs(directory, exist_ok=True)
        try:
            self._engine = create_engine(
                self._database_url(),
                future=True,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
            )
            self._conn = self._engine.connect().execution_options(
                isolation_level="AUTOCOMMIT"
            )
        except DBAPIError as exc:
            raise ConfigurationError(
                f"Unable to open SQLite database at {self.path}: {exc.orig}"
            ) from exc

    async def _execute(self, sql: str, params: Sequence[Any]) -> QueryResult:
        with self._lock:
            if self._conn is None:
                raise NotInitializedError()
            try:
                result = self._conn.exec_driver_sql(sql, tuple(params))
                if result.returns_rows:
                    return QueryResult(rows=[dict(row) for row in result.mappings()])
                changes = max(result.rowcount or 0, 0)
                return QueryResult(
                    changes=changes,
                    last_insert_id=result.lastrowid if changes else None,
                )
            except DBAPIError as exc:
                if exc.connection_invalidated:
                    raise TransientIOError(f"SQLite connection lost: {exc.orig}") from exc
                raise QueryError(str(exc.orig)) from exc

    async def _disconnect(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
            if self._engine is not None:
                self._engine.dispose()
                self._engine = None
