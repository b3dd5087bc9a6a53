import os
import tempfile
import unittest

import httpx

from xanote.d1 import D1Adapter
from xanote.db import AdapterState, SqliteAdapter
from xanote.errors import (
    ConfigurationError,
    NotInitializedError,
    QueryError,
    TransientIOError,
)
from xanote.schema import DEFAULT_CATEGORY_ID, WELCOME_NOTE_ID
from xanote.testing import FakeD1Server


class AdapterContract:
    """Behavior both backends must share. Mixed into a TestCase per backend."""

    def make_adapter(self, **options):
        raise NotImplementedError

    async def asyncSetUp(self):
        self.adapters = []
        self.db = self.new_adapter()

    async def asyncTearDown(self):
        for adapter in self.adapters:
            await adapter.close()

    def new_adapter(self, **options):
        adapter = self.make_adapter(**options)
        self.adapters.append(adapter)
        return adapter

    async def count(self, db, table):
        row = await db.prepare(f"SELECT COUNT(*) AS count FROM {table}").get()
        return row["count"]

    async def test_prepare_before_initialize_raises_not_initialized(self):
        self.assertEqual(self.db.state, AdapterState.UNINITIALIZED)
        with self.assertRaises(NotInitializedError):
            self.db.prepare("SELECT 1")
        with self.assertRaises(NotInitializedError):
            await self.db.exec("SELECT 1")

    async def test_fresh_database_is_seeded(self):
        await self.db.initialize()
        self.assertEqual(self.db.state, AdapterState.READY)

        categories = await self.db.prepare("SELECT * FROM categories").all()
        self.assertEqual([c["id"] for c in categories], [DEFAULT_CATEGORY_ID])

        notes = await self.db.prepare("SELECT * FROM notes").all()
        self.assertEqual(len(notes), 1)
        self.assertEqual(notes[0]["id"], WELCOME_NOTE_ID)
        self.assertEqual(notes[0]["category_id"], DEFAULT_CATEGORY_ID)

        shares = await self.db.prepare("SELECT * FROM shares").all()
        self.assertEqual(len(shares), 1)
        self.assertEqual(shares[0]["note_id"], WELCOME_NOTE_ID)
        self.assertIsNone(shares[0]["password"])

        language = await self.db.prepare("SELECT value FROM settings WHERE key = ?").get("language")
        self.assertEqual(language, {"value": "zh"})

    async def test_initialize_twice_is_idempotent(self):
        await self.db.initialize()
        await self.db.initialize()
        for table in ("categories", "notes", "shares"):
            self.assertEqual(await self.count(self.db, table), 1)
        self.assertEqual(await self.count(self.db, "logs"), 0)

    async def test_non_fresh_database_is_not_seeded(self):
        await self.db.initialize()
        await self.db.exec(
            "DELETE FROM shares; DELETE FROM notes; DELETE FROM categories;"
        )
        await self.db.close()

        again = self.new_adapter()
        await again.initialize()
        for table in ("categories", "notes", "shares"):
            self.assertEqual(await self.count(again, table), 0)

    async def strip_defaults(self):
        await self.db.initialize()
        await self.db.prepare(
            "INSERT INTO settings (key, value, updated_at) VALUES (?, ?, ?)"
        ).run("theme", "dark", 1)
        await self.db.exec(
            "DELETE FROM settings WHERE key = 'language';"
            "DELETE FROM shares; DELETE FROM notes; DELETE FROM categories;"
        )
        await self.db.close()

    async def test_backfill_restores_missing_default_settings_only(self):
        await self.strip_defaults()

        again = self.new_adapter(backfill_default_settings=True)
        await again.initialize()
        language = await again.prepare("SELECT value FROM settings WHERE key = ?").get("language")
        self.assertEqual(language, {"value": "zh"})
        theme = await again.prepare("SELECT value FROM settings WHERE key = ?").get("theme")
        self.assertEqual(theme, {"value": "dark"})
        for table in ("categories", "notes", "shares"):
            self.assertEqual(await self.count(again, table), 0)

    async def test_backfill_keeps_existing_values(self):
        await self.db.initialize()
        await self.db.prepare("UPDATE settings SET value = ? WHERE key = ?").run("en", "language")
        await self.db.close()

        again = self.new_adapter(backfill_default_settings=True)
        await again.initialize()
        language = await again.prepare("SELECT value FROM settings WHERE key = ?").get("language")
        self.assertEqual(language, {"value": "en"})

    async def test_missing_default_settings_stay_missing_without_backfill(self):
        await self.strip_defaults()

        again = self.new_adapter()
        await again.initialize()
        self.assertIsNone(
            await again.prepare("SELECT value FROM settings WHERE key = ?").get("language")
        )
        self.assertEqual(await self.count(again, "settings"), 1)

    async def test_get_and_all_on_no_rows(self):
        await self.db.initialize()
        self.assertIsNone(
            await self.db.prepare("SELECT * FROM notes WHERE id = ?").get("missing")
        )
        self.assertEqual(
            await self.db.prepare("SELECT * FROM trash WHERE id = ?").all("missing"), []
        )

    async def test_run_reports_changes(self):
        await self.db.initialize()
        result = await self.db.prepare(
            "INSERT INTO categories (id, name, created_at) VALUES (?, ?, ?)"
        ).run("work", "Work", 1)
        self.assertEqual(result.changes, 1)
        self.assertIsInstance(result.last_insert_id, int)

        result = await self.db.prepare(
            "UPDATE categories SET name = ? WHERE id = ?"
        ).run("Nothing", "missing")
        self.assertEqual(result.changes, 0)
        self.assertIsNone(result.last_insert_id)

        rows = await self.db.prepare("SELECT id FROM categories ORDER BY id").all()
        self.assertEqual([r["id"] for r in rows], ["default", "work"])

    async def test_is_installed(self):
        await self.db.initialize()
        self.assertFalse(await self.db.is_installed())
        await self.db.prepare(
            "INSERT INTO settings (key, value, updated_at) VALUES (?, ?, ?)"
        ).run("system.installed", "1", 1)
        self.assertTrue(await self.db.is_installed())

    async def test_exec_runs_every_statement(self):
        await self.db.initialize()
        await self.db.exec(
            """
            INSERT INTO categories (id, name, created_at) VALUES ('a', 'A; with semicolon', 1);
            -- comment ; with semicolon
            INSERT INTO categories (id, name, created_at) VALUES ('b', 'B', 2);
            """
        )
        names = await self.db.prepare("SELECT name FROM categories WHERE id IN ('a', 'b') ORDER BY id").all()
        self.assertEqual([r["name"] for r in names], ["A; with semicolon", "B"])

    async def test_exec_keeps_statements_before_a_failure(self):
        await self.db.initialize()
        with self.assertRaises(QueryError):
            await self.db.exec(
                "INSERT INTO categories (id, name, created_at) VALUES ('kept', 'Kept', 1);"
                "INSERT INTO no_such_table VALUES (1);"
            )
        row = await self.db.prepare("SELECT id FROM categories WHERE id = ?").get("kept")
        self.assertEqual(row, {"id": "kept"})

    async def test_malformed_sql_raises_query_error(self):
        await self.db.initialize()
        with self.assertRaises(QueryError):
            await self.db.prepare("SELEC nonsense").all()

    async def test_close_invalidates_prepared_statements(self):
        await self.db.initialize()
        stmt = self.db.prepare("SELECT * FROM settings")
        await self.db.close()
        self.assertEqual(self.db.state, AdapterState.CLOSED)
        with self.assertRaises(NotInitializedError):
            await stmt.all()
        with self.assertRaises(NotInitializedError):
            self.db.prepare("SELECT 1")


class SqliteAdapterTests(AdapterContract, unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = os.path.join(self.tmp.name, "nested", "xa-note.db")
        await super().asyncSetUp()

    async def asyncTearDown(self):
        await super().asyncTearDown()
        self.tmp.cleanup()

    def make_adapter(self, **options):
        return SqliteAdapter(self.path, **options)

    async def test_missing_path_is_configuration_error(self):
        adapter = SqliteAdapter("")
        with self.assertRaises(ConfigurationError):
            await adapter.initialize()
        self.assertEqual(adapter.state, AdapterState.UNINITIALIZED)

    async def test_creates_parent_directory(self):
        await self.db.initialize()
        self.assertTrue(os.path.exists(self.path))


class D1AdapterTests(AdapterContract, unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.server = FakeD1Server()
        self.clients = []
        await super().asyncSetUp()

    async def asyncTearDown(self):
        await super().asyncTearDown()
        for client in self.clients:
            await client.aclose()
        self.server.close()

    def make_adapter(self, token="test-token", **options):
        client = self.server.client()
        self.clients.append(client)
        return D1Adapter("account", "database", token, client=client, **options)

    async def test_missing_binding_is_configuration_error(self):
        client = self.server.client()
        self.clients.append(client)
        adapter = D1Adapter("account", None, "test-token", client=client)
        with self.assertRaises(ConfigurationError) as ctx:
            await adapter.initialize()
        self.assertIn("database id", str(ctx.exception))
        self.assertEqual(self.server.requests, [])

    async def test_rejected_token_is_configuration_error(self):
        adapter = self.make_adapter(token="wrong")
        with self.assertRaises(ConfigurationError):
            await adapter.initialize()

    async def test_one_request_per_statement(self):
        await self.db.initialize()
        before = len(self.server.requests)
        await self.db.prepare("SELECT * FROM settings WHERE key = ?").get("language")
        self.assertEqual(len(self.server.requests), before + 1)
        self.assertEqual(
            self.server.requests[-1],
            {"sql": "SELECT * FROM settings WHERE key = ?", "params": ["language"]},
        )

    async def test_server_error_is_transient(self):
        await self.db.initialize()
        self.server.unavailable_patterns.append("FROM notes")
        with self.assertRaises(TransientIOError):
            await self.db.prepare("SELECT * FROM notes").all()

    async def test_rate_limit_is_transient(self):
        await self.db.initialize()
        self.server.rate_limited_patterns.append("FROM notes")
        with self.assertRaises(TransientIOError):
            await self.db.prepare("SELECT * FROM notes").all()
        self.server.rate_limited_patterns.clear()
        self.assertEqual(len(await self.db.prepare("SELECT * FROM notes").all()), 1)

    async def test_network_error_is_transient(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(refuse))
        self.clients.append(client)
        adapter = D1Adapter("account", "database", "test-token", client=client)
        with self.assertRaises(TransientIOError):
            await adapter.initialize()
        self.assertEqual(adapter.state, AdapterState.UNINITIALIZED)

    def test_query_url(self):
        adapter = D1Adapter("acc", "dbid", "t", api_base="https://api.example.test/client/v4/")
        self.assertEqual(
            adapter.query_url,
            "https://api.example.test/client/v4/accounts/acc/d1/database/dbid/query",
        )


if __name__ == "__main__":
    unittest.main()
