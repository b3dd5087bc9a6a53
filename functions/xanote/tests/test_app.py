import os
import tempfile
import unittest
from unittest.mock import patch

from fastapi.testclient import TestClient

from xanote.app import create_app
from xanote.config import get_settings
from xanote.dependencies import reset_dependencies


class BackendApiTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        env = {
            "XANOTE_DATABASE_BACKEND": "sqlite",
            "XANOTE_SQLITE_PATH": os.path.join(self.tmp.name, "xa-note.db"),
        }
        self.env = patch.dict(os.environ, env)
        self.env.start()
        get_settings.cache_clear()
        reset_dependencies()
        self.client = TestClient(create_app())
        self.client.__enter__()

    def tearDown(self):
        self.client.__exit__(None, None, None)
        reset_dependencies()
        self.env.stop()
        get_settings.cache_clear()
        self.tmp.cleanup()

    def install(self):
        response = self.client.post(
            "/api/install",
            json={"site_title": "My Notes", "admin_email": "me@example.com"},
        )
        self.assertEqual(response.status_code, 200)

    def test_routes_report_not_installed(self):
        response = self.client.get("/api/settings")
        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json(), {"error": "NOT_INSTALLED", "redirect": "/install"})

        status = self.client.get("/api/install/status")
        self.assertEqual(status.json(), {"installed": False})

    def test_install_flow(self):
        self.install()
        self.assertEqual(self.client.get("/api/install/status").json(), {"installed": True})

        again = self.client.post(
            "/api/install",
            json={"site_title": "Again", "admin_email": "me@example.com"},
        )
        self.assertEqual(again.status_code, 400)

        settings = self.client.get("/api/settings", params={"prefix": "site."}).json()["settings"]
        self.assertEqual(settings["site.title"], "My Notes")

    def test_install_validates_input(self):
        response = self.client.post(
            "/api/install", json={"site_title": "  ", "admin_email": "nope"}
        )
        self.assertEqual(response.status_code, 422)

    def test_backup_settings_drive_the_schedule(self):
        self.install()
        response = self.client.put(
            "/api/settings",
            json={
                "values": {
                    "webdav.url": "https://dav.example.com/backups",
                    "webdav.user": "alice",
                    "webdav.password": "s3cret",
                    "backup.frequency": "weekly",
                }
            },
        )
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()["schedule_updated"])

        status = self.client.get("/api/backup/status").json()
        self.assertEqual(status["state"], "scheduled")
        self.assertEqual(status["frequency"], "weekly")
        self.assertIsNotNone(status["next_run"])

        masked = self.client.get("/api/settings", params={"prefix": "webdav."}).json()
        self.assertEqual(masked["settings"]["webdav.password"], "******")

        # Sending the mask back leaves the stored password alone.
        response = self.client.put(
            "/api/settings",
            json={"values": {"webdav.password": "******", "backup.frequency": "manual"}},
        )
        self.assertEqual(response.json()["updated"], ["backup.frequency"])
        self.assertEqual(self.client.get("/api/backup/status").json()["state"], "idle")

    def test_unrelated_settings_do_not_touch_schedule(self):
        self.install()
        response = self.client.put("/api/settings", json={"values": {"site.title": "Renamed"}})
        self.assertFalse(response.json()["schedule_updated"])

    def test_install_flag_is_read_only(self):
        self.install()
        response = self.client.put("/api/settings", json={"values": {"system.installed": "0"}})
        self.assertEqual(response.status_code, 400)

    def test_manual_backup_requires_webdav(self):
        self.install()
        response = self.client.post("/api/backup/run")
        self.assertEqual(response.status_code, 400)

    def test_export_and_audit_log(self):
        self.install()
        export = self.client.get("/api/export").json()
        for table in ("settings", "categories", "notes", "shares", "trash"):
            self.assertIn(table, export)
        self.assertEqual(export["failedTables"], [])
        self.assertEqual(export["notes"][0]["id"], "xa-note-welcome")

        logs = self.client.get("/api/logs").json()
        self.assertEqual(logs["total"], 1)
        self.assertEqual(logs["logs"][0]["action"], "export_data")

        deleted = self.client.delete("/api/logs", params={"days_to_keep": 1}).json()
        self.assertEqual(deleted, {"deleted": 0})


if __name__ == "__main__":
    unittest.main()
