import tempfile
import unittest
from pathlib import Path
from unittest.mock import Mock

from mchost.core.errors import (
    AlreadyRunning,
    DownloadFailure,
    InvalidRequest,
    InvalidStartupFlags,
    SpawnFailure,
    TenantConflict,
)
from mchost.core.tenant_store import TenantStore
from mchost.services.provisioning import Provisioner, SagaStep, run_saga


class RunSagaTests(unittest.TestCase):
    def test_undo_runs_in_reverse_and_reraises(self):
        calls = []

        def fail():
            raise RuntimeError("boom")

        steps = [
            SagaStep("a", lambda: calls.append("run a"), lambda: calls.append("undo a")),
            SagaStep("b", lambda: calls.append("run b"), lambda: calls.append("undo b")),
            SagaStep("c", fail, lambda: calls.append("undo c")),
        ]
        with self.assertRaises(RuntimeError):
            run_saga(steps)
        self.assertEqual(calls, ["run a", "run b", "undo b", "undo a"])

    def test_failing_undo_does_not_stop_rollback(self):
        calls = []
        log_exception = Mock()

        def broken_undo():
            raise OSError("busy")

        def fail():
            raise ValueError("late")

        steps = [
            SagaStep("a", lambda: None, lambda: calls.append("undo a")),
            SagaStep("b", lambda: None, broken_undo),
            SagaStep("c", fail, lambda: None),
        ]
        with self.assertRaises(ValueError):
            run_saga(steps, log_exception=log_exception)
        self.assertEqual(calls, ["undo a"])
        log_exception.assert_called_once()


class ProvisionerTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        base = Path(self._tmp.name)
        self.servers_dir = base / "server-directory"
        self.store = TenantStore(base / "tenants.json")
        self.supervisor = Mock()
        self.supervisor.registry = {}
        self.fetched = []
        self.fetch_error = None
        self._ids = iter(["t-1", "t-2", "t-3"])
        self.provisioner = Provisioner(
            self.store,
            self.supervisor,
            servers_base_dir=self.servers_dir,
            jar_url_template="https://example.test/{version}/server.jar",
            fetch=self._fetch,
            id_factory=lambda: next(self._ids),
        )

    def tearDown(self):
        self._tmp.cleanup()

    def _fetch(self, url, dest, timeout=60):
        if self.fetch_error is not None:
            raise self.fetch_error
        self.fetched.append(url)
        Path(dest).write_bytes(b"jar")
        return dest

    def _create(self, **overrides):
        kwargs = dict(name="Survival", memory_gb=2, port=25565, version="1.20.1")
        kwargs.update(overrides)
        return self.provisioner.create_server(**kwargs)

    def test_create_lays_out_server(self):
        record = self._create(startup_flags="-Dfoo=bar", view_distance=12)
        server_path = self.servers_dir / "t-1"
        self.assertEqual(record.sandbox_root, str(server_path / "root"))
        self.assertTrue((server_path / "backup").is_dir())
        self.assertTrue((server_path / "logs").is_dir())
        self.assertEqual((server_path / "root" / "server.jar").read_bytes(), b"jar")
        properties = (server_path / "root" / "server.properties").read_text(encoding="utf-8")
        self.assertIn("server-port=25565", properties)
        self.assertIn("query.port=25565", properties)
        self.assertIn("view-distance=12", properties)
        self.assertIn("eula=true", (server_path / "root" / "eula.txt").read_text(encoding="utf-8"))
        self.assertEqual(self.fetched, ["https://example.test/1.20.1/server.jar"])
        self.assertEqual(record.startup_command, "java -Xmx2G -Xms2G -jar server.jar nogui")
        self.supervisor.create_session.assert_called_once_with(
            "t-1", record.sandbox_root, record.log_root, record.startup_command, "-Dfoo=bar"
        )
        self.assertEqual(self.store.get("t-1").name, "Survival")

    def test_server_name_cannot_inject_properties(self):
        self._create(name="Evil\nonline-mode=false\r\nenable-rcon=true\\")
        properties = (self.servers_dir / "t-1" / "root" / "server.properties").read_text(encoding="utf-8")
        lines = properties.splitlines()
        self.assertIn("motd=Evil online-mode=false enable-rcon=true\\\\", lines)
        self.assertIn("online-mode=true", lines)
        self.assertNotIn("online-mode=false", lines)
        self.assertIn("enable-rcon=false", lines)
        self.assertNotIn("enable-rcon=true", lines)

    def test_download_failure_rolls_back(self):
        self.fetch_error = DownloadFailure()
        with self.assertRaises(DownloadFailure):
            self._create()
        self.assertEqual(self.store.list(), [])
        self.assertFalse((self.servers_dir / "t-1").exists())
        self.supervisor.create_session.assert_not_called()

    def test_spawn_failure_rolls_back(self):
        self.supervisor.create_session.side_effect = SpawnFailure()
        with self.assertRaises(SpawnFailure):
            self._create()
        self.assertEqual(self.store.list(), [])
        self.assertFalse((self.servers_dir / "t-1").exists())
        self.supervisor.destroy_session.assert_not_called()

    def test_duplicate_port_is_rejected_without_side_effects(self):
        self._create()
        with self.assertRaises(TenantConflict):
            self._create(name="Creative")
        self.assertFalse((self.servers_dir / "t-2").exists())
        self.assertEqual(len(self.fetched), 1)

    def test_validation(self):
        for overrides in (
            {"name": " "},
            {"version": "latest"},
            {"port": 70000},
            {"memory_gb": 0},
            {"server_type": "spigot"},
        ):
            with self.subTest(overrides=overrides):
                with self.assertRaises(InvalidRequest):
                    self._create(**overrides)
        with self.assertRaises(InvalidStartupFlags):
            self._create(startup_flags="-Xmx8G")
        self.assertEqual(self.store.list(), [])

    def test_delete_server(self):
        self._create()
        self.provisioner.delete_server("t-1")
        self.supervisor.destroy_session.assert_called_once_with("t-1")
        self.assertEqual(self.store.list(), [])
        self.assertFalse((self.servers_dir / "t-1").exists())

    def test_update_server_jar(self):
        self._create()
        updated = self.provisioner.update_server_jar("t-1", "1.21")
        self.assertEqual(updated.version, "1.21")
        self.assertEqual(self.fetched[-1], "https://example.test/1.21/server.jar")

    def test_update_server_jar_requires_stopped_server(self):
        self._create()
        self.supervisor.registry = {"t-1": object()}
        self.supervisor.get_status.return_value = {"runState": "running"}
        with self.assertRaises(AlreadyRunning):
            self.provisioner.update_server_jar("t-1", "1.21")
        self.assertEqual(self.store.get("t-1").version, "1.20.1")

    def test_failed_update_keeps_version(self):
        self._create()
        self.fetch_error = DownloadFailure()
        with self.assertRaises(DownloadFailure):
            self.provisioner.update_server_jar("t-1", "1.21")
        self.assertEqual(self.store.get("t-1").version, "1.20.1")

    def test_startup_flags_roundtrip(self):
        self._create()
        self.supervisor.registry = {"t-1": object()}
        payload = self.provisioner.update_startup_flags("t-1", "-XX:+UseG1GC")
        self.assertEqual(payload["effectiveCommand"], "java -Xmx2G -Xms2G -XX:+UseG1GC -jar server.jar nogui")
        self.assertTrue(payload["requiresRestart"])
        self.supervisor.update_startup_config.assert_called_once_with("t-1", flags="-XX:+UseG1GC")
        self.assertEqual(self.provisioner.get_startup_config("t-1")["startupFlags"], "-XX:+UseG1GC")

    def test_restore_sessions_skips_failures(self):
        self._create()
        self._create(name="Second", port=25566)
        self.supervisor.create_session.reset_mock()
        self.supervisor.create_session.side_effect = [SpawnFailure(), None]
        self.assertEqual(self.provisioner.restore_sessions(), 1)
        self.assertEqual(self.supervisor.create_session.call_count, 2)


if __name__ == "__main__":
    unittest.main()
