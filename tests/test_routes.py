import io
import tempfile
import time
import unittest
import zipfile
from pathlib import Path
from unittest.mock import Mock
from zoneinfo import ZoneInfo

from mchost.core.tenant_store import TenantStore
from mchost.main import build_app
from mchost.services.archive_engine import ArchiveEngine
from mchost.services.broadcast_hub import SessionBroadcastHub
from mchost.services.liveness import SentinelPidOracle
from mchost.services.process_supervisor import ProcessSupervisor
from mchost.services.provisioning import Provisioner
from mchost.services.task_registry import TaskRegistry
from mchost.state import AppState


class FakeShell:
    def __init__(self, on_output, on_exit):
        self.writes = []
        self.is_alive = True

    def write(self, text):
        self.writes.append(text)

    def close(self):
        self.is_alive = False


class NoProcessOracle(SentinelPidOracle):
    def is_alive(self, pid):
        return False

    def kill_tree(self, pid):
        return 0


class RouteTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        base = Path(self._tmp.name)
        self.log_action = Mock()
        self.log_exception = Mock()
        self.task_registry = TaskRegistry()
        self.archive_engine = ArchiveEngine(self.task_registry, max_workers=2)
        hub = SessionBroadcastHub()
        self.oracle = NoProcessOracle()
        self.supervisor = ProcessSupervisor(
            hub,
            self.oracle,
            shell_factory=lambda session, on_output, on_exit: FakeShell(on_output, on_exit),
        )
        self.tenant_store = TenantStore(base / "tenants.json")
        ids = iter(["t-1", "t-2"])

        def fetch(url, dest, timeout=60):
            Path(dest).write_bytes(b"jar")

        provisioner = Provisioner(
            self.tenant_store,
            self.supervisor,
            servers_base_dir=base / "server-directory",
            jar_url_template="https://example.test/{version}/server.jar",
            fetch=fetch,
            id_factory=lambda: next(ids),
        )
        state = AppState({
            "ARCHIVE_CHUNK_BYTES": self.archive_engine.chunk_size,
            "CONSOLE_HISTORY_LINES": 100,
            "CONSOLE_STREAM_HEARTBEAT_SECONDS": 0.1,
            "DISPLAY_TZ": ZoneInfo("UTC"),
            "archive_engine": self.archive_engine,
            "broadcast_hub": hub,
            "log_action": self.log_action,
            "log_exception": self.log_exception,
            "log_system": Mock(),
            "provisioner": provisioner,
            "supervisor": self.supervisor,
            "task_registry": self.task_registry,
            "tenant_store": self.tenant_store,
        })
        self.client = build_app(state, secret_key="test").test_client()

    def tearDown(self):
        self.archive_engine.shutdown(wait=True)
        self._tmp.cleanup()

    def _create_server(self, name="Survival", port=25565):
        response = self.client.post(
            "/servers",
            json={"name": name, "memory": 2, "port": port, "version": "1.20.1"},
        )
        self.assertEqual(response.status_code, 201, response.get_json())
        return response.get_json()["server"]["id"]

    def _wait_for_task(self, server_id, task_id, timeout=5.0):
        deadline = time.time() + timeout
        while time.time() < deadline:
            task = self.client.get(f"/servers/{server_id}/tasks/{task_id}").get_json()["task"]
            if task["status"] in ("completed", "error"):
                return task
            time.sleep(0.02)
        self.fail(f"task {task_id} did not finish")

    def test_create_and_list_servers(self):
        server_id = self._create_server()
        listed = self.client.get("/servers").get_json()["servers"]
        self.assertEqual([s["id"] for s in listed], [server_id])
        self.assertEqual(listed[0]["port"], 25565)
        duplicate = self.client.post(
            "/servers",
            json={"name": "Other", "memory": 2, "port": 25565, "version": "1.20.1"},
        )
        self.assertEqual(duplicate.status_code, 409)
        self.assertEqual(duplicate.get_json()["error"], "server_conflict")

    def test_invalid_create_body(self):
        response = self.client.post("/servers", json={"name": "x", "memory": 2, "port": 1, "version": "latest"})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["error"], "invalid_request")

    def test_unknown_server(self):
        response = self.client.get("/servers/missing/status")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.get_json()["error"], "server_not_found")

    def test_unknown_route_stays_404(self):
        response = self.client.get("/nothing-here")
        self.assertEqual(response.status_code, 404)
        self.log_exception.assert_not_called()

    def test_start_and_status(self):
        server_id = self._create_server()
        status = self.client.get(f"/servers/{server_id}/status").get_json()
        self.assertEqual(status["runState"], "stopped")
        self.assertFalse(status["running"])
        started = self.client.post(f"/servers/{server_id}/start")
        self.assertEqual(started.status_code, 200)
        self.assertEqual(started.get_json()["runState"], "starting")
        again = self.client.post(f"/servers/{server_id}/start")
        self.assertEqual(again.status_code, 409)
        self.assertEqual(again.get_json()["error"], "already_running")

    def test_command_requires_running_server(self):
        server_id = self._create_server()
        response = self.client.post(f"/servers/{server_id}/command", json={"command": "say hi"})
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.get_json()["error"], "not_running")

    def test_console_history(self):
        server_id = self._create_server()
        for i in range(5):
            self.supervisor.handle_output(server_id, f"line {i}\n")
        lines = self.client.get(f"/servers/{server_id}/console-history?limit=2").get_json()["lines"]
        self.assertEqual(lines, ["line 3", "line 4"])

    def test_startup_flags(self):
        server_id = self._create_server()
        current = self.client.get(f"/servers/{server_id}/startup-flags").get_json()
        self.assertEqual(current["baseCommand"], "java -Xmx2G -Xms2G -jar server.jar nogui")
        updated = self.client.put(f"/servers/{server_id}/startup-flags", json={"flags": "-Dfoo=bar"})
        self.assertEqual(updated.get_json()["effectiveCommand"], "java -Xmx2G -Xms2G -Dfoo=bar -jar server.jar nogui")
        rejected = self.client.put(f"/servers/{server_id}/startup-flags", json={"flags": "-Xmx9G"})
        self.assertEqual(rejected.status_code, 400)
        self.assertEqual(rejected.get_json()["error"], "invalid_startup_flags")

    def test_archive_poll_and_download(self):
        server_id = self._create_server()
        sandbox = Path(self.tenant_store.get(server_id).sandbox_root)
        (sandbox / "world").mkdir()
        (sandbox / "world" / "level.dat").write_bytes(b"x" * 3000)
        response = self.client.post(f"/servers/{server_id}/files/archive", json={"paths": ["world"]})
        self.assertEqual(response.status_code, 202)
        task_id = response.get_json()["taskId"]

        task = self._wait_for_task(server_id, task_id)
        self.assertEqual(task["status"], "completed")
        self.assertEqual(task["processedBytes"], 3000)
        self.assertEqual(task["progress"], 1.0)

        download = self.client.get(f"/servers/{server_id}/tasks/{task_id}/download")
        self.assertEqual(download.status_code, 200)
        self.assertEqual(download.mimetype, "application/zip")
        data = download.get_data()
        download.close()
        with zipfile.ZipFile(io.BytesIO(data)) as zf:
            self.assertEqual(zf.read("world/level.dat"), b"x" * 3000)

        gone = self.client.get(f"/servers/{server_id}/tasks/{task_id}")
        self.assertEqual(gone.status_code, 404)
        self.assertEqual(gone.get_json()["error"], "task_not_found")

    def test_archive_rejects_escaping_paths(self):
        server_id = self._create_server()
        response = self.client.post(f"/servers/{server_id}/files/archive", json={"paths": ["../../etc"]})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["error"], "invalid_path")

    def test_unarchive_rejects_traversal(self):
        server_id = self._create_server()
        response = self.client.post(f"/servers/{server_id}/files/unarchive", json={"path": "../../etc/passwd"})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["error"], "invalid_path")

    def test_task_is_scoped_to_its_server(self):
        first = self._create_server()
        second = self._create_server(name="Creative", port=25566)
        sandbox = Path(self.tenant_store.get(first).sandbox_root)
        (sandbox / "notes.txt").write_text("hello", encoding="utf-8")
        task_id = self.client.post(f"/servers/{first}/files/archive", json={"paths": ["notes.txt"]}).get_json()["taskId"]
        self._wait_for_task(first, task_id)
        response = self.client.get(f"/servers/{second}/tasks/{task_id}")
        self.assertEqual(response.status_code, 404)
        download = self.client.get(f"/servers/{second}/tasks/{task_id}/download")
        self.assertEqual(download.status_code, 404)

    def test_backup_and_restore(self):
        server_id = self._create_server()
        sandbox = Path(self.tenant_store.get(server_id).sandbox_root)
        (sandbox / "ops.json").write_text("[]", encoding="utf-8")
        task_id = self.client.post(f"/servers/{server_id}/backups").get_json()["taskId"]
        self.assertEqual(self._wait_for_task(server_id, task_id)["status"], "completed")
        backups = self.client.get(f"/servers/{server_id}/backups").get_json()["backups"]
        self.assertEqual(len(backups), 1)

        (sandbox / "ops.json").write_text("changed", encoding="utf-8")
        restore = self.client.post(f"/servers/{server_id}/backups/restore", json={"name": backups[0]["name"]})
        self.assertEqual(restore.status_code, 202)
        restore_task = self._wait_for_task(server_id, restore.get_json()["taskId"])
        self.assertEqual(restore_task["status"], "completed")
        self.assertEqual((sandbox / "ops.json").read_text(encoding="utf-8"), "[]")

    def test_delete_server(self):
        server_id = self._create_server()
        self.assertEqual(self.client.delete(f"/servers/{server_id}").status_code, 200)
        self.assertEqual(self.client.get(f"/servers/{server_id}").status_code, 404)
        self.assertNotIn(server_id, self.supervisor.registry)


if __name__ == "__main__":
    unittest.main()
