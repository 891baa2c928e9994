import tempfile
import unittest
from pathlib import Path

from mchost.core.errors import TaskNotFound
from mchost.services.task_registry import TaskRegistry, public_view
from mchost.state import TaskKind, TaskStatus


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class TaskRegistryTests(unittest.TestCase):
    def test_create_starts_queued(self):
        registry = TaskRegistry()
        task = registry.create(TaskKind.ZIP, file_name="a.zip")
        self.assertEqual(task.status, TaskStatus.QUEUED)
        self.assertEqual(registry.get(task.id).file_name, "a.zip")

    def test_update_unknown_id_is_noop(self):
        registry = TaskRegistry()
        self.assertIsNone(registry.update("missing", progress=0.5))
        self.assertIsNone(registry.get("missing"))

    def test_status_is_forward_only(self):
        registry = TaskRegistry()
        task = registry.create(TaskKind.UNZIP)
        registry.update(task.id, status=TaskStatus.IN_PROGRESS)
        registry.update(task.id, status=TaskStatus.QUEUED)
        self.assertEqual(registry.get(task.id).status, TaskStatus.IN_PROGRESS)
        registry.update(task.id, status=TaskStatus.COMPLETED, progress=1.0)
        registry.update(task.id, status=TaskStatus.ERROR, message="late")
        final = registry.get(task.id)
        self.assertEqual(final.status, TaskStatus.COMPLETED)
        self.assertIsNone(final.message)
        self.assertIsNotNone(final.finished_at)

    def test_queued_task_cannot_jump_to_terminal_state(self):
        registry = TaskRegistry()
        task = registry.create(TaskKind.ZIP)
        registry.update(task.id, status=TaskStatus.COMPLETED, progress=1.0)
        registry.update(task.id, status=TaskStatus.ERROR, message="early")
        snapshot = registry.get(task.id)
        self.assertEqual(snapshot.status, TaskStatus.QUEUED)
        self.assertIsNone(snapshot.finished_at)
        registry.update(task.id, status=TaskStatus.IN_PROGRESS)
        registry.update(task.id, status=TaskStatus.ERROR, message="disk full")
        self.assertEqual(registry.get(task.id).status, TaskStatus.ERROR)

    def test_progress_never_decreases_while_in_progress(self):
        registry = TaskRegistry()
        task = registry.create(TaskKind.ZIP)
        registry.update(task.id, status=TaskStatus.IN_PROGRESS, progress=0.5, processed_bytes=50)
        registry.update(task.id, progress=0.25, processed_bytes=10)
        snapshot = registry.get(task.id)
        self.assertEqual(snapshot.progress, 0.5)
        self.assertEqual(snapshot.processed_bytes, 50)
        registry.update(task.id, progress=3.0)
        self.assertEqual(registry.get(task.id).progress, 1.0)

    def test_update_stamps_time(self):
        clock = FakeClock()
        registry = TaskRegistry(clock=clock)
        task = registry.create(TaskKind.ZIP)
        clock.now += 5
        registry.update(task.id, status=TaskStatus.IN_PROGRESS)
        self.assertEqual(registry.get(task.id).updated_at, 1005.0)

    def test_get_returns_snapshot(self):
        registry = TaskRegistry()
        task = registry.create(TaskKind.ZIP)
        snapshot = registry.get(task.id)
        snapshot.progress = 0.9
        self.assertEqual(registry.get(task.id).progress, 0.0)

    def test_unknown_field_raises(self):
        registry = TaskRegistry()
        task = registry.create(TaskKind.ZIP)
        with self.assertRaises(AttributeError):
            registry.update(task.id, bogus=1)

    def test_require_checks_scope(self):
        registry = TaskRegistry()
        task = registry.create(TaskKind.ZIP, scope_meta={"tenant_id": "a"})
        self.assertEqual(registry.require(task.id, scope={"tenant_id": "a"}).id, task.id)
        with self.assertRaises(TaskNotFound):
            registry.require(task.id, scope={"tenant_id": "b"})
        with self.assertRaises(TaskNotFound):
            registry.require("missing")

    def test_prune_drops_expired_terminal_tasks_and_artifacts(self):
        clock = FakeClock()
        registry = TaskRegistry(retention_seconds=60, clock=clock)
        with tempfile.TemporaryDirectory() as tmp:
            artifact = Path(tmp) / "a.zip"
            artifact.write_bytes(b"zip")
            done = registry.create(TaskKind.ZIP, result_path=artifact, cleanup=True)
            running = registry.create(TaskKind.ZIP)
            registry.update(done.id, status=TaskStatus.IN_PROGRESS)
            registry.update(done.id, status=TaskStatus.COMPLETED)
            registry.update(running.id, status=TaskStatus.IN_PROGRESS)
            clock.now += 61
            self.assertEqual(registry.prune(), 1)
            self.assertIsNone(registry.get(done.id))
            self.assertIsNotNone(registry.get(running.id))
            self.assertFalse(artifact.exists())

    def test_prune_bounds_entry_count(self):
        registry = TaskRegistry(max_entries=3)
        ids = []
        for _ in range(3):
            task = registry.create(TaskKind.UNZIP)
            registry.update(task.id, status=TaskStatus.IN_PROGRESS)
            registry.update(task.id, status=TaskStatus.ERROR, message="x")
            ids.append(task.id)
        registry.create(TaskKind.UNZIP)
        self.assertLessEqual(len(registry), 3)
        self.assertIsNone(registry.get(ids[0]))

    def test_public_view_hides_paths(self):
        registry = TaskRegistry()
        task = registry.create(TaskKind.ZIP, result_path=Path("/srv/a.zip"), file_name="a.zip")
        payload = public_view(registry.get(task.id))
        self.assertEqual(payload["status"], "queued")
        self.assertEqual(payload["type"], "zip")
        self.assertNotIn("resultPath", payload)
        self.assertNotIn("/srv/a.zip", str(payload))


if __name__ == "__main__":
    unittest.main()
