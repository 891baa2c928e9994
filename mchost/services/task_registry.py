"""In-memory registry of archive/unarchive task records."""

import dataclasses
from pathlib import Path
import threading
import time
import uuid

from mchost.core.errors import TaskNotFound
from mchost.state import Task, TaskStatus


def _coerce_status(value):
    return value if isinstance(value, TaskStatus) else TaskStatus(value)


def public_view(task):
    """Return the client-facing task payload without filesystem paths."""
    return {
        "id": task.id,
        "type": task.kind.value,
        "status": task.status.value,
        "progress": round(float(task.progress), 4),
        "totalBytes": task.total_bytes,
        "processedBytes": task.processed_bytes,
        "entriesTotal": task.entries_total,
        "entriesProcessed": task.entries_processed,
        "message": task.message,
        "fileName": task.file_name,
        "archiveSize": task.archive_size,
        "skippedEntries": list(task.skipped_entries),
        "meta": dict(task.scope_meta or {}),
        "createdAt": task.created_at,
        "updatedAt": task.updated_at,
        "finishedAt": task.finished_at,
    }


class TaskRegistry:
    """Thread-safe ``task_id -> Task`` map with forward-only status updates."""

    def __init__(self, retention_seconds=3600, max_entries=500, log_system=None, clock=time.time):
        self._tasks = {}
        self._lock = threading.Lock()
        self.retention_seconds = retention_seconds
        self.max_entries = max_entries
        self._log_system = log_system
        self._clock = clock

    def create(self, kind, **initial):
        """Register a new Queued task and return a snapshot of it."""
        self.prune()
        now = self._clock()
        task = Task(id=str(uuid.uuid4()), kind=kind, created_at=now, updated_at=now, **initial)
        task.status = TaskStatus.QUEUED
        with self._lock:
            self._tasks[task.id] = task
            return dataclasses.replace(task)

    def update(self, task_id, **fields):
        """Merge ``fields`` into the task and stamp ``updated_at``.

        Unknown ids are a no-op. Status only moves Queued -> InProgress ->
        Completed|Error; any other transition is dropped. Terminal tasks never
        change again and progress never decreases while in progress.
        """
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.status.is_terminal:
                return None
            if "status" in fields:
                new_status = _coerce_status(fields["status"])
                if new_status.rank < task.status.rank:
                    fields.pop("status")
                elif new_status.is_terminal and task.status != TaskStatus.IN_PROGRESS:
                    fields.pop("status")
                else:
                    fields["status"] = new_status
            status_after = fields.get("status", task.status)
            if status_after == TaskStatus.IN_PROGRESS and "progress" in fields:
                fields["progress"] = max(float(task.progress), min(float(fields["progress"]), 1.0))
            if status_after == TaskStatus.IN_PROGRESS and "processed_bytes" in fields:
                fields["processed_bytes"] = max(task.processed_bytes, int(fields["processed_bytes"]))
            for key, value in fields.items():
                if not hasattr(task, key):
                    raise AttributeError(f"Task has no field {key!r}")
                setattr(task, key, value)
            task.updated_at = self._clock()
            if task.status.is_terminal and task.finished_at is None:
                task.finished_at = task.updated_at
            return dataclasses.replace(task)

    def get(self, task_id):
        """Return a snapshot of the task or ``None``."""
        with self._lock:
            task = self._tasks.get(task_id)
            return dataclasses.replace(task) if task is not None else None

    def require(self, task_id, scope=None):
        """Return the task or raise ``TaskNotFound``; ``scope`` must match ``scope_meta``."""
        task = self.get(task_id)
        if task is None:
            raise TaskNotFound()
        if scope:
            for key, value in scope.items():
                if task.scope_meta.get(key) != value:
                    raise TaskNotFound()
        return task

    def remove(self, task_id):
        with self._lock:
            return self._tasks.pop(task_id, None)

    def __len__(self):
        with self._lock:
            return len(self._tasks)

    def prune(self):
        """Drop expired terminal tasks and delete their transient artifacts."""
        now = self._clock()
        doomed = []
        with self._lock:
            terminal = sorted(
                (task for task in self._tasks.values() if task.status.is_terminal),
                key=lambda task: task.finished_at or task.updated_at,
            )
            overflow = max(0, len(self._tasks) - self.max_entries + 1)
            for task in terminal:
                finished = task.finished_at or task.updated_at
                if overflow > 0 or (now - finished) >= self.retention_seconds:
                    doomed.append(self._tasks.pop(task.id))
                    overflow -= 1
        for task in doomed:
            self._discard_artifact(task)
        return len(doomed)

    def _discard_artifact(self, task):
        if not task.cleanup or task.result_path is None:
            return
        try:
            Path(task.result_path).unlink(missing_ok=True)
        except OSError as exc:
            if self._log_system is not None:
                self._log_system("task-prune", command=f"task={task.id}", rejection_message=str(exc))
