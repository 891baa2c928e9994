"""Typed runtime state: session/task records and the app state container."""
from dataclasses import dataclass, field
from collections.abc import Iterator, MutableMapping
from enum import Enum
from pathlib import Path
import threading
import time
from typing import Any, Optional


class RunState(str, Enum):
    """Derived lifecycle state of one managed server."""
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class TaskKind(str, Enum):
    ZIP = "zip"
    UNZIP = "unzip"


class TaskStatus(str, Enum):
    QUEUED = "queued"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.ERROR)


_STATUS_RANK = {
    TaskStatus.QUEUED: 0,
    TaskStatus.IN_PROGRESS: 1,
    TaskStatus.COMPLETED: 2,
    TaskStatus.ERROR: 2,
}


@dataclass
class ManagedSession:
    """One tenant's console shell and the server it launches."""
    tenant_id: str
    sandbox_root: Path
    log_root: Path
    base_command: str
    extra_flags: str
    shell: Any = None
    run_state: RunState = RunState.STOPPED
    observed_pid: Optional[int] = None
    reported_running: bool = False
    starting_since: Optional[float] = None
    transcript_lines: int = 0
    lock: Any = field(default_factory=threading.RLock, repr=False)

    @property
    def log_sink_path(self) -> Path:
        return Path(self.log_root) / "server.log"

    @property
    def sentinel_path(self) -> Path:
        return Path(self.log_root).parent / "minecraft_pid.txt"


@dataclass
class Task:
    """One asynchronous archive/unarchive unit of work."""
    id: str
    kind: TaskKind
    status: TaskStatus = TaskStatus.QUEUED
    progress: float = 0.0
    total_bytes: int = 0
    processed_bytes: int = 0
    entries_total: int = 0
    entries_processed: int = 0
    message: Optional[str] = None
    file_name: Optional[str] = None
    result_path: Optional[Path] = None
    archive_path: Optional[Path] = None
    destination: Optional[Path] = None
    archive_size: Optional[int] = None
    cleanup: bool = False
    skipped_entries: list = field(default_factory=list)
    scope_meta: dict = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None


STATE_KEYS = frozenset({
    # tunables
    "ARCHIVE_CHUNK_BYTES",
    "CONSOLE_HISTORY_LINES",
    "CONSOLE_STREAM_HEARTBEAT_SECONDS",
    "DISPLAY_TZ",
    # engines
    "archive_engine",
    "broadcast_hub",
    "provisioner",
    "supervisor",
    "task_registry",
    "tenant_store",
    # log callables
    "log_action",
    "log_exception",
    "log_system",
})


class AppState(MutableMapping[str, Any]):
    """Fixed-key container shared by every route module.

    Members are read as attributes (``state.supervisor``) or items
    (``state["supervisor"]``). The key set is closed: construction fails when
    a member is missing and unknown names are rejected on write.
    """

    __slots__ = ("_members",)

    def __init__(self, members: dict[str, Any]):
        missing = sorted(STATE_KEYS.difference(members))
        if missing:
            raise KeyError(f"AppState is missing: {', '.join(missing)}")
        object.__setattr__(self, "_members", {key: members[key] for key in STATE_KEYS})

    def __getitem__(self, key: str) -> Any:
        return self._members[key]

    def __setitem__(self, key: str, value: Any) -> None:
        if key not in STATE_KEYS:
            raise KeyError(key)
        self._members[key] = value

    def __delitem__(self, key: str) -> None:
        raise TypeError("AppState members cannot be removed")

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._members))

    def __len__(self) -> int:
        return len(self._members)

    def __getattr__(self, name: str) -> Any:
        try:
            return self._members[name]
        except KeyError:
            raise AttributeError(name) from None

    def __setattr__(self, name: str, value: Any) -> None:
        if name not in STATE_KEYS:
            raise AttributeError(name)
        self._members[name] = value
