"""Per-tenant console sessions and the derived server lifecycle.

Each session owns one pty shell. The Java server is launched *inside* that
shell, which records the child's PID in a sentinel file next to the log
directory; liveness is re-derived from that file on every output chunk and
from the optional watcher thread.
"""
import shlex
import threading
import time
from pathlib import Path

from mchost.core.errors import AlreadyRunning, NotRunning, SessionNotFound
from mchost.core.filesystem_utils import count_newlines, read_recent_file_lines, truncate_file_lines
from mchost.core.startup_command import StartupCommand, validate_startup_flags
from mchost.services.liveness import SentinelPidOracle
from mchost.services.pty_shell import PtyShell
from mchost.state import ManagedSession, RunState

STOP_KEYWORD = "stop"


def _noop(*args, **kwargs):
    return None


def build_launch_command(session, effective_command):
    """Shell line that records the server PID in the sentinel file and execs it."""
    inner = f"echo $$ > {shlex.quote(str(session.sentinel_path))}; exec {effective_command}"
    return f"cd {shlex.quote(str(session.sandbox_root))} && sh -c {shlex.quote(inner)}"


class SessionRegistry:
    """Thread-safe tenant id -> ManagedSession map."""

    def __init__(self):
        self._lock = threading.Lock()
        self._sessions = {}

    def add(self, session):
        with self._lock:
            self._sessions[session.tenant_id] = session

    def get(self, tenant_id):
        with self._lock:
            return self._sessions.get(tenant_id)

    def pop(self, tenant_id):
        with self._lock:
            return self._sessions.pop(tenant_id, None)

    def snapshot(self):
        with self._lock:
            return list(self._sessions.values())

    def __contains__(self, tenant_id):
        with self._lock:
            return tenant_id in self._sessions

    def __len__(self):
        with self._lock:
            return len(self._sessions)


class ProcessSupervisor:
    """Lifecycle verbs over managed sessions."""

    def __init__(
        self,
        hub,
        oracle=None,
        *,
        registry=None,
        shell_factory=None,
        shell_executable="bash",
        transcript_max_lines=1000,
        startup_grace_seconds=60,
        log_action=None,
        log_system=None,
        log_exception=None,
        clock=time.time,
    ):
        self.hub = hub
        self.oracle = oracle or SentinelPidOracle()
        self.registry = registry or SessionRegistry()
        self.shell_executable = shell_executable
        self._shell_factory = shell_factory or self._spawn_pty_shell
        self.transcript_max_lines = max(1, int(transcript_max_lines))
        self.startup_grace_seconds = max(0.0, float(startup_grace_seconds))
        self._log_action = log_action or _noop
        self._log_system = log_system or _noop
        self._log_exception = log_exception or _noop
        self._clock = clock
        self._watcher_stop = threading.Event()
        self._watcher = None

    # ----------------------------
    # Session lifetime
    # ----------------------------
    def _spawn_pty_shell(self, session, on_output, on_exit):
        return PtyShell(self.shell_executable, session.sandbox_root, on_output, on_exit)

    def _open_shell(self, session):
        tenant_id = session.tenant_id
        return self._shell_factory(
            session,
            lambda text: self.handle_output(tenant_id, text),
            lambda: self._handle_shell_exit(tenant_id),
        )

    def create_session(self, tenant_id, sandbox_root, log_root, base_command, flags=""):
        """Spawn the console shell for a tenant and register it.

        A live PID left in the sentinel by an earlier process is adopted so it
        can still be killed; a dead one is removed.
        """
        existing = self.registry.get(tenant_id)
        if existing is not None:
            return existing
        session = ManagedSession(
            tenant_id=tenant_id,
            sandbox_root=Path(sandbox_root),
            log_root=Path(log_root),
            base_command=str(base_command or "").strip(),
            extra_flags=validate_startup_flags(flags),
        )
        session.log_root.mkdir(parents=True, exist_ok=True)
        try:
            session.transcript_lines = count_newlines(
                session.log_sink_path.read_text(encoding="utf-8", errors="ignore")
            )
        except OSError:
            session.transcript_lines = 0
        stale_pid = self.oracle.read_pid(session)
        if stale_pid is not None and self.oracle.is_alive(stale_pid):
            session.observed_pid = stale_pid
            session.run_state = RunState.RUNNING
            session.reported_running = True
        elif stale_pid is not None:
            self.oracle.clear(session)
        session.shell = self._open_shell(session)
        self.registry.add(session)
        self._log_system("session-created", command=f"state={session.run_state.value}", tenant_id=tenant_id)
        return session

    def destroy_session(self, tenant_id):
        session = self.registry.pop(tenant_id)
        if session is None:
            return False
        with session.lock:
            if session.observed_pid:
                self.oracle.kill_tree(session.observed_pid)
            self.oracle.clear(session)
            session.observed_pid = None
            session.run_state = RunState.STOPPED
            shell, session.shell = session.shell, None
        if shell is not None:
            shell.close()
        self.hub.close_room(tenant_id)
        self._log_system("session-destroyed", tenant_id=tenant_id)
        return True

    def _require(self, tenant_id):
        session = self.registry.get(tenant_id)
        if session is None:
            raise SessionNotFound()
        return session

    def _handle_shell_exit(self, tenant_id):
        session = self.registry.get(tenant_id)
        if session is None:
            return
        with session.lock:
            if session.shell is not None and not session.shell.is_alive:
                self._log_system("shell-exited", tenant_id=tenant_id)
            self._evaluate(session)

    # ----------------------------
    # Liveness
    # ----------------------------
    def _set_reported(self, session, running):
        if session.reported_running == running:
            return
        session.reported_running = running
        self.hub.emit_status(session.tenant_id, running)

    def _evaluate(self, session):
        """Re-derive run state from the sentinel; caller holds ``session.lock``."""
        pid = self.oracle.read_pid(session)
        state = session.run_state
        if pid is not None and self.oracle.is_alive(pid):
            session.observed_pid = pid
            session.starting_since = None
            if state != RunState.STOPPING:
                session.run_state = RunState.RUNNING
        elif pid is None and state == RunState.STOPPING and self.oracle.is_alive(session.observed_pid):
            pass
        elif pid is None and state == RunState.STARTING and not self._grace_expired(session):
            pass
        else:
            if pid is not None:
                self.oracle.clear(session)
            if state != RunState.STOPPED:
                self._log_system("server-stopped", command=f"from={state.value}", tenant_id=session.tenant_id)
            session.run_state = RunState.STOPPED
            session.observed_pid = None
            session.starting_since = None
        self._set_reported(session, session.run_state in (RunState.RUNNING, RunState.STOPPING))
        return session.run_state

    def _grace_expired(self, session):
        if session.starting_since is None:
            return True
        return self._clock() - session.starting_since > self.startup_grace_seconds

    def refresh(self, tenant_id):
        session = self._require(tenant_id)
        with session.lock:
            return self._evaluate(session)

    def handle_output(self, tenant_id, text):
        """Fan out one output chunk, persist it, then re-derive liveness."""
        session = self.registry.get(tenant_id)
        if session is None or not text:
            return
        with session.lock:
            self.hub.emit_output(tenant_id, text)
            try:
                with session.log_sink_path.open("a", encoding="utf-8") as f:
                    f.write(text)
                session.transcript_lines += count_newlines(text)
            except OSError as exc:
                self._log_exception(f"transcript_append server={tenant_id}", exc)
            self._evaluate(session)
            if session.transcript_lines > self.transcript_max_lines:
                try:
                    session.transcript_lines = truncate_file_lines(session.log_sink_path, self.transcript_max_lines)
                except OSError as exc:
                    self._log_exception(f"transcript_truncate server={tenant_id}", exc)

    def start_liveness_watcher(self, interval_seconds):
        """Start the supplementary probe thread; ``0`` disables it."""
        if interval_seconds <= 0 or self._watcher is not None:
            return None

        def _loop():
            while not self._watcher_stop.wait(interval_seconds):
                for session in self.registry.snapshot():
                    try:
                        with session.lock:
                            self._evaluate(session)
                    except Exception as exc:
                        self._log_exception(f"liveness_watcher server={session.tenant_id}", exc)

        self._watcher = threading.Thread(target=_loop, daemon=True)
        self._watcher.start()
        return self._watcher

    # ----------------------------
    # Lifecycle verbs
    # ----------------------------
    def _ensure_shell(self, session):
        if session.shell is None or not session.shell.is_alive:
            if session.shell is not None:
                session.shell.close()
            session.shell = self._open_shell(session)
            self._log_system("shell-respawned", tenant_id=session.tenant_id)
        return session.shell

    def start_server(self, tenant_id):
        session = self._require(tenant_id)
        with session.lock:
            state = self._evaluate(session)
            if state != RunState.STOPPED:
                raise AlreadyRunning()
            shell = self._ensure_shell(session)
            self.oracle.clear(session)
            effective = StartupCommand(session.base_command, session.extra_flags).effective_command
            session.run_state = RunState.STARTING
            session.starting_since = self._clock()
            session.observed_pid = None
            shell.write(build_launch_command(session, effective) + "\n")
        self._log_action("start", command=effective, tenant_id=tenant_id)
        return session.run_state

    def send_command(self, tenant_id, text):
        session = self._require(tenant_id)
        line = str(text or "").replace("\r", " ").replace("\n", " ").strip()
        with session.lock:
            if self._evaluate(session) != RunState.RUNNING:
                raise NotRunning()
            session.shell.write(line + "\n")
        self._log_action("command", command=line, tenant_id=tenant_id)

    def stop_server(self, tenant_id):
        session = self._require(tenant_id)
        with session.lock:
            if self._evaluate(session) != RunState.RUNNING:
                raise NotRunning()
            session.shell.write(STOP_KEYWORD + "\n")
            self.oracle.clear(session)
            session.run_state = RunState.STOPPING
        self._log_action("stop", tenant_id=tenant_id)
        return session.run_state

    def kill_server(self, tenant_id):
        """Force-kill the observed process tree and report Stopped immediately."""
        session = self._require(tenant_id)
        with session.lock:
            pid = session.observed_pid or self.oracle.read_pid(session)
            if pid is None:
                raise NotRunning()
            self.oracle.clear(session)
            killed = self.oracle.kill_tree(pid)
            session.run_state = RunState.STOPPED
            session.observed_pid = None
            session.starting_since = None
            session.reported_running = False
            self.hub.emit_status(tenant_id, False)
        self._log_action("kill", command=f"pid={pid} signalled={killed}", tenant_id=tenant_id)
        return session.run_state

    def update_startup_config(self, tenant_id, base_command=None, flags=None):
        """Replace the launch command used by the next start."""
        session = self._require(tenant_id)
        with session.lock:
            current = StartupCommand(session.base_command, session.extra_flags)
            if base_command is not None:
                current = StartupCommand(str(base_command).strip(), current.flags)
            if flags is not None:
                current = current.with_flags(flags)
            session.base_command = current.base_command
            session.extra_flags = current.flags
        return current

    # ----------------------------
    # Queries
    # ----------------------------
    def get_status(self, tenant_id):
        session = self._require(tenant_id)
        with session.lock:
            state = self._evaluate(session)
            return {
                "runState": state.value,
                "running": session.reported_running,
                "pid": session.observed_pid,
                "effectiveCommand": StartupCommand(session.base_command, session.extra_flags).effective_command,
            }

    def read_history(self, tenant_id, limit=None):
        session = self._require(tenant_id)
        return read_recent_file_lines(session.log_sink_path, limit or self.transcript_max_lines)

    def shutdown_all(self):
        self._watcher_stop.set()
        for session in self.registry.snapshot():
            try:
                self.destroy_session(session.tenant_id)
            except Exception as exc:
                self._log_exception(f"shutdown server={session.tenant_id}", exc)
