"""Liveness probing for supervised game servers.

The supervisor never owns the Java process directly; the shell writes the
child's PID into a sentinel file and the oracle answers whether that PID
still names a live process.
"""
from pathlib import Path

import psutil


class LivenessOracle:
    """Interface the supervisor's state machine depends on."""

    def read_pid(self, session):
        raise NotImplementedError

    def is_alive(self, pid):
        raise NotImplementedError

    def clear(self, session):
        raise NotImplementedError

    def kill_tree(self, pid):
        raise NotImplementedError


def _parse_pid(text):
    value = str(text or "").strip()
    if not value.isdigit():
        return None
    pid = int(value)
    return pid if pid > 0 else None


class SentinelPidOracle(LivenessOracle):
    """Sentinel-file reader plus psutil process probes."""

    def read_pid(self, session):
        path = Path(session.sentinel_path)
        try:
            return _parse_pid(path.read_text(encoding="utf-8", errors="ignore"))
        except OSError:
            return None

    def is_alive(self, pid):
        if not pid:
            return False
        try:
            if not psutil.pid_exists(pid):
                return False
            return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False

    def clear(self, session):
        try:
            Path(session.sentinel_path).unlink(missing_ok=True)
        except OSError:
            pass

    def kill_tree(self, pid):
        """SIGKILL ``pid`` and every descendant; returns the number signalled."""
        try:
            parent = psutil.Process(pid)
            procs = parent.children(recursive=True) + [parent]
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return 0
        killed = 0
        for proc in procs:
            try:
                proc.kill()
                killed += 1
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        return killed
