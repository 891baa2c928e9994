"""Append-only action and system logs for the host process.

Each log is a closure over one file. Lines look like::

    Oct 17 14:02:11 <10.0.0.4> [mchost/start] server=3f2c... java -Xmx2G ...

A line that cannot be written is dropped; logging never fails a request.
"""

from datetime import datetime
import os
import traceback
from pathlib import Path

from flask import has_request_context, request

LOG_ROTATE_MAX_BYTES = 5 * 1024 * 1024
LOG_ROTATE_BACKUP_COUNT = 5
TRACEBACK_MAX_CHARS = 700
LOCAL_SOURCE = "mchost"


def one_line(text):
    """Collapse whitespace and newlines so user text cannot forge log lines."""
    return " ".join(str(text or "").split())


def request_source():
    """Client address of the current request, or ``mchost`` for background work."""
    if not has_request_context():
        return LOCAL_SOURCE
    for header in ("X-Forwarded-For", "X-Real-IP"):
        value = (request.headers.get(header) or "").split(",")[0].strip()
        if value:
            return value
    return (request.remote_addr or "").strip() or LOCAL_SOURCE


def format_event(timestamp, source, action, tenant_id=None, command=None, rejection_message=None):
    fields = [f"{timestamp} <{one_line(source) or 'unknown'}> [mchost/{one_line(action) or 'unknown'}]"]
    if tenant_id:
        fields.append(f"server={one_line(tenant_id)}")
    detail = one_line(command)
    if detail:
        fields.append(detail)
    reason = one_line(rejection_message)
    if reason:
        fields.append(f"rejected: {reason}")
    return " ".join(fields)


def rotate_if_large(path, max_bytes=LOG_ROTATE_MAX_BYTES, backup_count=LOG_ROTATE_BACKUP_COUNT):
    """Roll ``log`` -> ``log.1`` -> ... -> ``log.<backup_count>`` once ``path`` is full."""
    if max_bytes <= 0 or backup_count <= 0:
        return
    try:
        if path.stat().st_size < max_bytes:
            return
    except OSError:
        return
    generations = [path] + [path.with_name(f"{path.name}.{n}") for n in range(1, backup_count + 1)]
    try:
        for older, newer in reversed(list(zip(generations[1:], generations[2:]))):
            if older.exists():
                os.replace(older, newer)
        os.replace(path, generations[1])
    except OSError:
        pass


def make_log_action(display_tz, log_path):
    """Return ``log(action, command=None, rejection_message=None, tenant_id=None)`` writing to ``log_path``."""
    log_path = Path(log_path)

    def log_action(action, command=None, rejection_message=None, tenant_id=None):
        stamp = datetime.now(tz=display_tz).strftime("%b %d %H:%M:%S")
        line = format_event(stamp, request_source(), action, tenant_id, command, rejection_message)
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            rotate_if_large(log_path)
            with log_path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError:
            pass

    return log_action


def make_log_exception(log_action):
    """Return ``log_exception(context, exc)`` that records a one-line summary plus traceback tail."""

    def log_exception(context, exc):
        if exc is None:
            log_action("error", rejection_message=f"{context}: Exception")
            return
        summary = f"{context}: {type(exc).__name__}"
        text = one_line(exc)
        if text:
            summary += f": {text}"
        frames = one_line(" | ".join(traceback.format_tb(exc.__traceback__)))
        if frames:
            summary += f" | traceback: {frames[-TRACEBACK_MAX_CHARS:]}"
        log_action("error", rejection_message=summary)

    return log_exception


def build_loggers(display_tz, log_dir):
    """Return ``(log_action, log_system, log_exception)``; exceptions go to the system log."""
    log_dir = Path(log_dir)
    log_action = make_log_action(display_tz, log_dir / "mchost-actions.log")
    log_system = make_log_action(display_tz, log_dir / "mchost.log")
    return log_action, log_system, make_log_exception(log_system)
