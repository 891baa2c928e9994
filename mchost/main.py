"""Multi-tenant Minecraft server host.

This app provides:
- Tenant server provisioning (jar download, server.properties, eula)
- Console sessions on a pty with start/stop/kill/command verbs
- Live console output over Server-Sent Events with transcript replay
- Sandbox file browsing and editing confined to each server root
- Background zip/unzip tasks for file downloads, backups and restores
"""
import atexit
import os
import secrets
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from flask import Flask

from mchost.core.action_logging import build_loggers
from mchost.core.tenant_store import TenantStore
from mchost.core.web_config import WebConfig
from mchost.routes.archive_routes import register_archive_routes
from mchost.routes.file_routes import register_file_routes
from mchost.routes.server_routes import register_server_routes
from mchost.routes.session_routes import register_session_routes
from mchost.services import app_lifecycle
from mchost.services.archive_engine import ArchiveEngine
from mchost.services.broadcast_hub import SessionBroadcastHub
from mchost.services.process_supervisor import ProcessSupervisor
from mchost.services.provisioning import Provisioner
from mchost.services.task_registry import TaskRegistry
from mchost.state import AppState

APP_DIR = Path(__file__).resolve().parent.parent
DEFAULT_CONFIG_PATH = APP_DIR / "mchost.env"
DEFAULT_JAR_URL_TEMPLATE = "https://meta.fabricmc.net/v2/versions/loader/{version}/stable/stable/server/jar"


def load_config(config_path=None, environ=None):
    environ = os.environ if environ is None else environ
    path = config_path or environ.get("MCHOST_CONFIG") or DEFAULT_CONFIG_PATH
    return WebConfig(path, APP_DIR, environ=environ)


def _display_tz(cfg):
    try:
        return ZoneInfo(cfg.get_str("DISPLAY_TZ", "UTC"))
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def build_state(cfg):
    """Wire engines from config and return the runtime ``AppState``."""
    display_tz = _display_tz(cfg)
    log_dir = cfg.get_path("MCHOST_LOG_DIR", APP_DIR / "logs")
    log_action, log_system, log_exception = build_loggers(display_tz, log_dir)

    task_registry = TaskRegistry(
        retention_seconds=cfg.get_int("TASK_RETENTION_SECONDS", 3600, minimum=60),
        max_entries=cfg.get_int("TASK_MAX_ENTRIES", 500, minimum=10),
        log_system=log_system,
    )
    archive_engine = ArchiveEngine(
        task_registry,
        max_workers=cfg.get_int("ARCHIVE_MAX_WORKERS", 4, minimum=1),
        chunk_size=cfg.get_int("ARCHIVE_CHUNK_BYTES", 64 * 1024, minimum=1024),
        compression_level=min(9, cfg.get_int("ARCHIVE_COMPRESSION_LEVEL", 9, minimum=0)),
        log_system=log_system,
        log_exception=log_exception,
    )
    hub = SessionBroadcastHub(buffer_size=cfg.get_int("CONSOLE_STREAM_BUFFER_SIZE", 800, minimum=1))
    transcript_max_lines = cfg.get_int("TRANSCRIPT_MAX_LINES", 1000, minimum=10)
    supervisor = ProcessSupervisor(
        hub,
        shell_executable=cfg.get_str("SHELL_EXECUTABLE", "bash"),
        transcript_max_lines=transcript_max_lines,
        startup_grace_seconds=cfg.get_float("STARTUP_GRACE_SECONDS", 60.0, minimum=0.0),
        log_action=log_action,
        log_system=log_system,
        log_exception=log_exception,
    )
    tenant_store = TenantStore(cfg.get_path("TENANTS_FILE", APP_DIR / "data" / "tenants.json"))
    provisioner = Provisioner(
        tenant_store,
        supervisor,
        servers_base_dir=cfg.get_path("SERVERS_BASE_DIR", APP_DIR / "server-directory"),
        jar_url_template=cfg.get_str("SERVER_JAR_URL_TEMPLATE", DEFAULT_JAR_URL_TEMPLATE),
        download_timeout=cfg.get_float("DOWNLOAD_TIMEOUT_SECONDS", 60.0, minimum=1.0),
        log_action=log_action,
        log_system=log_system,
        log_exception=log_exception,
    )
    return AppState({
        "ARCHIVE_CHUNK_BYTES": archive_engine.chunk_size,
        "CONSOLE_HISTORY_LINES": transcript_max_lines,
        "CONSOLE_STREAM_HEARTBEAT_SECONDS": cfg.get_float("CONSOLE_STREAM_HEARTBEAT_SECONDS", 5.0, minimum=0.5),
        "DISPLAY_TZ": display_tz,
        "archive_engine": archive_engine,
        "broadcast_hub": hub,
        "log_action": log_action,
        "log_exception": log_exception,
        "log_system": log_system,
        "provisioner": provisioner,
        "supervisor": supervisor,
        "task_registry": task_registry,
        "tenant_store": tenant_store,
    })


def build_app(state, secret_key=None):
    """Create the Flask app and register every route against ``state``."""
    app = Flask(__name__)
    app.config["SECRET_KEY"] = secret_key or secrets.token_hex(32)
    app.config["STATE"] = state
    app_lifecycle.install_flask_hooks(app, log_action=state.log_action, log_exception=state.log_exception)
    register_server_routes(app, state)
    register_session_routes(app, state)
    register_archive_routes(app, state)
    register_file_routes(app, state)
    return app


def create_app(config_path=None, environ=None):
    """Return the Flask app instance used by WSGI entrypoints."""
    cfg = load_config(config_path, environ)
    state = build_state(cfg)
    app = build_app(state, secret_key=cfg.get_str("MCHOST_SECRET_KEY", ""))
    app.config["MCHOST_CONFIG"] = cfg
    return app


def run_server(config_path=None):
    """Restore sessions, start the liveness watcher, then serve HTTP."""
    app = create_app(config_path)
    cfg = app.config["MCHOST_CONFIG"]
    state = app.config["STATE"]

    def _restore_sessions():
        if cfg.get_bool("RESTORE_SESSIONS_ON_BOOT", True):
            state.provisioner.restore_sessions()

    def _start_liveness_watcher():
        state.supervisor.start_liveness_watcher(cfg.get_float("LIVENESS_PROBE_INTERVAL_SECONDS", 10.0, minimum=0.0))

    def _register_shutdown():
        atexit.register(state.archive_engine.shutdown, wait=False)
        atexit.register(state.supervisor.shutdown_all)

    boot_steps = [
        ("restore_sessions", _restore_sessions),
        ("start_liveness_watcher", _start_liveness_watcher),
        ("register_shutdown", _register_shutdown),
    ]
    app_lifecycle.run_server(app, cfg.get_str, cfg.get_int, state.log_system, state.log_exception, boot_steps)
