"""Tenant creation, update and deletion.

Creation runs as a step list (reserve, download, configure, activate); each
completed step is undone in reverse order when a later one fails, so a
failed create leaves neither a stored record nor a registered session.
"""
from dataclasses import dataclass
import re
import shutil
from pathlib import Path
from typing import Callable
import uuid

from mchost.core.errors import AlreadyRunning, InvalidPath, InvalidRequest, MCHostError
from mchost.core.path_resolver import resolve
from mchost.core.startup_command import StartupCommand, build_base_command, validate_startup_flags
from mchost.core.tenant_store import TenantRecord
from mchost.services.artifact_fetch import download_file, server_jar_url

SERVER_TYPES = ("vanilla", "paper", "fabric", "forge", "bungeecord")
_VERSION_RE = re.compile(r"^\d+\.\d+(?:\.\d+)?$")

SERVER_PROPERTIES_TEMPLATE = """#Minecraft server properties
allow-flight=false
allow-nether=true
difficulty=easy
enable-command-block=false
enable-query=false
enable-rcon=false
enable-status=true
gamemode=survival
generate-structures=true
hardcore=false
level-name=world
level-type=minecraft\\:normal
max-players=20
motd={motd}
online-mode=true
pvp=true
query.port={port}
server-ip=
server-port={port}
simulation-distance=10
spawn-protection=16
view-distance={view_distance}
white-list=false
"""

EULA_TEXT = """#By changing the setting below to TRUE you are indicating your agreement to our EULA (https://aka.ms/MinecraftEULA).
eula=true
"""


@dataclass
class SagaStep:
    name: str
    run: Callable[[], object]
    undo: Callable[[], object]


def run_saga(steps, log_system=None, log_exception=None):
    """Run ``steps`` in order; on failure undo the completed ones in reverse and re-raise."""
    completed = []
    for step in steps:
        try:
            step.run()
        except Exception as exc:
            if log_system is not None:
                log_system("saga-failed", command=f"step={step.name}", rejection_message=str(exc))
            for done in reversed(completed):
                try:
                    done.undo()
                except Exception as undo_exc:
                    if log_exception is not None:
                        log_exception(f"saga_undo step={done.name}", undo_exc)
            raise
        completed.append(step)
    return [step.name for step in completed]


def validate_version(version):
    value = str(version or "").strip()
    if not _VERSION_RE.match(value):
        raise InvalidRequest("version must look like '1.21' or '1.20.1'.")
    return value


def validate_port(port):
    try:
        value = int(port)
    except (TypeError, ValueError):
        raise InvalidRequest("port must be an integer.") from None
    if not 1 <= value <= 65535:
        raise InvalidRequest("port must be between 1 and 65535.")
    return value


def validate_memory(memory_gb):
    try:
        value = int(memory_gb)
    except (TypeError, ValueError):
        raise InvalidRequest("memory must be an integer number of GB.") from None
    if value < 1:
        raise InvalidRequest("memory must be at least 1 GB.")
    return value


def properties_value(text):
    """One-line ``.properties`` value: whitespace runs collapse, control characters drop, ``\\`` is escaped."""
    flat = " ".join(str(text or "").split())
    return "".join(ch for ch in flat if ch.isprintable()).replace("\\", "\\\\")


def write_server_config(sandbox_root, port, motd="A Minecraft Server", view_distance=10):
    sandbox_root = Path(sandbox_root)
    (sandbox_root / "server.properties").write_text(
        SERVER_PROPERTIES_TEMPLATE.format(port=int(port), motd=properties_value(motd), view_distance=int(view_distance)),
        encoding="utf-8",
    )
    (sandbox_root / "eula.txt").write_text(EULA_TEXT, encoding="utf-8")


class Provisioner:
    """Creates and removes tenants across the store, the disk and the supervisor."""

    def __init__(
        self,
        tenant_store,
        supervisor,
        *,
        servers_base_dir,
        jar_url_template,
        download_timeout=60,
        fetch=download_file,
        log_action=None,
        log_system=None,
        log_exception=None,
        id_factory=None,
    ):
        self.store = tenant_store
        self.supervisor = supervisor
        self.servers_base_dir = Path(servers_base_dir)
        self.jar_url_template = jar_url_template
        self.download_timeout = download_timeout
        self._fetch = fetch
        self._log_action = log_action or (lambda *args, **kwargs: None)
        self._log_system = log_system or (lambda *args, **kwargs: None)
        self._log_exception = log_exception or (lambda *args, **kwargs: None)
        self._id_factory = id_factory or (lambda: str(uuid.uuid4()))

    def server_path(self, tenant_id):
        path = resolve(self.servers_base_dir, str(tenant_id))
        if path == self.servers_base_dir.resolve():
            raise InvalidPath()
        return path

    def _download_jar(self, version, sandbox_root):
        url = server_jar_url(self.jar_url_template, version)
        return self._fetch(url, Path(sandbox_root) / "server.jar", timeout=self.download_timeout)

    def create_server(self, name, memory_gb, port, version, server_type="fabric", startup_flags="", view_distance=10):
        name = str(name or "").strip()
        if not name:
            raise InvalidRequest("name is required.")
        server_type = str(server_type or "fabric").strip().lower()
        if server_type not in SERVER_TYPES:
            raise InvalidRequest(f"serverType must be one of {', '.join(SERVER_TYPES)}.")
        memory = validate_memory(memory_gb)
        port = validate_port(port)
        version = validate_version(version)
        flags = validate_startup_flags(startup_flags)

        tenant_id = self._id_factory()
        server_path = self.server_path(tenant_id)
        record = TenantRecord(
            tenant_id=tenant_id,
            name=name,
            sandbox_root=str(server_path / "root"),
            backup_root=str(server_path / "backup"),
            log_root=str(server_path / "logs"),
            startup_command=build_base_command(memory),
            startup_flags=flags,
            version=version,
            port=port,
            server_type=server_type,
        )

        def reserve():
            self.store.insert(record)
            try:
                for directory in (record.sandbox_root, record.backup_root, record.log_root):
                    Path(directory).mkdir(parents=True, exist_ok=True)
            except OSError:
                unreserve()
                raise

        def unreserve():
            self.store.delete(tenant_id)
            shutil.rmtree(server_path, ignore_errors=True)

        def activate():
            self.supervisor.create_session(
                tenant_id, record.sandbox_root, record.log_root, record.startup_command, record.startup_flags
            )

        steps = [
            SagaStep("reserve", reserve, unreserve),
            SagaStep(
                "download",
                lambda: self._download_jar(version, record.sandbox_root),
                lambda: (Path(record.sandbox_root) / "server.jar").unlink(missing_ok=True),
            ),
            SagaStep(
                "configure",
                lambda: write_server_config(record.sandbox_root, port, motd=name, view_distance=view_distance),
                lambda: None,
            ),
            SagaStep("activate", activate, lambda: self.supervisor.destroy_session(tenant_id)),
        ]
        try:
            run_saga(steps, log_system=self._log_system, log_exception=self._log_exception)
        except MCHostError as exc:
            self._log_action("create-server", command=f"name={name} port={port}", rejection_message=exc.message)
            raise
        self._log_action("create-server", command=f"name={name} port={port} version={version}", tenant_id=tenant_id)
        return record

    def list_servers(self):
        return [record.public_view() for record in self.store.list()]

    def delete_server(self, tenant_id):
        record = self.store.get(tenant_id)
        self.supervisor.destroy_session(tenant_id)
        self.store.delete(tenant_id)
        shutil.rmtree(self.server_path(record.tenant_id), ignore_errors=True)
        self._log_action("delete-server", command=f"name={record.name}", tenant_id=tenant_id)

    def update_server_jar(self, tenant_id, version):
        """Replace ``server.jar`` with another version; the old jar stays on failure."""
        record = self.store.get(tenant_id)
        version = validate_version(version)
        if tenant_id in self.supervisor.registry and self.supervisor.get_status(tenant_id)["runState"] != "stopped":
            raise AlreadyRunning("Stop the server before changing its version.")
        self._download_jar(version, record.sandbox_root)
        updated = self.store.update(tenant_id, version=version)
        self._log_action("update-server", command=f"version={version}", tenant_id=tenant_id)
        return updated

    def get_startup_config(self, tenant_id):
        record = self.store.get(tenant_id)
        return StartupCommand(record.startup_command, record.startup_flags).describe()

    def update_startup_flags(self, tenant_id, flags):
        record = self.store.get(tenant_id)
        command = StartupCommand(record.startup_command, record.startup_flags).with_flags(flags)
        self.store.update(tenant_id, startup_flags=command.flags)
        if tenant_id in self.supervisor.registry:
            self.supervisor.update_startup_config(tenant_id, flags=command.flags)
        self._log_action("startup-flags", command=command.flags or "(none)", tenant_id=tenant_id)
        return command.describe()

    def restore_sessions(self):
        """Re-create a console session for every stored tenant."""
        restored = 0
        for record in self.store.list():
            try:
                self.supervisor.create_session(
                    record.tenant_id, record.sandbox_root, record.log_root,
                    record.startup_command, record.startup_flags,
                )
            except (MCHostError, OSError) as exc:
                self._log_exception(f"restore_session server={record.tenant_id}", exc)
                continue
            restored += 1
        self._log_system("sessions-restored", command=f"count={restored}")
        return restored
