"""Tenant records persisted in one JSON file."""
from dataclasses import asdict, dataclass, fields, replace
import json
from pathlib import Path
import threading

from mchost.core.errors import TenantConflict, TenantNotFound


@dataclass(frozen=True)
class TenantRecord:
    """Directory layout and launch settings of one managed server."""
    tenant_id: str
    name: str
    sandbox_root: str
    backup_root: str
    log_root: str
    startup_command: str
    startup_flags: str = ""
    version: str = ""
    port: int = 25565
    server_type: str = "fabric"

    def public_view(self):
        return {
            "id": self.tenant_id,
            "name": self.name,
            "version": self.version,
            "port": self.port,
            "serverType": self.server_type,
        }


_RECORD_FIELDS = frozenset(f.name for f in fields(TenantRecord))


def _record_from_row(row):
    return TenantRecord(**{key: value for key, value in row.items() if key in _RECORD_FIELDS})


def _atomic_write_json(path, payload):
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    temp = path.with_suffix(path.suffix + ".tmp")
    temp.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
    temp.replace(path)


class TenantStore:
    """Lock-guarded key-value store of ``TenantRecord`` rows."""

    def __init__(self, path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _load(self):
        try:
            loaded = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        rows = loaded.get("servers", []) if isinstance(loaded, dict) else []
        records = {}
        for row in rows:
            if isinstance(row, dict) and row.get("tenant_id"):
                record = _record_from_row(row)
                records[record.tenant_id] = record
        return records

    def _save(self, records):
        _atomic_write_json(self.path, {"servers": [asdict(r) for r in records.values()]})

    def list(self):
        with self._lock:
            return list(self._load().values())

    def get(self, tenant_id):
        with self._lock:
            record = self._load().get(tenant_id)
        if record is None:
            raise TenantNotFound()
        return record

    def insert(self, record):
        with self._lock:
            records = self._load()
            if record.tenant_id in records:
                raise TenantConflict("Server id already exists.")
            if any(int(r.port) == int(record.port) for r in records.values()):
                raise TenantConflict(f"Port {record.port} is already used by another server.")
            records[record.tenant_id] = record
            self._save(records)
        return record

    def update(self, tenant_id, **changes):
        with self._lock:
            records = self._load()
            current = records.get(tenant_id)
            if current is None:
                raise TenantNotFound()
            updated = replace(current, **changes)
            records[tenant_id] = updated
            self._save(records)
        return updated

    def delete(self, tenant_id):
        with self._lock:
            records = self._load()
            removed = records.pop(tenant_id, None)
            if removed is not None:
                self._save(records)
        return removed is not None
