"""Archive, backup and task routes."""
from pathlib import Path

from flask import Response, stream_with_context

from mchost.core.errors import AlreadyRunning, InvalidPath, InvalidRequest
from mchost.core.filesystem_utils import format_file_size, sanitize_archive_name, timestamped_archive_name
from mchost.core.path_resolver import decode_path_segments, resolve, resolve_many, resolve_user_path
from mchost.core.response_helpers import json_body, ok_response
from mchost.services.task_registry import public_view

EXPORTS_DIR_NAME = "exports"


def _task_scope(server_id):
    return {"tenant_id": server_id}


def register_archive_routes(app, state):
    """Register file archive/unarchive, backup and task status routes."""

    def _tenant(server_id):
        return state.tenant_store.get(server_id)

    def _ensure_stopped(server_id, message):
        if server_id in state.supervisor.registry and state.supervisor.get_status(server_id)["runState"] != "stopped":
            raise AlreadyRunning(message)

    # Route: /servers/<server_id>/files/archive
    @app.route("/servers/<server_id>/files/archive", methods=["POST"])
    def archive_files(server_id):
        record = _tenant(server_id)
        body = json_body()
        raw_paths = body.get("paths") or []
        if not isinstance(raw_paths, list) or not raw_paths:
            raise InvalidRequest("paths must be a non-empty list.")
        sandbox = Path(record.sandbox_root)
        sources = resolve_many(sandbox, raw_paths)
        for source in sources:
            if source == sandbox.resolve() or not source.exists():
                raise InvalidPath()
        name = sanitize_archive_name(body.get("name") or (sources[0].name if len(sources) == 1 else "selection"))
        output_dir = Path(record.sandbox_root).parent / EXPORTS_DIR_NAME
        task_id = state.archive_engine.start_zip(
            [(source, None) for source in sources],
            output_dir,
            file_name=timestamped_archive_name(name, state.DISPLAY_TZ),
            cleanup=True,
            meta={**_task_scope(server_id), "operation": "download"},
        )
        state.log_action("archive", command=f"paths={len(sources)} task={task_id}", tenant_id=server_id)
        return ok_response({"taskId": task_id}, status=202)

    # Route: /servers/<server_id>/files/unarchive
    @app.route("/servers/<server_id>/files/unarchive", methods=["POST"])
    def unarchive_file(server_id):
        record = _tenant(server_id)
        body = json_body()
        sandbox = Path(record.sandbox_root)
        archive_path = resolve_user_path(sandbox, body.get("path"))
        if not archive_path.is_file():
            raise InvalidPath()
        raw_destination = body.get("destination")
        if raw_destination:
            destination = resolve_user_path(sandbox, raw_destination)
        else:
            stem = archive_path.name[:-4] if archive_path.name.lower().endswith(".zip") else archive_path.name
            destination = resolve(archive_path.parent, stem + "_extracted" if stem == archive_path.name else stem)
        task_id = state.archive_engine.start_unzip(
            archive_path,
            destination,
            overwrite=bool(body.get("overwrite", True)),
            meta={**_task_scope(server_id), "operation": "unarchive"},
        )
        state.log_action("unarchive", command=f"file={archive_path.name} task={task_id}", tenant_id=server_id)
        return ok_response({"taskId": task_id}, status=202)

    # Route: /servers/<server_id>/backups
    @app.route("/servers/<server_id>/backups", methods=["GET"])
    def list_backups(server_id):
        record = _tenant(server_id)
        backup_root = Path(record.backup_root)
        items = []
        if backup_root.is_dir():
            for path in sorted(backup_root.glob("*.zip"), key=lambda p: p.stat().st_mtime, reverse=True):
                size = path.stat().st_size
                items.append({"name": path.name, "size": size, "sizeText": format_file_size(size)})
        return ok_response({"backups": items})

    @app.route("/servers/<server_id>/backups", methods=["POST"])
    def create_backup(server_id):
        record = _tenant(server_id)
        task_id = state.archive_engine.start_zip(
            [(Path(record.sandbox_root), "")],
            record.backup_root,
            file_name=timestamped_archive_name(record.name, state.DISPLAY_TZ),
            cleanup=False,
            meta={**_task_scope(server_id), "operation": "backup"},
        )
        state.log_action("backup", command=f"task={task_id}", tenant_id=server_id)
        return ok_response({"taskId": task_id}, status=202)

    # Route: /servers/<server_id>/backups/restore
    @app.route("/servers/<server_id>/backups/restore", methods=["POST"])
    def restore_backup(server_id):
        record = _tenant(server_id)
        name = decode_path_segments(json_body().get("name"))
        if not name or "/" in name:
            raise InvalidPath()
        archive_path = resolve(record.backup_root, name)
        if not archive_path.is_file():
            raise InvalidPath("Backup not found.")
        _ensure_stopped(server_id, "Stop the server before restoring a backup.")
        task_id = state.archive_engine.start_unzip(
            archive_path,
            record.sandbox_root,
            overwrite=True,
            meta={**_task_scope(server_id), "operation": "restore"},
        )
        state.log_action("restore", command=f"file={name} task={task_id}", tenant_id=server_id)
        return ok_response({"taskId": task_id}, status=202)

    # Route: /servers/<server_id>/tasks/<task_id>
    @app.route("/servers/<server_id>/tasks/<task_id>")
    def task_status(server_id, task_id):
        _tenant(server_id)
        task = state.task_registry.require(task_id, scope=_task_scope(server_id))
        return ok_response({"task": public_view(task)})

    # Route: /servers/<server_id>/tasks/<task_id>/download
    @app.route("/servers/<server_id>/tasks/<task_id>/download")
    def task_download(server_id, task_id):
        _tenant(server_id)
        task, chunks = state.archive_engine.open_artifact(task_id, scope=_task_scope(server_id))
        headers = {"Content-Disposition": f'attachment; filename="{task.file_name}"'}
        if task.archive_size is not None:
            headers["Content-Length"] = str(task.archive_size)
        state.log_action("download", command=f"file={task.file_name}", tenant_id=server_id)
        return Response(stream_with_context(chunks), mimetype="application/zip", headers=headers)
