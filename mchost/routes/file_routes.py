"""Sandbox file browser routes: list, read, save, upload, mkdir, move, delete.

Every user path goes through ``resolve_user_path``; the sandbox root itself
can be listed and written into but never deleted or moved.
"""
from pathlib import Path
import shutil

from flask import request, send_file
from werkzeug.utils import secure_filename

from mchost.core.errors import InvalidPath, InvalidRequest
from mchost.core.filesystem_utils import format_file_size
from mchost.core.path_resolver import decode_path_segments, resolve, resolve_many, resolve_user_path
from mchost.core.response_helpers import json_body, ok_response

FILE_READ_MAX_BYTES = 2_000_000


def _relative(sandbox, path):
    rel = path.relative_to(sandbox).as_posix()
    return "" if rel == "." else rel


def _entry(sandbox, path):
    is_dir = path.is_dir() and not path.is_symlink()
    item = {
        "name": path.name,
        "type": "directory" if is_dir else "file",
        "path": _relative(sandbox, path),
    }
    if not is_dir:
        try:
            size = path.lstat().st_size
        except OSError:
            size = 0
        item["size"] = size
        item["sizeText"] = format_file_size(size)
    return item


def _single_name(raw_name):
    """A bare file or folder name; separators and dot names are rejected."""
    name = decode_path_segments(raw_name).strip()
    if not name or "/" in name or name in (".", ".."):
        raise InvalidPath()
    return name


def _path_list(body, key):
    raw_paths = body.get(key) or []
    if not isinstance(raw_paths, list) or not raw_paths:
        raise InvalidRequest(f"{key} must be a non-empty list.")
    return raw_paths


def register_file_routes(app, state):
    """Register the per-server file management routes."""

    def _sandbox(server_id):
        return Path(state.tenant_store.get(server_id).sandbox_root).resolve()

    def _require_changeable(sandbox, paths):
        for path in paths:
            if path == sandbox:
                raise InvalidPath("The server root cannot be changed.")
            if not path.exists() and not path.is_symlink():
                raise InvalidPath("File not found.")

    # Route: /servers/<server_id>/files
    @app.route("/servers/<server_id>/files", methods=["GET"])
    def list_files(server_id):
        sandbox = _sandbox(server_id)
        directory = resolve_user_path(sandbox, request.args.get("path", ""))
        if not directory.is_dir():
            raise InvalidPath("Directory not found.")
        children = sorted(directory.iterdir(), key=lambda p: (not p.is_dir(), p.name.lower()))
        return ok_response({
            "path": _relative(sandbox, directory),
            "items": [_entry(sandbox, child) for child in children],
        })

    # Route: /servers/<server_id>/files/read
    @app.route("/servers/<server_id>/files/read", methods=["GET"])
    def read_file(server_id):
        sandbox = _sandbox(server_id)
        path = resolve_user_path(sandbox, request.args.get("path"))
        if not path.is_file():
            raise InvalidPath("File not found.")
        with path.open("rb") as f:
            raw = f.read(FILE_READ_MAX_BYTES + 1)
        truncated = len(raw) > FILE_READ_MAX_BYTES
        return ok_response({
            "path": _relative(sandbox, path),
            "content": raw[:FILE_READ_MAX_BYTES].decode("utf-8", errors="replace"),
            "truncated": truncated,
        })

    # Route: /servers/<server_id>/files/download
    @app.route("/servers/<server_id>/files/download", methods=["GET"])
    def download_file(server_id):
        sandbox = _sandbox(server_id)
        path = resolve_user_path(sandbox, request.args.get("path"))
        if not path.is_file():
            raise InvalidPath("File not found.")
        state.log_action("file-download", command=f"path={_relative(sandbox, path)}", tenant_id=server_id)
        return send_file(path, as_attachment=True, download_name=path.name)

    # Route: /servers/<server_id>/files/save
    @app.route("/servers/<server_id>/files/save", methods=["POST"])
    def save_file(server_id):
        sandbox = _sandbox(server_id)
        body = json_body()
        content = body.get("content")
        if not isinstance(content, str):
            raise InvalidRequest("content must be a string.")
        path = resolve_user_path(sandbox, body.get("path"))
        if path == sandbox or path.is_dir() or not path.parent.is_dir():
            raise InvalidPath()
        path.write_text(content, encoding="utf-8")
        state.log_action("file-save", command=f"path={_relative(sandbox, path)}", tenant_id=server_id)
        return ok_response({"path": _relative(sandbox, path)})

    # Route: /servers/<server_id>/files/upload
    @app.route("/servers/<server_id>/files/upload", methods=["POST"])
    def upload_files(server_id):
        sandbox = _sandbox(server_id)
        directory = resolve_user_path(sandbox, request.args.get("path", ""))
        if not directory.is_dir():
            raise InvalidPath("Directory not found.")
        uploads = request.files.getlist("files")
        if not uploads:
            raise InvalidRequest("No files uploaded.")
        saved = []
        for upload in uploads:
            name = secure_filename(upload.filename or "")
            if not name:
                raise InvalidPath("Invalid file name.")
            target = resolve(directory, name)
            upload.save(target)
            saved.append(_relative(sandbox, target))
        state.log_action("file-upload", command=f"dir={_relative(sandbox, directory) or '/'} files={len(saved)}", tenant_id=server_id)
        return ok_response({"files": saved}, status=201)

    # Route: /servers/<server_id>/folders
    @app.route("/servers/<server_id>/folders", methods=["POST"])
    def create_folder(server_id):
        sandbox = _sandbox(server_id)
        body = json_body()
        parent = resolve_user_path(sandbox, body.get("path", ""))
        if not parent.is_dir():
            raise InvalidPath("Directory not found.")
        folder = resolve(parent, _single_name(body.get("name")))
        if folder.exists():
            raise InvalidRequest("A file or folder with that name already exists.")
        folder.mkdir()
        state.log_action("mkdir", command=f"path={_relative(sandbox, folder)}", tenant_id=server_id)
        return ok_response({"path": _relative(sandbox, folder)}, status=201)

    # Route: /servers/<server_id>/files/move
    @app.route("/servers/<server_id>/files/move", methods=["POST"])
    def move_files(server_id):
        sandbox = _sandbox(server_id)
        body = json_body()
        sources = resolve_many(sandbox, _path_list(body, "paths"))
        destination = resolve_user_path(sandbox, body.get("destination", ""))
        if not destination.is_dir():
            raise InvalidPath("Destination folder not found.")
        _require_changeable(sandbox, sources)
        plan = []
        for source in sources:
            if destination == source or destination.is_relative_to(source):
                raise InvalidPath("A folder cannot be moved into itself.")
            target = destination / source.name
            if target.exists() or target in (t for _, t in plan):
                raise InvalidRequest(f"{source.name} already exists in the destination.")
            plan.append((source, target))
        for source, target in plan:
            shutil.move(str(source), str(target))
        moved = [_relative(sandbox, target) for _, target in plan]
        state.log_action("file-move", command=f"to={_relative(sandbox, destination) or '/'} files={len(moved)}", tenant_id=server_id)
        return ok_response({"files": moved})

    # Route: /servers/<server_id>/files/delete
    @app.route("/servers/<server_id>/files/delete", methods=["POST"])
    def delete_files(server_id):
        sandbox = _sandbox(server_id)
        targets = resolve_many(sandbox, _path_list(json_body(), "paths"))
        _require_changeable(sandbox, targets)
        for target in targets:
            if not target.exists():
                continue  # removed with an earlier parent
            if target.is_dir() and not target.is_symlink():
                shutil.rmtree(target)
            else:
                target.unlink()
        state.log_action("file-delete", command=f"files={len(targets)}", tenant_id=server_id)
        return ok_response({"deleted": len(targets)})
