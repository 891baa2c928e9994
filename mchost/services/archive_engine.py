"""Background zip/unzip workers reporting byte-accurate progress.

Each ``start_*`` call registers a Queued task and returns its id at once;
the work runs on a bounded thread pool and reports through the task
registry. Zip output is written to a ``.part`` file next to its final path
and renamed into place on success, so a Completed task is the only way an
artifact becomes visible. Each zip task owns a distinct output path.
Extraction is sequential and non-atomic: files written before a failure stay
in place.
"""

from concurrent.futures import ThreadPoolExecutor
import os
from pathlib import Path
import threading
import time
import uuid
import zipfile

from mchost.core.errors import ArchiveIOError, InvalidPath, NotReady, TaskNotFound
from mchost.core.filesystem_utils import calculate_tree_totals
from mchost.core.path_resolver import resolve
from mchost.state import TaskKind, TaskStatus

DEFAULT_CHUNK_BYTES = 64 * 1024
PARTIAL_SUFFIX = ".part"


def compute_progress(processed_bytes, total_bytes, processed_entries, total_entries):
    """Byte fraction, else entry fraction, else 1 when there is nothing to do."""
    if total_bytes > 0:
        return min(processed_bytes / total_bytes, 1.0)
    if total_entries > 0:
        return min(processed_entries / total_entries, 1.0)
    return 1.0


def _partial_path(output_path):
    return output_path.with_name(output_path.name + PARTIAL_SUFFIX)


def _open_source(path):
    """Open one source file for archiving."""
    return open(path, "rb")


def _archive_name(entry_source, dest_name):
    if dest_name is None:
        return Path(entry_source).name
    return str(dest_name).replace("\\", "/").strip("/")


def _iter_zip_members(source_path, arc_root):
    """Yield ``(filesystem_path, archive_name, is_dir)`` for one entry, parents first."""
    source_path = Path(source_path)
    if source_path.is_symlink() or not source_path.exists():
        return
    if source_path.is_file():
        yield source_path, arc_root, False
        return
    if not source_path.is_dir():
        return
    prefix = f"{arc_root}/" if arc_root else ""
    if prefix:
        yield source_path, prefix, True
    for root, dirs, files in os.walk(source_path):
        dirs[:] = sorted(d for d in dirs if not os.path.islink(os.path.join(root, d)))
        rel_root = os.path.relpath(root, source_path)
        rel_prefix = "" if rel_root == os.curdir else rel_root.replace(os.sep, "/") + "/"
        for name in dirs:
            yield Path(root) / name, f"{prefix}{rel_prefix}{name}/", True
        for name in sorted(files):
            full = Path(root) / name
            if full.is_symlink():
                continue
            yield full, f"{prefix}{rel_prefix}{name}", False


class ArchiveEngine:
    """Schedules zip/unzip work and streams finished artifacts."""

    def __init__(
        self,
        task_registry,
        *,
        max_workers=4,
        chunk_size=DEFAULT_CHUNK_BYTES,
        compression_level=9,
        log_system=None,
        log_exception=None,
    ):
        self.tasks = task_registry
        self.chunk_size = max(1024, int(chunk_size))
        self.compression_level = compression_level
        self._log_system = log_system or (lambda *args, **kwargs: None)
        self._log_exception = log_exception or (lambda *args, **kwargs: None)
        self._executor = ThreadPoolExecutor(max_workers=max(1, int(max_workers)), thread_name_prefix="archive")
        self._claims_lock = threading.Lock()
        self._claimed = set()

    def shutdown(self, wait=True):
        self._executor.shutdown(wait=wait)

    def _claim_output(self, output_dir, name):
        """Reserve an output path no other task owns and nothing on disk occupies."""
        output_dir = Path(output_dir)
        with self._claims_lock:
            candidate = output_dir / name
            while (
                candidate in self._claimed
                or candidate.exists()
                or _partial_path(candidate).exists()
            ):
                candidate = output_dir / f"{Path(name).stem}_{uuid.uuid4().hex[:8]}{Path(name).suffix}"
            self._claimed.add(candidate)
        return candidate

    def _release_output(self, output_path):
        with self._claims_lock:
            self._claimed.discard(output_path)

    # ----------------------------
    # Zip
    # ----------------------------
    def start_zip(self, entries, output_dir, file_name=None, cleanup=True, meta=None):
        """Queue a zip of ``entries`` (``(source_path, archive_name)`` pairs) and return the task id.

        ``archive_name`` of ``None`` uses the source basename; ``""`` places a
        directory's children at the archive root. When ``file_name`` is taken
        a short random suffix is added, so every task owns its own artifact.
        """
        sources = [(Path(src), dest) for src, dest in (entries or []) if src]
        if not sources:
            raise ValueError("No entries provided for zip task")
        name = file_name or f"archive-{int(time.time() * 1000)}.zip"
        if Path(name).name != name:
            raise InvalidPath()
        output_path = self._claim_output(output_dir, name)
        task = self.tasks.create(
            TaskKind.ZIP,
            file_name=output_path.name,
            result_path=output_path,
            cleanup=bool(cleanup),
            scope_meta=dict(meta or {}),
        )
        self._executor.submit(self._run_zip, task.id, sources, output_path)
        return task.id

    def _run_zip(self, task_id, sources, output_path):
        partial = _partial_path(output_path)
        try:
            self.tasks.update(task_id, status=TaskStatus.IN_PROGRESS)
            output_path.parent.mkdir(parents=True, exist_ok=True)
            total_bytes, total_entries = calculate_tree_totals([src for src, _ in sources])
            # a flattened directory root has no entry of its own
            total_entries -= sum(1 for src, dest in sources if dest == "" and src.is_dir() and not src.is_symlink())
            self.tasks.update(
                task_id,
                total_bytes=total_bytes,
                entries_total=total_entries,
                progress=0.0 if total_bytes or total_entries else 1.0,
            )
            processed_bytes = 0
            processed_entries = 0
            with zipfile.ZipFile(partial, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=self.compression_level) as zf:
                for source, dest in sources:
                    arc_root = _archive_name(source, dest)
                    for fs_path, arc_name, is_dir in _iter_zip_members(source, arc_root):
                        if is_dir:
                            info = zipfile.ZipInfo.from_file(fs_path, arc_name)
                            zf.writestr(info, b"")
                        else:
                            processed_bytes = self._write_member(
                                zf, fs_path, arc_name, task_id, processed_bytes,
                                total_bytes, processed_entries, total_entries,
                            )
                        processed_entries += 1
                        self.tasks.update(
                            task_id,
                            processed_bytes=processed_bytes,
                            entries_processed=processed_entries,
                            progress=compute_progress(processed_bytes, total_bytes, processed_entries, total_entries),
                        )
            os.replace(partial, output_path)
            archive_size = output_path.stat().st_size
        except (OSError, ValueError, zipfile.BadZipFile, zipfile.LargeZipFile) as exc:
            self._fail_zip(task_id, partial, exc)
            return
        except Exception as exc:
            self._log_exception(f"zip_task task={task_id}", exc)
            self._fail_zip(task_id, partial, exc)
            return
        finally:
            self._release_output(output_path)
        self.tasks.update(
            task_id,
            status=TaskStatus.COMPLETED,
            progress=1.0,
            processed_bytes=processed_bytes,
            entries_processed=processed_entries,
            archive_size=archive_size,
        )
        self._log_system("zip-completed", command=f"task={task_id} bytes={processed_bytes} file={output_path.name}")

    def _write_member(self, zf, fs_path, arc_name, task_id, processed_bytes, total_bytes, processed_entries, total_entries):
        info = zipfile.ZipInfo.from_file(fs_path, arc_name)
        info.compress_type = zipfile.ZIP_DEFLATED
        with _open_source(fs_path) as src, zf.open(info, "w", force_zip64=True) as dst:
            while True:
                chunk = src.read(self.chunk_size)
                if not chunk:
                    break
                dst.write(chunk)
                processed_bytes += len(chunk)
                self.tasks.update(
                    task_id,
                    processed_bytes=processed_bytes,
                    progress=compute_progress(processed_bytes, total_bytes, processed_entries, total_entries),
                )
        return processed_bytes

    def _fail_zip(self, task_id, partial, exc):
        error = ArchiveIOError(f"Zip failed: {exc}")
        self.tasks.update(task_id, status=TaskStatus.ERROR, message=error.message)
        try:
            partial.unlink(missing_ok=True)
        except OSError as cleanup_exc:
            self._log_exception(f"zip_cleanup task={task_id}", cleanup_exc)
        self._log_system("zip-failed", command=f"task={task_id}", rejection_message=error.message)

    # ----------------------------
    # Unzip
    # ----------------------------
    def start_unzip(self, archive_path, destination, overwrite=True, meta=None):
        """Queue extraction of ``archive_path`` into ``destination`` and return the task id."""
        task = self.tasks.create(
            TaskKind.UNZIP,
            file_name=Path(archive_path).name,
            archive_path=Path(archive_path),
            destination=Path(destination),
            scope_meta=dict(meta or {}),
        )
        self._executor.submit(self._run_unzip, task.id, Path(archive_path), Path(destination), bool(overwrite))
        return task.id

    def _run_unzip(self, task_id, archive_path, destination, overwrite):
        processed_bytes = 0
        processed_entries = 0
        skipped = []
        try:
            self.tasks.update(task_id, status=TaskStatus.IN_PROGRESS)
            destination.mkdir(parents=True, exist_ok=True)
            dest_root = destination.resolve()
            with zipfile.ZipFile(archive_path, "r") as zf:
                infos = zf.infolist()
                total_bytes = sum(info.file_size for info in infos)
                total_entries = len(infos)
                self.tasks.update(
                    task_id,
                    total_bytes=total_bytes,
                    entries_total=total_entries,
                    progress=1.0 if total_entries == 0 else 0.0,
                )
                self._log_system("unzip-started", command=f"task={task_id} entries={total_entries}")
                for info in infos:
                    try:
                        target = resolve(dest_root, info.filename)
                    except InvalidPath:
                        skipped.append(info.filename)
                        self._log_system(
                            "unzip-skip",
                            command=f"task={task_id} entry={info.filename}",
                            rejection_message="Entry resolves outside destination.",
                        )
                    else:
                        if info.is_dir():
                            target.mkdir(parents=True, exist_ok=True)
                        else:
                            processed_bytes = self._extract_member(
                                zf, info, target, overwrite, task_id, processed_bytes,
                                total_bytes, processed_entries, total_entries,
                            )
                    processed_entries += 1
                    self.tasks.update(
                        task_id,
                        processed_bytes=processed_bytes,
                        entries_processed=processed_entries,
                        skipped_entries=list(skipped),
                        progress=compute_progress(processed_bytes, total_bytes, processed_entries, total_entries),
                    )
        except (OSError, ValueError, EOFError, zipfile.BadZipFile, zipfile.LargeZipFile, RuntimeError) as exc:
            error = ArchiveIOError(f"Unzip failed: {exc}")
            self.tasks.update(task_id, status=TaskStatus.ERROR, message=error.message, skipped_entries=list(skipped))
            self._log_system("unzip-failed", command=f"task={task_id}", rejection_message=error.message)
            return
        self.tasks.update(
            task_id,
            status=TaskStatus.COMPLETED,
            progress=1.0,
            processed_bytes=processed_bytes,
            entries_processed=processed_entries,
            skipped_entries=list(skipped),
        )
        self._log_system("unzip-completed", command=f"task={task_id} skipped={len(skipped)}")

    def _extract_member(self, zf, info, target, overwrite, task_id, processed_bytes, total_bytes, processed_entries, total_entries):
        target.parent.mkdir(parents=True, exist_ok=True)
        mode = "wb" if overwrite else "xb"
        with zf.open(info, "r") as src, open(target, mode) as dst:
            while True:
                chunk = src.read(self.chunk_size)
                if not chunk:
                    break
                dst.write(chunk)
                processed_bytes += len(chunk)
                self.tasks.update(
                    task_id,
                    processed_bytes=processed_bytes,
                    progress=compute_progress(processed_bytes, total_bytes, processed_entries, total_entries),
                )
        return processed_bytes

    # ----------------------------
    # Artifact retrieval
    # ----------------------------
    def open_artifact(self, task_id, scope=None, remove_on_complete=True):
        """Validate a finished zip task and return ``(task, chunk_iterator)``.

        Closing or exhausting the iterator deletes the artifact when the task
        was created with ``cleanup`` and drops the registry entry.
        """
        task = self.tasks.require(task_id, scope=scope)
        if task.kind != TaskKind.ZIP:
            raise TaskNotFound()
        if task.status != TaskStatus.COMPLETED:
            raise NotReady()
        if task.result_path is None or not Path(task.result_path).is_file():
            self.tasks.remove(task_id)
            raise TaskNotFound("Archive is no longer available.")
        handle = open(task.result_path, "rb")
        return task, self._iter_artifact(task, handle, remove_on_complete)

    def _iter_artifact(self, task, handle, remove_on_complete):
        try:
            while True:
                chunk = handle.read(self.chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            handle.close()
            if remove_on_complete and task.cleanup:
                try:
                    Path(task.result_path).unlink(missing_ok=True)
                except OSError as exc:
                    self._log_exception(f"artifact_cleanup task={task.id}", exc)
            self.tasks.remove(task.id)
