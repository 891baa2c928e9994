"""Filesystem helpers for transcript tails, size totals, and artifact names."""

from datetime import datetime
import os
from pathlib import Path
import re


def format_file_size(num_bytes):
    """Format bytes into a human-readable string (B/KB/MB/GB/TB)."""
    value = float(max(0, num_bytes or 0))
    units = ["B", "KB", "MB", "GB", "TB"]
    idx = 0
    while value >= 1024 and idx < len(units) - 1:
        value /= 1024
        idx += 1
    if idx == 0:
        return f"{int(value)} {units[idx]}"
    return f"{value:.1f} {units[idx]}"


def read_recent_file_lines(path, limit):
    """Read and return the last ``limit`` lines from a text file."""
    try:
        text = Path(path).read_text(encoding="utf-8", errors="ignore")
    except OSError:
        return []
    lines = text.splitlines()
    if len(lines) > limit:
        lines = lines[-limit:]
    return lines


def truncate_file_lines(path, max_lines):
    """Keep only the last ``max_lines`` lines of ``path`` in place.

    The file is rewritten through its own inode so append-mode writers keep
    landing in the same file. Returns the retained line count.
    """
    path = Path(path)
    with path.open("r+", encoding="utf-8", errors="ignore", newline="") as f:
        text = f.read()
        trailing = text.endswith("\n")
        lines = (text[:-1] if trailing else text).split("\n") if text else []
        if len(lines) <= max_lines:
            return len(lines)
        kept = lines[-max_lines:]
        f.seek(0)
        f.write("\n".join(kept) + ("\n" if trailing else ""))
        f.truncate()
    return len(kept)


def count_newlines(text):
    return str(text or "").count("\n")


def calculate_tree_totals(paths):
    """Return ``(total_bytes, total_entries)`` for files and directories under ``paths``.

    Symlinks are neither followed nor counted.
    """
    total_bytes = 0
    total_entries = 0
    for target in paths:
        if not target:
            continue
        target = Path(target)
        if target.is_symlink() or not target.exists():
            continue
        if target.is_dir():
            total_entries += 1
            for root, dirs, files in os.walk(target):
                dirs[:] = [d for d in dirs if not os.path.islink(os.path.join(root, d))]
                total_entries += len(dirs)
                for name in files:
                    full = os.path.join(root, name)
                    if os.path.islink(full):
                        continue
                    total_bytes += os.stat(full).st_size
                    total_entries += 1
        elif target.is_file():
            total_bytes += target.stat().st_size
            total_entries += 1
    return total_bytes, total_entries


def sanitize_archive_name(value, default="archive"):
    """Sanitize a filename component for produced zip artifacts."""
    safe = re.sub(r"[^A-Za-z0-9(). _-]+", "_", str(value or "")).strip()
    return safe or default


def timestamped_archive_name(prefix, display_tz=None):
    """Return ``<prefix>_<YYYY-mm-dd_HH-MM-SS>.zip``."""
    stamp = datetime.now(tz=display_tz).strftime("%Y-%m-%d_%H-%M-%S")
    return f"{sanitize_archive_name(prefix)}_{stamp}.zip"
