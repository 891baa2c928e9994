"""Sandbox path confinement for every user-supplied filesystem path."""

import os
import re
from pathlib import Path
from urllib.parse import unquote

from mchost.core.errors import InvalidPath

_BAD_ESCAPE_RE = re.compile(r"%(?![0-9A-Fa-f]{2})")


def resolve(sandbox_root, relative_path):
    """Return the absolute path of ``relative_path`` inside ``sandbox_root``.

    Raises ``InvalidPath`` when the normalized target would escape the root
    through ``..`` segments, an absolute override, or a symlink.
    """
    if relative_path is None:
        relative_path = ""
    relative_path = str(relative_path)
    if "\x00" in relative_path:
        raise InvalidPath()
    root = Path(sandbox_root).resolve()
    candidate = (root / relative_path).resolve()
    rel = os.path.relpath(candidate, root)
    if os.path.isabs(rel) or rel == os.pardir or rel.startswith(os.pardir + os.sep):
        raise InvalidPath()
    return candidate


def decode_path_segments(raw_path):
    """Percent-decode a ``/``-separated path one segment at a time."""
    if raw_path is None:
        return ""
    decoded = []
    for segment in str(raw_path).replace("\\", "/").split("/"):
        if _BAD_ESCAPE_RE.search(segment):
            raise InvalidPath()
        try:
            value = unquote(segment, encoding="utf-8", errors="strict")
        except UnicodeDecodeError as exc:
            raise InvalidPath() from exc
        if "\x00" in value:
            raise InvalidPath()
        decoded.append(value)
    return "/".join(decoded)


def resolve_user_path(sandbox_root, raw_path):
    """Decode then confine a user-supplied path."""
    return resolve(sandbox_root, decode_path_segments(raw_path))


def resolve_many(sandbox_root, raw_paths):
    """Confine a list of user paths; any escape rejects the whole list."""
    return [resolve_user_path(sandbox_root, raw) for raw in (raw_paths or [])]
