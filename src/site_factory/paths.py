from __future__ import annotations

import re

from .errors import InvalidPathError

MAX_PATH_LENGTH = 4096

_DRIVE_PREFIX_RE = re.compile(r"^[a-zA-Z]:")


def normalize_path(path: str) -> str:
    """Collapse repeated separators and strip leading/trailing ``/``.

    Two paths that normalize to the same string address the same file.
    """
    return "/".join(segment for segment in path.split("/") if segment)


def validate_path(path: str) -> str:
    """Validate a candidate workspace path and return its normalized form.

    Args:
        path: Relative, ``/``-separated file path.

    Returns:
        The normalized path.

    Raises:
        InvalidPathError: If the path is too long, contains ``..`` or a null
            byte, is absolute, or normalizes to an empty path.
    """
    if not isinstance(path, str):
        raise InvalidPathError(f"Path must be a string, got: {type(path).__name__}")
    if len(path) > MAX_PATH_LENGTH:
        raise InvalidPathError(f"Path length {len(path)} exceeds maximum {MAX_PATH_LENGTH}")
    if ".." in path:
        raise InvalidPathError('Path traversal detected: paths cannot contain ".."')
    if path.startswith("/") or _DRIVE_PREFIX_RE.match(path):
        raise InvalidPathError(f"Absolute paths are not allowed: {path!r}")
    if "\0" in path:
        raise InvalidPathError("Null bytes are not allowed in paths")

    normalized = normalize_path(path)
    if not normalized:
        raise InvalidPathError(f"Path {path!r} does not name a file")
    return normalized
