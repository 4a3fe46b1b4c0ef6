from __future__ import annotations

import fcntl
import json
import logging
import os
import re
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Protocol

from .errors import VersionNotFoundError
from .models import Version
from .versions import VersionRegistry

logger = logging.getLogger(__name__)

_LOCK_SUFFIX = ".lock"
_INDEX_NAME = "index.json"


class StorageAdapter(Protocol):
    """Persistence boundary for versions, addressed by ``(session_id, version_id)``."""

    def save(self, session_id: str, version: Version) -> None:
        ...

    def load(self, session_id: str, version_id: str) -> Version:
        ...

    def list(self, session_id: str) -> list[Version]:
        ...

    def delete(self, session_id: str, version_id: str) -> None:
        ...


# ---------------------------------------------------------------------------
# File helpers
# ---------------------------------------------------------------------------


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Hold an exclusive ``fcntl`` lock on a ``.lock`` sidecar of *path*.

    The sidecar keeps the lock handle stable while *path* itself is
    replaced via ``os.replace``.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to a temp file beside *path*, then rename it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def sanitize_storage_key(value: str) -> str:
    """Map an id onto ``[A-Za-z0-9_-]`` so it is safe as a path component.

    Raises:
        ValueError: If *value* is empty.
    """
    if not value:
        raise ValueError("storage key must be non-empty")
    return re.sub(r"[^A-Za-z0-9_-]", "_", value)[:128]


# ---------------------------------------------------------------------------
# LocalStorageAdapter
# ---------------------------------------------------------------------------


class LocalStorageAdapter:
    """Filesystem storage: one JSON file per version plus a per-session index.

    Layout::

        <base_dir>/<session>/<version_id>.json
        <base_dir>/<session>/index.json      {"versionIds": [...]}

    Version files are written atomically; index read-modify-write runs under
    an exclusive file lock so concurrent writers in separate processes do not
    drop each other's entries.
    """

    def __init__(self, base_dir: Path | str = "storage") -> None:
        self.base_dir = Path(base_dir).resolve()

    def initialize(self) -> None:
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def save(self, session_id: str, version: Version) -> None:
        session_dir = self._session_dir(session_id)
        session_dir.mkdir(parents=True, exist_ok=True)
        serialized = VersionRegistry.serialize_version(version)
        _atomic_write_text(
            self._version_path(session_id, version.id),
            json.dumps(serialized, indent=2, ensure_ascii=False),
        )
        self._update_index(session_id, add=version.id)

    def load(self, session_id: str, version_id: str) -> Version:
        """Read one persisted version.

        Raises:
            VersionNotFoundError: If no file exists for the version.
            ValueError: If the file is not a valid serialized version.
        """
        path = self._version_path(session_id, version_id)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise VersionNotFoundError(f"Version not found: {version_id}") from None
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ValueError(f"version {version_id} at {path} is not valid JSON") from exc
        return VersionRegistry.deserialize_version(payload)

    def list(self, session_id: str) -> list[Version]:
        """Load every indexed version for the session, in save order.

        Index entries whose file has gone missing are skipped with a warning.
        """
        versions: list[Version] = []
        for version_id in self._read_index(self._index_path(session_id)):
            try:
                versions.append(self.load(session_id, version_id))
            except VersionNotFoundError:
                logger.warning("Version %s of session %s is indexed but missing; skipping", version_id, session_id)
        return versions

    def delete(self, session_id: str, version_id: str) -> None:
        self._version_path(session_id, version_id).unlink(missing_ok=True)
        if self._index_path(session_id).is_file():
            self._update_index(session_id, remove=version_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _session_dir(self, session_id: str) -> Path:
        return self.base_dir / sanitize_storage_key(session_id)

    def _version_path(self, session_id: str, version_id: str) -> Path:
        return self._session_dir(session_id) / f"{sanitize_storage_key(version_id)}.json"

    def _index_path(self, session_id: str) -> Path:
        return self._session_dir(session_id) / _INDEX_NAME

    @staticmethod
    def _read_index(path: Path) -> list[str]:
        if not path.is_file():
            return []
        text = path.read_text(encoding="utf-8")
        if not text.strip():
            return []
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ValueError(f"session index at {path} is not valid JSON") from exc
        version_ids = payload.get("versionIds") if isinstance(payload, dict) else None
        if not isinstance(version_ids, list):
            raise ValueError(f"session index at {path} is missing a versionIds list")
        return [str(version_id) for version_id in version_ids]

    def _update_index(self, session_id: str, *, add: str | None = None, remove: str | None = None) -> None:
        path = self._index_path(session_id)
        with _locked_file(path):
            version_ids = self._read_index(path)
            if add is not None and add not in version_ids:
                version_ids.append(add)
            if remove is not None:
                version_ids = [version_id for version_id in version_ids if version_id != remove]
            _atomic_write_text(path, json.dumps({"versionIds": version_ids}, indent=2))
