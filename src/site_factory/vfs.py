"""In-memory virtual file store with point-in-time snapshots.

The working set is a plain ``dict`` of normalized path to text content.
Snapshots copy only the top-level mapping; content strings are shared between
the working set and every snapshot that saw them, which is safe because
``str`` is immutable. Snapshots are retained behind read-only views so that
nothing written after ``snapshot()`` can become visible through its id.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Mapping
from types import MappingProxyType

from .errors import FileTooLargeError, SnapshotNotFoundError, StoreFileNotFoundError
from .models import DiffType, FileDiff
from .paths import normalize_path, validate_path

logger = logging.getLogger(__name__)

MAX_FILE_SIZE = 10 * 1024 * 1024


def new_version_id() -> str:
    return f"v{uuid.uuid4().hex}"


def content_size(content: str) -> int:
    """Size of *content* in bytes once UTF-8 encoded."""
    return len(content.encode("utf-8"))


def diff_file_maps(old: Mapping[str, str], new: Mapping[str, str]) -> list[FileDiff]:
    """Classify every path whose content differs between two file maps.

    Paths are visited in sorted order so the result is deterministic.
    Identical content produces no entry.
    """
    diffs: list[FileDiff] = []
    for path in sorted(set(old) | set(new)):
        before = old.get(path)
        after = new.get(path)
        if before is None and after is not None:
            diffs.append(FileDiff(path=path, change_type=DiffType.ADDED, new_content=after))
        elif before is not None and after is None:
            diffs.append(FileDiff(path=path, change_type=DiffType.DELETED, old_content=before))
        elif before != after:
            diffs.append(
                FileDiff(path=path, change_type=DiffType.MODIFIED, old_content=before, new_content=after)
            )
    return diffs


class VirtualFileStore:
    """Path to content working set plus retained, immutable snapshots."""

    def __init__(self, *, max_file_size: int = MAX_FILE_SIZE) -> None:
        self.max_file_size = max_file_size
        self._files: dict[str, str] = {}
        self._snapshots: dict[str, Mapping[str, str]] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Working set
    # ------------------------------------------------------------------

    def write(self, path: str, content: str) -> None:
        """Store *content* under the normalized *path*, replacing any prior value.

        Raises:
            InvalidPathError: If the path fails validation.
            FileTooLargeError: If the encoded content exceeds ``max_file_size``.
        """
        normalized = validate_path(path)
        size = content_size(content)
        if size > self.max_file_size:
            raise FileTooLargeError(size, self.max_file_size)
        with self._lock:
            self._files[normalized] = content

    def read(self, path: str) -> str:
        normalized = normalize_path(path)
        with self._lock:
            try:
                return self._files[normalized]
            except KeyError:
                raise StoreFileNotFoundError(f"File not found: {normalized}") from None

    def exists(self, path: str) -> bool:
        with self._lock:
            return normalize_path(path) in self._files

    def delete(self, path: str) -> None:
        with self._lock:
            self._files.pop(normalize_path(path), None)

    def list(self) -> set[str]:
        with self._lock:
            return set(self._files)

    def get_all_files(self) -> dict[str, str]:
        with self._lock:
            return dict(self._files)

    def load(self, files: Mapping[str, str]) -> None:
        """Replace the working set with *files*.

        Every entry is validated first, so a rejected mapping leaves the
        store untouched.
        """
        staged: dict[str, str] = {}
        for path, content in files.items():
            normalized = validate_path(path)
            size = content_size(content)
            if size > self.max_file_size:
                raise FileTooLargeError(size, self.max_file_size)
            staged[normalized] = content
        with self._lock:
            self._files = staged

    def clear(self) -> None:
        """Drop the working set and every retained snapshot."""
        with self._lock:
            self._files = {}
            self._snapshots = {}

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def snapshot(self) -> str:
        """Capture the working set and return the new snapshot id."""
        snapshot_id = new_version_id()
        with self._lock:
            self._snapshots[snapshot_id] = MappingProxyType(dict(self._files))
        logger.debug("Captured snapshot %s (%d files)", snapshot_id, len(self._snapshots[snapshot_id]))
        return snapshot_id

    def get_snapshot(self, snapshot_id: str) -> Mapping[str, str] | None:
        with self._lock:
            return self._snapshots.get(snapshot_id)

    def restore(self, snapshot_id: str) -> None:
        """Replace the working set wholesale with the retained snapshot.

        Raises:
            SnapshotNotFoundError: If *snapshot_id* is unknown.
        """
        with self._lock:
            snapshot = self._require_snapshot(snapshot_id)
            self._files = dict(snapshot)

    def diff(self, first_id: str, second_id: str) -> list[FileDiff]:
        """Compare two retained snapshots.

        Raises:
            SnapshotNotFoundError: If either id is unknown.
        """
        with self._lock:
            first = self._require_snapshot(first_id)
            second = self._require_snapshot(second_id)
        return diff_file_maps(first, second)

    def _require_snapshot(self, snapshot_id: str) -> Mapping[str, str]:
        snapshot = self._snapshots.get(snapshot_id)
        if snapshot is None:
            raise SnapshotNotFoundError(f"Snapshot not found: {snapshot_id}")
        return snapshot
