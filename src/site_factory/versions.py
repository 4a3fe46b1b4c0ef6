from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta
from typing import Any

from pydantic import ValidationError

from .errors import VersionNotFoundError
from .models import Version, VersionRecord, VersionStatus, utcnow
from .vfs import new_version_id

logger = logging.getLogger(__name__)

DEFAULT_VERSION_RETENTION_DAYS = 7


class VersionRegistry:
    """Registry of immutable versions, indexed by id and by session.

    Versions are values: ``update_version_status`` builds a replacement and
    swaps it in under ``_lock``, so a reader holding the previous record keeps
    a consistent view and new lookups see the update.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], datetime] = utcnow,
        id_factory: Callable[[], str] = new_version_id,
    ) -> None:
        self._clock = clock
        self._id_factory = id_factory
        self._versions: dict[str, Version] = {}
        self._session_versions: dict[str, list[str]] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_version(
        self,
        session_id: str,
        files: Mapping[str, str],
        status: VersionStatus = VersionStatus.BUILDING,
    ) -> Version:
        """Mint a version from a copy of *files* and append it to the session's history."""
        version = Version(
            id=self._id_factory(),
            timestamp=self._clock(),
            files=files,
            status=status,
        )
        with self._lock:
            self._versions[version.id] = version
            self._session_versions.setdefault(session_id, []).append(version.id)
        logger.debug(
            "Created version %s for session %s (%d files, %s)",
            version.id,
            session_id,
            len(version.files),
            version.status.value,
        )
        return version

    def update_version_status(
        self,
        version_id: str,
        status: VersionStatus,
        error_log: str | None = None,
    ) -> Version:
        """Replace a version record with one carrying the new status.

        The replacement keeps the id and file mapping and takes a fresh
        timestamp. ``error_log`` is replaced as given, so omitting it clears
        a previous log.

        Raises:
            VersionNotFoundError: If *version_id* is unknown.
        """
        with self._lock:
            current = self._versions.get(version_id)
            if current is None:
                raise VersionNotFoundError(f"Version not found: {version_id}")
            updated = Version(
                id=current.id,
                timestamp=self._clock(),
                files=current.files,
                status=status,
                error_log=error_log,
            )
            self._versions[version_id] = updated
        logger.info("Version %s status %s -> %s", version_id, current.status.value, updated.status.value)
        return updated

    def clear(self) -> None:
        with self._lock:
            self._versions.clear()
            self._session_versions.clear()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_version(self, version_id: str) -> Version | None:
        with self._lock:
            return self._versions.get(version_id)

    def get_last_valid_version(self, session_id: str) -> Version | None:
        for version in reversed(self.get_session_versions(session_id)):
            if version.status is VersionStatus.VALID:
                return version
        return None

    def get_session_versions(self, session_id: str) -> list[Version]:
        """Return the session's versions in creation order.

        Order comes from the session index rather than ``timestamp``, which a
        status update replaces.
        """
        with self._lock:
            ids = list(self._session_versions.get(session_id, ()))
            return [self._versions[version_id] for version_id in ids if version_id in self._versions]

    def get_latest_version(self, session_id: str) -> Version | None:
        with self._lock:
            ids = self._session_versions.get(session_id)
            if not ids:
                return None
            return self._versions.get(ids[-1])

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def garbage_collect(self, days_to_keep: int = DEFAULT_VERSION_RETENTION_DAYS) -> int:
        """Delete versions older than ``now - days_to_keep`` and prune session indices.

        Returns:
            Number of versions deleted.
        """
        if days_to_keep < 0:
            raise ValueError(f"days_to_keep must be >= 0, got: {days_to_keep}")
        cutoff = self._clock() - timedelta(days=days_to_keep)
        with self._lock:
            stale = [version_id for version_id, version in self._versions.items() if version.timestamp < cutoff]
            for version_id in stale:
                del self._versions[version_id]

            for session_id in list(self._session_versions):
                remaining = [version_id for version_id in self._session_versions[session_id] if version_id in self._versions]
                if remaining:
                    self._session_versions[session_id] = remaining
                else:
                    del self._session_versions[session_id]

        if stale:
            logger.info("Garbage collected %d versions older than %s", len(stale), cutoff.isoformat())
        return len(stale)

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    @staticmethod
    def serialize_version(version: Version) -> dict[str, Any]:
        """Convert a version to its persisted JSON-friendly form.

        ``errorLog`` is omitted when the version has none; files are emitted
        in sorted path order.
        """
        record = VersionRecord(
            id=version.id,
            timestamp=version.timestamp,
            files={path: version.files[path] for path in sorted(version.files)},
            status=version.status,
            error_log=version.error_log,
        )
        return record.model_dump(mode="json", by_alias=True, exclude_none=True)

    @staticmethod
    def deserialize_version(data: Mapping[str, Any]) -> Version:
        """Rebuild a version from its persisted form.

        Raises:
            ValueError: If *data* does not match the persisted layout.
        """
        try:
            record = VersionRecord.model_validate(dict(data))
        except ValidationError as exc:
            raise ValueError(f"serialized version failed validation: {exc}") from exc
        return Version(
            id=record.id,
            timestamp=record.timestamp,
            files=record.files,
            status=record.status,
            error_log=record.error_log,
        )
