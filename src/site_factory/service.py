from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from .context import ContextManager
from .coordinator import EventSink, PipelineCoordinator, Validator, default_validator
from .errors import SessionNotFoundError, VersionNotFoundError
from .generation import LLMSiteGenerator, SiteGenerator
from .models import BuildError, Session, Version, utcnow
from .sessions import SessionLifecycle
from .settings import RuntimeSettings
from .storage import LocalStorageAdapter, StorageAdapter
from .versions import VersionRegistry
from .vfs import VirtualFileStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MaintenanceReport:
    expired_sessions: int
    collected_versions: int
    dropped_workspaces: int


class SiteFactoryService:
    """Process-wide owner of sessions, versions, and per-session workspaces.

    Construct one at startup and call ``shutdown`` on exit. Every container
    is an instance attribute, so tests can build as many isolated services as
    they need.
    """

    def __init__(
        self,
        *,
        settings: RuntimeSettings | None = None,
        generator: SiteGenerator | None = None,
        storage: StorageAdapter | None = None,
        validator: Validator = default_validator,
        event_sink: EventSink | None = None,
        repo_root: Path | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings or RuntimeSettings.from_env()
        self.sessions = SessionLifecycle(session_ttl=self.settings.session_ttl, clock=clock)
        self.versions = VersionRegistry(clock=clock)
        self.context_manager = ContextManager(
            max_history=self.settings.max_history_messages,
            max_files=self.settings.max_context_files,
        )
        if storage is None and self.settings.persist_versions:
            local = LocalStorageAdapter(self.settings.storage_path(repo_root or Path.cwd()))
            local.initialize()
            storage = local
        self.storage = storage
        self._workspaces: dict[str, VirtualFileStore] = {}
        self._workspaces_lock = threading.Lock()
        self.coordinator = PipelineCoordinator(
            sessions=self.sessions,
            versions=self.versions,
            workspace_for=self.workspace,
            generator=generator
            or LLMSiteGenerator(
                planner_model=self.settings.model_planner,
                generator_model=self.settings.model_generator,
            ),
            context_manager=self.context_manager,
            validator=validator,
            storage=self.storage,
            event_sink=event_sink,
        )

    # ------------------------------------------------------------------
    # Sessions and workspaces
    # ------------------------------------------------------------------

    def create_session(self, user_id: str = "anonymous", metadata: dict[str, Any] | None = None) -> Session:
        session = self.sessions.create_session(user_id, metadata)
        self.workspace(session.id)
        return session

    def require_session(self, session_id: str) -> Session:
        session = self.sessions.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session not found: {session_id}")
        return session

    def workspace(self, session_id: str) -> VirtualFileStore:
        """Return the session's private file store, creating it on first use."""
        with self._workspaces_lock:
            store = self._workspaces.get(session_id)
            if store is None:
                store = self._workspaces[session_id] = VirtualFileStore()
            return store

    def delete_session(self, session_id: str) -> None:
        self.sessions.delete_session(session_id)
        self.context_manager.clear_history(session_id)
        with self._workspaces_lock:
            self._workspaces.pop(session_id, None)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def submit_prompt(self, session_id: str, prompt: str) -> str:
        return self.coordinator.execute(session_id, prompt)

    def fix_errors(self, session_id: str, build_error: BuildError) -> str:
        return self.coordinator.fix_errors(session_id, build_error)

    def preview_version(self, session_id: str) -> Version | None:
        """Version to serve for preview: the session's last valid version, if any."""
        session = self.require_session(session_id)
        if session.last_valid_version is None:
            return None
        return self.load_version(session_id, session.last_valid_version)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def persist_version(self, session_id: str, version_id: str) -> None:
        if self.storage is None:
            raise RuntimeError("No storage adapter configured")
        version = self.versions.get_version(version_id)
        if version is None:
            raise VersionNotFoundError(f"Version not found: {version_id}")
        self.storage.save(session_id, version)

    def load_version(self, session_id: str, version_id: str) -> Version:
        """Return a version from memory, falling back to storage after GC.

        Raises:
            VersionNotFoundError: If neither memory nor storage has it.
        """
        version = self.versions.get_version(version_id)
        if version is not None:
            return version
        if self.storage is None:
            raise VersionNotFoundError(f"Version not found: {version_id}")
        return self.storage.load(session_id, version_id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def run_maintenance(self) -> MaintenanceReport:
        """Sweep expired sessions, collect old versions, and drop orphaned workspaces."""
        expired = self.sessions.cleanup_expired_sessions()
        collected = self.versions.garbage_collect(self.settings.version_retention_days)
        live = {session.id for session in self.sessions.list_sessions()}
        with self._workspaces_lock:
            orphaned = [session_id for session_id in self._workspaces if session_id not in live]
            for session_id in orphaned:
                del self._workspaces[session_id]
        for session_id in orphaned:
            self.context_manager.clear_history(session_id)
        report = MaintenanceReport(
            expired_sessions=expired,
            collected_versions=collected,
            dropped_workspaces=len(orphaned),
        )
        logger.info(
            "Maintenance: %d sessions expired, %d versions collected, %d workspaces dropped",
            report.expired_sessions,
            report.collected_versions,
            report.dropped_workspaces,
        )
        return report

    def shutdown(self) -> None:
        with self._workspaces_lock:
            for store in self._workspaces.values():
                store.clear()
            self._workspaces.clear()
        self.versions.clear()
        self.sessions.clear()
        self.context_manager.clear()
        logger.info("Site factory service shut down")
