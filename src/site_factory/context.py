from __future__ import annotations

import json
import logging
import re
import threading
from collections import deque
from typing import Literal

from .models import FileDiff, Message, Package, ProjectContext, Version

logger = logging.getLogger(__name__)

_MAX_RECENT_CHANGES = 3
_ENTRY_MARKERS = ("index.", "main.", "app.")
_CONFIG_MARKERS = ("package.json", "tsconfig.json", "vite.config")


def file_importance(path: str) -> int:
    """Heuristic rank: entry points and config first, shallow before deep."""
    score = 0
    if any(marker in path for marker in _ENTRY_MARKERS):
        score += 10
    if any(marker in path for marker in _CONFIG_MARKERS):
        score += 8
    if re.search(r"\.(tsx|jsx)$", path):
        score += 5
    if path.endswith(".ts"):
        score += 3
    return score - path.count("/")


def prioritize_files(paths: list[str], recent_changes: list[FileDiff]) -> list[str]:
    changed = {change.path for change in recent_changes}
    touched = [path for path in paths if path in changed]
    untouched = sorted((path for path in paths if path not in changed), key=lambda path: (-file_importance(path), path))
    return touched + untouched


def extract_dependencies(package_json: str) -> list[Package]:
    """Read ``dependencies`` and ``devDependencies`` out of a package.json body.

    Unparseable input yields no dependencies; the manifest is generated
    content and may be mid-edit.
    """
    try:
        manifest = json.loads(package_json)
    except json.JSONDecodeError:
        logger.debug("package.json is not valid JSON; ignoring dependencies")
        return []
    if not isinstance(manifest, dict):
        return []
    packages: list[Package] = []
    for section in ("dependencies", "devDependencies"):
        entries = manifest.get(section)
        if isinstance(entries, dict):
            packages.extend(Package(name=str(name), version=str(version)) for name, version in entries.items())
    return packages


class ContextManager:
    """Per-session conversation history and prompt context assembly."""

    def __init__(self, *, max_history: int = 5, max_files: int = 20) -> None:
        self.max_history = max_history
        self.max_files = max_files
        self._history: dict[str, deque[Message]] = {}
        self._lock = threading.Lock()

    def add_message(self, session_id: str, role: Literal["user", "assistant"], content: str) -> None:
        with self._lock:
            history = self._history.setdefault(session_id, deque(maxlen=self.max_history))
            history.append(Message(role=role, content=content))

    def get_history(self, session_id: str) -> list[Message]:
        with self._lock:
            return list(self._history.get(session_id, ()))

    def clear_history(self, session_id: str) -> None:
        with self._lock:
            self._history.pop(session_id, None)

    def clear(self) -> None:
        with self._lock:
            self._history.clear()

    def build_context(
        self,
        session_id: str,
        current_version: Version | None,
        recent_changes: list[FileDiff],
        dependencies: list[Package] | None = None,
    ) -> ProjectContext:
        existing = list(current_version.files) if current_version is not None else []
        changes = recent_changes[:_MAX_RECENT_CHANGES]
        return ProjectContext(
            existing_files=prioritize_files(existing, changes),
            recent_changes=changes,
            conversation_history=self.get_history(session_id)[-self.max_history :],
            dependencies=dependencies or [],
        )

    def compress_context(self, context: ProjectContext) -> ProjectContext:
        return context.model_copy(
            update={
                "existing_files": context.existing_files[: self.max_files],
                "recent_changes": context.recent_changes[:_MAX_RECENT_CHANGES],
                "conversation_history": context.conversation_history[-self.max_history :],
            }
        )
