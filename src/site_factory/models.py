from __future__ import annotations

import hashlib
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from .canonical import to_canonical_json


class SessionState(str, Enum):
    CREATED = "CREATED"
    GENERATING = "GENERATING"
    BUILDING = "BUILDING"
    VALIDATING = "VALIDATING"
    READY = "READY"
    FAILED = "FAILED"
    FIXING = "FIXING"


SESSION_STATE_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.CREATED: frozenset({SessionState.GENERATING, SessionState.FAILED}),
    SessionState.GENERATING: frozenset({SessionState.BUILDING, SessionState.FAILED}),
    SessionState.BUILDING: frozenset({SessionState.VALIDATING, SessionState.FAILED}),
    SessionState.VALIDATING: frozenset({SessionState.READY, SessionState.FAILED}),
    SessionState.READY: frozenset({SessionState.GENERATING, SessionState.BUILDING, SessionState.FIXING}),
    SessionState.FAILED: frozenset({SessionState.FIXING, SessionState.GENERATING}),
    SessionState.FIXING: frozenset({SessionState.BUILDING, SessionState.FAILED}),
}


class VersionStatus(str, Enum):
    BUILDING = "BUILDING"
    VALID = "VALID"
    FAILED = "FAILED"


class DiffType(str, Enum):
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"


def utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class FileDiff:
    path: str
    change_type: DiffType
    old_content: str | None = None
    new_content: str | None = None


@dataclass(frozen=True)
class Version:
    """Immutable record of a session's file set at one point in time.

    ``files`` is a read-only view over a private copy of the mapping handed to
    the constructor, so later mutation of the source cannot leak in. Status
    changes produce a new ``Version`` with the same id and files.
    """

    id: str
    timestamp: datetime
    files: Mapping[str, str] = field(hash=False)
    status: VersionStatus = VersionStatus.BUILDING
    error_log: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "files", MappingProxyType(dict(self.files)))
        object.__setattr__(self, "status", VersionStatus(self.status))

    @property
    def fingerprint(self) -> str:
        canonical = to_canonical_json(dict(self.files))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class VersionRecord(BaseModel):
    """Persisted shape of a version: ``{id, timestamp, files, status, errorLog?}``."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    id: str = Field(min_length=1)
    timestamp: datetime
    files: dict[str, str]
    status: VersionStatus
    error_log: str | None = Field(default=None, alias="errorLog")


class Session(BaseModel):
    """One user's unit of interaction and its version pointers.

    Frozen: ``SessionLifecycle`` swaps in a replacement on every change, so a
    held ``Session`` is a point-in-time view.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    state: SessionState = SessionState.CREATED
    current_version: str | None = None
    last_valid_version: str | None = None
    created_at: datetime
    expires_at: datetime
    metadata: dict[str, Any] | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at < now


class PipelineEvent(BaseModel):
    """Notification a push transport would forward verbatim to the client."""

    type: Literal["status", "progress", "error", "done"]
    session_id: str
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Generation boundary schemas
# ---------------------------------------------------------------------------


class PlanIntent(str, Enum):
    ADD = "ADD"
    MODIFY = "MODIFY"
    DELETE = "DELETE"
    REFACTOR = "REFACTOR"
    CREATE = "CREATE"


class Plan(BaseModel):
    intent: PlanIntent
    affected_files: list[str]
    reasoning: str = Field(min_length=1)
    steps: list[str] = Field(default_factory=list)


class GeneratedFile(BaseModel):
    path: str = Field(min_length=1)
    content: str


class GeneratedFileSet(BaseModel):
    files: list[GeneratedFile]

    def as_mapping(self) -> dict[str, str]:
        return {item.path: item.content for item in self.files}


class BuildError(BaseModel):
    category: str
    message: str
    file: str | None = None
    line: int | None = None
    stack: str | None = None


class Message(BaseModel):
    role: Literal["user", "assistant"]
    content: str
    timestamp: datetime = Field(default_factory=utcnow)


class Package(BaseModel):
    name: str
    version: str


class ProjectContext(BaseModel):
    existing_files: list[str] = Field(default_factory=list)
    recent_changes: list[FileDiff] = Field(default_factory=list)
    conversation_history: list[Message] = Field(default_factory=list)
    dependencies: list[Package] = Field(default_factory=list)
