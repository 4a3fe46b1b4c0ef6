from __future__ import annotations

from collections.abc import Iterable


class InvalidPathError(ValueError):
    """Raised when a file path is traversal-prone, absolute, oversized, or malformed."""


class FileTooLargeError(ValueError):
    """Raised when file content exceeds the per-file size cap."""

    def __init__(self, size: int, limit: int) -> None:
        super().__init__(f"File size {size} exceeds maximum allowed size {limit}")
        self.size = size
        self.limit = limit


class StoreFileNotFoundError(FileNotFoundError):
    """Raised when reading a path that is not present in a virtual file store."""


class SnapshotNotFoundError(LookupError):
    pass


class VersionNotFoundError(LookupError):
    pass


class SessionNotFoundError(LookupError):
    pass


class InvalidTransitionError(ValueError):
    """Raised when the session state machine rejects a target state.

    The current state, the rejected target, and the full allowed set are kept
    as attributes so callers can report them without parsing the message.
    """

    def __init__(self, current: object, target: object, allowed: Iterable[object]) -> None:
        self.current = current
        self.target = target
        self.allowed = tuple(allowed)
        allowed_text = ", ".join(_state_label(state) for state in self.allowed) or "none"
        super().__init__(
            f"Invalid state transition from {_state_label(current)} to {_state_label(target)}. "
            f"Valid transitions: {allowed_text}"
        )


class SessionBusyError(RuntimeError):
    """Raised by callers when a session already has a pipeline run in flight."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} is busy: another pipeline run holds its lock")
        self.session_id = session_id


class BuildValidationError(RuntimeError):
    """Raised when a freshly minted version fails validation."""

    def __init__(self, version_id: str, error_log: str) -> None:
        super().__init__(f"Version {version_id} failed validation: {error_log}")
        self.version_id = version_id
        self.error_log = error_log


def _state_label(state: object) -> str:
    return str(getattr(state, "value", state))
