from importlib.metadata import version

from .coordinator import PipelineCoordinator, default_validator, hold_session
from .errors import (
    BuildValidationError,
    FileTooLargeError,
    InvalidPathError,
    InvalidTransitionError,
    SessionBusyError,
    SessionNotFoundError,
    SnapshotNotFoundError,
    StoreFileNotFoundError,
    VersionNotFoundError,
)
from .models import (
    SESSION_STATE_TRANSITIONS,
    BuildError,
    DiffType,
    FileDiff,
    PipelineEvent,
    Plan,
    PlanIntent,
    Session,
    SessionState,
    Version,
    VersionStatus,
)
from .paths import MAX_PATH_LENGTH, normalize_path, validate_path
from .service import MaintenanceReport, SiteFactoryService
from .sessions import SessionLifecycle
from .storage import LocalStorageAdapter, StorageAdapter
from .versions import VersionRegistry
from .vfs import MAX_FILE_SIZE, VirtualFileStore, diff_file_maps


def get_version() -> str:
    try:
        return version("site-factory")
    except Exception:
        return "0.0.0"


__all__ = [
    "BuildError",
    "BuildValidationError",
    "DiffType",
    "FileDiff",
    "FileTooLargeError",
    "InvalidPathError",
    "InvalidTransitionError",
    "LocalStorageAdapter",
    "MaintenanceReport",
    "PipelineCoordinator",
    "PipelineEvent",
    "Plan",
    "PlanIntent",
    "Session",
    "SessionBusyError",
    "SessionLifecycle",
    "SessionNotFoundError",
    "SessionState",
    "SiteFactoryService",
    "SnapshotNotFoundError",
    "StorageAdapter",
    "StoreFileNotFoundError",
    "Version",
    "VersionNotFoundError",
    "VersionRegistry",
    "VersionStatus",
    "VirtualFileStore",
    "MAX_FILE_SIZE",
    "MAX_PATH_LENGTH",
    "SESSION_STATE_TRANSITIONS",
    "default_validator",
    "diff_file_maps",
    "get_version",
    "hold_session",
    "normalize_path",
    "validate_path",
]
