from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    session_ttl_hours: int = 24
    version_retention_days: int = 7
    storage_root: str = "storage"
    persist_versions: bool = True
    model_planner: str = "gpt-4o-mini"
    model_generator: str = "gpt-4o-mini"
    max_history_messages: int = 5
    max_context_files: int = 20

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            session_ttl_hours=_get_env_int("SITE_FACTORY_SESSION_TTL_HOURS", default=24, minimum=1, maximum=24 * 30),
            version_retention_days=_get_env_int("SITE_FACTORY_VERSION_RETENTION_DAYS", default=7, minimum=0, maximum=3650),
            storage_root=os.getenv("SITE_FACTORY_STORAGE_ROOT", "storage"),
            persist_versions=_get_env_bool("SITE_FACTORY_PERSIST_VERSIONS", default=True),
            model_planner=os.getenv("SITE_FACTORY_MODEL_PLANNER", "gpt-4o-mini"),
            model_generator=os.getenv("SITE_FACTORY_MODEL_GENERATOR", "gpt-4o-mini"),
            max_history_messages=_get_env_int("SITE_FACTORY_MAX_HISTORY_MESSAGES", default=5, minimum=1, maximum=100),
            max_context_files=_get_env_int("SITE_FACTORY_MAX_CONTEXT_FILES", default=20, minimum=1, maximum=10_000),
        ).normalized()

    @property
    def session_ttl(self) -> timedelta:
        return timedelta(hours=self.session_ttl_hours)

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        model_planner = self.model_planner.strip()
        if not model_planner:
            raise ValueError("SITE_FACTORY_MODEL_PLANNER must be non-empty")
        model_generator = self.model_generator.strip()
        if not model_generator:
            raise ValueError("SITE_FACTORY_MODEL_GENERATOR must be non-empty")
        storage_root = self.storage_root.strip()
        if not storage_root:
            raise ValueError("SITE_FACTORY_STORAGE_ROOT must be non-empty")
        if self.session_ttl_hours < 1:
            raise ValueError(f"SITE_FACTORY_SESSION_TTL_HOURS must be >= 1, got: {self.session_ttl_hours}")
        if self.version_retention_days < 0:
            raise ValueError(
                f"SITE_FACTORY_VERSION_RETENTION_DAYS must be >= 0, got: {self.version_retention_days}"
            )
        return RuntimeSettings(
            session_ttl_hours=self.session_ttl_hours,
            version_retention_days=self.version_retention_days,
            storage_root=storage_root,
            persist_versions=self.persist_versions,
            model_planner=model_planner,
            model_generator=model_generator,
            max_history_messages=self.max_history_messages,
            max_context_files=self.max_context_files,
        )

    def storage_path(self, repo_root: Path) -> Path:
        path = Path(self.storage_root)
        return path if path.is_absolute() else repo_root / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound.

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"{name} must be a boolean (true/false), got: {raw!r}")
