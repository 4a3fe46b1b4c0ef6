from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest

from site_factory.settings import RuntimeSettings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "SITE_FACTORY_SESSION_TTL_HOURS",
        "SITE_FACTORY_VERSION_RETENTION_DAYS",
        "SITE_FACTORY_STORAGE_ROOT",
        "SITE_FACTORY_PERSIST_VERSIONS",
        "SITE_FACTORY_MODEL_PLANNER",
        "SITE_FACTORY_MODEL_GENERATOR",
        "SITE_FACTORY_MAX_HISTORY_MESSAGES",
        "SITE_FACTORY_MAX_CONTEXT_FILES",
    ):
        monkeypatch.delenv(name, raising=False)


def test_defaults() -> None:
    settings = RuntimeSettings.from_env()
    assert settings == RuntimeSettings()
    assert settings.session_ttl == timedelta(hours=24)
    assert settings.version_retention_days == 7


def test_reads_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SITE_FACTORY_SESSION_TTL_HOURS", "2")
    monkeypatch.setenv("SITE_FACTORY_VERSION_RETENTION_DAYS", "0")
    monkeypatch.setenv("SITE_FACTORY_STORAGE_ROOT", "  /var/lib/site-factory  ")
    monkeypatch.setenv("SITE_FACTORY_PERSIST_VERSIONS", "off")
    monkeypatch.setenv("SITE_FACTORY_MODEL_PLANNER", "gpt-4.1")
    monkeypatch.setenv("SITE_FACTORY_MAX_HISTORY_MESSAGES", "8")

    settings = RuntimeSettings.from_env()
    assert settings.session_ttl == timedelta(hours=2)
    assert settings.version_retention_days == 0
    assert settings.storage_root == "/var/lib/site-factory"
    assert settings.persist_versions is False
    assert settings.model_planner == "gpt-4.1"
    assert settings.model_generator == "gpt-4o-mini"
    assert settings.max_history_messages == 8


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("SITE_FACTORY_SESSION_TTL_HOURS", "0"),
        ("SITE_FACTORY_SESSION_TTL_HOURS", "soon"),
        ("SITE_FACTORY_VERSION_RETENTION_DAYS", "-1"),
        ("SITE_FACTORY_PERSIST_VERSIONS", "maybe"),
        ("SITE_FACTORY_MODEL_GENERATOR", "   "),
        ("SITE_FACTORY_STORAGE_ROOT", ""),
    ],
)
def test_invalid_values_fail_fast(monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError, match=name):
        RuntimeSettings.from_env()


def test_storage_path_resolution(tmp_path: Path) -> None:
    assert RuntimeSettings().storage_path(tmp_path) == tmp_path / "storage"
    absolute = tmp_path / "elsewhere"
    assert RuntimeSettings(storage_root=str(absolute)).storage_path(Path("/unused")) == absolute
