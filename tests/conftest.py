from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime, timedelta

import pytest

from site_factory.models import BuildError, Plan, PlanIntent, ProjectContext


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class ScriptedGenerator:
    """Returns queued file sets in order; records every call it receives."""

    def __init__(self, *outputs: Mapping[str, str], intent: PlanIntent = PlanIntent.MODIFY) -> None:
        self.outputs = [dict(output) for output in outputs]
        self.intent = intent
        self.fix_output: dict[str, str] = {}
        self.plan_error: Exception | None = None
        self.contexts: list[ProjectContext] = []
        self.existing: list[dict[str, str]] = []
        self.fix_calls: list[BuildError] = []
        self.extra_affected: list[str] = []

    def plan(self, prompt: str, context: ProjectContext) -> Plan:
        self.contexts.append(context)
        if self.plan_error is not None:
            raise self.plan_error
        affected = sorted(set(self.outputs[0] if self.outputs else ()) | set(self.extra_affected))
        return Plan(intent=self.intent, affected_files=affected, reasoning=f"handle: {prompt}", steps=["write files"])

    def generate(self, plan: Plan, context: ProjectContext, existing_files: Mapping[str, str]) -> dict[str, str]:
        self.existing.append(dict(existing_files))
        return self.outputs.pop(0)

    def fix(self, error: BuildError, files: Mapping[str, str], context: ProjectContext) -> dict[str, str]:
        self.fix_calls.append(error)
        return dict(self.fix_output)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
