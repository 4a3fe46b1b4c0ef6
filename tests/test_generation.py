from __future__ import annotations

from typing import Any

import pytest

from site_factory.generation import LLMSiteGenerator, build_fix_prompt, build_planning_prompt
from site_factory.llm import StructuredOutputAdapter, ensure_openai_api_key, normalize_structured_output
from site_factory.models import (
    BuildError,
    DiffType,
    FileDiff,
    GeneratedFileSet,
    Message,
    Plan,
    PlanIntent,
    ProjectContext,
)


class RecordingRunnable:
    def __init__(self, response: Any) -> None:
        self.response = response
        self.prompts: list[str] = []

    def invoke(self, input: Any) -> Any:  # noqa: A002
        self.prompts.append(input)
        return self.response


def _generator(plan_response: Any, files_response: Any) -> tuple[LLMSiteGenerator, RecordingRunnable, RecordingRunnable]:
    planner = RecordingRunnable(plan_response)
    writer = RecordingRunnable(files_response)
    generator = LLMSiteGenerator(
        planner_model="unused",
        generator_model="unused",
        planner=StructuredOutputAdapter(schema=Plan, runnable=planner),
        writer=StructuredOutputAdapter(schema=GeneratedFileSet, runnable=writer),
    )
    return generator, planner, writer


def test_plan_and_generate_through_adapters() -> None:
    plan_payload = {"intent": "ADD", "affected_files": ["about.html"], "reasoning": "new page", "steps": ["write it"]}
    files_payload = {"files": [{"path": "about.html", "content": "<h1>About</h1>"}]}
    generator, planner, writer = _generator(plan_payload, files_payload)
    context = ProjectContext(
        existing_files=["index.html"],
        recent_changes=[FileDiff(path="index.html", change_type=DiffType.MODIFIED, old_content="a", new_content="b")],
        conversation_history=[Message(role="user", content="hello")],
    )

    plan = generator.plan("add an about page", context)
    assert plan.intent is PlanIntent.ADD
    assert "add an about page" in planner.prompts[0]
    assert "modified: index.html" in planner.prompts[0]
    assert "user: hello" in planner.prompts[0]

    files = generator.generate(plan, context, {"index.html": "<h1>Home</h1>"})
    assert files == {"about.html": "<h1>About</h1>"}
    assert "// File: index.html" in writer.prompts[0]


def test_fix_prompt_targets_failing_file() -> None:
    generator, _, writer = _generator({}, GeneratedFileSet(files=[]))
    error = BuildError(category="type", message="x is not a number", file="src/a.ts", line=4)
    assert generator.fix(error, {"src/a.ts": "let x = 'a'", "src/b.ts": "ok"}, ProjectContext()) == {}

    prompt = writer.prompts[0]
    assert "Error in src/a.ts at line 4" in prompt
    assert "src/b.ts" not in prompt
    assert "src/b.ts" in build_fix_prompt(BuildError(category="runtime", message="boom"), {"src/b.ts": "ok"})


def test_planning_prompt_for_new_project() -> None:
    assert "No existing files (new project)" in build_planning_prompt("make a blog", ProjectContext())


def test_normalize_structured_output_envelopes() -> None:
    plan = Plan(intent=PlanIntent.MODIFY, affected_files=[], reasoning="r")
    assert normalize_structured_output(raw_output=plan, schema=Plan) is plan
    assert normalize_structured_output(raw_output={"parsed": plan, "parsing_error": None}, schema=Plan) is plan

    with pytest.raises(RuntimeError, match="parsing failed"):
        normalize_structured_output(raw_output={"parsed": None, "parsing_error": ValueError("bad")}, schema=Plan)
    with pytest.raises(RuntimeError, match="validation failed"):
        normalize_structured_output(raw_output={"intent": "EXPLODE"}, schema=Plan)
    with pytest.raises(RuntimeError, match="unsupported payload"):
        normalize_structured_output(raw_output="plain text", schema=Plan)


def test_missing_api_key(monkeypatch: pytest.MonkeyPatch, tmp_path: Any) -> None:
    # setenv first so teardown restores whatever load_dotenv writes
    monkeypatch.setenv("OPENAI_API_KEY", "placeholder")
    monkeypatch.delenv("OPENAI_API_KEY")
    with pytest.raises(RuntimeError, match="OPENAI_API_KEY"):
        ensure_openai_api_key(repo_root=tmp_path)

    (tmp_path / ".env").write_text("OPENAI_API_KEY=sk-test\n", encoding="utf-8")
    assert ensure_openai_api_key(repo_root=tmp_path) == "sk-test"
