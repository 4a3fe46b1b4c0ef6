"""Boundary to the hosted model that plans and writes site files.

The pipeline only depends on the ``SiteGenerator`` protocol; ``LLMSiteGenerator``
is the production implementation over LangChain structured output.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Protocol

from .llm import StructuredOutputAdapter, get_structured_chat_model
from .models import BuildError, GeneratedFileSet, Plan, ProjectContext

logger = logging.getLogger(__name__)


class SiteGenerator(Protocol):
    def plan(self, prompt: str, context: ProjectContext) -> Plan:
        ...

    def generate(self, plan: Plan, context: ProjectContext, existing_files: Mapping[str, str]) -> dict[str, str]:
        ...

    def fix(self, error: BuildError, files: Mapping[str, str], context: ProjectContext) -> dict[str, str]:
        ...


def render_files(files: Mapping[str, str]) -> str:
    return "\n\n---\n\n".join(f"// File: {path}\n{content}" for path, content in files.items())


def build_planning_prompt(prompt: str, context: ProjectContext) -> str:
    existing = (
        f"Existing files: {', '.join(context.existing_files)}"
        if context.existing_files
        else "No existing files (new project)"
    )
    changes = "\n".join(f"- {change.change_type.value}: {change.path}" for change in context.recent_changes)
    history = "\n".join(f"{message.role}: {message.content}" for message in context.conversation_history)
    dependencies = ", ".join(f"{package.name}@{package.version}" for package in context.dependencies)
    return (
        "You are the planner for a website generator. Analyze the user's request and produce a plan.\n\n"
        f'User request: "{prompt}"\n\n'
        f"{existing}\n"
        + (f"\nRecent changes:\n{changes}\n" if changes else "")
        + (f"\nConversation so far:\n{history}\n" if history else "")
        + (f"\nDeclared dependencies: {dependencies}\n" if dependencies else "")
        + "\nUse intent CREATE only when the whole project should be replaced. "
        "List every file to create, modify, or delete in affected_files using relative paths."
    )


def build_generation_prompt(plan: Plan, existing_files: Mapping[str, str]) -> str:
    existing = render_files(existing_files)
    return (
        "You are a code generator. Produce the files needed to implement this plan.\n\n"
        f"Intent: {plan.intent.value}\n"
        f"Affected files: {', '.join(plan.affected_files)}\n"
        f"Reasoning: {plan.reasoning}\n"
        f"Steps: {'; '.join(plan.steps)}\n\n"
        + (f"Existing files:\n{existing}\n\n" if existing else "")
        + "Return only files listed in affected_files, each with its full new content. "
        "Omit files that should be deleted."
    )


def build_fix_prompt(error: BuildError, files: Mapping[str, str]) -> str:
    location = "Build error"
    if error.file:
        location = f"Error in {error.file}" + (f" at line {error.line}" if error.line else "")
    relevant = {error.file: files[error.file]} if error.file and error.file in files else dict(files)
    return (
        "You are a code fixer. Fix this build error.\n\n"
        f"{location}\n"
        f"Category: {error.category}\n"
        f"Error: {error.message}\n"
        + (f"Stack: {error.stack}\n" if error.stack else "")
        + f"\nFiles to fix:\n{render_files(relevant)}\n\n"
        "Return only the files you changed, each with its full content."
    )


class LLMSiteGenerator:
    """``SiteGenerator`` backed by OpenAI chat models with schema-bound output."""

    def __init__(
        self,
        *,
        planner_model: str,
        generator_model: str,
        planner: StructuredOutputAdapter[Plan] | None = None,
        writer: StructuredOutputAdapter[GeneratedFileSet] | None = None,
    ) -> None:
        self._planner = planner or get_structured_chat_model(
            model_name=planner_model,
            schema=Plan,
            temperature=0.3,
        )
        self._writer = writer or get_structured_chat_model(
            model_name=generator_model,
            schema=GeneratedFileSet,
            temperature=0.7,
        )

    def plan(self, prompt: str, context: ProjectContext) -> Plan:
        plan = self._planner.invoke(build_planning_prompt(prompt, context))
        logger.info("Planned %s touching %d files", plan.intent.value, len(plan.affected_files))
        return plan

    def generate(self, plan: Plan, context: ProjectContext, existing_files: Mapping[str, str]) -> dict[str, str]:
        return self._writer.invoke(build_generation_prompt(plan, existing_files)).as_mapping()

    def fix(self, error: BuildError, files: Mapping[str, str], context: ProjectContext) -> dict[str, str]:
        return self._writer.invoke(build_fix_prompt(error, files)).as_mapping()
