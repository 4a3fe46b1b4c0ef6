from __future__ import annotations

import json
import logging
from collections.abc import Callable, Mapping
from contextlib import contextmanager
from typing import Any, Iterator, Literal, TypedDict

from langgraph.graph import END, START, StateGraph

from .context import ContextManager, extract_dependencies
from .errors import BuildValidationError, SessionBusyError, SessionNotFoundError
from .generation import SiteGenerator
from .models import (
    SESSION_STATE_TRANSITIONS,
    BuildError,
    FileDiff,
    PipelineEvent,
    Plan,
    PlanIntent,
    ProjectContext,
    SessionState,
    Version,
    VersionStatus,
)
from .paths import normalize_path
from .sessions import SessionLifecycle
from .storage import StorageAdapter
from .versions import VersionRegistry
from .vfs import VirtualFileStore, diff_file_maps

logger = logging.getLogger(__name__)

Validator = Callable[[Mapping[str, str]], str | None]
EventSink = Callable[[PipelineEvent], None]


def default_validator(files: Mapping[str, str]) -> str | None:
    """Cheap structural checks; returns an error log or ``None`` when the file set passes."""
    if not files:
        return "Generated file set is empty"
    manifest = files.get("package.json")
    if manifest is not None:
        try:
            json.loads(manifest)
        except json.JSONDecodeError as exc:
            return f"package.json is not valid JSON: {exc}"
    return None


@contextmanager
def hold_session(lifecycle: SessionLifecycle, session_id: str) -> Iterator[None]:
    """Hold the session's run lock for the duration of the context.

    Raises:
        SessionBusyError: If another run already holds the lock.
    """
    if not lifecycle.lock_session(session_id):
        raise SessionBusyError(session_id)
    try:
        yield
    finally:
        lifecycle.unlock_session(session_id)


class PipelineState(TypedDict, total=False):
    mode: Literal["prompt", "fix"]
    session_id: str
    prompt: str
    build_error: BuildError
    base_files: dict[str, str]
    context: ProjectContext
    plan: Plan
    generated: dict[str, str]
    version_id: str
    error_log: str | None


class PipelineCoordinator:
    """Drives one generation (or repair) cycle per call through a LangGraph pipeline.

    Prompt cycle: prepare -> plan -> generate -> commit -> validate -> finalize | reject.
    Repair cycle: prepare_fix -> fix -> commit -> validate -> finalize | reject.

    The whole run executes under the session's advisory lock. Any exception
    moves the session to ``FAILED`` (when the state machine allows it) before
    propagating, and the lock is released on every exit path.
    """

    def __init__(
        self,
        *,
        sessions: SessionLifecycle,
        versions: VersionRegistry,
        workspace_for: Callable[[str], VirtualFileStore],
        generator: SiteGenerator,
        context_manager: ContextManager | None = None,
        validator: Validator = default_validator,
        storage: StorageAdapter | None = None,
        event_sink: EventSink | None = None,
    ) -> None:
        self.sessions = sessions
        self.versions = versions
        self.workspace_for = workspace_for
        self.generator = generator
        self.context_manager = context_manager or ContextManager()
        self.validator = validator
        self.storage = storage
        self.event_sink = event_sink
        self.prompt_graph = self._build_prompt_graph().compile()
        self.fix_graph = self._build_fix_graph().compile()

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    def execute(self, session_id: str, prompt: str) -> str:
        """Run prompt -> plan -> generate -> commit -> validate and return the new version id.

        Raises:
            SessionNotFoundError: If the session is unknown or expired.
            SessionBusyError: If a run is already in flight for the session.
            BuildValidationError: If the generated files fail validation.
        """
        if not prompt.strip():
            raise ValueError("prompt must be non-empty")
        return self._run(self.prompt_graph, {"mode": "prompt", "session_id": session_id, "prompt": prompt})

    def fix_errors(self, session_id: str, build_error: BuildError) -> str:
        """Ask the generator to repair the current version and return the repaired version id.

        Raises:
            SessionNotFoundError: If the session is unknown or expired.
            SessionBusyError: If a run is already in flight for the session.
            ValueError: If the session has no current version to repair.
        """
        return self._run(
            self.fix_graph,
            {"mode": "fix", "session_id": session_id, "build_error": build_error},
        )

    # ------------------------------------------------------------------
    # Graph construction
    # ------------------------------------------------------------------

    def _build_prompt_graph(self) -> StateGraph:
        graph = StateGraph(PipelineState)
        graph.add_node("prepare", self._prepare_node)
        graph.add_node("plan", self._plan_node)
        graph.add_node("generate", self._generate_node)
        self._add_commit_nodes(graph)
        graph.add_edge(START, "prepare")
        graph.add_edge("prepare", "plan")
        graph.add_edge("plan", "generate")
        graph.add_edge("generate", "commit")
        return graph

    def _build_fix_graph(self) -> StateGraph:
        graph = StateGraph(PipelineState)
        graph.add_node("prepare_fix", self._prepare_fix_node)
        graph.add_node("fix", self._fix_node)
        self._add_commit_nodes(graph)
        graph.add_edge(START, "prepare_fix")
        graph.add_edge("prepare_fix", "fix")
        graph.add_edge("fix", "commit")
        return graph

    def _add_commit_nodes(self, graph: StateGraph) -> None:
        graph.add_node("commit", self._commit_node)
        graph.add_node("validate", self._validate_node)
        graph.add_node("finalize", self._finalize_node)
        graph.add_node("reject", self._reject_node)
        graph.add_edge("commit", "validate")
        graph.add_conditional_edges(
            "validate",
            self._validate_route,
            {
                "finalize": "finalize",
                "reject": "reject",
            },
        )
        graph.add_edge("finalize", END)
        graph.add_edge("reject", END)

    # ------------------------------------------------------------------
    # Run wrapper
    # ------------------------------------------------------------------

    def _run(self, graph: Any, initial: PipelineState) -> str:
        session_id = initial["session_id"]
        if self.sessions.get_session(session_id) is None:
            raise SessionNotFoundError(f"Session not found: {session_id}")

        with hold_session(self.sessions, session_id):
            try:
                result = graph.invoke(initial)
            except Exception as exc:
                logger.exception("Pipeline run for session %s failed", session_id)
                self._fail(session_id, str(exc) or type(exc).__name__)
                raise
        return result["version_id"]

    def _fail(self, session_id: str, message: str) -> None:
        session = self.sessions.get_session(session_id)
        if session is None:
            return
        # A version minted by this run is current but not yet promoted to last valid.
        if session.current_version is not None and session.current_version != session.last_valid_version:
            version = self.versions.get_version(session.current_version)
            if version is not None and version.status is not VersionStatus.FAILED:
                failed = self.versions.update_version_status(version.id, VersionStatus.FAILED, message)
                try:
                    self._persist(session_id, failed)
                except Exception:
                    logger.exception("Could not persist failed version %s", failed.id)
        if SessionState.FAILED in SESSION_STATE_TRANSITIONS[session.state]:
            self.sessions.transition_state(session_id, SessionState.FAILED, message)
        else:
            logger.warning(
                "Session %s cannot move from %s to FAILED; leaving state unchanged",
                session_id,
                session.state.value,
            )
        self._emit("error", session_id, message=message)

    # ------------------------------------------------------------------
    # Prompt cycle nodes
    # ------------------------------------------------------------------

    def _prepare_node(self, state: PipelineState) -> dict[str, Any]:
        session_id = state["session_id"]
        self.context_manager.add_message(session_id, "user", state["prompt"])
        current = self._current_version(session_id)

        dependencies = []
        if current is not None and "package.json" in current.files:
            dependencies = extract_dependencies(current.files["package.json"])
        context = self.context_manager.build_context(
            session_id,
            current,
            self._recent_changes(session_id),
            dependencies,
        )
        return {
            "context": self.context_manager.compress_context(context),
            "base_files": dict(current.files) if current is not None else {},
        }

    def _plan_node(self, state: PipelineState) -> dict[str, Any]:
        session_id = state["session_id"]
        self._transition(session_id, SessionState.GENERATING, "Planning changes")
        plan = self.generator.plan(state["prompt"], state["context"])
        self.context_manager.add_message(session_id, "assistant", f"Planning: {plan.reasoning}")
        self._emit("progress", session_id, step="plan", intent=plan.intent.value, files=plan.affected_files)
        return {"plan": plan}

    def _generate_node(self, state: PipelineState) -> dict[str, Any]:
        generated = self.generator.generate(state["plan"], state["context"], state["base_files"])
        self._emit("progress", state["session_id"], step="generate", files=sorted(generated))
        return {"generated": generated}

    # ------------------------------------------------------------------
    # Repair cycle nodes
    # ------------------------------------------------------------------

    def _prepare_fix_node(self, state: PipelineState) -> dict[str, Any]:
        session_id = state["session_id"]
        current = self._current_version(session_id)
        if current is None:
            raise ValueError(f"Session {session_id} has no current version to fix")
        self._transition(session_id, SessionState.FIXING, "Fixing errors")
        context = self.context_manager.build_context(session_id, current, self._recent_changes(session_id))
        return {"context": context, "base_files": dict(current.files)}

    def _fix_node(self, state: PipelineState) -> dict[str, Any]:
        fixed = self.generator.fix(state["build_error"], state["base_files"], state["context"])
        self._emit("progress", state["session_id"], step="fix", files=sorted(fixed))
        return {"generated": fixed}

    # ------------------------------------------------------------------
    # Shared commit / validate nodes
    # ------------------------------------------------------------------

    def _commit_node(self, state: PipelineState) -> dict[str, Any]:
        session_id = state["session_id"]
        rebuilding = state["mode"] == "fix"
        self._transition(session_id, SessionState.BUILDING, "Rebuilding" if rebuilding else "Committing changes")

        workspace = self.workspace_for(session_id)
        plan = state.get("plan")
        if plan is not None and plan.intent is PlanIntent.CREATE:
            workspace.clear()
        else:
            workspace.load(state["base_files"])

        generated = state["generated"]
        for path, content in generated.items():
            workspace.write(path, content)
        if plan is not None and plan.intent is PlanIntent.DELETE:
            returned = {normalize_path(path) for path in generated}
            for path in plan.affected_files:
                if normalize_path(path) not in returned:
                    workspace.delete(path)

        version = self.versions.create_version(session_id, workspace.get_all_files(), VersionStatus.BUILDING)
        self.sessions.set_current_version(session_id, version.id)
        self._emit("status", session_id, state=SessionState.BUILDING.value, version_id=version.id)
        return {"version_id": version.id}

    def _validate_node(self, state: PipelineState) -> dict[str, Any]:
        session_id = state["session_id"]
        self._transition(session_id, SessionState.VALIDATING, "Validating build")
        version = self.versions.get_version(state["version_id"])
        files = version.files if version is not None else {}
        return {"error_log": self.validator(files)}

    @staticmethod
    def _validate_route(state: PipelineState) -> str:
        return "reject" if state.get("error_log") else "finalize"

    def _finalize_node(self, state: PipelineState) -> dict[str, Any]:
        session_id = state["session_id"]
        previous = self._last_valid_version(session_id)
        version = self.versions.update_version_status(state["version_id"], VersionStatus.VALID)
        # Persist before READY so a storage failure leaves last_valid_version untouched.
        self._persist(session_id, version)
        unchanged = previous is not None and previous.fingerprint == version.fingerprint
        if unchanged:
            logger.info("Version %s has the same content as %s", version.id, previous.id)
        self._transition(session_id, SessionState.READY, "Fix complete" if state["mode"] == "fix" else "Build complete")

        if state["mode"] == "prompt":
            self.context_manager.add_message(
                session_id,
                "assistant",
                f"Generated {len(state['generated'])} files based on: {state['plan'].reasoning}",
            )
        self._emit(
            "done",
            session_id,
            version_id=version.id,
            files=len(version.files),
            fingerprint=version.fingerprint,
            unchanged=unchanged,
        )
        return {}

    def _reject_node(self, state: PipelineState) -> dict[str, Any]:
        error_log = state["error_log"] or "validation failed"
        version = self.versions.update_version_status(state["version_id"], VersionStatus.FAILED, error_log)
        self._persist(state["session_id"], version)
        raise BuildValidationError(version.id, error_log)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _current_version(self, session_id: str) -> Version | None:
        session = self.sessions.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session not found: {session_id}")
        if session.current_version is None:
            return None
        return self.versions.get_version(session.current_version)

    def _last_valid_version(self, session_id: str) -> Version | None:
        session = self.sessions.get_session(session_id)
        if session is None or session.last_valid_version is None:
            return None
        return self.versions.get_version(session.last_valid_version)

    def _recent_changes(self, session_id: str) -> list[FileDiff]:
        history = self.versions.get_session_versions(session_id)
        if len(history) < 2:
            return []
        return diff_file_maps(history[-2].files, history[-1].files)

    def _transition(self, session_id: str, target: SessionState, note: str) -> None:
        self.sessions.transition_state(session_id, target, note)
        self._emit("status", session_id, state=target.value, note=note)

    def _persist(self, session_id: str, version: Version) -> None:
        if self.storage is not None:
            self.storage.save(session_id, version)

    def _emit(self, event_type: Literal["status", "progress", "error", "done"], session_id: str, **data: Any) -> None:
        if self.event_sink is None:
            return
        self.event_sink(PipelineEvent(type=event_type, session_id=session_id, data=data))
