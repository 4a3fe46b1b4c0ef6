from __future__ import annotations

import threading
from datetime import timedelta

import pytest
from pydantic import ValidationError

from site_factory import (
    SESSION_STATE_TRANSITIONS,
    InvalidTransitionError,
    SessionLifecycle,
    SessionNotFoundError,
    SessionState,
)

from .conftest import FakeClock


@pytest.fixture
def lifecycle(clock: FakeClock) -> SessionLifecycle:
    return SessionLifecycle(clock=clock)


def _drive_to(lifecycle: SessionLifecycle, session_id: str, target: SessionState) -> None:
    paths = {
        SessionState.CREATED: [],
        SessionState.GENERATING: [SessionState.GENERATING],
        SessionState.BUILDING: [SessionState.GENERATING, SessionState.BUILDING],
        SessionState.VALIDATING: [SessionState.GENERATING, SessionState.BUILDING, SessionState.VALIDATING],
        SessionState.READY: [
            SessionState.GENERATING,
            SessionState.BUILDING,
            SessionState.VALIDATING,
            SessionState.READY,
        ],
        SessionState.FAILED: [SessionState.FAILED],
        SessionState.FIXING: [SessionState.FAILED, SessionState.FIXING],
    }
    for state in paths[target]:
        lifecycle.transition_state(session_id, state)


def test_create_session_defaults(lifecycle: SessionLifecycle, clock: FakeClock) -> None:
    session = lifecycle.create_session("user-1", {"source": "test"})
    assert session.user_id == "user-1"
    assert lifecycle.get_session(session.id).state is SessionState.CREATED
    assert lifecycle.get_session(session.id).current_version is None
    assert lifecycle.get_session(session.id).last_valid_version is None
    assert session.created_at == clock.now
    assert session.expires_at == clock.now + timedelta(hours=24)
    assert session.metadata == {"source": "test"}
    assert lifecycle.is_locked(session.id) is False
    assert lifecycle.get_session(session.id) is session


def test_session_ids_are_unique(lifecycle: SessionLifecycle) -> None:
    ids = {lifecycle.create_session().id for _ in range(50)}
    assert len(ids) == 50


def test_happy_path_transitions(lifecycle: SessionLifecycle) -> None:
    session = lifecycle.create_session()
    for state in (SessionState.GENERATING, SessionState.BUILDING, SessionState.VALIDATING, SessionState.READY):
        lifecycle.transition_state(session.id, state, "step")
    assert lifecycle.get_session(session.id).state is SessionState.READY


@pytest.mark.parametrize("source", list(SessionState))
def test_transition_closure(lifecycle: SessionLifecycle, source: SessionState) -> None:
    for target in SessionState:
        session = lifecycle.create_session()
        _drive_to(lifecycle, session.id, source)
        assert lifecycle.get_session(session.id).state is source
        if target in SESSION_STATE_TRANSITIONS[source]:
            lifecycle.transition_state(session.id, target)
            assert lifecycle.get_session(session.id).state is target
        else:
            with pytest.raises(InvalidTransitionError) as excinfo:
                lifecycle.transition_state(session.id, target)
            assert lifecycle.get_session(session.id).state is source
            assert excinfo.value.current is source
            assert excinfo.value.target is target
            assert set(excinfo.value.allowed) == set(SESSION_STATE_TRANSITIONS[source])


def test_invalid_transition_message_names_states(lifecycle: SessionLifecycle) -> None:
    session = lifecycle.create_session()
    with pytest.raises(InvalidTransitionError) as excinfo:
        lifecycle.transition_state(session.id, SessionState.READY)
    message = str(excinfo.value)
    assert "CREATED" in message
    assert "READY" in message
    assert "FAILED" in message and "GENERATING" in message


def test_transition_unknown_session(lifecycle: SessionLifecycle) -> None:
    with pytest.raises(SessionNotFoundError):
        lifecycle.transition_state("session-missing", SessionState.GENERATING)
    with pytest.raises(SessionNotFoundError):
        lifecycle.set_current_version("session-missing", "v1")


def test_ready_promotes_current_version(lifecycle: SessionLifecycle) -> None:
    session = lifecycle.create_session()
    _drive_to(lifecycle, session.id, SessionState.VALIDATING)
    lifecycle.set_current_version(session.id, "v42")
    assert lifecycle.get_session(session.id).last_valid_version is None
    lifecycle.transition_state(session.id, SessionState.READY)
    assert lifecycle.get_session(session.id).last_valid_version == "v42"


def test_non_ready_transitions_keep_last_valid_version(lifecycle: SessionLifecycle) -> None:
    session = lifecycle.create_session()
    _drive_to(lifecycle, session.id, SessionState.VALIDATING)
    lifecycle.set_current_version(session.id, "v1")
    lifecycle.transition_state(session.id, SessionState.READY)

    lifecycle.set_current_version(session.id, "v2")
    for state in (SessionState.GENERATING, SessionState.BUILDING, SessionState.VALIDATING, SessionState.FAILED):
        lifecycle.transition_state(session.id, state)
        assert lifecycle.get_session(session.id).last_valid_version == "v1"
    assert lifecycle.get_session(session.id).current_version == "v2"


def test_ready_without_current_version_leaves_pointer_null(lifecycle: SessionLifecycle) -> None:
    session = lifecycle.create_session()
    _drive_to(lifecycle, session.id, SessionState.READY)
    assert lifecycle.get_session(session.id).last_valid_version is None


def test_lock_exclusivity(lifecycle: SessionLifecycle) -> None:
    session = lifecycle.create_session()
    assert lifecycle.lock_session(session.id) is True
    assert lifecycle.is_locked(session.id) is True
    assert lifecycle.lock_session(session.id) is False
    lifecycle.unlock_session(session.id)
    assert lifecycle.is_locked(session.id) is False
    assert lifecycle.lock_session(session.id) is True


def test_lock_is_test_and_set_under_threads(lifecycle: SessionLifecycle) -> None:
    session = lifecycle.create_session()
    barrier = threading.Barrier(16)
    results: list[bool] = []
    results_lock = threading.Lock()

    def attempt() -> None:
        barrier.wait()
        acquired = lifecycle.lock_session(session.id)
        with results_lock:
            results.append(acquired)

    threads = [threading.Thread(target=attempt) for _ in range(16)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert results.count(True) == 1


def test_delete_session_is_idempotent(lifecycle: SessionLifecycle) -> None:
    session = lifecycle.create_session()
    lifecycle.lock_session(session.id)
    lifecycle.delete_session(session.id)
    lifecycle.delete_session(session.id)
    assert lifecycle.get_session(session.id) is None
    assert lifecycle.is_locked(session.id) is False


def test_expired_session_evicted_on_read(lifecycle: SessionLifecycle, clock: FakeClock) -> None:
    session = lifecycle.create_session()
    clock.advance(hours=24)
    assert lifecycle.get_session(session.id) is session
    clock.advance(seconds=1)
    assert lifecycle.get_session(session.id) is None
    with pytest.raises(SessionNotFoundError):
        lifecycle.transition_state(session.id, SessionState.GENERATING)


def test_cleanup_expired_sessions(lifecycle: SessionLifecycle, clock: FakeClock) -> None:
    stale = [lifecycle.create_session() for _ in range(3)]
    clock.advance(hours=20)
    fresh = lifecycle.create_session()
    clock.advance(hours=5)

    assert lifecycle.cleanup_expired_sessions() == 3
    assert all(lifecycle.get_session(session.id) is None for session in stale)
    assert lifecycle.get_session(fresh.id) is fresh
    assert [session.id for session in lifecycle.list_sessions()] == [fresh.id]
    assert lifecycle.cleanup_expired_sessions() == 0


def test_custom_ttl(clock: FakeClock) -> None:
    lifecycle = SessionLifecycle(session_ttl=timedelta(hours=1), clock=clock)
    session = lifecycle.create_session()
    assert session.expires_at == clock.now + timedelta(hours=1)
    with pytest.raises(ValueError):
        SessionLifecycle(session_ttl=timedelta(0))


def test_sessions_are_read_only_views(lifecycle: SessionLifecycle) -> None:
    session = lifecycle.create_session()
    with pytest.raises(ValidationError):
        session.state = SessionState.READY  # type: ignore[misc]

    updated = lifecycle.transition_state(session.id, SessionState.GENERATING)
    assert session.state is SessionState.CREATED
    assert updated.state is SessionState.GENERATING
    assert lifecycle.get_session(session.id) is updated


def test_clear_drops_expired_sessions_and_locks(lifecycle: SessionLifecycle, clock: FakeClock) -> None:
    expired = lifecycle.create_session()
    live = lifecycle.create_session()
    lifecycle.lock_session(live.id)
    clock.advance(hours=25)

    lifecycle.clear()
    clock.now -= timedelta(hours=25)
    assert lifecycle.get_session(expired.id) is None
    assert lifecycle.get_session(live.id) is None
    assert lifecycle.is_locked(live.id) is False
