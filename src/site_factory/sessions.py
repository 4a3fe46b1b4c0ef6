from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from .errors import InvalidTransitionError, SessionNotFoundError
from .models import SESSION_STATE_TRANSITIONS, Session, SessionState, utcnow

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TTL = timedelta(hours=24)


def new_session_id() -> str:
    return f"session-{uuid.uuid4().hex}"


class SessionLifecycle:
    """Session table, state machine, and advisory per-session run locks.

    All bookkeeping is guarded by one process-wide ``threading.Lock`` that is
    only ever held for in-memory updates. The per-session run lock is a
    boolean flag: ``lock_session`` is a non-blocking test-and-set, and a
    caller that gets ``False`` must reject its request rather than wait.
    """

    def __init__(
        self,
        *,
        session_ttl: timedelta = DEFAULT_SESSION_TTL,
        clock: Callable[[], datetime] = utcnow,
        id_factory: Callable[[], str] = new_session_id,
    ) -> None:
        if session_ttl <= timedelta(0):
            raise ValueError(f"session_ttl must be positive, got: {session_ttl}")
        self.session_ttl = session_ttl
        self._clock = clock
        self._id_factory = id_factory
        self._sessions: dict[str, Session] = {}
        self._locks: dict[str, bool] = {}
        self._guard = threading.Lock()

    def create_session(self, user_id: str = "anonymous", metadata: dict[str, Any] | None = None) -> Session:
        now = self._clock()
        session = Session(
            id=self._id_factory(),
            user_id=user_id,
            state=SessionState.CREATED,
            created_at=now,
            expires_at=now + self.session_ttl,
            metadata=metadata,
        )
        with self._guard:
            self._sessions[session.id] = session
            self._locks[session.id] = False
        logger.info("Created session %s for user %s", session.id, user_id)
        return session

    def get_session(self, session_id: str) -> Session | None:
        """Return the live session, evicting it first if it has expired."""
        with self._guard:
            return self._live_session(session_id)

    def list_sessions(self) -> list[Session]:
        now = self._clock()
        with self._guard:
            return [session for session in self._sessions.values() if not session.is_expired(now)]

    def transition_state(self, session_id: str, new_state: SessionState, note: str = "") -> Session:
        """Move a session to *new_state* if the transition table allows it.

        Entering ``READY`` promotes ``current_version`` to
        ``last_valid_version``.

        Raises:
            SessionNotFoundError: If the session is unknown or expired.
            InvalidTransitionError: If *new_state* is not reachable from the
                current state; the session is left unchanged.
        """
        new_state = SessionState(new_state)
        with self._guard:
            session = self._require_session(session_id)
            allowed = SESSION_STATE_TRANSITIONS[session.state]
            if new_state not in allowed:
                raise InvalidTransitionError(
                    session.state,
                    new_state,
                    sorted(allowed, key=lambda state: state.value),
                )
            previous = session.state
            update: dict[str, Any] = {"state": new_state}
            if new_state is SessionState.READY and session.current_version is not None:
                update["last_valid_version"] = session.current_version
            session = self._sessions[session_id] = session.model_copy(update=update)

        if note:
            logger.info("[Session %s] %s -> %s: %s", session_id, previous.value, new_state.value, note)
        else:
            logger.info("[Session %s] %s -> %s", session_id, previous.value, new_state.value)
        return session

    def set_current_version(self, session_id: str, version_id: str) -> Session:
        """Point the session at *version_id*; existence in the registry is not checked here.

        Raises:
            SessionNotFoundError: If the session is unknown or expired.
        """
        with self._guard:
            session = self._require_session(session_id).model_copy(update={"current_version": version_id})
            self._sessions[session_id] = session
        return session

    # ------------------------------------------------------------------
    # Advisory run locks
    # ------------------------------------------------------------------

    def lock_session(self, session_id: str) -> bool:
        with self._guard:
            if self._locks.get(session_id, False):
                logger.info("Session %s is already locked", session_id)
                return False
            self._locks[session_id] = True
            return True

    def unlock_session(self, session_id: str) -> None:
        with self._guard:
            self._locks.pop(session_id, None)

    def is_locked(self, session_id: str) -> bool:
        with self._guard:
            return self._locks.get(session_id, False)

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------

    def delete_session(self, session_id: str) -> None:
        with self._guard:
            self._evict(session_id)

    def cleanup_expired_sessions(self) -> int:
        """Evict every expired session and return how many were removed."""
        now = self._clock()
        with self._guard:
            expired = [session_id for session_id, session in self._sessions.items() if session.is_expired(now)]
            for session_id in expired:
                self._evict(session_id)
        if expired:
            logger.info("Evicted %d expired sessions", len(expired))
        return len(expired)

    def clear(self) -> None:
        """Drop every session and run lock, expired or not."""
        with self._guard:
            self._sessions.clear()
            self._locks.clear()

    # Callers of the helpers below must hold ``_guard``.

    def _live_session(self, session_id: str) -> Session | None:
        session = self._sessions.get(session_id)
        if session is not None and session.is_expired(self._clock()):
            logger.info("Session %s expired at %s; evicting", session_id, session.expires_at.isoformat())
            self._evict(session_id)
            return None
        return session

    def _require_session(self, session_id: str) -> Session:
        session = self._live_session(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session not found: {session_id}")
        return session

    def _evict(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
        self._locks.pop(session_id, None)
