"""
Session store interface and in-memory implementation.

Sessions are the only shared mutable resource.  Every write that changes
status or sets the trigger goes through ``compare_and_set``: a single atomic
read-modify-write conditioned on the current status (and, for trigger
acceptance, on the trigger field being unset).  Callers that decided on a
change from an earlier read also pin the ``version`` they read.  A backing
database implements it as one conditional ``UPDATE ... WHERE status IN (...)
AND trigger IS NULL AND version = ?``; ``InMemorySessionStore`` uses a lock.

Reads return copies; mutating a returned session never changes the store.
"""

from __future__ import annotations

import abc
import threading
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from dateguard.models import OPEN_STATUSES, Session, SessionStatus, TriggerRecord


class SessionNotFoundError(KeyError):
    """Raised when a session id is unknown to the store."""


class SessionStore(abc.ABC):
    """The narrow data-access interface the orchestrator depends on."""

    @abc.abstractmethod
    def create(self, session: Session) -> Session:
        """Persist a new session.  Raises ``ValueError`` on a duplicate id."""

    @abc.abstractmethod
    def get(self, session_id: str) -> Session:
        """Load a session.  Raises ``SessionNotFoundError``."""

    @abc.abstractmethod
    def list_by_status(self, statuses: Iterable[SessionStatus]) -> list[Session]:
        """All sessions currently in one of ``statuses``."""

    @abc.abstractmethod
    def compare_and_set(
        self,
        session_id: str,
        expected_statuses: Iterable[SessionStatus],
        changes: dict[str, Any],
        require_no_trigger: bool = False,
        expected_version: Optional[int] = None,
    ) -> Optional[Session]:
        """Atomically apply ``changes`` if the preconditions hold.

        Args:
            session_id: Session to update.
            expected_statuses: The update applies only if the current status
                is one of these.
            changes: Field values to set.
            require_no_trigger: Additionally require ``trigger is None``.
            expected_version: Additionally require the session to be
                unchanged since it was read at this version.

        Returns:
            The updated session, or None if a precondition failed.

        Raises:
            SessionNotFoundError: If the session does not exist.
        """

    # -- conveniences built on compare_and_set --

    def list_open(self) -> list[Session]:
        return self.list_by_status(OPEN_STATUSES)

    def set_trigger_if_unset(
        self,
        session_id: str,
        trigger: TriggerRecord,
        expected_statuses: Iterable[SessionStatus],
        new_status: SessionStatus = SessionStatus.ESCALATING,
        expected_version: Optional[int] = None,
    ) -> Optional[Session]:
        """The trigger-acceptance CAS: set trigger and status iff no trigger yet."""
        return self.compare_and_set(
            session_id,
            expected_statuses,
            {"trigger": trigger, "status": new_status},
            require_no_trigger=True,
            expected_version=expected_version,
        )


class InMemorySessionStore(SessionStore):
    """Thread-safe, process-local ``SessionStore``."""

    def __init__(self, sessions: Iterable[Session] = ()) -> None:
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()
        for session in sessions:
            self.create(session)

    def create(self, session: Session) -> Session:
        with self._lock:
            if session.session_id in self._sessions:
                raise ValueError(f"Session '{session.session_id}' already exists.")
            self._sessions[session.session_id] = session.model_copy(deep=True)
        return session.model_copy(deep=True)

    def get(self, session_id: str) -> Session:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            return session.model_copy(deep=True)

    def list_by_status(self, statuses: Iterable[SessionStatus]) -> list[Session]:
        wanted = set(statuses)
        with self._lock:
            return [
                s.model_copy(deep=True)
                for s in self._sessions.values()
                if s.status in wanted
            ]

    def compare_and_set(
        self,
        session_id: str,
        expected_statuses: Iterable[SessionStatus],
        changes: dict[str, Any],
        require_no_trigger: bool = False,
        expected_version: Optional[int] = None,
    ) -> Optional[Session]:
        expected = set(expected_statuses)
        with self._lock:
            current = self._sessions.get(session_id)
            if current is None:
                raise SessionNotFoundError(session_id)
            if current.status not in expected:
                return None
            if require_no_trigger and current.trigger is not None:
                return None
            if "trigger" in changes and current.trigger is not None:
                return None
            if expected_version is not None and current.version != expected_version:
                return None

            update = dict(changes)
            update["version"] = current.version + 1
            update.setdefault("updated_at", datetime.now(timezone.utc))
            updated = current.model_copy(update=update, deep=True)
            self._sessions[session_id] = updated
            return updated.model_copy(deep=True)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions
