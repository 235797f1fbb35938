"""In-memory registry of interactive test-run sessions."""

import threading
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from ..models.execution import RunnerState, utc_now
from ..models.graph import WorkflowGraph
from .exceptions import GraphValidationError, SessionNotFoundError
from .http_client import ActionHttpClient
from .logging import get_logger, logging_context
from .runner import DEFAULT_MAX_STEPS_PER_RUN, WorkflowRunner
from .validation import validate_graph


logger = get_logger(__name__)

DEFAULT_MAX_SESSIONS = 100
DEFAULT_SESSION_IDLE_TIMEOUT = 3600.0


class TestSession:
    """One runner plus the lock serialising calls into it."""

    __test__ = False  # not a pytest test class

    def __init__(self, session_id: str, runner: WorkflowRunner):
        self.id = session_id
        self.runner = runner
        self.created_at: datetime = utc_now()
        self.updated_at: datetime = self.created_at
        self.lock = threading.RLock()

    def call(self, operation: Callable[[WorkflowRunner], Any]) -> Any:
        with self.lock, logging_context(session_id=self.id):
            result = operation(self.runner)
            self.updated_at = utc_now()
            return result

    def state(self) -> RunnerState:
        with self.lock:
            return self.runner.get_current_state()


class SessionManager:
    """Creates, looks up and removes test sessions.

    Every session runner shares the same HTTP client and execution store.
    Sessions idle for longer than ``session_idle_timeout`` seconds are
    evicted, and at most ``max_sessions`` are kept; when full, finished
    sessions go before active ones, least recently used first.
    """

    def __init__(
        self,
        execution_store=None,
        http_client: Optional[ActionHttpClient] = None,
        max_steps_per_run: int = DEFAULT_MAX_STEPS_PER_RUN,
        max_sessions: int = DEFAULT_MAX_SESSIONS,
        session_idle_timeout: float = DEFAULT_SESSION_IDLE_TIMEOUT,
    ):
        self.execution_store = execution_store
        self.http_client = http_client or ActionHttpClient()
        self.max_steps_per_run = max_steps_per_run
        self.max_sessions = max_sessions
        self.session_idle_timeout = session_idle_timeout
        self._sessions: Dict[str, TestSession] = {}
        self._lock = threading.RLock()

    def create_session(self, graph: WorkflowGraph, start: bool = True) -> TestSession:
        """Validate ``graph``, create a runner for it and optionally start it.

        Raises:
            GraphValidationError: If the graph has structural errors
        """
        result = validate_graph(graph)
        if not result.is_valid:
            raise GraphValidationError(
                f"Workflow '{graph.name}' failed validation",
                validation_errors=result.errors,
                workflow_id=graph.id or None,
            ).add_details(warnings=result.warnings)

        runner = WorkflowRunner(
            graph,
            http_client=self.http_client,
            persister=self.execution_store,
            max_steps_per_run=self.max_steps_per_run,
        )
        session = TestSession(f"session-{uuid.uuid4().hex[:12]}", runner)

        with self._lock:
            evicted = self._take_idle()
            overflow = len(self._sessions) - self.max_sessions + 1
            if overflow > 0:
                # Finished sessions first, then least recently used
                candidates = sorted(
                    self._sessions.values(),
                    key=lambda s: (s.runner.is_running, s.updated_at)
                )
                for victim in candidates[:overflow]:
                    evicted.append(self._sessions.pop(victim.id))
            self._sessions[session.id] = session
        self._close(evicted, reason="evicted")
        logger.info(f"Created test session {session.id} for workflow '{graph.name}'")

        if start:
            session.call(lambda r: r.start())
        return session

    def get_session(self, session_id: str) -> TestSession:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def list_sessions(self) -> List[TestSession]:
        self.evict_idle_sessions()
        with self._lock:
            return list(self._sessions.values())

    def delete_session(self, session_id: str) -> bool:
        """Remove a session, cancelling its run if still active."""
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        self._close([session], reason="deleted")
        return True

    def evict_idle_sessions(self) -> int:
        """Drop sessions idle past the timeout; returns how many were dropped."""
        with self._lock:
            evicted = self._take_idle()
        self._close(evicted, reason="expired")
        return len(evicted)

    def active_count(self) -> int:
        return sum(1 for session in self.list_sessions() if session.runner.is_running)

    def _take_idle(self) -> List[TestSession]:
        cutoff = utc_now() - timedelta(seconds=self.session_idle_timeout)
        expired = [s for s in self._sessions.values() if s.updated_at < cutoff]
        for session in expired:
            del self._sessions[session.id]
        return expired

    @staticmethod
    def _close(sessions: List[TestSession], reason: str):
        # Stopping persists a cancelled record for runs still in flight
        for session in sessions:
            session.call(lambda r: r.stop())
            logger.info(f"Test session {session.id} {reason}")
