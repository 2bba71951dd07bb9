"""
Session Store
=============

In-memory, lock-guarded store of query sessions, their attempts, result
rows and feedback. A terminal session is frozen: no further status change
or attempt is accepted.
"""

import threading
from typing import Optional

from report_pilot.errors import InvalidSessionState, SessionNotFound
from report_pilot.models import (
    Citation,
    ExecutionResult,
    FailureCause,
    Feedback,
    QueryAttempt,
    QuerySession,
    SessionStatus,
    new_id,
    utc_now,
)


class SessionStore:
    """Thread-safe session repository."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._sessions: dict[str, QuerySession] = {}
        self._results: dict[str, ExecutionResult] = {}
        self._feedback: dict[str, list[Feedback]] = {}
        self._cancel_requested: set[str] = set()

    def create(self, user_id: str, data_source_id: str, question: str) -> QuerySession:
        session = QuerySession(
            session_id=new_id("ses"),
            user_id=user_id,
            data_source_id=data_source_id,
            question=question,
        )
        with self._lock:
            self._sessions[session.session_id] = session
        return session.snapshot()

    def _get(self, session_id: str) -> QuerySession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(f"Session not found: {session_id}")
        return session

    def get(self, session_id: str) -> QuerySession:
        with self._lock:
            return self._get(session_id).snapshot()

    def search(
        self,
        user_id: Optional[str] = None,
        data_source_id: Optional[str] = None,
        text: Optional[str] = None,
        limit: int = 50,
    ) -> list[QuerySession]:
        """Prompt history, newest first."""
        needle = (text or "").lower()
        with self._lock:
            sessions = [
                s.snapshot()
                for s in self._sessions.values()
                if (user_id is None or s.user_id == user_id)
                and (data_source_id is None or s.data_source_id == data_source_id)
                and (not needle or needle in s.question.lower())
            ]
        sessions.sort(key=lambda s: s.created_at, reverse=True)
        return sessions[:limit]

    def mark_running(self, session_id: str) -> QuerySession:
        with self._lock:
            session = self._get(session_id)
            if session.status.is_terminal:
                raise InvalidSessionState(
                    f"Session {session_id} is already {session.status.value}"
                )
            session.status = SessionStatus.RUNNING
            return session.snapshot()

    def append_attempt(self, attempt: QueryAttempt) -> None:
        with self._lock:
            session = self._get(attempt.session_id)
            if session.status.is_terminal:
                raise InvalidSessionState(
                    f"Session {attempt.session_id} is {session.status.value}; attempts are frozen"
                )
            session.attempts.append(attempt)

    def attempt_count(self, session_id: str) -> int:
        with self._lock:
            return len(self._get(session_id).attempts)

    def finish(
        self,
        session_id: str,
        status: SessionStatus,
        result_attempt_id: Optional[str] = None,
        cause: Optional[FailureCause] = None,
        message: Optional[str] = None,
        citations: tuple[Citation, ...] = (),
        confidence: Optional[float] = None,
        result: Optional[ExecutionResult] = None,
        end_state: Optional[str] = None,
        retrieval_degraded: bool = False,
    ) -> QuerySession:
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal status")
        with self._lock:
            session = self._get(session_id)
            if session.status.is_terminal:
                raise InvalidSessionState(
                    f"Session {session_id} is already {session.status.value}"
                )
            session.status = status
            session.completed_at = utc_now()
            session.result_attempt_id = result_attempt_id
            session.failure_cause = cause
            session.failure_message = message
            session.citations = citations
            session.confidence = confidence
            session.end_state = end_state or status.value
            session.retrieval_degraded = retrieval_degraded
            if result is not None:
                self._results[session_id] = result
            self._cancel_requested.discard(session_id)
            return session.snapshot()

    def result(self, session_id: str) -> Optional[ExecutionResult]:
        with self._lock:
            self._get(session_id)
            return self._results.get(session_id)

    def request_cancel(self, session_id: str) -> QuerySession:
        """
        Ask a session to stop.

        A session that never started is abandoned at once; a running one is
        flagged and stops at its next transition. Terminal sessions are
        returned unchanged.
        """
        with self._lock:
            session = self._get(session_id)
            if session.status is SessionStatus.CREATED:
                return self.finish(session_id, SessionStatus.ABANDONED, message="Cancelled before start")
            if session.status is SessionStatus.RUNNING:
                self._cancel_requested.add(session_id)
            return session.snapshot()

    def is_cancel_requested(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._cancel_requested

    def add_feedback(self, feedback: Feedback) -> Feedback:
        with self._lock:
            session = self._get(feedback.session_id)
            if not session.status.is_terminal:
                raise InvalidSessionState(
                    f"Feedback requires a finished session; {feedback.session_id} is {session.status.value}"
                )
            self._feedback.setdefault(feedback.session_id, []).append(feedback)
        return feedback

    def feedback_for(self, session_id: str) -> list[Feedback]:
        with self._lock:
            self._get(session_id)
            return list(self._feedback.get(session_id, []))

