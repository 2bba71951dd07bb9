"""
Feedback Recorder
=================

Stores user ratings of finished sessions. A corrected query that passes
validation becomes a few-shot example for its data source, and the
retrieval index is refreshed in the background so later sessions can use
it.
"""

from dataclasses import dataclass
from typing import Optional

import structlog

from report_pilot.catalog import ContextStore
from report_pilot.datasources.base import DataSourceRegistry
from report_pilot.errors import FeedbackRejected, InvalidSessionState
from report_pilot.models import Example, ExampleSource, Feedback, new_id
from report_pilot.retrieval.engine import RetrievalEngine
from report_pilot.sessions import SessionStore
from report_pilot.verifiers.validator import SqlValidator

logger = structlog.get_logger(__name__)

MIN_FEEDBACK_QUALITY = 0.8


@dataclass(frozen=True)
class FeedbackReceipt:
    feedback: Feedback
    example: Optional[Example] = None
    example_skipped_reason: Optional[str] = None


class FeedbackRecorder:
    def __init__(
        self,
        sessions: SessionStore,
        context_store: ContextStore,
        validator: SqlValidator,
        retrieval: RetrievalEngine,
        data_sources: DataSourceRegistry,
    ) -> None:
        self.sessions = sessions
        self.context_store = context_store
        self.validator = validator
        self.retrieval = retrieval
        self.data_sources = data_sources

    def submit(
        self,
        session_id: str,
        rating: int,
        corrected_sql: Optional[str] = None,
        comment: Optional[str] = None,
    ) -> FeedbackReceipt:
        """
        Record feedback for a terminal session.

        Raises:
            SessionNotFound: unknown session id
            InvalidSessionState: the session has not finished yet
            FeedbackRejected: rating outside 1..5
        """
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise FeedbackRejected(f"rating must be an integer between 1 and 5, got {rating!r}")

        session = self.sessions.get(session_id)
        if not session.status.is_terminal:
            raise InvalidSessionState(
                f"Feedback requires a finished session; {session_id} is {session.status.value}"
            )

        corrected = (corrected_sql or "").strip() or None
        example = None
        skipped = None
        if corrected:
            example, skipped = self._promote(session.data_source_id, session.question, corrected, rating)

        feedback = self.sessions.add_feedback(
            Feedback(
                feedback_id=new_id("fb"),
                session_id=session_id,
                rating=rating,
                corrected_sql=corrected,
                comment=comment,
                example_id=example.example_id if example else None,
            )
        )
        logger.info(
            "feedback_recorded",
            session_id=session_id,
            rating=rating,
            example_id=feedback.example_id,
            skipped=skipped,
        )
        return FeedbackReceipt(feedback=feedback, example=example, example_skipped_reason=skipped)

    def _promote(
        self, data_source_id: str, question: str, sql: str, rating: int
    ) -> tuple[Optional[Example], Optional[str]]:
        dialect = self.data_sources.get(data_source_id).dialect
        validation = self.validator.validate(
            sql,
            self.context_store.get_catalog(data_source_id),
            dialect,
            self.context_store.get_notes(data_source_id),
        )
        if not validation.is_valid:
            logger.info(
                "feedback_correction_rejected",
                data_source_id=data_source_id,
                rules=validation.rules,
            )
            return None, f"corrected SQL failed validation: {validation.summary()}"

        example = self.context_store.add_example(
            Example(
                example_id=new_id("ex"),
                data_source_id=data_source_id,
                question=question,
                sql=validation.normalized_sql,
                quality_score=max(rating / 5.0, MIN_FEEDBACK_QUALITY),
                source=ExampleSource.FEEDBACK,
            )
        )
        self.retrieval.trigger_reindex(data_source_id)
        return example, None
