"""
API Schemas
===========

Pydantic models for API request/response validation, plus the converters
from pipeline records to response bodies.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from report_pilot.feedback import FeedbackReceipt
from report_pilot.models import QueryAttempt, QuerySession
from report_pilot.orchestrator import SessionReport
from report_pilot.retrieval.engine import SyncReport


# -- Requests -----------------------------------------------------------------


class CreateSessionRequest(BaseModel):
    """Request body for opening a query session."""

    question: str = Field(
        ...,
        min_length=1,
        max_length=4000,
        description="Natural language question to answer with SQL",
        examples=["How many customers signed up in 2024?"],
    )
    data_source_id: str = Field(..., min_length=1, description="Target data source")
    user_id: str = Field(default="anonymous", min_length=1, description="Caller identity")


class RunSessionRequest(BaseModel):
    """Optional controls for a session run."""

    max_steps: int | None = Field(
        default=None,
        ge=1,
        le=100,
        description="Stop after this many state transitions (resume with another run)",
    )
    provider: str | None = Field(default=None, description="Preferred LLM provider")
    sql_override: str | None = Field(
        default=None,
        max_length=20000,
        description="Cached SQL to validate and execute instead of generating",
    )


class FeedbackRequest(BaseModel):
    """Rating and optional correction of a finished session."""

    rating: int = Field(..., ge=1, le=5, strict=True, description="1 (bad) to 5 (good)")
    corrected_sql: str | None = Field(default=None, max_length=20000)
    comment: str | None = Field(default=None, max_length=2000)


class ReindexRequest(BaseModel):
    data_source_id: str = Field(..., min_length=1)
    wait: bool = Field(default=True, description="Block until the index is rebuilt")


# -- Responses ----------------------------------------------------------------


class ValidationResponse(BaseModel):
    outcome: str
    rules: list[str] = Field(default_factory=list)
    messages: list[str] = Field(default_factory=list)
    referenced_objects: list[str] = Field(default_factory=list)
    referenced_columns: list[str] = Field(default_factory=list)


class CostResponse(BaseModel):
    decision: str
    estimated_rows: float | None = None
    estimated_cost: float | None = None
    max_rows: float | None = None
    max_cost: float | None = None
    threshold_source: str
    reasons: list[str] = Field(default_factory=list)


class ExecutionMetaResponse(BaseModel):
    row_count: int
    duration_ms: float
    truncated: bool
    bytes_scanned: int | None = None


class AttemptResponse(BaseModel):
    """Single recorded attempt."""

    attempt_id: str
    sequence: int
    provider: str
    model: str
    prompt_version: str
    sql: str | None = None
    outcome: str
    failure_cause: str | None = None
    failure_message: str | None = None
    validation: ValidationResponse | None = None
    cost: CostResponse | None = None
    execution: ExecutionMetaResponse | None = None
    latency_ms: float
    total_tokens: int
    is_result: bool
    created_at: datetime


class CitationResponse(BaseModel):
    kind: str
    ref: str
    label: str = ""


class ResultResponse(BaseModel):
    columns: list[str]
    rows: list[dict[str, Any]]
    row_count: int
    truncated: bool


class SessionResponse(BaseModel):
    """Full session report."""

    session_id: str
    user_id: str
    data_source_id: str
    question: str
    status: str
    state: str | None = None
    created_at: datetime
    completed_at: datetime | None = None
    failure_cause: str | None = None
    failure_message: str | None = None
    sql: str | None = None
    attempts: list[AttemptResponse] = Field(default_factory=list)
    result: ResultResponse | None = None
    citations: list[CitationResponse] = Field(default_factory=list)
    confidence: float | None = None
    retrieval_degraded: bool = False


class SessionSummary(BaseModel):
    """Prompt history entry."""

    session_id: str
    user_id: str
    data_source_id: str
    question: str
    status: str
    attempts: int
    created_at: datetime


class SessionListResponse(BaseModel):
    sessions: list[SessionSummary]
    count: int


class FeedbackResponse(BaseModel):
    feedback_id: str
    session_id: str
    rating: int
    example_id: str | None = None
    example_skipped_reason: str | None = None


class ProviderHealthEntry(BaseModel):
    name: str
    model: str
    enabled: bool
    healthy: bool
    recent_failures: int
    last_error: str | None = None


class ProviderHealthResponse(BaseModel):
    providers: list[ProviderHealthEntry]


class ReindexResponse(BaseModel):
    data_source_id: str
    status: str  # "completed" or "scheduled"
    indexed: int | None = None
    unchanged: int | None = None
    removed: int | None = None
    unembedded: int | None = None


class HealthStatus(str, Enum):
    """Health check status values."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class HealthResponse(BaseModel):
    """Health check response."""

    status: HealthStatus = Field(..., description="Overall health status")
    version: str = Field(..., description="API version")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    checks: dict[str, bool] = Field(
        default_factory=dict,
        description="Individual component health checks",
    )


class ReadinessResponse(BaseModel):
    """Readiness check response."""

    ready: bool = Field(..., description="Whether the service is ready to handle requests")
    checks: dict[str, bool] = Field(
        default_factory=dict,
        description="Individual readiness checks",
    )


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Error message")
    request_id: str | None = Field(None, description="Request ID if available")
    details: dict[str, Any] | None = Field(None, description="Additional error details")


# -- Converters ---------------------------------------------------------------


def attempt_response(attempt: QueryAttempt) -> AttemptResponse:
    validation = None
    if attempt.validation is not None:
        validation = ValidationResponse(
            outcome=attempt.validation.outcome.value,
            rules=attempt.validation.rules,
            messages=[v.message for v in attempt.validation.violations],
            referenced_objects=sorted(attempt.validation.referenced_objects),
            referenced_columns=sorted(attempt.validation.referenced_columns),
        )
    cost = None
    if attempt.cost is not None:
        cost = CostResponse(
            decision=attempt.cost.decision.value,
            estimated_rows=attempt.cost.estimated_rows,
            estimated_cost=attempt.cost.estimated_cost,
            max_rows=attempt.cost.threshold.max_rows,
            max_cost=attempt.cost.threshold.max_cost,
            threshold_source=attempt.cost.threshold.source,
            reasons=list(attempt.cost.reasons),
        )
    execution = None
    if attempt.execution is not None:
        execution = ExecutionMetaResponse(
            row_count=attempt.execution.row_count,
            duration_ms=attempt.execution.duration_ms,
            truncated=attempt.execution.truncated,
            bytes_scanned=attempt.execution.bytes_scanned,
        )
    return AttemptResponse(
        attempt_id=attempt.attempt_id,
        sequence=attempt.sequence,
        provider=attempt.provider,
        model=attempt.model,
        prompt_version=attempt.prompt_version,
        sql=attempt.sql,
        outcome=attempt.outcome.value,
        failure_cause=attempt.failure_cause.value if attempt.failure_cause else None,
        failure_message=attempt.failure_message,
        validation=validation,
        cost=cost,
        execution=execution,
        latency_ms=attempt.latency_ms,
        total_tokens=attempt.token_usage.total_tokens,
        is_result=attempt.is_result,
        created_at=attempt.created_at,
    )


def session_response(report: SessionReport) -> SessionResponse:
    session = report.session
    result_attempt = session.result_attempt
    result = None
    if report.result is not None:
        result = ResultResponse(
            columns=list(report.result.columns),
            rows=[dict(row) for row in report.result.rows],
            row_count=report.result.meta.row_count,
            truncated=report.result.meta.truncated,
        )
    return SessionResponse(
        session_id=session.session_id,
        user_id=session.user_id,
        data_source_id=session.data_source_id,
        question=session.question,
        status=session.status.value,
        state=report.state.value,
        created_at=session.created_at,
        completed_at=session.completed_at,
        failure_cause=session.failure_cause.value if session.failure_cause else None,
        failure_message=session.failure_message,
        sql=result_attempt.sql if result_attempt else None,
        attempts=[attempt_response(a) for a in session.attempts],
        result=result,
        citations=[CitationResponse(kind=c.kind, ref=c.ref, label=c.label) for c in report.citations],
        confidence=report.confidence,
        retrieval_degraded=report.retrieval_degraded,
    )


def session_summary(session: QuerySession) -> SessionSummary:
    return SessionSummary(
        session_id=session.session_id,
        user_id=session.user_id,
        data_source_id=session.data_source_id,
        question=session.question,
        status=session.status.value,
        attempts=len(session.attempts),
        created_at=session.created_at,
    )


def feedback_response(receipt: FeedbackReceipt) -> FeedbackResponse:
    return FeedbackResponse(
        feedback_id=receipt.feedback.feedback_id,
        session_id=receipt.feedback.session_id,
        rating=receipt.feedback.rating,
        example_id=receipt.feedback.example_id,
        example_skipped_reason=receipt.example_skipped_reason,
    )


def reindex_response(data_source_id: str, report: SyncReport | None) -> ReindexResponse:
    if report is None:
        return ReindexResponse(data_source_id=data_source_id, status="scheduled")
    return ReindexResponse(
        data_source_id=data_source_id,
        status="completed",
        indexed=report.indexed,
        unchanged=report.unchanged,
        removed=report.removed,
        unembedded=report.unembedded,
    )
