"""
Errors
======

Exception taxonomy for the query pipeline.

Pipeline failures carry a ``FailureCause`` and a ``public_message`` that is
safe to show to users; the raw provider or database message stays in the
exception text and in the logs.
"""

from typing import Optional

from report_pilot.models import CostEstimate, FailureCause, ValidationResult


class ReportPilotError(Exception):
    """Base class for all Report Pilot errors."""


class PipelineFailure(ReportPilotError):
    """A classified failure of one pipeline stage."""

    cause: FailureCause
    retryable: bool = False
    default_message = "The query pipeline failed"

    def __init__(self, message: str = "", public_message: Optional[str] = None) -> None:
        super().__init__(message or self.default_message)
        self.public_message = public_message or self.default_message


class GenerationFailure(PipelineFailure):
    """Provider timeout, provider error, malformed output or empty SQL."""

    cause = FailureCause.GENERATION_FAILURE
    retryable = True
    default_message = "The language model did not return a usable query"

    TIMEOUT = "timeout"
    PROVIDER_ERROR = "provider_error"
    MALFORMED_OUTPUT = "malformed_output"
    EMPTY_SQL = "empty_sql"

    def __init__(
        self,
        message: str = "",
        reason: str = PROVIDER_ERROR,
        provider: Optional[str] = None,
    ) -> None:
        public = {
            self.TIMEOUT: "The language model timed out",
            self.PROVIDER_ERROR: "The language model request failed",
            self.MALFORMED_OUTPUT: "The language model returned a malformed response",
            self.EMPTY_SQL: "The language model returned an empty query",
        }.get(reason)
        super().__init__(message, public_message=public)
        self.reason = reason
        self.provider = provider


class ValidationRejected(PipelineFailure):
    """Generated SQL failed validation. Never bypassed."""

    cause = FailureCause.VALIDATION_REJECTED
    retryable = True
    default_message = "The generated query was rejected by validation"

    def __init__(self, result: ValidationResult) -> None:
        super().__init__(
            f"validation rejected: {result.summary()}",
            public_message=f"Query rejected ({', '.join(result.rules)})",
        )
        self.result = result


class BudgetExceeded(PipelineFailure):
    """Plan estimate exceeded the configured cost/row threshold."""

    cause = FailureCause.BUDGET_EXCEEDED
    retryable = True
    default_message = "The query exceeds the configured cost budget"

    def __init__(self, estimate: Optional[CostEstimate]) -> None:
        reasons = "; ".join(estimate.reasons) if estimate else "no approved estimate"
        super().__init__(f"over budget: {reasons}")
        self.estimate = estimate


class ExecutionTransient(PipelineFailure):
    """Timeout or connection failure; retryable in place."""

    cause = FailureCause.EXECUTION_TRANSIENT
    retryable = True
    default_message = "The data source was temporarily unavailable"


class ExecutionFatal(PipelineFailure):
    """Permission, syntax or other non-retryable engine error."""

    cause = FailureCause.EXECUTION_FATAL
    default_message = "The data source rejected the query"


class NoProviderAvailable(PipelineFailure):
    """Every provider of every matching routing rule is unhealthy."""

    cause = FailureCause.NO_PROVIDER_AVAILABLE
    default_message = "No language model provider is currently available"


class IndexUnavailable(PipelineFailure):
    """Embedding provider unreachable; retrieval degrades to lexical-only."""

    cause = FailureCause.INDEX_UNAVAILABLE
    default_message = "The retrieval index is temporarily unavailable"


class ProviderError(ReportPilotError):
    """Raised by LLM provider adapters for failed calls."""

    def __init__(self, provider: str, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.status_code = status_code


class ProviderTimeout(ProviderError):
    """The provider call exceeded its timeout."""


class DataSourceError(ReportPilotError):
    """Raised by data source adapters; ``kind`` drives retry classification."""

    TIMEOUT = "timeout"
    CONNECTION = "connection"
    PERMISSION = "permission"
    SYNTAX = "syntax"
    OTHER = "other"

    TRANSIENT_KINDS = frozenset({TIMEOUT, CONNECTION})

    def __init__(self, message: str, kind: str = OTHER) -> None:
        super().__init__(message)
        self.kind = kind

    @property
    def transient(self) -> bool:
        return self.kind in self.TRANSIENT_KINDS


class SessionNotFound(ReportPilotError):
    """No session with the given id."""


class InvalidSessionState(ReportPilotError):
    """Operation not allowed in the session's current status."""


class SessionBusy(ReportPilotError):
    """Another run of the same session is in flight."""


class FeedbackRejected(ReportPilotError):
    """Feedback payload is invalid."""


class UnknownDataSource(ReportPilotError):
    """No adapter or metadata registered for the data source id."""
