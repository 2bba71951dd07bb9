"""
Data Models
===========

Core records of the NL-to-SQL query pipeline: sessions, the immutable
attempts they own, and the outcomes each pipeline stage attaches to an
attempt.
"""

import hashlib
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def utc_now() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    """Generate a short prefixed identifier (``ses_3f2a...``)."""
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


class SessionStatus(Enum):
    """Lifecycle status of a query session."""

    CREATED = "created"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABANDONED = "abandoned"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.SUCCEEDED, SessionStatus.FAILED, SessionStatus.ABANDONED)


class AttemptOutcome(Enum):
    """State an attempt ended in."""

    SUCCEEDED = "succeeded"
    GENERATION_FAILED = "generation_failed"
    REJECTED = "rejected"
    OVER_BUDGET = "over_budget"
    EXECUTION_FAILED = "execution_failed"


class FailureCause(Enum):
    """Classified failure causes surfaced to callers."""

    GENERATION_FAILURE = "GenerationFailure"
    VALIDATION_REJECTED = "ValidationRejected"
    BUDGET_EXCEEDED = "BudgetExceeded"
    EXECUTION_TRANSIENT = "ExecutionTransient"
    EXECUTION_FATAL = "ExecutionFatal"
    NO_PROVIDER_AVAILABLE = "NoProviderAvailable"
    INDEX_UNAVAILABLE = "IndexUnavailable"


# -- Validation ---------------------------------------------------------------


class ValidationOutcome(Enum):
    VALID = "valid"
    REJECTED = "rejected"


class ViolationRule(Enum):
    """Rules the SQL validator can report."""

    WRITE_OPERATION = "write_operation"
    MULTIPLE_STATEMENTS = "multiple_statements"
    DISALLOWED_OBJECT = "disallowed_object"
    DISALLOWED_FUNCTION = "disallowed_function"
    DISALLOWED_CONSTRUCT = "disallowed_construct"
    FORBIDDEN_COLUMN = "forbidden_column"
    UNPARSEABLE = "unparseable"


@dataclass(frozen=True)
class Violation:
    """A single violated validation rule."""

    rule: ViolationRule
    message: str


@dataclass(frozen=True)
class ValidationResult:
    """Structured pass/fail result of SQL validation."""

    outcome: ValidationOutcome
    violations: tuple[Violation, ...] = ()
    referenced_objects: frozenset[str] = frozenset()
    referenced_columns: frozenset[str] = frozenset()
    referenced_functions: frozenset[str] = frozenset()
    normalized_sql: str = ""

    @property
    def is_valid(self) -> bool:
        return self.outcome is ValidationOutcome.VALID

    @property
    def rules(self) -> list[str]:
        """Violated rule names, de-duplicated in report order."""
        seen: list[str] = []
        for violation in self.violations:
            if violation.rule.value not in seen:
                seen.append(violation.rule.value)
        return seen

    def summary(self) -> str:
        if self.is_valid:
            return "valid"
        return "; ".join(v.message for v in self.violations)


# -- Cost ---------------------------------------------------------------------


class CostDecision(Enum):
    WITHIN_BUDGET = "within_budget"
    OVER_BUDGET = "over_budget"


@dataclass(frozen=True)
class BudgetThreshold:
    """Row and/or cost ceiling applied by the cost guard."""

    max_rows: Optional[float] = None
    max_cost: Optional[float] = None
    source: str = "global"  # "global" or "data_source"


@dataclass(frozen=True)
class CostEstimate:
    """Attempt-scoped plan estimate and budget decision."""

    estimated_rows: Optional[float]
    estimated_cost: Optional[float]
    decision: CostDecision
    threshold: BudgetThreshold
    reasons: tuple[str, ...] = ()

    @property
    def within_budget(self) -> bool:
        return self.decision is CostDecision.WITHIN_BUDGET


# -- Execution ----------------------------------------------------------------


@dataclass(frozen=True)
class ExecutionResultMeta:
    """Metadata captured for one successful execution."""

    row_count: int
    duration_ms: float
    truncated: bool
    bytes_scanned: Optional[int] = None


@dataclass(frozen=True)
class ExecutionResult:
    """Rows returned by an execution plus their metadata."""

    columns: tuple[str, ...]
    rows: tuple[dict[str, Any], ...]
    meta: ExecutionResultMeta


# -- LLM ----------------------------------------------------------------------


@dataclass(frozen=True)
class TokenUsage:
    """Normalized token accounting for a provider call."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_counts(
        cls,
        prompt_tokens: Any = None,
        completion_tokens: Any = None,
        total_tokens: Any = None,
    ) -> "TokenUsage":
        """Build usage from provider-reported counts, tolerating gaps."""
        prompt = _as_count(prompt_tokens)
        completion = _as_count(completion_tokens)
        total = _as_count(total_tokens) or prompt + completion
        return cls(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


def _as_count(value: Any) -> int:
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return 0


@dataclass
class LLMResponse:
    """Response from an LLM call."""

    content: str
    model: str
    usage: TokenUsage = field(default_factory=TokenUsage)

    @property
    def tokens_used(self) -> int:
        return self.usage.total_tokens


# -- Sessions -----------------------------------------------------------------


@dataclass(frozen=True)
class Citation:
    """A catalog or semantic-layer object a generated query relies on."""

    kind: str  # "schema_object", "semantic", "join_policy"
    ref: str
    label: str = ""


@dataclass(frozen=True)
class QueryAttempt:
    """One generate -> validate -> cost-check -> execute cycle. Never mutated."""

    attempt_id: str
    session_id: str
    sequence: int
    provider: str
    model: str
    prompt_version: str
    sql: Optional[str]
    outcome: AttemptOutcome
    validation: Optional[ValidationResult] = None
    cost: Optional[CostEstimate] = None
    execution: Optional[ExecutionResultMeta] = None
    failure_cause: Optional[FailureCause] = None
    failure_message: Optional[str] = None
    latency_ms: float = 0.0
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    rationale: str = ""
    provider_citations: tuple[str, ...] = ()
    is_result: bool = False
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class QuerySession:
    """One end-to-end question lifecycle and its ordered attempts."""

    session_id: str
    user_id: str
    data_source_id: str
    question: str
    status: SessionStatus = SessionStatus.CREATED
    created_at: datetime = field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    attempts: list[QueryAttempt] = field(default_factory=list)
    result_attempt_id: Optional[str] = None
    failure_cause: Optional[FailureCause] = None
    failure_message: Optional[str] = None
    citations: tuple[Citation, ...] = ()
    confidence: Optional[float] = None
    # Final pipeline state, e.g. ``exhausted`` for a failed session
    end_state: Optional[str] = None
    retrieval_degraded: bool = False

    @property
    def result_attempt(self) -> Optional[QueryAttempt]:
        for attempt in self.attempts:
            if attempt.attempt_id == self.result_attempt_id:
                return attempt
        return None

    def snapshot(self) -> "QuerySession":
        """Copy safe to hand out while the store keeps mutating the original."""
        return replace(self, attempts=list(self.attempts))


# -- Feedback & examples ------------------------------------------------------


class ExampleSource(Enum):
    MANUAL = "manual"
    FEEDBACK = "feedback"


@dataclass(frozen=True)
class Example:
    """Question/SQL pair used as a few-shot example."""

    example_id: str
    data_source_id: str
    question: str
    sql: str
    quality_score: float = 1.0
    source: ExampleSource = ExampleSource.MANUAL
    created_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class Feedback:
    """User rating (and optional correction) of a terminal session."""

    feedback_id: str
    session_id: str
    rating: int
    corrected_sql: Optional[str] = None
    comment: Optional[str] = None
    example_id: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)


# -- Retrieval ----------------------------------------------------------------


class DocType(Enum):
    SCHEMA = "schema"
    SEMANTIC = "semantic"
    EXAMPLE = "example"
    POLICY = "policy"


@dataclass(frozen=True)
class RagDocument:
    """A retrievable document built from catalog or semantic-layer content."""

    doc_id: str
    data_source_id: str
    doc_type: DocType
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def content_hash(self) -> str:
        return hashlib.sha256(self.content.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class Chunk:
    """An ordered slice of a document."""

    chunk_id: str
    doc_id: str
    data_source_id: str
    doc_type: DocType
    ordinal: int
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RetrievedChunk:
    """A chunk with its hybrid ranking scores."""

    chunk: Chunk
    score: float
    lexical_score: float = 0.0
    vector_score: float = 0.0


@dataclass(frozen=True)
class RetrievalResult:
    """Result of a retrieval query."""

    query: str
    chunks: tuple[RetrievedChunk, ...] = ()
    degraded: bool = False
    embedding_model: Optional[str] = None
