"""
Session Orchestrator
====================

Drives one query session through an explicit state machine:

    created -> generating -> validating -> cost_checking -> executing -> succeeded

Every step returns a tagged ``StepOutcome`` and the next state is looked up
in ``TRANSITIONS``; only this module decides between retrying, regenerating
and giving up. Each generate/validate/cost-check/execute cycle is recorded
as exactly one immutable ``QueryAttempt`` and the number of attempts never
exceeds ``max_attempts``.

Runs are resumable: ``run(session_id, max_steps=n)`` performs at most ``n``
transitions and the next call carries on from the same state.
"""

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import structlog
from opentelemetry import trace

from report_pilot.catalog import Catalog, ContextStore, Note
from report_pilot.citations import build_citations, score_confidence
from report_pilot.context import ContextAssembler, PromptContext
from report_pilot.cost_guard import CostGuard
from report_pilot.datasources.base import DataSourceRegistry
from report_pilot.errors import (
    DataSourceError,
    ExecutionFatal,
    ExecutionTransient,
    InvalidSessionState,
    NoProviderAvailable,
    SessionBusy,
)
from report_pilot.execution import PUBLIC_MESSAGES, ExecutionEngine
from report_pilot.generator import GenerationResult, SqlGenerator
from report_pilot.llm.prompts import PROMPT_VERSION, rejection_hint, transient_failure_hint
from report_pilot.llm.router import ProviderRouter, SelectionContext
from report_pilot.models import (
    AttemptOutcome,
    CostEstimate,
    ExecutionResult,
    ExecutionResultMeta,
    FailureCause,
    QueryAttempt,
    QuerySession,
    RetrievalResult,
    SessionStatus,
    TokenUsage,
    ValidationResult,
    new_id,
)
from report_pilot.retrieval.engine import RetrievalEngine
from report_pilot.sessions import SessionStore
from report_pilot.verifiers.validator import SqlValidator

logger = structlog.get_logger(__name__)
tracer = trace.get_tracer(__name__)

SQL_OVERRIDE_PROVIDER = "sql_override"


class MachineState(Enum):
    CREATED = "created"
    GENERATING = "generating"
    VALIDATING = "validating"
    COST_CHECKING = "cost_checking"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    REJECTED = "rejected"
    OVER_BUDGET = "over_budget"
    EXECUTION_FAILED = "execution_failed"
    EXHAUSTED = "exhausted"
    FAILED = "failed"
    ABANDONED = "abandoned"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {MachineState.SUCCEEDED, MachineState.EXHAUSTED, MachineState.FAILED, MachineState.ABANDONED}
)


class Outcome(Enum):
    OK = "ok"
    GENERATION_FAILED = "generation_failed"
    NO_PROVIDER = "no_provider"
    REJECTED = "rejected"
    OVER_BUDGET = "over_budget"
    TRANSIENT_ERROR = "transient_error"
    FATAL_ERROR = "fatal_error"
    RETRY = "retry"
    RECHECK_COST = "recheck_cost"
    REGENERATE = "regenerate"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class StepOutcome:
    tag: Outcome
    detail: str = ""


S, O = MachineState, Outcome

TRANSITIONS: dict[tuple[MachineState, Outcome], MachineState] = {
    (S.CREATED, O.OK): S.GENERATING,
    (S.CREATED, O.NO_PROVIDER): S.FAILED,
    (S.GENERATING, O.OK): S.VALIDATING,
    (S.GENERATING, O.GENERATION_FAILED): S.GENERATING,
    (S.GENERATING, O.NO_PROVIDER): S.FAILED,
    (S.GENERATING, O.EXHAUSTED): S.EXHAUSTED,
    (S.VALIDATING, O.OK): S.COST_CHECKING,
    (S.VALIDATING, O.REJECTED): S.REJECTED,
    (S.REJECTED, O.REGENERATE): S.GENERATING,
    (S.REJECTED, O.EXHAUSTED): S.EXHAUSTED,
    (S.COST_CHECKING, O.OK): S.EXECUTING,
    (S.COST_CHECKING, O.OVER_BUDGET): S.OVER_BUDGET,
    (S.COST_CHECKING, O.TRANSIENT_ERROR): S.EXECUTION_FAILED,
    (S.COST_CHECKING, O.FATAL_ERROR): S.FAILED,
    (S.OVER_BUDGET, O.REGENERATE): S.GENERATING,
    (S.OVER_BUDGET, O.EXHAUSTED): S.EXHAUSTED,
    (S.EXECUTING, O.OK): S.SUCCEEDED,
    (S.EXECUTING, O.TRANSIENT_ERROR): S.EXECUTION_FAILED,
    (S.EXECUTING, O.FATAL_ERROR): S.FAILED,
    (S.EXECUTION_FAILED, O.RETRY): S.EXECUTING,
    (S.EXECUTION_FAILED, O.RECHECK_COST): S.COST_CHECKING,
    (S.EXECUTION_FAILED, O.REGENERATE): S.GENERATING,
    (S.EXECUTION_FAILED, O.EXHAUSTED): S.EXHAUSTED,
}

del S, O


def next_state(state: MachineState, outcome: Outcome) -> MachineState:
    """Look up a transition. Cancellation leads to ``abandoned`` from anywhere."""
    if outcome is Outcome.CANCELLED:
        return MachineState.ABANDONED
    try:
        return TRANSITIONS[(state, outcome)]
    except KeyError:
        raise RuntimeError(f"No transition from {state.value} on {outcome.value}") from None


@dataclass
class SessionRun:
    """Working state of a session between steps (and between resumed runs)."""

    session_id: str
    question: str
    data_source_id: str
    state: MachineState = MachineState.CREATED
    dialect: str = "postgres"
    catalog: Catalog = field(default_factory=Catalog)
    notes: list[Note] = field(default_factory=list)
    context: Optional[PromptContext] = None
    retrieval: Optional[RetrievalResult] = None
    providers: list[str] = field(default_factory=list)
    provider_index: int = 0
    hints: list[str] = field(default_factory=list)
    generation: Optional[GenerationResult] = None
    generation_billed: bool = False
    validation: Optional[ValidationResult] = None
    cost: Optional[CostEstimate] = None
    execution: Optional[ExecutionResult] = None
    execution_retries: int = 0
    retry_state: MachineState = MachineState.EXECUTING
    last_cause: Optional[FailureCause] = None
    last_message: Optional[str] = None
    result_attempt_id: Optional[str] = None
    requested_provider: Optional[str] = None
    sql_override: Optional[str] = None
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def provider(self) -> Optional[str]:
        if self.provider_index < len(self.providers):
            return self.providers[self.provider_index]
        return None


@dataclass(frozen=True)
class SessionReport:
    """Session snapshot plus what the caller needs to render the answer."""

    session: QuerySession
    state: MachineState
    result: Optional[ExecutionResult] = None
    retrieval_degraded: bool = False

    @property
    def citations(self):
        return self.session.citations

    @property
    def confidence(self) -> Optional[float]:
        return self.session.confidence


_STATE_OF_STATUS = {
    SessionStatus.CREATED: MachineState.CREATED,
    SessionStatus.SUCCEEDED: MachineState.SUCCEEDED,
    SessionStatus.FAILED: MachineState.FAILED,
    SessionStatus.ABANDONED: MachineState.ABANDONED,
}


class SessionOrchestrator:
    """Runs sessions through the pipeline components."""

    def __init__(
        self,
        sessions: SessionStore,
        context_store: ContextStore,
        data_sources: DataSourceRegistry,
        retrieval: RetrievalEngine,
        assembler: ContextAssembler,
        router: ProviderRouter,
        generator: SqlGenerator,
        validator: SqlValidator,
        cost_guard: CostGuard,
        executor: ExecutionEngine,
        max_attempts: int = 3,
        max_execution_retries: int = 1,
        retrieval_top_k: int = 12,
    ) -> None:
        self.sessions = sessions
        self.context_store = context_store
        self.data_sources = data_sources
        self.retrieval = retrieval
        self.assembler = assembler
        self.router = router
        self.generator = generator
        self.validator = validator
        self.cost_guard = cost_guard
        self.executor = executor
        self.max_attempts = max_attempts
        self.max_execution_retries = max_execution_retries
        self.retrieval_top_k = retrieval_top_k
        self._lock = threading.Lock()
        self._runs: dict[str, SessionRun] = {}
        self._handlers = {
            MachineState.CREATED: self._on_created,
            MachineState.GENERATING: self._on_generating,
            MachineState.VALIDATING: self._on_validating,
            MachineState.REJECTED: self._on_rejected,
            MachineState.COST_CHECKING: self._on_cost_checking,
            MachineState.OVER_BUDGET: self._on_over_budget,
            MachineState.EXECUTING: self._on_executing,
            MachineState.EXECUTION_FAILED: self._on_execution_failed,
        }

    # -- public API -----------------------------------------------------------

    def run(
        self,
        session_id: str,
        max_steps: Optional[int] = None,
        requested_provider: Optional[str] = None,
        sql_override: Optional[str] = None,
    ) -> SessionReport:
        """
        Drive a session to a terminal state, or for at most ``max_steps`` transitions.

        Raises:
            SessionNotFound: unknown session id
            InvalidSessionState: the session is already terminal
            SessionBusy: another run of the same session is in flight
        """
        session = self.sessions.get(session_id)
        if session.status.is_terminal:
            raise InvalidSessionState(f"Session {session_id} is already {session.status.value}")

        run = self._run_for(session)
        if not run.lock.acquire(blocking=False):
            raise SessionBusy(f"Session {session_id} is already running")
        try:
            if run.state is MachineState.CREATED:
                run.requested_provider = requested_provider
                run.sql_override = sql_override
            self.sessions.mark_running(session_id)
            self._drive(run, max_steps)
        finally:
            run.lock.release()
            if self.sessions.get(session_id).status.is_terminal:
                self._forget(session_id)
        return self.report(session_id)

    def cancel(self, session_id: str) -> QuerySession:
        """
        Request cancellation.

        A session that is not currently stepping is abandoned immediately;
        an in-flight run stops at its next transition point.
        """
        session = self.sessions.request_cancel(session_id)
        if session.status is not SessionStatus.RUNNING:
            return session
        with self._lock:
            run = self._runs.get(session_id)
        if run is not None and run.lock.acquire(blocking=False):
            try:
                if not run.state.is_terminal and self.sessions.is_cancel_requested(session_id):
                    self._transition(run, Outcome.CANCELLED)
            finally:
                run.lock.release()
        return self.sessions.get(session_id)

    @property
    def active_session_ids(self) -> list[str]:
        """Sessions with a started, unfinished run held in memory."""
        with self._lock:
            return sorted(self._runs)

    def report(self, session_id: str) -> SessionReport:
        session = self.sessions.get(session_id)
        with self._lock:
            run = self._runs.get(session_id)
        if run is not None:
            state = run.state
            degraded = bool(run.retrieval and run.retrieval.degraded)
        elif session.end_state:
            state = MachineState(session.end_state)
            degraded = session.retrieval_degraded
        else:
            state = _STATE_OF_STATUS.get(session.status, MachineState.CREATED)
            degraded = False
        return SessionReport(
            session=session,
            state=state,
            result=self.sessions.result(session_id),
            retrieval_degraded=degraded,
        )

    # -- driving --------------------------------------------------------------

    def _forget(self, session_id: str) -> None:
        """Drop the working state of a finished run; the session store keeps the record."""
        with self._lock:
            self._runs.pop(session_id, None)

    def _run_for(self, session: QuerySession) -> SessionRun:
        with self._lock:
            run = self._runs.get(session.session_id)
            if run is None:
                run = SessionRun(
                    session_id=session.session_id,
                    question=session.question,
                    data_source_id=session.data_source_id,
                )
                self._runs[session.session_id] = run
            return run

    def _drive(self, run: SessionRun, max_steps: Optional[int]) -> None:
        steps = 0
        with tracer.start_as_current_span("session.run") as span:
            span.set_attribute("session.id", run.session_id)
            span.set_attribute("session.data_source_id", run.data_source_id)
            while not run.state.is_terminal and (max_steps is None or steps < max_steps):
                if self.sessions.is_cancel_requested(run.session_id):
                    outcome = StepOutcome(Outcome.CANCELLED, "cancel requested")
                else:
                    handler = self._handlers[run.state]
                    with tracer.start_as_current_span(f"session.step.{run.state.value}"):
                        try:
                            outcome = handler(run)
                        except Exception:
                            logger.exception(
                                "session_step_crashed", session_id=run.session_id, state=run.state.value
                            )
                            run.state = MachineState.FAILED
                            run.last_message = "Internal error while processing the query"
                            self._finalize(run)
                            raise
                self._transition(run, outcome.tag, outcome.detail)
                steps += 1
            span.set_attribute("session.state", run.state.value)

    def _transition(self, run: SessionRun, tag: Outcome, detail: str = "") -> None:
        previous = run.state
        run.state = next_state(previous, tag)
        logger.debug(
            "session_transition",
            session_id=run.session_id,
            from_state=previous.value,
            outcome=tag.value,
            to_state=run.state.value,
            detail=detail,
        )
        if run.state.is_terminal:
            self._finalize(run)

    def _finalize(self, run: SessionRun) -> None:
        sid = run.session_id
        degraded = bool(run.retrieval and run.retrieval.degraded)
        if run.state is MachineState.SUCCEEDED:
            session = self.sessions.get(sid)
            result_attempt = next(a for a in session.attempts if a.attempt_id == run.result_attempt_id)
            citations = build_citations(
                run.question,
                result_attempt.validation,
                self.context_store.get_semantic_mappings(run.data_source_id),
                self.context_store.get_approved_join_policies(run.data_source_id),
            )
            confidence = score_confidence(
                citations,
                session.attempts,
                result_attempt,
                retrieval_degraded=degraded,
                truncated=bool(run.execution and run.execution.meta.truncated),
            )
            self.sessions.finish(
                sid,
                SessionStatus.SUCCEEDED,
                result_attempt_id=run.result_attempt_id,
                citations=citations,
                confidence=confidence,
                result=run.execution,
                end_state=run.state.value,
                retrieval_degraded=degraded,
            )
        elif run.state is MachineState.ABANDONED:
            self.sessions.finish(
                sid,
                SessionStatus.ABANDONED,
                message="Cancelled by user",
                end_state=run.state.value,
                retrieval_degraded=degraded,
            )
        else:
            self.sessions.finish(
                sid,
                SessionStatus.FAILED,
                cause=run.last_cause,
                message=run.last_message,
                end_state=run.state.value,
                retrieval_degraded=degraded,
            )
        self._forget(sid)

        logger.info(
            "session_finished",
            session_id=sid,
            state=run.state.value,
            attempts=self.sessions.attempt_count(sid),
            cause=run.last_cause.value if run.last_cause and run.state is not MachineState.SUCCEEDED else None,
        )

    def _cancelled(self, run: SessionRun) -> bool:
        return self.sessions.is_cancel_requested(run.session_id)

    def _budget_left(self, run: SessionRun) -> bool:
        return self.sessions.attempt_count(run.session_id) < self.max_attempts

    # -- steps ----------------------------------------------------------------

    def _on_created(self, run: SessionRun) -> StepOutcome:
        adapter = self.data_sources.get(run.data_source_id)
        run.dialect = adapter.dialect
        run.catalog = self.context_store.get_catalog(run.data_source_id)
        run.notes = self.context_store.get_notes(run.data_source_id)
        run.retrieval = self.retrieval.retrieve(run.question, self.retrieval_top_k, run.data_source_id)
        if self._cancelled(run):
            return StepOutcome(Outcome.CANCELLED)
        run.context = self.assembler.assemble(
            run.question, run.data_source_id, retrieval=run.retrieval, dialect=run.dialect
        )
        if run.sql_override:
            return StepOutcome(Outcome.OK, "using supplied SQL")
        try:
            self._select_providers(run)
        except NoProviderAvailable as exc:
            run.last_cause = exc.cause
            run.last_message = exc.public_message
            return StepOutcome(Outcome.NO_PROVIDER, str(exc))
        return StepOutcome(Outcome.OK)

    def _on_generating(self, run: SessionRun) -> StepOutcome:
        if not self._budget_left(run):
            return StepOutcome(Outcome.EXHAUSTED)

        run.validation = None
        run.cost = None
        run.execution_retries = 0

        if run.sql_override:
            run.generation = GenerationResult(
                provider=SQL_OVERRIDE_PROVIDER,
                model=SQL_OVERRIDE_PROVIDER,
                prompt_version=PROMPT_VERSION,
                sql=run.sql_override,
            )
            run.sql_override = None
            run.generation_billed = False
            return StepOutcome(Outcome.OK, "supplied SQL")

        if run.provider is None:
            try:
                self._select_providers(run)
            except NoProviderAvailable as exc:
                run.last_cause = exc.cause
                run.last_message = exc.public_message
                return StepOutcome(Outcome.NO_PROVIDER, str(exc))

        generation = self.generator.generate(run.provider, run.context, run.hints)
        if self._cancelled(run):
            return StepOutcome(Outcome.CANCELLED, "generation result discarded")
        run.generation = generation
        run.generation_billed = False

        if not generation.ok:
            failure = generation.failure
            self._record(run, AttemptOutcome.GENERATION_FAILED, failure.cause, failure.public_message)
            run.provider_index += 1
            return StepOutcome(Outcome.GENERATION_FAILED, failure.reason)
        return StepOutcome(Outcome.OK)

    def _on_validating(self, run: SessionRun) -> StepOutcome:
        validation = self.validator.validate(run.generation.sql, run.catalog, run.dialect, run.notes)
        run.validation = validation
        if not validation.is_valid:
            self._record(
                run,
                AttemptOutcome.REJECTED,
                FailureCause.VALIDATION_REJECTED,
                f"Query rejected ({', '.join(validation.rules)}): {validation.summary()}",
            )
            run.hints.append(rejection_hint(run.generation.sql, validation.summary()))
            return StepOutcome(Outcome.REJECTED, ",".join(validation.rules))
        return StepOutcome(Outcome.OK)

    def _on_rejected(self, run: SessionRun) -> StepOutcome:
        return StepOutcome(Outcome.REGENERATE if self._budget_left(run) else Outcome.EXHAUSTED)

    def _on_cost_checking(self, run: SessionRun) -> StepOutcome:
        adapter = self.data_sources.get(run.data_source_id)
        try:
            cost = self.cost_guard.evaluate(adapter, run.validation, run.data_source_id)
        except DataSourceError as exc:
            if self._cancelled(run):
                return StepOutcome(Outcome.CANCELLED)
            public = PUBLIC_MESSAGES.get(exc.kind, PUBLIC_MESSAGES[DataSourceError.OTHER])
            if exc.transient:
                self._record(run, AttemptOutcome.EXECUTION_FAILED, FailureCause.EXECUTION_TRANSIENT, public)
                run.retry_state = MachineState.COST_CHECKING
                return StepOutcome(Outcome.TRANSIENT_ERROR, exc.kind)
            self._record(run, AttemptOutcome.EXECUTION_FAILED, FailureCause.EXECUTION_FATAL, public)
            return StepOutcome(Outcome.FATAL_ERROR, exc.kind)
        if self._cancelled(run):
            return StepOutcome(Outcome.CANCELLED)

        run.cost = cost
        if not cost.within_budget:
            self._record(
                run,
                AttemptOutcome.OVER_BUDGET,
                FailureCause.BUDGET_EXCEEDED,
                "The query exceeds the configured cost budget: " + "; ".join(cost.reasons),
            )
            run.hints.append(self.cost_guard.hint(cost))
            return StepOutcome(Outcome.OVER_BUDGET, "; ".join(cost.reasons))
        return StepOutcome(Outcome.OK)

    def _on_over_budget(self, run: SessionRun) -> StepOutcome:
        return StepOutcome(Outcome.REGENERATE if self._budget_left(run) else Outcome.EXHAUSTED)

    def _on_executing(self, run: SessionRun) -> StepOutcome:
        adapter = self.data_sources.get(run.data_source_id)
        try:
            result = self.executor.execute(adapter, run.validation, run.cost)
        except ExecutionTransient as exc:
            if self._cancelled(run):
                return StepOutcome(Outcome.CANCELLED)
            self._record(run, AttemptOutcome.EXECUTION_FAILED, exc.cause, exc.public_message)
            run.retry_state = MachineState.EXECUTING
            return StepOutcome(Outcome.TRANSIENT_ERROR, str(exc))
        except ExecutionFatal as exc:
            if self._cancelled(run):
                return StepOutcome(Outcome.CANCELLED)
            self._record(run, AttemptOutcome.EXECUTION_FAILED, exc.cause, exc.public_message)
            return StepOutcome(Outcome.FATAL_ERROR, str(exc))
        if self._cancelled(run):
            return StepOutcome(Outcome.CANCELLED, "execution result discarded")

        run.execution = result
        attempt = self._record(run, AttemptOutcome.SUCCEEDED, execution=result.meta, is_result=True)
        run.result_attempt_id = attempt.attempt_id
        return StepOutcome(Outcome.OK)

    def _on_execution_failed(self, run: SessionRun) -> StepOutcome:
        if not self._budget_left(run):
            return StepOutcome(Outcome.EXHAUSTED)
        if run.execution_retries < self.max_execution_retries:
            run.execution_retries += 1
            if run.retry_state is MachineState.COST_CHECKING:
                return StepOutcome(Outcome.RECHECK_COST)
            return StepOutcome(Outcome.RETRY)
        run.hints.append(transient_failure_hint(run.generation.sql))
        return StepOutcome(Outcome.REGENERATE)

    # -- helpers --------------------------------------------------------------

    def _select_providers(self, run: SessionRun) -> None:
        run.providers = self.router.select(
            SelectionContext(
                data_source_id=run.data_source_id,
                dialect=run.dialect,
                requested_provider=run.requested_provider,
            )
        )
        run.provider_index = 0
        logger.debug("providers_selected", session_id=run.session_id, providers=run.providers)

    def _record(
        self,
        run: SessionRun,
        outcome: AttemptOutcome,
        cause: Optional[FailureCause] = None,
        message: Optional[str] = None,
        execution: Optional[ExecutionResultMeta] = None,
        is_result: bool = False,
    ) -> QueryAttempt:
        generation = run.generation
        billed = not run.generation_billed
        attempt = QueryAttempt(
            attempt_id=new_id("att"),
            session_id=run.session_id,
            sequence=self.sessions.attempt_count(run.session_id) + 1,
            provider=generation.provider if generation else "",
            model=generation.model if generation else "",
            prompt_version=generation.prompt_version if generation else PROMPT_VERSION,
            sql=generation.sql if generation else None,
            outcome=outcome,
            validation=run.validation,
            cost=run.cost,
            execution=execution,
            failure_cause=cause,
            failure_message=message,
            latency_ms=round(generation.latency_ms, 3) if generation and billed else 0.0,
            token_usage=generation.token_usage if generation and billed else TokenUsage(),
            rationale=generation.rationale if generation else "",
            provider_citations=generation.citations if generation else (),
            is_result=is_result,
        )
        self.sessions.append_attempt(attempt)
        run.generation_billed = True
        if cause is not None:
            run.last_cause = cause
            run.last_message = message
        logger.info(
            "attempt_recorded",
            session_id=run.session_id,
            sequence=attempt.sequence,
            provider=attempt.provider,
            outcome=outcome.value,
            cause=cause.value if cause else None,
        )
        return attempt
