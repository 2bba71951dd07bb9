"""
Unit Tests for the Session Orchestrator
=======================================

End-to-end session runs over the sample SQLite database: corrections,
budget rejections, execution retries, provider failover, resumption and
cancellation.
"""

import json
from typing import Callable, Optional

import pytest

from report_pilot.catalog import InMemoryContextStore, Note
from report_pilot.config import Settings
from report_pilot.datasources import DataSourceRegistry, SQLiteDataSource
from report_pilot.datasources.base import DataSourceAdapter, PlanEstimate, QueryOutput
from report_pilot.errors import DataSourceError, InvalidSessionState, ProviderTimeout, SessionBusy
from report_pilot.llm import LLMProvider, MockLLM
from report_pilot.llm.prompts import CORRECTION_HEADER
from report_pilot.models import AttemptOutcome, FailureCause, LLMResponse, SessionStatus, TokenUsage
from report_pilot.orchestrator import SQL_OVERRIDE_PROVIDER, MachineState, Outcome, next_state
from report_pilot.service import QueryService

PREMIUM_SQL = "SELECT name, email FROM customers WHERE tier = 'premium'"
DEMO = "demo"


def answer(sql: str, rationale: str = "Scripted.") -> str:
    return json.dumps({"sql": sql, "rationale": rationale, "citations": []})


class FlakySource(DataSourceAdapter):
    """Wraps the sample database and fails the first ``failures`` executions."""

    def __init__(self, inner: SQLiteDataSource, failures: int, kind: str = DataSourceError.CONNECTION) -> None:
        self.inner = inner
        self.failures = failures
        self.kind = kind
        self.executions = 0

    @property
    def dialect(self) -> str:
        return self.inner.dialect

    def explain(self, sql: str) -> Optional[PlanEstimate]:
        return self.inner.explain(sql)

    def execute(self, sql: str, row_cap: int, timeout_seconds: float) -> QueryOutput:
        self.executions += 1
        if self.executions <= self.failures:
            raise DataSourceError("simulated failure", kind=self.kind)
        return self.inner.execute(sql, row_cap, timeout_seconds)


class CallbackLLM(LLMProvider):
    """Provider that runs a callback before answering with the premium query."""

    name = "callback"
    model = "callback-v1"

    def __init__(self, callback: Callable[[], None]) -> None:
        self.callback = callback
        self.calls = 0

    def generate(self, prompt: str, system_prompt: Optional[str] = None, timeout: Optional[float] = None) -> LLMResponse:
        self.calls += 1
        self.callback()
        return LLMResponse(content=answer(PREMIUM_SQL), model=self.model, usage=TokenUsage.from_counts(10, 5))


def flaky_registry(sqlite_source: SQLiteDataSource, failures: int, kind: str = DataSourceError.CONNECTION):
    source = FlakySource(sqlite_source, failures, kind)
    registry = DataSourceRegistry()
    registry.register(DEMO, source)
    return registry, source


class TestTransitions:
    """Tests for the transition table."""

    def test_happy_path_transitions(self) -> None:
        """Test the forward path through the pipeline."""
        assert next_state(MachineState.CREATED, Outcome.OK) is MachineState.GENERATING
        assert next_state(MachineState.GENERATING, Outcome.OK) is MachineState.VALIDATING
        assert next_state(MachineState.VALIDATING, Outcome.OK) is MachineState.COST_CHECKING
        assert next_state(MachineState.COST_CHECKING, Outcome.OK) is MachineState.EXECUTING
        assert next_state(MachineState.EXECUTING, Outcome.OK) is MachineState.SUCCEEDED

    def test_cancel_from_any_state(self) -> None:
        """Test that cancellation abandons from every non-terminal state."""
        for state in (MachineState.CREATED, MachineState.VALIDATING, MachineState.EXECUTION_FAILED):
            assert next_state(state, Outcome.CANCELLED) is MachineState.ABANDONED

    def test_unknown_transition_raises(self) -> None:
        """Test that undefined transitions are programming errors."""
        with pytest.raises(RuntimeError):
            next_state(MachineState.VALIDATING, Outcome.RETRY)


class TestHappyPath:
    """Tests for a first-attempt success."""

    def test_premium_customers(self, service: QueryService) -> None:
        """Test that a well-formed answer is validated, executed and cited."""
        report = service.ask("Show me all premium customers", DEMO)
        session = report.session

        assert report.state is MachineState.SUCCEEDED
        assert session.status is SessionStatus.SUCCEEDED
        assert len(session.attempts) == 1
        attempt = session.attempts[0]
        assert attempt.outcome is AttemptOutcome.SUCCEEDED
        assert attempt.is_result
        assert attempt.provider == "mock"
        assert attempt.token_usage.total_tokens > 0
        assert session.result_attempt_id == attempt.attempt_id

        assert [row["name"] for row in report.result.rows] == ["Acme Corp", "Initech", "Hooli"]
        assert ("schema_object", "main.customers") in {(c.kind, c.ref) for c in report.citations}
        assert ("semantic", "main.customers.tier") in {(c.kind, c.ref) for c in report.citations}
        assert report.confidence == 0.9

    def test_join_cites_approved_policy(self, make_service) -> None:
        """Test that a join along an approved policy is cited."""
        sql = (
            "SELECT c.name, SUM(o.amount) AS revenue FROM orders o "
            "JOIN customers c ON o.customer_id = c.id GROUP BY c.name"
        )
        service = make_service({"mock": MockLLM(responses={"revenue": [answer(sql)]})})
        report = service.ask("Revenue by customer", DEMO)
        assert report.session.status is SessionStatus.SUCCEEDED
        assert "join_policy" in {c.kind for c in report.citations}


class TestCorrectionLoop:
    """Tests for regeneration after rejected or over-budget attempts."""

    def test_destructive_request_is_never_executed(self, make_service, sqlite_source: SQLiteDataSource) -> None:
        """Test that write SQL is rejected on every attempt and the table survives."""
        llm = MockLLM(responses={"drop": [answer("DROP TABLE customers")]})
        service = make_service({"mock": llm})
        report = service.ask("Please drop the customers table", DEMO)
        session = report.session

        assert report.state is MachineState.EXHAUSTED
        assert session.status is SessionStatus.FAILED
        assert session.failure_cause is FailureCause.VALIDATION_REJECTED
        assert [a.outcome for a in session.attempts] == [AttemptOutcome.REJECTED] * 3
        assert all(a.validation.rules == ["write_operation"] for a in session.attempts)
        assert CORRECTION_HEADER not in llm.prompts[0]
        assert CORRECTION_HEADER in llm.prompts[1]

        count = sqlite_source.execute("SELECT COUNT(*) AS n FROM customers", 10, 5.0)
        assert count.rows[0]["n"] == 6

    def test_rejection_then_success(self, make_service) -> None:
        """Test that the rejection hint leads to a corrected query."""
        llm = MockLLM(responses={"premium": [answer("SELECT name FROM clients"), answer(PREMIUM_SQL)]})
        report = make_service({"mock": llm}).ask("Show me all premium customers", DEMO)

        assert [a.outcome for a in report.session.attempts] == [AttemptOutcome.REJECTED, AttemptOutcome.SUCCEEDED]
        assert "unknown table or view 'clients'" in llm.prompts[1]
        assert report.confidence == 0.85

    def test_note_forbidden_column_is_corrected(self, make_service, sample_store: InMemoryContextStore) -> None:
        """Test that a column a steward note forbids is rejected and the hint names it."""
        sample_store.add_note(
            DEMO,
            Note(note_id="note_pii", title="Contact data", content="Do not use customers.email in reports."),
        )
        compliant = "SELECT name FROM customers WHERE tier = 'premium'"
        llm = MockLLM(responses={"premium": [answer(PREMIUM_SQL), answer(compliant)]})
        report = make_service({"mock": llm}).ask("Show me all premium customers", DEMO)

        first, second = report.session.attempts
        assert first.outcome is AttemptOutcome.REJECTED
        assert first.validation.rules == ["forbidden_column"]
        assert "Forbidden column referenced: main.customers.email" in llm.prompts[1]
        assert second.outcome is AttemptOutcome.SUCCEEDED

    def test_over_budget_exhausts(self, make_service) -> None:
        """Test that a query over the row budget is never executed."""
        service = make_service({"mock": MockLLM(responses={"premium": [answer(PREMIUM_SQL)]})},
                               settings=Settings(explain_max_plan_rows=2))
        session = service.ask("Show me all premium customers", DEMO).session

        assert session.failure_cause is FailureCause.BUDGET_EXCEEDED
        assert [a.outcome for a in session.attempts] == [AttemptOutcome.OVER_BUDGET] * 3
        assert all(a.execution is None for a in session.attempts)

    def test_cost_hint_leads_to_cheaper_query(self, make_service) -> None:
        """Test that the budget hint reaches the provider and a LIMIT recovers."""
        llm = MockLLM(responses={"premium": [answer(PREMIUM_SQL), answer(PREMIUM_SQL + " LIMIT 1")]})
        service = make_service({"mock": llm}, settings=Settings(explain_max_plan_rows=2))
        report = service.ask("Show me all premium customers", DEMO)

        assert [a.outcome for a in report.session.attempts] == [AttemptOutcome.OVER_BUDGET, AttemptOutcome.SUCCEEDED]
        assert "at most 2 rows" in llm.prompts[1]
        assert report.result.meta.row_count == 1


class TestExecutionRetries:
    """Tests for transient and fatal execution failures."""

    def test_transient_failure_retried_in_place(self, make_service, mock_llm: MockLLM, sqlite_source) -> None:
        """Test that one transient failure is retried without regenerating."""
        registry, source = flaky_registry(sqlite_source, failures=1)
        report = make_service({"mock": mock_llm}, registry=registry).ask("Show me all premium customers", DEMO)
        attempts = report.session.attempts

        assert report.session.status is SessionStatus.SUCCEEDED
        assert [a.outcome for a in attempts] == [AttemptOutcome.EXECUTION_FAILED, AttemptOutcome.SUCCEEDED]
        assert attempts[0].failure_cause is FailureCause.EXECUTION_TRANSIENT
        assert attempts[0].token_usage.total_tokens > 0
        assert attempts[1].token_usage.total_tokens == 0
        assert len(mock_llm.prompts) == 1
        assert source.executions == 2

    def test_persistent_transient_failure_regenerates_then_exhausts(
        self, make_service, mock_llm: MockLLM, sqlite_source
    ) -> None:
        """Test that retries count as attempts and end in regeneration."""
        registry, _ = flaky_registry(sqlite_source, failures=100)
        session = make_service({"mock": mock_llm}, registry=registry).ask(
            "Show me all premium customers", DEMO
        ).session

        assert [a.outcome for a in session.attempts] == [AttemptOutcome.EXECUTION_FAILED] * 3
        assert session.failure_cause is FailureCause.EXECUTION_TRANSIENT
        assert len(mock_llm.prompts) == 2
        assert "kept failing on the database" in mock_llm.prompts[1]

    def test_fatal_failure_stops_immediately(self, make_service, mock_llm: MockLLM, sqlite_source) -> None:
        """Test that a permission error fails the session with a safe message."""
        registry, _ = flaky_registry(sqlite_source, failures=1, kind=DataSourceError.PERMISSION)
        session = make_service({"mock": mock_llm}, registry=registry).ask(
            "Show me all premium customers", DEMO
        ).session

        assert session.status is SessionStatus.FAILED
        assert session.failure_cause is FailureCause.EXECUTION_FATAL
        assert session.failure_message == "The data source refused access to the requested data"
        assert len(session.attempts) == 1


class TestProviderFailover:
    """Tests for routing around unhealthy providers."""

    def test_failover_to_fallback(self, make_service) -> None:
        """Test that a timing-out primary is replaced within the session and skipped afterwards."""
        primary = MockLLM(name="primary", default=ProviderTimeout("primary", "timed out"))
        fallback = MockLLM(name="fallback", responses={"premium": [answer(PREMIUM_SQL)]})
        service = make_service(
            {"primary": primary, "fallback": fallback}, settings=Settings(health_failure_threshold=2)
        )

        first = service.ask("Show me all premium customers", DEMO).session
        assert [(a.provider, a.outcome) for a in first.attempts] == [
            ("primary", AttemptOutcome.GENERATION_FAILED),
            ("fallback", AttemptOutcome.SUCCEEDED),
        ]
        assert first.attempts[0].failure_cause is FailureCause.GENERATION_FAILURE
        assert first.attempts[0].failure_message == "The language model timed out"

        second = service.ask("Show me all premium customers again", DEMO).session
        assert [a.provider for a in second.attempts] == ["fallback"]
        assert len(primary.prompts) == 2

    def test_no_provider_available(self, service: QueryService) -> None:
        """Test that a session fails without attempts when every provider is down."""
        for _ in range(3):
            service.router.record_failure("mock", "down")
        report = service.ask("Show me all premium customers", DEMO)

        assert report.state is MachineState.FAILED
        assert report.session.failure_cause is FailureCause.NO_PROVIDER_AVAILABLE
        assert report.session.attempts == []

    def test_requested_provider(self, make_service, mock_llm: MockLLM) -> None:
        """Test that a caller can pin the provider for a session."""
        other = MockLLM(name="other", responses={"premium": [answer(PREMIUM_SQL)]})
        service = make_service({"mock": mock_llm, "other": other})
        session = service.create_session("Show me all premium customers", DEMO)
        report = service.run_session(session.session_id, provider="other")
        assert report.session.attempts[0].provider == "other"
        assert mock_llm.prompts == []


class TestResumeAndCancel:
    """Tests for step-limited runs and cancellation."""

    def test_resume_after_max_steps(self, service: QueryService) -> None:
        """Test that a paused run continues from the same state."""
        session = service.create_session("Show me all premium customers", DEMO)
        paused = service.run_session(session.session_id, max_steps=1)
        assert paused.state is MachineState.GENERATING
        assert paused.session.status is SessionStatus.RUNNING

        finished = service.run_session(session.session_id)
        assert finished.state is MachineState.SUCCEEDED
        assert len(finished.session.attempts) == 1

    def test_finished_run_is_released(self, service: QueryService) -> None:
        """Test that only unfinished runs keep their working state."""
        session = service.create_session("Show me all premium customers", DEMO)
        service.run_session(session.session_id, max_steps=1)
        assert service.orchestrator.active_session_ids == [session.session_id]

        service.run_session(session.session_id)
        assert service.orchestrator.active_session_ids == []
        report = service.get_session(session.session_id)
        assert report.state is MachineState.SUCCEEDED
        assert report.result.meta.row_count == 3

    def test_end_state_outlives_the_run(self, make_service) -> None:
        """Test that an exhausted session still reports its final state after release."""
        service = make_service({"mock": MockLLM(responses={"drop": [answer("DROP TABLE customers")]})})
        session_id = service.ask("Please drop the customers table", DEMO).session.session_id
        assert service.orchestrator.active_session_ids == []

        report = service.get_session(session_id)
        assert report.state is MachineState.EXHAUSTED
        assert report.session.end_state == "exhausted"
        assert report.retrieval_degraded is False

    def test_terminal_session_cannot_rerun(self, service: QueryService) -> None:
        """Test that a finished session is frozen."""
        report = service.ask("Show me all premium customers", DEMO)
        with pytest.raises(InvalidSessionState):
            service.run_session(report.session.session_id)

    def test_cancel_before_start(self, service: QueryService) -> None:
        """Test that a session cancelled before running is abandoned."""
        session = service.create_session("Show me all premium customers", DEMO)
        report = service.cancel_session(session.session_id)
        assert report.session.status is SessionStatus.ABANDONED
        with pytest.raises(InvalidSessionState):
            service.run_session(session.session_id)

    def test_cancel_paused_run(self, service: QueryService) -> None:
        """Test that a paused run is abandoned at once."""
        session = service.create_session("Show me all premium customers", DEMO)
        service.run_session(session.session_id, max_steps=1)
        report = service.cancel_session(session.session_id)
        assert report.state is MachineState.ABANDONED
        assert report.session.status is SessionStatus.ABANDONED
        assert report.session.attempts == []

    def test_cancel_in_flight_discards_generation(self, make_service) -> None:
        """Test that a cancel during generation stops before any attempt is recorded."""
        holder: dict[str, str] = {}
        provider = CallbackLLM(lambda: service.cancel_session(holder["session_id"]))
        service = make_service({"callback": provider})
        holder["session_id"] = service.create_session("Show me all premium customers", DEMO).session_id

        report = service.run_session(holder["session_id"])
        assert provider.calls == 1
        assert report.state is MachineState.ABANDONED
        assert report.session.attempts == []
        assert report.result is None

    def test_concurrent_run_is_refused(self, make_service) -> None:
        """Test that a second run of a session in flight raises SessionBusy."""
        holder: dict = {}

        def rerun() -> None:
            try:
                service.run_session(holder["session_id"])
            except SessionBusy as exc:
                holder["busy"] = exc

        service = make_service({"callback": CallbackLLM(rerun)})
        holder["session_id"] = service.create_session("Show me all premium customers", DEMO).session_id
        report = service.run_session(holder["session_id"])

        assert isinstance(holder["busy"], SessionBusy)
        assert report.session.status is SessionStatus.SUCCEEDED


class TestSqlOverride:
    """Tests for running caller-supplied SQL through the same checks."""

    def test_override_is_executed(self, service: QueryService, mock_llm: MockLLM) -> None:
        """Test that supplied SQL skips generation but not validation."""
        session = service.create_session("How many orders are there?", DEMO)
        report = service.run_session(session.session_id, sql_override="SELECT COUNT(*) AS n FROM orders")

        assert report.result.rows == ({"n": 8},)
        assert report.session.attempts[0].provider == SQL_OVERRIDE_PROVIDER
        assert mock_llm.prompts == []

    def test_unsafe_override_is_rejected(self, service: QueryService) -> None:
        """Test that unsafe supplied SQL is rejected and the provider takes over."""
        session = service.create_session("How many orders are there?", DEMO)
        report = service.run_session(session.session_id, sql_override="DELETE FROM orders")
        attempts = report.session.attempts

        assert (attempts[0].provider, attempts[0].outcome) == (SQL_OVERRIDE_PROVIDER, AttemptOutcome.REJECTED)
        assert (attempts[1].provider, attempts[1].outcome) == ("mock", AttemptOutcome.SUCCEEDED)
        assert report.result.rows == ({"order_count": 8},)
