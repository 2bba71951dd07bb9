"""
Query Service
=============

Facade over the pipeline: session lifecycle, feedback, provider health and
reindexing. Both the HTTP API and embedding applications talk to this
class rather than to the individual components.

Usage:
    service = build_service(
        settings=Settings.from_env(),
        context_store=build_sample_store(),
        data_sources=registry,
        providers={"openai": OpenAIProvider(api_key)},
    )
    session = service.create_session("How many customers are there?", "demo")
    report = service.run_session(session.session_id)
"""

from concurrent.futures import Future
from typing import Optional, Sequence, Union

import structlog

from report_pilot.catalog import ContextStore
from report_pilot.config import Settings
from report_pilot.context import ContextAssembler
from report_pilot.cost_guard import CostGuard, CostHintPolicy, StaticThresholdResolver, ThresholdResolver
from report_pilot.datasources.base import DataSourceRegistry
from report_pilot.errors import UnknownDataSource
from report_pilot.execution import ExecutionEngine
from report_pilot.feedback import FeedbackReceipt, FeedbackRecorder
from report_pilot.generator import SqlGenerator
from report_pilot.llm.base import LLMProvider
from report_pilot.llm.router import ProviderConfig, ProviderHealthRegistry, ProviderRouter, RoutingRule
from report_pilot.models import BudgetThreshold, QuerySession
from report_pilot.orchestrator import SessionOrchestrator, SessionReport
from report_pilot.retrieval.embeddings import Embedder
from report_pilot.retrieval.engine import RetrievalEngine, SyncReport
from report_pilot.sessions import SessionStore
from report_pilot.verifiers.validator import SqlValidator

logger = structlog.get_logger(__name__)

MAX_QUESTION_LENGTH = 4000


class QueryService:
    """Produced API of the query pipeline."""

    def __init__(
        self,
        settings: Settings,
        sessions: SessionStore,
        context_store: ContextStore,
        data_sources: DataSourceRegistry,
        retrieval: RetrievalEngine,
        router: ProviderRouter,
        orchestrator: SessionOrchestrator,
        feedback: FeedbackRecorder,
    ) -> None:
        self.settings = settings
        self.sessions = sessions
        self.context_store = context_store
        self.data_sources = data_sources
        self.retrieval = retrieval
        self.router = router
        self.orchestrator = orchestrator
        self.feedback = feedback

    # -- sessions -------------------------------------------------------------

    def create_session(self, question: str, data_source_id: str, user_id: str = "anonymous") -> QuerySession:
        """
        Open a session for ``question`` against ``data_source_id``.

        Raises:
            ValueError: empty or oversized question
            UnknownDataSource: no adapter or metadata for the data source
        """
        question = (question or "").strip()
        if not question:
            raise ValueError("question must not be empty")
        if len(question) > MAX_QUESTION_LENGTH:
            raise ValueError(f"question exceeds {MAX_QUESTION_LENGTH} characters")
        self.data_sources.get(data_source_id)
        if not self.context_store.has_data_source(data_source_id):
            raise UnknownDataSource(f"No metadata registered for data source: {data_source_id}")

        session = self.sessions.create(user_id, data_source_id, question)
        logger.info(
            "session_created",
            session_id=session.session_id,
            data_source_id=data_source_id,
            user_id=user_id,
        )
        return session

    def run_session(
        self,
        session_id: str,
        max_steps: Optional[int] = None,
        provider: Optional[str] = None,
        sql_override: Optional[str] = None,
    ) -> SessionReport:
        return self.orchestrator.run(
            session_id,
            max_steps=max_steps,
            requested_provider=provider,
            sql_override=sql_override,
        )

    def ask(self, question: str, data_source_id: str, user_id: str = "anonymous") -> SessionReport:
        """Create and run a session in one call."""
        session = self.create_session(question, data_source_id, user_id)
        return self.run_session(session.session_id)

    def cancel_session(self, session_id: str) -> SessionReport:
        self.orchestrator.cancel(session_id)
        logger.info("session_cancel_requested", session_id=session_id)
        return self.orchestrator.report(session_id)

    def get_session(self, session_id: str) -> SessionReport:
        return self.orchestrator.report(session_id)

    def list_sessions(
        self,
        user_id: Optional[str] = None,
        data_source_id: Optional[str] = None,
        text: Optional[str] = None,
        limit: int = 50,
    ) -> list[QuerySession]:
        return self.sessions.search(user_id=user_id, data_source_id=data_source_id, text=text, limit=limit)

    # -- feedback -------------------------------------------------------------

    def submit_feedback(
        self,
        session_id: str,
        rating: int,
        corrected_sql: Optional[str] = None,
        comment: Optional[str] = None,
    ) -> FeedbackReceipt:
        return self.feedback.submit(session_id, rating, corrected_sql=corrected_sql, comment=comment)

    # -- providers & index ----------------------------------------------------

    def provider_health(self) -> list[dict]:
        return self.router.health_report()

    def reset_provider_health(self) -> None:
        self.router.health.reset()

    def reindex(self, data_source_id: str, wait: bool = True) -> Union[SyncReport, Future]:
        """Rebuild the retrieval index of one data source, inline or in the background."""
        if not self.context_store.has_data_source(data_source_id):
            raise UnknownDataSource(f"No metadata registered for data source: {data_source_id}")
        if wait:
            return self.retrieval.reindex(data_source_id)
        return self.retrieval.trigger_reindex(data_source_id)

    def warm_up(self) -> list[SyncReport]:
        """Index every registered data source that has metadata."""
        return [
            self.retrieval.reindex(data_source_id)
            for data_source_id in self.data_sources.ids()
            if self.context_store.has_data_source(data_source_id)
        ]

    def close(self) -> None:
        self.retrieval.shutdown(wait_for_pending=True)
        self.data_sources.close_all()
        logger.info("query_service_closed")


def build_service(
    context_store: ContextStore,
    data_sources: DataSourceRegistry,
    providers: dict[str, LLMProvider],
    settings: Optional[Settings] = None,
    provider_configs: Sequence[ProviderConfig] = (),
    rules: Sequence[RoutingRule] = (),
    embedder: Optional[Embedder] = None,
    health: Optional[ProviderHealthRegistry] = None,
    thresholds: Optional[ThresholdResolver] = None,
    hint_policy: Optional[CostHintPolicy] = None,
) -> QueryService:
    """Wire the pipeline components from ``settings``."""
    settings = settings or Settings()
    sessions = SessionStore()
    health = health or ProviderHealthRegistry(
        failure_threshold=settings.health_failure_threshold,
        window_seconds=settings.health_window_s,
        probe_interval_seconds=settings.health_probe_interval_s,
    )
    router = ProviderRouter(providers, configs=provider_configs, rules=rules, health=health)
    retrieval = RetrievalEngine(context_store, embedder=embedder, max_workers=settings.reindex_workers)
    validator = SqlValidator()
    thresholds = thresholds or StaticThresholdResolver(
        BudgetThreshold(
            max_rows=settings.explain_max_plan_rows,
            max_cost=settings.explain_max_total_cost,
        )
    )

    orchestrator = SessionOrchestrator(
        sessions=sessions,
        context_store=context_store,
        data_sources=data_sources,
        retrieval=retrieval,
        assembler=ContextAssembler(
            context_store,
            token_budget=settings.context_token_budget,
            synonym_min_weight=settings.synonym_min_weight,
        ),
        router=router,
        generator=SqlGenerator(
            router,
            immediate_retries=settings.generation_retries,
            timeout_seconds=settings.provider_timeout_s,
        ),
        validator=validator,
        cost_guard=CostGuard(thresholds, hint_policy=hint_policy, enabled=settings.cost_guard_enabled),
        executor=ExecutionEngine(row_cap=settings.row_cap, timeout_seconds=settings.execution_timeout_s),
        max_attempts=settings.max_attempts,
        max_execution_retries=settings.max_execution_retries,
        retrieval_top_k=settings.retrieval_top_k,
    )
    feedback = FeedbackRecorder(sessions, context_store, validator, retrieval, data_sources)

    logger.info(
        "query_service_built",
        providers=list(providers),
        data_sources=data_sources.ids(),
        max_attempts=settings.max_attempts,
    )
    return QueryService(
        settings=settings,
        sessions=sessions,
        context_store=context_store,
        data_sources=data_sources,
        retrieval=retrieval,
        router=router,
        orchestrator=orchestrator,
        feedback=feedback,
    )
