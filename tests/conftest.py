"""
Pytest Fixtures
===============

Shared fixtures for the Report Pilot test-suite: the sample context store,
a throwaway SQLite copy of the sample database, scripted LLM providers and a
factory for fully wired query services.
"""

import json
from pathlib import Path
from typing import Callable, Iterator, Optional

import pytest

from report_pilot.catalog import Catalog, InMemoryContextStore
from report_pilot.config import Settings
from report_pilot.datasources import DataSourceRegistry, SQLiteDataSource
from report_pilot.llm import LLMProvider, MockLLM, ProviderHealthRegistry
from report_pilot.retrieval import HashingEmbedder
from report_pilot.sample import SAMPLE_DATA_SOURCE_ID, build_sample_store, create_sample_database
from report_pilot.service import QueryService, build_service
from report_pilot.verifiers import SqlValidator

PREMIUM_SQL = "SELECT name, email FROM customers WHERE tier = 'premium'"
REVENUE_SQL = "SELECT SUM(amount) AS revenue FROM orders WHERE status <> 'cancelled'"
ORDER_COUNT_SQL = "SELECT COUNT(*) AS order_count FROM orders"


def make_answer(sql: str, rationale: str = "Scripted answer.", citations: tuple[str, ...] = ()) -> str:
    """JSON reply in the shape the generator expects."""
    return json.dumps({"sql": sql, "rationale": rationale, "citations": list(citations)})


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def answer() -> Callable[..., str]:
    """Return the JSON reply builder."""
    return make_answer


@pytest.fixture
def sample_store() -> InMemoryContextStore:
    """Return a context store loaded with the sample catalog."""
    return build_sample_store()


@pytest.fixture
def catalog(sample_store: InMemoryContextStore) -> Catalog:
    """Return the sample catalog."""
    return sample_store.get_catalog(SAMPLE_DATA_SOURCE_ID)


@pytest.fixture
def sample_db(tmp_path: Path) -> Path:
    """Create the sample SQLite database in a temporary directory."""
    return create_sample_database(tmp_path / "demo.sqlite3")


@pytest.fixture
def sqlite_source(sample_db: Path) -> SQLiteDataSource:
    """Create a read-only adapter over the sample database."""
    return SQLiteDataSource(sample_db)


@pytest.fixture
def data_sources(sqlite_source: SQLiteDataSource) -> DataSourceRegistry:
    """Registry with the sample database registered as ``demo``."""
    registry = DataSourceRegistry()
    registry.register(SAMPLE_DATA_SOURCE_ID, sqlite_source)
    return registry


@pytest.fixture
def validator() -> SqlValidator:
    """Create a validator with the default verification chain."""
    return SqlValidator()


@pytest.fixture
def clock() -> FakeClock:
    """Create a controllable clock for provider health."""
    return FakeClock()


@pytest.fixture
def mock_llm() -> MockLLM:
    """Create a mock LLM that answers the common sample questions."""
    return MockLLM(
        responses={
            "premium": [make_answer(PREMIUM_SQL, "Premium customers are flagged by tier.", ("main.customers",))],
            "revenue": [make_answer(REVENUE_SQL, "Revenue excludes cancelled orders.", ("main.orders",))],
            "how many orders": [make_answer(ORDER_COUNT_SQL, "Count order rows.", ("main.orders",))],
        }
    )


@pytest.fixture
def make_service(
    sample_store: InMemoryContextStore,
    data_sources: DataSourceRegistry,
    clock: FakeClock,
) -> Iterator[Callable[..., QueryService]]:
    """
    Factory for wired query services over the sample data source.

    Provider health uses the ``clock`` fixture, so probes only happen when a
    test advances it.
    """
    built: list[QueryService] = []

    def factory(
        providers: dict[str, LLMProvider],
        settings: Optional[Settings] = None,
        registry: Optional[DataSourceRegistry] = None,
        **kwargs,
    ) -> QueryService:
        settings = settings or Settings()
        kwargs.setdefault(
            "health",
            ProviderHealthRegistry(
                failure_threshold=settings.health_failure_threshold,
                window_seconds=settings.health_window_s,
                probe_interval_seconds=settings.health_probe_interval_s,
                clock=clock,
            ),
        )
        service = build_service(
            context_store=sample_store,
            data_sources=registry or data_sources,
            providers=providers,
            settings=settings,
            embedder=HashingEmbedder(),
            **kwargs,
        )
        service.warm_up()
        built.append(service)
        return service

    yield factory

    for service in built:
        service.close()


@pytest.fixture
def service(make_service: Callable[..., QueryService], mock_llm: MockLLM) -> QueryService:
    """Create a query service backed by ``mock_llm``."""
    return make_service({"mock": mock_llm})
