"""
Data Source Adapters
====================

Contract for the target databases queries run against. Adapters are
read-only at the connection level and raise ``DataSourceError`` with a
``kind`` the execution engine uses to classify failures.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

import structlog

from report_pilot.errors import UnknownDataSource

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PlanEstimate:
    """Planner estimate for a query."""

    estimated_rows: Optional[float]
    estimated_cost: Optional[float] = None
    plan: Any = None


@dataclass(frozen=True)
class QueryOutput:
    """Raw rows returned by an adapter, already capped."""

    columns: tuple[str, ...]
    rows: tuple[dict[str, Any], ...]
    row_count: int
    truncated: bool
    duration_ms: float
    bytes_scanned: Optional[int] = None


def unique_labels(names: Sequence[str]) -> tuple[str, ...]:
    """
    Result column labels with repeats suffixed, e.g. ``(id, id)`` -> ``(id, id_2)``.

    Rows are dicts keyed by label, so a join selecting ``c.id, o.id`` would
    otherwise keep only one of the two values.
    """
    original = set(names)
    used: set[str] = set()
    labels = []
    for name in names:
        label, suffix = name, 2
        # A suffixed label must not take the name of a later real column
        while label in used or (label != name and label in original):
            label = f"{name}_{suffix}"
            suffix += 1
        used.add(label)
        labels.append(label)
    return tuple(labels)


def rows_as_dicts(labels: Sequence[str], rows: Sequence[Sequence[Any]]) -> tuple[dict[str, Any], ...]:
    return tuple(dict(zip(labels, row)) for row in rows)


class DataSourceAdapter(ABC):
    """Read-only access to one target database."""

    data_source_id: str = ""

    @property
    @abstractmethod
    def dialect(self) -> str:
        pass

    @abstractmethod
    def explain(self, sql: str) -> Optional[PlanEstimate]:
        """Return the planner estimate, or None when the engine has none."""
        pass

    @abstractmethod
    def execute(self, sql: str, row_cap: int, timeout_seconds: float) -> QueryOutput:
        pass

    def close(self) -> None:
        pass


@dataclass
class DataSourceRegistry:
    """Adapters by data source id."""

    adapters: dict[str, DataSourceAdapter] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self._lock = threading.Lock()

    def register(self, data_source_id: str, adapter: DataSourceAdapter) -> None:
        with self._lock:
            adapter.data_source_id = data_source_id
            self.adapters[data_source_id] = adapter

    def get(self, data_source_id: str) -> DataSourceAdapter:
        with self._lock:
            adapter = self.adapters.get(data_source_id)
        if adapter is None:
            raise UnknownDataSource(f"No adapter registered for data source: {data_source_id}")
        return adapter

    def ids(self) -> list[str]:
        with self._lock:
            return sorted(self.adapters)

    def close_all(self) -> None:
        with self._lock:
            adapters = list(self.adapters.values())
        for adapter in adapters:
            try:
                adapter.close()
            except Exception:
                logger.exception("data_source_close_failed", data_source_id=adapter.data_source_id)
