"""
Report Pilot
============

Natural-language questions to validated, cost-checked, read-only SQL.
"""

from report_pilot.catalog import Catalog, ContextStore, InMemoryContextStore
from report_pilot.config import Settings
from report_pilot.errors import (
    BudgetExceeded,
    ExecutionFatal,
    ExecutionTransient,
    GenerationFailure,
    NoProviderAvailable,
    ReportPilotError,
    ValidationRejected,
)
from report_pilot.models import (
    AttemptOutcome,
    FailureCause,
    QueryAttempt,
    QuerySession,
    SessionStatus,
    ValidationResult,
)
from report_pilot.orchestrator import MachineState, SessionOrchestrator, SessionReport
from report_pilot.service import QueryService, build_service
from report_pilot.verifiers import SqlValidator
from report_pilot.llm import MockLLM, ProviderRouter

__version__ = "0.1.0"

__all__ = [
    # Models
    "AttemptOutcome",
    "FailureCause",
    "QueryAttempt",
    "QuerySession",
    "SessionStatus",
    "ValidationResult",
    # Metadata
    "Catalog",
    "ContextStore",
    "InMemoryContextStore",
    "Settings",
    # Errors
    "ReportPilotError",
    "GenerationFailure",
    "ValidationRejected",
    "BudgetExceeded",
    "ExecutionTransient",
    "ExecutionFatal",
    "NoProviderAvailable",
    # Pipeline
    "MachineState",
    "SessionOrchestrator",
    "SessionReport",
    "QueryService",
    "build_service",
    "SqlValidator",
    # LLM
    "MockLLM",
    "ProviderRouter",
]
