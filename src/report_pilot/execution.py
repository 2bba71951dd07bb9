"""
Execution Engine
================

Runs approved SQL through a data source adapter and classifies failures.
"""

from typing import Optional

import structlog
from opentelemetry import trace

from report_pilot.datasources.base import DataSourceAdapter
from report_pilot.errors import (
    BudgetExceeded,
    DataSourceError,
    ExecutionFatal,
    ExecutionTransient,
    ValidationRejected,
)
from report_pilot.models import CostEstimate, ExecutionResult, ExecutionResultMeta, ValidationResult

logger = structlog.get_logger(__name__)
tracer = trace.get_tracer(__name__)

PUBLIC_MESSAGES = {
    DataSourceError.TIMEOUT: "The query timed out",
    DataSourceError.CONNECTION: "The data source could not be reached",
    DataSourceError.PERMISSION: "The data source refused access to the requested data",
    DataSourceError.SYNTAX: "The data source could not run the generated query",
    DataSourceError.OTHER: "The data source failed to run the query",
}


class ExecutionEngine:
    """Executes exactly one validated, within-budget statement."""

    def __init__(self, row_cap: int = 1000, timeout_seconds: float = 20.0) -> None:
        self.row_cap = row_cap
        self.timeout_seconds = timeout_seconds

    def execute(
        self,
        adapter: DataSourceAdapter,
        validation: ValidationResult,
        cost: Optional[CostEstimate],
        row_cap: Optional[int] = None,
    ) -> ExecutionResult:
        """
        Execute the validated SQL.

        Raises:
            ValidationRejected: the validation is not valid
            BudgetExceeded: no estimate, or the estimate is over budget
            ExecutionTransient: timeout or connection failure
            ExecutionFatal: permission, syntax or any other engine error
        """
        if not validation.is_valid:
            raise ValidationRejected(validation)
        if cost is None or not cost.within_budget:
            raise BudgetExceeded(cost)

        cap = row_cap or self.row_cap
        with tracer.start_as_current_span("sql.execute") as span:
            span.set_attribute("db.system", adapter.dialect)
            try:
                output = adapter.execute(validation.normalized_sql, cap, self.timeout_seconds)
            except DataSourceError as exc:
                logger.warning(
                    "execution_failed",
                    data_source_id=adapter.data_source_id,
                    kind=exc.kind,
                    error=str(exc),
                )
                public = PUBLIC_MESSAGES.get(exc.kind, PUBLIC_MESSAGES[DataSourceError.OTHER])
                if exc.transient:
                    raise ExecutionTransient(str(exc), public_message=public) from exc
                raise ExecutionFatal(str(exc), public_message=public) from exc

            span.set_attribute("db.row_count", output.row_count)
            meta = ExecutionResultMeta(
                row_count=output.row_count,
                duration_ms=round(output.duration_ms, 3),
                truncated=output.truncated,
                bytes_scanned=output.bytes_scanned,
            )
            logger.info(
                "execution_succeeded",
                data_source_id=adapter.data_source_id,
                row_count=meta.row_count,
                truncated=meta.truncated,
                duration_ms=meta.duration_ms,
            )
            return ExecutionResult(columns=output.columns, rows=output.rows, meta=meta)
