"""
Cost Guard
==========

Compares the planner estimate of a validated query with the row and cost
budget of its data source before anything is executed.
"""

from abc import ABC, abstractmethod
from typing import Mapping, Optional

import structlog
from opentelemetry import trace

from report_pilot.datasources.base import DataSourceAdapter
from report_pilot.errors import ValidationRejected
from report_pilot.models import BudgetThreshold, CostDecision, CostEstimate, ValidationResult

logger = structlog.get_logger(__name__)
tracer = trace.get_tracer(__name__)


class ThresholdResolver(ABC):
    """Source of the budget applied to a data source."""

    @abstractmethod
    def resolve(self, data_source_id: str) -> BudgetThreshold:
        pass


class StaticThresholdResolver(ThresholdResolver):
    """Global default with optional per-data-source overrides."""

    def __init__(
        self,
        default: BudgetThreshold,
        overrides: Optional[Mapping[str, BudgetThreshold]] = None,
    ) -> None:
        self.default = default
        self.overrides = dict(overrides or {})

    def resolve(self, data_source_id: str) -> BudgetThreshold:
        override = self.overrides.get(data_source_id)
        if override is None:
            return BudgetThreshold(self.default.max_rows, self.default.max_cost, source="global")
        return BudgetThreshold(override.max_rows, override.max_cost, source="data_source")


class CostHintPolicy(ABC):
    """Renders the regeneration hint for an over-budget attempt."""

    @abstractmethod
    def hint(self, estimate: CostEstimate) -> str:
        pass


class DefaultCostHintPolicy(CostHintPolicy):
    def hint(self, estimate: CostEstimate) -> str:
        threshold = estimate.threshold
        limits = []
        if threshold.max_rows is not None:
            limits.append(f"at most {threshold.max_rows:,.0f} rows")
        if threshold.max_cost is not None:
            limits.append(f"a plan cost below {threshold.max_cost:,.0f}")
        reasons = "; ".join(estimate.reasons)
        return (
            f"The previous query was too expensive ({reasons}). Rewrite it to need "
            f"{' and '.join(limits) or 'less work'}: add selective filters, aggregate "
            "before joining, or add a LIMIT."
        )


class CostGuard:
    """Approves or rejects validated SQL on its plan estimate."""

    def __init__(
        self,
        thresholds: ThresholdResolver,
        hint_policy: Optional[CostHintPolicy] = None,
        enabled: bool = True,
    ) -> None:
        self.thresholds = thresholds
        self.hint_policy = hint_policy or DefaultCostHintPolicy()
        self.enabled = enabled

    def evaluate(
        self,
        adapter: DataSourceAdapter,
        validation: ValidationResult,
        data_source_id: str,
    ) -> CostEstimate:
        """
        Estimate the validated query and compare it with the budget.

        Raises:
            ValidationRejected: ``validation`` is not valid
            DataSourceError: the planner could not be reached
        """
        if not validation.is_valid:
            raise ValidationRejected(validation)

        threshold = self.thresholds.resolve(data_source_id)
        if not self.enabled:
            return CostEstimate(
                estimated_rows=None,
                estimated_cost=None,
                decision=CostDecision.WITHIN_BUDGET,
                threshold=threshold,
                reasons=("cost guard disabled",),
            )

        with tracer.start_as_current_span("cost_guard.evaluate") as span:
            plan = adapter.explain(validation.normalized_sql)
            if plan is None:
                return CostEstimate(
                    estimated_rows=None,
                    estimated_cost=None,
                    decision=CostDecision.WITHIN_BUDGET,
                    threshold=threshold,
                    reasons=("plan estimate unavailable",),
                )

            reasons = []
            rows, cost = plan.estimated_rows, plan.estimated_cost
            if threshold.max_rows is not None and rows is not None and rows > threshold.max_rows:
                reasons.append(f"estimated rows {rows:,.0f} exceed {threshold.max_rows:,.0f}")
            if threshold.max_cost is not None and cost is not None and cost > threshold.max_cost:
                reasons.append(f"estimated cost {cost:,.0f} exceeds {threshold.max_cost:,.0f}")

            decision = CostDecision.OVER_BUDGET if reasons else CostDecision.WITHIN_BUDGET
            span.set_attribute("cost.decision", decision.value)
            if reasons:
                logger.info(
                    "query_over_budget",
                    data_source_id=data_source_id,
                    estimated_rows=rows,
                    estimated_cost=cost,
                    threshold_source=threshold.source,
                )
            return CostEstimate(
                estimated_rows=rows,
                estimated_cost=cost,
                decision=decision,
                threshold=threshold,
                reasons=tuple(reasons),
            )

    def hint(self, estimate: CostEstimate) -> str:
        return self.hint_policy.hint(estimate)
