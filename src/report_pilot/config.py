"""
Configuration
=============

Pipeline settings with environment overrides.
"""

import os
from dataclasses import dataclass
from typing import Optional


def _env_int(name: str, default: int, minimum: Optional[int] = None, maximum: Optional[int] = None) -> int:
    raw = os.getenv(name)
    try:
        value = int(raw) if raw not in (None, "") else default
    except ValueError:
        value = default
    if minimum is not None:
        value = max(minimum, value)
    if maximum is not None:
        value = min(maximum, value)
    return value


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    """Tunable limits for retrieval, routing, generation and execution."""

    max_attempts: int = 3
    max_execution_retries: int = 1
    generation_retries: int = 1
    row_cap: int = 1000
    execution_timeout_ms: int = 20000
    provider_timeout_s: float = 30.0
    retrieval_top_k: int = 12
    context_token_budget: int = 6000
    synonym_min_weight: float = 0.5
    health_failure_threshold: int = 3
    health_window_s: float = 300.0
    health_probe_interval_s: float = 60.0
    cost_guard_enabled: bool = True
    explain_max_total_cost: Optional[float] = 500000.0
    explain_max_plan_rows: Optional[float] = 1000000.0
    embedder: str = "hashing"
    reindex_workers: int = 2

    @property
    def execution_timeout_s(self) -> float:
        return self.execution_timeout_ms / 1000.0

    @classmethod
    def from_env(cls) -> "Settings":
        """
        Build settings from ``REPORT_PILOT_*`` environment variables.

        Row cap is clamped to 1..100000 and the execution timeout to
        1000..120000 ms.
        """
        defaults = cls()
        return cls(
            max_attempts=_env_int("REPORT_PILOT_MAX_ATTEMPTS", defaults.max_attempts, minimum=1),
            max_execution_retries=_env_int(
                "REPORT_PILOT_MAX_EXECUTION_RETRIES", defaults.max_execution_retries, minimum=0
            ),
            generation_retries=_env_int(
                "REPORT_PILOT_GENERATION_RETRIES", defaults.generation_retries, minimum=0, maximum=1
            ),
            row_cap=_env_int("REPORT_PILOT_ROW_CAP", defaults.row_cap, minimum=1, maximum=100000),
            execution_timeout_ms=_env_int(
                "REPORT_PILOT_EXECUTION_TIMEOUT_MS",
                defaults.execution_timeout_ms,
                minimum=1000,
                maximum=120000,
            ),
            provider_timeout_s=_env_float("REPORT_PILOT_PROVIDER_TIMEOUT_S", defaults.provider_timeout_s),
            retrieval_top_k=_env_int("REPORT_PILOT_RETRIEVAL_TOP_K", defaults.retrieval_top_k, minimum=1),
            context_token_budget=_env_int(
                "REPORT_PILOT_CONTEXT_TOKEN_BUDGET", defaults.context_token_budget, minimum=256
            ),
            synonym_min_weight=_env_float("REPORT_PILOT_SYNONYM_MIN_WEIGHT", defaults.synonym_min_weight),
            health_failure_threshold=_env_int(
                "REPORT_PILOT_HEALTH_FAILURE_THRESHOLD", defaults.health_failure_threshold, minimum=1
            ),
            health_window_s=_env_float("REPORT_PILOT_HEALTH_WINDOW_S", defaults.health_window_s),
            health_probe_interval_s=_env_float(
                "REPORT_PILOT_HEALTH_PROBE_INTERVAL_S", defaults.health_probe_interval_s
            ),
            cost_guard_enabled=_env_bool("REPORT_PILOT_COST_GUARD_ENABLED", defaults.cost_guard_enabled),
            explain_max_total_cost=_env_float("EXPLAIN_MAX_TOTAL_COST", defaults.explain_max_total_cost),
            explain_max_plan_rows=_env_float("EXPLAIN_MAX_PLAN_ROWS", defaults.explain_max_plan_rows),
            embedder=os.getenv("REPORT_PILOT_EMBEDDER", defaults.embedder),
            reindex_workers=_env_int("REPORT_PILOT_REINDEX_WORKERS", defaults.reindex_workers, minimum=1),
        )
