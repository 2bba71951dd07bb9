"""
Provider Router
===============

Chooses an LLM provider chain for a request from routing rules and the
health of each provider.

A provider is marked unhealthy after ``failure_threshold`` consecutive
failures inside a rolling window. Unhealthy providers are probed through
their ``health_check`` no more often than the probe interval; a successful
probe, like any successful call, restores them.
"""

import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

import structlog

from report_pilot.errors import NoProviderAvailable, ReportPilotError
from report_pilot.llm.base import LLMProvider

logger = structlog.get_logger(__name__)

DEFAULT_RULE_NAME = "default"


@dataclass(frozen=True)
class ProviderConfig:
    """Configured LLM provider."""

    name: str
    default_model: str = ""
    credentials_ref: Optional[str] = None  # environment variable holding the key
    enabled: bool = True


@dataclass(frozen=True)
class RoutingRule:
    """Ordered provider list (primary first) for matching requests."""

    name: str
    providers: tuple[str, ...]
    priority: int = 100
    data_source_id: Optional[str] = None
    dialect: Optional[str] = None

    def matches(self, context: "SelectionContext") -> bool:
        if self.data_source_id is not None and self.data_source_id != context.data_source_id:
            return False
        if self.dialect is not None and self.dialect != context.dialect:
            return False
        return True


@dataclass(frozen=True)
class SelectionContext:
    data_source_id: str
    dialect: Optional[str] = None
    requested_provider: Optional[str] = None


@dataclass
class _HealthState:
    failures: deque
    unhealthy_since: Optional[float] = None
    last_probe: Optional[float] = None
    last_error: Optional[str] = None
    successes: int = 0
    total_failures: int = 0


class ProviderHealthRegistry:
    """Process-wide, lock-guarded provider health bookkeeping."""

    def __init__(
        self,
        failure_threshold: int = 3,
        window_seconds: float = 300.0,
        probe_interval_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.window_seconds = window_seconds
        self.probe_interval_seconds = probe_interval_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._states: dict[str, _HealthState] = {}

    def _state(self, provider: str) -> _HealthState:
        state = self._states.get(provider)
        if state is None:
            state = _HealthState(failures=deque())
            self._states[provider] = state
        return state

    def _prune(self, state: _HealthState, now: float) -> None:
        while state.failures and now - state.failures[0] > self.window_seconds:
            state.failures.popleft()

    def record_success(self, provider: str) -> None:
        with self._lock:
            state = self._state(provider)
            was_unhealthy = state.unhealthy_since is not None
            state.failures.clear()
            state.unhealthy_since = None
            state.last_error = None
            state.successes += 1
        if was_unhealthy:
            logger.info("provider_recovered", provider=provider)

    def record_failure(self, provider: str, error: str = "") -> None:
        with self._lock:
            now = self._clock()
            state = self._state(provider)
            state.failures.append(now)
            state.total_failures += 1
            state.last_error = error or None
            self._prune(state, now)
            tripped = state.unhealthy_since is None and len(state.failures) >= self.failure_threshold
            if tripped:
                state.unhealthy_since = now
        if tripped:
            logger.warning(
                "provider_marked_unhealthy",
                provider=provider,
                consecutive_failures=self.failure_threshold,
                error=error,
            )

    def is_healthy(self, provider: str) -> bool:
        with self._lock:
            state = self._states.get(provider)
            return state is None or state.unhealthy_since is None

    def probe_due(self, provider: str) -> bool:
        with self._lock:
            state = self._states.get(provider)
            if state is None or state.unhealthy_since is None:
                return False
            since = state.last_probe if state.last_probe is not None else state.unhealthy_since
            return self._clock() - since >= self.probe_interval_seconds

    def record_probe(self, provider: str, ok: bool, error: str = "") -> None:
        if ok:
            self.record_success(provider)
            return
        with self._lock:
            state = self._state(provider)
            state.last_probe = self._clock()
            state.last_error = error or state.last_error

    def snapshot(self) -> dict[str, dict]:
        with self._lock:
            return {
                name: {
                    "healthy": state.unhealthy_since is None,
                    "recent_failures": len(state.failures),
                    "total_failures": state.total_failures,
                    "successes": state.successes,
                    "last_error": state.last_error,
                }
                for name, state in sorted(self._states.items())
            }

    def reset(self) -> None:
        with self._lock:
            self._states.clear()


class ProviderRouter:
    """
    Selects the provider chain for a request.

    Rules are evaluated by ascending priority. The first matching rule whose
    primary is healthy wins; otherwise the first matching rule with a healthy
    fallback. When no rule matches, a default rule listing every enabled
    provider in configured order applies.
    """

    def __init__(
        self,
        providers: dict[str, LLMProvider],
        configs: Sequence[ProviderConfig] = (),
        rules: Sequence[RoutingRule] = (),
        health: Optional[ProviderHealthRegistry] = None,
    ) -> None:
        self.providers = providers
        known = {config.name: config for config in configs}
        self.configs = [known.get(name) or ProviderConfig(name=name) for name in providers]
        self.configs += [c for c in configs if c.name not in providers]
        self.rules = sorted(rules, key=lambda rule: (rule.priority, rule.name))
        self.health = health or ProviderHealthRegistry()

    def enabled(self, name: str) -> bool:
        return name in self.providers and any(c.name == name and c.enabled for c in self.configs)

    def get(self, name: str) -> LLMProvider:
        provider = self.providers.get(name)
        if provider is None:
            raise KeyError(f"Unknown provider: {name}")
        return provider

    def default_rule(self) -> RoutingRule:
        return RoutingRule(
            name=DEFAULT_RULE_NAME,
            providers=tuple(c.name for c in self.configs if self.enabled(c.name)),
            priority=10**6,
        )

    def select(self, context: SelectionContext) -> list[str]:
        """
        Return the healthy provider chain for ``context``, primary first.

        Raises:
            NoProviderAvailable: every provider of every matching rule is
                unhealthy and no due probe succeeded
        """
        rules = [rule for rule in self.rules if rule.matches(context)] or [self.default_rule()]
        candidates = [name for rule in rules for name in rule.providers if self.enabled(name)]
        if context.requested_provider and self.enabled(context.requested_provider):
            candidates.append(context.requested_provider)
        for name in dict.fromkeys(candidates):
            self._probe_if_due(name)

        chain: list[str] = []
        for rule in rules:
            names = [name for name in rule.providers if self.enabled(name)]
            if names and self.health.is_healthy(names[0]):
                chain = [name for name in names if self.health.is_healthy(name)]
                break
        if not chain:
            for rule in rules:
                fallbacks = [
                    name
                    for name in rule.providers[1:]
                    if self.enabled(name) and self.health.is_healthy(name)
                ]
                if fallbacks:
                    chain = fallbacks
                    logger.info("routing_to_fallback", rule=rule.name, provider=fallbacks[0])
                    break

        requested = context.requested_provider
        if requested and self.enabled(requested) and self.health.is_healthy(requested):
            chain = [requested] + [name for name in chain if name != requested]

        if not chain:
            logger.error(
                "no_provider_available",
                data_source_id=context.data_source_id,
                rules=[rule.name for rule in rules],
            )
            raise NoProviderAvailable(
                f"no healthy provider for data source {context.data_source_id}"
            )
        return chain

    def _probe_if_due(self, name: str) -> None:
        if not self.health.probe_due(name):
            return
        try:
            self.providers[name].health_check()
        except ReportPilotError as exc:
            logger.info("provider_probe_failed", provider=name, error=str(exc))
            self.health.record_probe(name, ok=False, error=str(exc))
        else:
            logger.info("provider_probe_succeeded", provider=name)
            self.health.record_probe(name, ok=True)

    def record_success(self, name: str) -> None:
        self.health.record_success(name)

    def record_failure(self, name: str, error: str = "") -> None:
        self.health.record_failure(name, error)

    def health_report(self) -> list[dict]:
        snapshot = self.health.snapshot()
        report = []
        for config in self.configs:
            state = snapshot.get(config.name, {})
            report.append(
                {
                    "name": config.name,
                    "model": config.default_model or getattr(self.providers.get(config.name), "model", ""),
                    "enabled": self.enabled(config.name),
                    "healthy": state.get("healthy", True),
                    "recent_failures": state.get("recent_failures", 0),
                    "last_error": state.get("last_error"),
                }
            )
        return report
