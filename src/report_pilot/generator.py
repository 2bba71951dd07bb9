"""
SQL Generator
=============

Turns a prompt context into candidate SQL through one LLM provider.
"""

import time
from dataclasses import dataclass, field
from typing import Optional, Sequence

import structlog

from report_pilot.context import PromptContext
from report_pilot.errors import GenerationFailure, ProviderError, ProviderTimeout
from report_pilot.llm.parsing import parse_generation
from report_pilot.llm.prompts import PROMPT_VERSION, build_system_prompt, build_user_prompt
from report_pilot.llm.router import ProviderRouter
from report_pilot.models import TokenUsage

logger = structlog.get_logger(__name__)


@dataclass
class GenerationResult:
    """Outcome of one generation, successful or not. Totals cover every try."""

    provider: str
    model: str
    prompt_version: str = PROMPT_VERSION
    sql: Optional[str] = None
    rationale: str = ""
    citations: tuple[str, ...] = ()
    latency_ms: float = 0.0
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    failure: Optional[GenerationFailure] = None
    tries: int = 0

    @property
    def ok(self) -> bool:
        return self.failure is None and bool(self.sql)


class SqlGenerator:
    """
    Generates SQL with a single provider.

    Each call makes up to ``1 + immediate_retries`` tries on the same
    provider. Transport failures (timeout, provider error) count against the
    provider's health; malformed output does not.
    """

    def __init__(
        self,
        router: ProviderRouter,
        immediate_retries: int = 1,
        timeout_seconds: float = 30.0,
    ) -> None:
        self.router = router
        self.immediate_retries = immediate_retries
        self.timeout_seconds = timeout_seconds

    def generate(
        self,
        provider_name: str,
        context: PromptContext,
        hints: Sequence[str] = (),
    ) -> GenerationResult:
        provider = self.router.get(provider_name)
        system_prompt = build_system_prompt(context.dialect)
        prompt = build_user_prompt(context, hints)
        result = GenerationResult(provider=provider_name, model=provider.model)

        for _ in range(1 + self.immediate_retries):
            result.tries += 1
            started = time.perf_counter()
            try:
                response = provider.generate(prompt, system_prompt=system_prompt, timeout=self.timeout_seconds)
            except ProviderTimeout as exc:
                result.latency_ms += _elapsed_ms(started)
                self.router.record_failure(provider_name, str(exc))
                result.failure = GenerationFailure(str(exc), GenerationFailure.TIMEOUT, provider_name)
            except ProviderError as exc:
                result.latency_ms += _elapsed_ms(started)
                self.router.record_failure(provider_name, str(exc))
                result.failure = GenerationFailure(str(exc), GenerationFailure.PROVIDER_ERROR, provider_name)
            else:
                result.latency_ms += _elapsed_ms(started)
                result.token_usage = result.token_usage + response.usage
                result.model = response.model or result.model
                self.router.record_success(provider_name)
                try:
                    parsed = parse_generation(response.content)
                except GenerationFailure as exc:
                    exc.provider = provider_name
                    result.failure = exc
                else:
                    result.sql = parsed.sql
                    result.rationale = parsed.rationale
                    result.citations = parsed.citations
                    result.failure = None
                    break

            logger.warning(
                "generation_try_failed",
                provider=provider_name,
                attempt=result.tries,
                reason=result.failure.reason,
                error=str(result.failure),
            )

        logger.info(
            "generation_finished",
            provider=provider_name,
            model=result.model,
            ok=result.ok,
            tries=result.tries,
            latency_ms=round(result.latency_ms, 1),
            tokens=result.token_usage.total_tokens,
        )
        return result


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000.0
