"""LLM provider adapters, prompts, output parsing and routing."""

from report_pilot.llm.base import LLMProvider
from report_pilot.llm.mock import MockLLM
from report_pilot.llm.providers import GeminiProvider, OpenAIProvider
from report_pilot.llm.router import (
    ProviderConfig,
    ProviderHealthRegistry,
    ProviderRouter,
    RoutingRule,
    SelectionContext,
)

__all__ = [
    "LLMProvider",
    "MockLLM",
    "OpenAIProvider",
    "GeminiProvider",
    "ProviderConfig",
    "ProviderHealthRegistry",
    "ProviderRouter",
    "RoutingRule",
    "SelectionContext",
]
