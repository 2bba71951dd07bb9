"""
Base LLM Interface
==================

Capability interface every LLM provider adapter implements.
"""

from abc import ABC, abstractmethod

from report_pilot.models import LLMResponse


class LLMProvider(ABC):
    """
    Abstract interface for LLM providers.

    Adapters raise ``ProviderTimeout`` when a call exceeds its timeout and
    ``ProviderError`` for every other failed call, so callers handle all
    providers the same way.
    """

    name: str = "provider"
    model: str = "unknown"

    @abstractmethod
    def generate(
        self,
        prompt: str,
        system_prompt: str | None = None,
        timeout: float | None = None,
    ) -> LLMResponse:
        """
        Generate a response from the LLM.

        Args:
            prompt: The user prompt (context, hints and question)
            system_prompt: Optional system prompt with the generation rules
            timeout: Per-call timeout in seconds

        Returns:
            LLMResponse with generated content and token usage
        """
        pass

    def health_check(self) -> None:
        """
        Probe the provider; raise ``ProviderError`` if it is not usable.

        The default sends a minimal prompt. HTTP adapters override this with
        a cheaper endpoint.
        """
        self.generate("Reply with OK.", timeout=10.0)
