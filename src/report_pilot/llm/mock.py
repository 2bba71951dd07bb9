"""
Mock LLM
========

Scripted LLM provider for testing and demonstration.
"""

import json

from report_pilot.errors import ProviderError
from report_pilot.llm.base import LLMProvider
from report_pilot.llm.prompts import QUESTION_MARKER
from report_pilot.models import LLMResponse, TokenUsage

Script = list[str | Exception]


class MockLLM(LLMProvider):
    """
    Mock LLM for demonstration and testing purposes.

    In production, replace with ``OpenAIProvider`` or ``GeminiProvider``.
    """

    def __init__(
        self,
        responses: dict[str, Script] | None = None,
        name: str = "mock",
        model: str = "mock-llm-v1",
        default: str | Exception | None = None,
    ) -> None:
        """
        Initialize with canned responses.

        Args:
            responses: Dict mapping question substrings to a list of replies.
                       Replies are returned in sequence (for testing
                       correction); an ``Exception`` entry is raised instead.
            name: Provider name used by the router
            model: Model name reported in responses
            default: Reply when no key matches the question
        """
        self.responses = responses or {}
        self.name = name
        self.model = model
        self.default = default
        self.healthy = True
        self.call_counts: dict[str, int] = {}
        self.prompts: list[str] = []
        self.health_checks = 0

    def generate(
        self,
        prompt: str,
        system_prompt: str | None = None,
        timeout: float | None = None,
    ) -> LLMResponse:
        """
        Generate a mock SQL response.

        Keys are matched against the question section of the prompt only,
        so schema text in the context never selects a script.
        """
        self.prompts.append(prompt)
        question = prompt.rsplit(QUESTION_MARKER, 1)[-1].lower()

        for key, replies in self.responses.items():
            if key.lower() in question:
                count = self.call_counts.get(key, 0)
                self.call_counts[key] = count + 1
                reply = replies[min(count, len(replies) - 1)]
                return self._respond(reply, prompt)

        if self.default is not None:
            return self._respond(self.default, prompt)
        return self._respond(
            json.dumps(
                {
                    "sql": "SELECT * FROM unknown_table",
                    "rationale": "No scripted answer for this question.",
                    "citations": [],
                }
            ),
            prompt,
        )

    def health_check(self) -> None:
        self.health_checks += 1
        if not self.healthy:
            raise ProviderError(self.name, "health check failed")

    def reset(self) -> None:
        """Reset call counts for fresh test runs."""
        self.call_counts = {}
        self.prompts = []
        self.health_checks = 0

    def _respond(self, reply: str | Exception, prompt: str) -> LLMResponse:
        if isinstance(reply, Exception):
            raise reply
        return LLMResponse(
            content=reply,
            model=self.model,
            usage=TokenUsage.from_counts(len(prompt) // 4, len(reply) // 4),
        )
