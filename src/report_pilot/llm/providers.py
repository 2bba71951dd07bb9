"""
HTTP Providers
==============

LLM provider adapters for hosted chat-completion APIs, built on httpx.
"""

from typing import Any, Optional

import httpx
import structlog

from report_pilot.errors import ProviderError, ProviderTimeout
from report_pilot.llm.base import LLMProvider
from report_pilot.models import LLMResponse, TokenUsage

logger = structlog.get_logger(__name__)


class HTTPProvider(LLMProvider):
    """Shared request handling and error mapping for HTTP providers."""

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str,
        name: str,
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.name = name
        self.timeout = timeout
        self._client = client or httpx.Client(timeout=timeout)

    def _request(
        self,
        method: str,
        url: str,
        timeout: float | None,
        **kwargs: Any,
    ) -> dict[str, Any]:
        try:
            response = self._client.request(method, url, timeout=timeout or self.timeout, **kwargs)
        except httpx.TimeoutException as exc:
            raise ProviderTimeout(self.name, f"request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise ProviderError(self.name, f"transport error: {exc}") from exc

        if response.status_code >= 400:
            logger.warning(
                "provider_http_error",
                provider=self.name,
                status_code=response.status_code,
            )
            raise ProviderError(
                self.name,
                f"HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderError(self.name, "response body is not JSON") from exc

    def close(self) -> None:
        self._client.close()


class OpenAIProvider(HTTPProvider):
    """OpenAI-compatible ``/chat/completions`` provider."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        name: str = "openai",
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        super().__init__(api_key, model, base_url, name, timeout, client)

    def generate(
        self,
        prompt: str,
        system_prompt: str | None = None,
        timeout: float | None = None,
    ) -> LLMResponse:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        data = self._request(
            "POST",
            f"{self.base_url}/chat/completions",
            timeout,
            headers={"Authorization": f"Bearer {self.api_key}"},
            json={
                "model": self.model,
                "messages": messages,
                "temperature": 0,
                "response_format": {"type": "json_object"},
            },
        )
        try:
            content = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as exc:
            raise ProviderError(self.name, "unexpected response shape") from exc

        usage = data.get("usage") or {}
        return LLMResponse(
            content=content,
            model=data.get("model", self.model),
            usage=TokenUsage.from_counts(
                usage.get("prompt_tokens"),
                usage.get("completion_tokens"),
                usage.get("total_tokens"),
            ),
        )

    def health_check(self) -> None:
        self._request(
            "GET",
            f"{self.base_url}/models",
            10.0,
            headers={"Authorization": f"Bearer {self.api_key}"},
        )


class GeminiProvider(HTTPProvider):
    """Google Gemini ``generateContent`` provider."""

    def __init__(
        self,
        api_key: str,
        model: str = "gemini-1.5-flash",
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        name: str = "gemini",
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        super().__init__(api_key, model, base_url, name, timeout, client)

    def generate(
        self,
        prompt: str,
        system_prompt: str | None = None,
        timeout: float | None = None,
    ) -> LLMResponse:
        body: dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {"temperature": 0, "responseMimeType": "application/json"},
        }
        if system_prompt:
            body["systemInstruction"] = {"parts": [{"text": system_prompt}]}

        data = self._request(
            "POST",
            f"{self.base_url}/models/{self.model}:generateContent",
            timeout,
            params={"key": self.api_key},
            json=body,
        )
        try:
            parts = data["candidates"][0]["content"]["parts"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ProviderError(self.name, "unexpected response shape") from exc
        content = "".join(part.get("text", "") for part in parts)

        usage = data.get("usageMetadata") or {}
        return LLMResponse(
            content=content,
            model=self.model,
            usage=TokenUsage.from_counts(
                usage.get("promptTokenCount"),
                usage.get("candidatesTokenCount"),
                usage.get("totalTokenCount"),
            ),
        )

    def health_check(self) -> None:
        self._request("GET", f"{self.base_url}/models/{self.model}", 10.0, params={"key": self.api_key})
