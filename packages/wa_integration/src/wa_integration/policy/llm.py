"""
Chat Completion Client

Minimal client for OpenAI-compatible `/chat/completions` endpoints.
"""

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from wacore.settings import Settings

from wa_integration.errors import CompletionError

logger = logging.getLogger(__name__)


@dataclass
class CompletionResult:
    text: str
    total_tokens: int = 0
    model: str = ""


class ChatCompletionClient:
    """Async client for an OpenAI-compatible chat completion API."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 20.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "ChatCompletionClient | None":
        """Client for the configured provider, or None when no API key is set."""
        if not settings.LLM_API_KEY:
            return None
        return cls(
            api_key=settings.LLM_API_KEY,
            base_url=settings.LLM_BASE_URL,
            timeout=settings.LLM_TIMEOUT_SECONDS,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={"Authorization": f"Bearer {self.api_key}"},
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def complete(
        self,
        model: str,
        messages: list[dict[str, str]],
        temperature: float = 0.7,
        max_tokens: int = 150,
    ) -> CompletionResult:
        """
        Request one chat completion.

        Args:
            model: Model name
            messages: Role-tagged messages ({"role": ..., "content": ...})
            temperature: Sampling temperature
            max_tokens: Completion token limit

        Returns:
            CompletionResult with the reply text and total token usage

        Raises:
            CompletionError: Transport failure, error status or malformed body
        """
        client = await self._get_client()
        payload: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }

        try:
            response = await client.post(f"{self.base_url}/chat/completions", json=payload)
        except httpx.HTTPError as e:
            raise CompletionError(f"Completion request failed: {e}") from e

        if response.status_code >= 400:
            logger.warning(
                f"Completion provider returned {response.status_code}",
                extra={"model": model, "body": response.text[:200]},
            )
            raise CompletionError(
                f"Completion provider error {response.status_code}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
            text = data["choices"][0]["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise CompletionError(f"Malformed completion response: {e}") from e

        usage = data.get("usage") or {}
        total_tokens = usage.get(
            "total_tokens",
            usage.get("prompt_tokens", 0) + usage.get("completion_tokens", 0),
        )
        return CompletionResult(text=text.strip(), total_tokens=int(total_tokens), model=data.get("model", model))
