"""OpenAI-compatible chat completion client over httpx."""

from __future__ import annotations

import logging

import httpx

from goalrunner.reasoning.base import ChatMessage, ChatOptions, ChatResponse, ReasoningError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 120.0


class HttpReasoningService:
    """Single round-trip ``/chat/completions`` client.

    No retries and no provider fallback: a transport failure surfaces as
    ``ReasoningError`` and the caller decides what a failed call means for
    the task at hand.
    """

    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        api_key: str | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.model = model
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers=headers,
            transport=transport,
        )

    async def chat(self, messages: list[ChatMessage], options: ChatOptions) -> ChatResponse:
        payload = {
            "model": self.model,
            "messages": [message.to_payload() for message in messages],
            "temperature": options.temperature,
            "max_tokens": options.max_tokens,
        }
        try:
            response = await self._client.post("/chat/completions", json=payload)
        except httpx.TimeoutException as exc:
            logger.warning("Reasoning request timed out (model=%s)", self.model)
            raise ReasoningError(f"Reasoning request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            logger.warning("Reasoning request failed (model=%s): %s", self.model, exc)
            raise ReasoningError(f"Reasoning request failed: {exc}") from exc

        if not response.is_success:
            raise ReasoningError(f"Reasoning service returned HTTP {response.status_code}")

        try:
            body = response.json()
            message = body["choices"][0]["message"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise ReasoningError(f"Malformed reasoning response: {exc}") from exc

        return ChatResponse(
            content=message.get("content") or "",
            tool_calls=list(message.get("tool_calls") or []),
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> HttpReasoningService:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.aclose()
