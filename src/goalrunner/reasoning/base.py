"""Reasoning service contract shared by executor and decomposer."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Protocol

from goalrunner.storage.common import JsonMap

ChatRole = Literal["system", "user", "assistant"]


class ReasoningError(RuntimeError):
    """Transport, timeout or protocol failure talking to the reasoning service."""


@dataclass(slots=True, frozen=True)
class ChatMessage:
    role: ChatRole
    content: str

    def to_payload(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(slots=True, frozen=True)
class ChatOptions:
    """Sampling options for one chat call."""

    temperature: float = 0.2
    max_tokens: int = 1000
    skill_name: str | None = None


@dataclass(slots=True)
class ChatResponse:
    content: str
    tool_calls: list[JsonMap] = field(default_factory=list)


class ReasoningService(Protocol):
    """One request/response chat completion round trip."""

    async def chat(self, messages: list[ChatMessage], options: ChatOptions) -> ChatResponse: ...
