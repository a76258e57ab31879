"""Deterministic reasoning service used when no provider is configured."""

from __future__ import annotations

import json

from goalrunner.reasoning.base import ChatMessage, ChatOptions, ChatResponse


class OfflineReasoningService:
    """Offline stand-in that never touches the network.

    - Decomposition prompts get a single approval-gated task back, so nothing
      runs unattended.
    - Everything else gets a short acknowledgement without shell blocks.
    """

    async def chat(self, messages: list[ChatMessage], options: ChatOptions) -> ChatResponse:
        system_text = next(
            (message.content for message in messages if message.role == "system"),
            "",
        )
        user_text = next(
            (message.content for message in reversed(messages) if message.role == "user"),
            "",
        )

        if "agent planner" in system_text.lower():
            plan = {
                "tasks": [
                    {
                        "title": "Review goal and plan manually",
                        "description": (
                            "Offline mode: no reasoning provider is configured. "
                            "Set GOALRUNNER_REASONING_PROVIDER=http to enable planning."
                        ),
                        "dependsOnIndex": [],
                        "requiresApproval": True,
                        "input": {},
                    },
                ],
                "reasoning": "Offline mode produces a single manual review step.",
                "estimatedMinutes": 15,
            }
            return ChatResponse(content=f"```json\n{json.dumps(plan, indent=2)}\n```")

        first_line = user_text.strip().splitlines()[0] if user_text.strip() else ""
        return ChatResponse(
            content=f"Offline mode: acknowledged without a reasoning provider. {first_line}".strip(),
        )
