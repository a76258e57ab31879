"""Collaborator interfaces the goal engine depends on.

Executor and decomposer talk to memory and metrics through these protocols so
stores can be swapped (or faked in tests) without touching the engine.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol


class MemoryContext(Protocol):
    """Long-term memory: recall relevant snippets and store new ones."""

    def get_context(self, query: str, max_tokens: int) -> str: ...

    def save(
        self,
        content: str,
        *,
        category: str = "general",
        source: str = "user",
        tags: Sequence[str] = (),
    ) -> int: ...


class SkillMetrics(Protocol):
    """Per-skill execution telemetry sink."""

    def record_skill_metric(self, skill_name: str, success: bool, duration_ms: int) -> None: ...
