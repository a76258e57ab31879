"""Wiring of store, memory, reasoning, executor and decomposer from settings."""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass

from goalrunner.config import Settings
from goalrunner.goals.decomposer import GoalDecomposer
from goalrunner.goals.executor import TaskExecutor
from goalrunner.goals.repository import GoalRepository
from goalrunner.memory.store import MemoryStore
from goalrunner.reasoning.base import ReasoningService
from goalrunner.reasoning.factory import build_reasoning_service
from goalrunner.reasoning.http_client import HttpReasoningService


@dataclass(slots=True)
class AgentRuntime:
    settings: Settings
    repository: GoalRepository
    memory: MemoryStore
    reasoning: ReasoningService
    executor: TaskExecutor
    decomposer: GoalDecomposer


@contextmanager
def open_repository(settings: Settings) -> Iterator[GoalRepository]:
    """Migrated repository that is closed on exit."""

    repository = GoalRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def open_memory(settings: Settings) -> Iterator[MemoryStore]:
    memory = MemoryStore(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    memory.init_schema()
    try:
        yield memory
    finally:
        memory.close()


@asynccontextmanager
async def open_runtime(
    settings: Settings,
    *,
    reasoning: ReasoningService | None = None,
) -> AsyncIterator[AgentRuntime]:
    """Fully wired runtime; an injected reasoning service is not closed here."""

    owned_reasoning = reasoning is None
    service = reasoning if reasoning is not None else build_reasoning_service(settings.reasoning)
    with open_repository(settings) as repository, open_memory(settings) as memory:
        try:
            yield AgentRuntime(
                settings=settings,
                repository=repository,
                memory=memory,
                reasoning=service,
                executor=TaskExecutor(
                    repository=repository,
                    reasoning=service,
                    memory=memory,
                    metrics=memory,
                    work_dir=settings.work_dir,
                    settings=settings.executor,
                ),
                decomposer=GoalDecomposer(
                    repository=repository,
                    reasoning=service,
                    memory=memory,
                    settings=settings.decomposer,
                ),
            )
        finally:
            if owned_reasoning and isinstance(service, HttpReasoningService):
                await service.aclose()
