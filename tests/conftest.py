"""Shared test fixtures."""

from __future__ import annotations

import os
from collections.abc import Iterator
from pathlib import Path

import pytest

from goalrunner.config import ExecutorSettings
from goalrunner.goals.executor import TaskExecutor
from goalrunner.goals.repository import GoalRepository
from tests.fakes import FakeMemory, FakeReasoning


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep developer GOALRUNNER_* variables out of tests."""

    for name in list(os.environ):
        if name.startswith("GOALRUNNER_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[GoalRepository]:
    repo = GoalRepository(tmp_path / "goals.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def fake_memory() -> FakeMemory:
    return FakeMemory()


@pytest.fixture()
def fake_reasoning() -> FakeReasoning:
    return FakeReasoning()


@pytest.fixture()
def executor(
    repository: GoalRepository,
    fake_reasoning: FakeReasoning,
    fake_memory: FakeMemory,
    tmp_path: Path,
) -> TaskExecutor:
    work_dir = tmp_path / "work"
    work_dir.mkdir()
    return TaskExecutor(
        repository=repository,
        reasoning=fake_reasoning,
        memory=fake_memory,
        metrics=fake_memory,
        work_dir=work_dir,
        settings=ExecutorSettings(command_timeout_seconds=10.0),
    )

