from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import allure
import pytest

from goalrunner.daemon.service import (
    DaemonService,
    _FileWatch,
    format_uptime,
    matches_pattern,
    watch_root,
)
from goalrunner.daemon.triggers import TriggerAction, TriggerConfig
from goalrunner.goals.executor import TaskExecutor
from goalrunner.goals.models import TaskStatus
from goalrunner.goals.repository import GoalRepository
from goalrunner.reasoning.base import ChatMessage, ChatOptions, ReasoningError
from tests.builders import add_goal, add_task
from tests.fakes import FakeReasoning

pytestmark = [
    allure.epic("Daemon"),
    allure.feature("Trigger Loop"),
]


def _service(
    repository: GoalRepository,
    executor: TaskExecutor,
    triggers: list[TriggerConfig] | None = None,
) -> DaemonService:
    return DaemonService(
        repository=repository,
        executor=executor,
        work_dir=executor.work_dir,
        triggers=triggers if triggers is not None else [],
    )


@pytest.mark.asyncio
async def test_queue_pass_stops_at_first_failure(
    repository: GoalRepository,
    executor: TaskExecutor,
    fake_reasoning: FakeReasoning,
) -> None:
    def respond(messages: list[ChatMessage], options: ChatOptions) -> str | Exception:
        user = next(message.content for message in messages if message.role == "user")
        return ReasoningError("boom") if "Second" in user else "done"

    fake_reasoning.responder = respond
    goal = add_goal(repository)
    first = add_task(repository, goal.id, "First")
    second = add_task(repository, goal.id, "Second")
    third = add_task(repository, goal.id, "Third")
    service = _service(repository, executor)

    executed = await service.process_goal_queue()

    assert executed == 2
    assert service.counters.tasks_processed == 2
    assert service.counters.tasks_completed == 1
    assert service.counters.tasks_failed == 1
    statuses = {task.id: task for task in repository.list_tasks(goal.id)}
    assert statuses[first.id].status == TaskStatus.COMPLETED
    assert statuses[second.id].status == TaskStatus.PENDING
    assert statuses[second.id].retry_count == 1
    assert statuses[third.id].status == TaskStatus.PENDING
    assert statuses[third.id].started_at is None


@pytest.mark.asyncio
async def test_failed_first_task_leaves_the_rest_pending(
    repository: GoalRepository,
    executor: TaskExecutor,
    fake_reasoning: FakeReasoning,
) -> None:
    fake_reasoning.replies = [ReasoningError("boom")]
    goal = add_goal(repository)
    add_task(repository, goal.id, "Fails")
    survivor = add_task(repository, goal.id, "Would succeed")
    service = _service(repository, executor)

    assert await service.process_goal_queue() == 1

    stored = repository.get_task(survivor.id)
    assert stored is not None
    assert stored.status == TaskStatus.PENDING
    assert len(fake_reasoning.calls) == 1


@pytest.mark.asyncio
async def test_queue_pass_drains_successful_work(
    repository: GoalRepository,
    executor: TaskExecutor,
) -> None:
    goal = add_goal(repository)
    for title in ("One", "Two", "Three"):
        add_task(repository, goal.id, title)
    service = _service(repository, executor)

    assert await service.process_goal_queue() == 3
    assert service.counters.tasks_completed == 3
    assert await service.process_goal_queue() == 0


@pytest.mark.asyncio
async def test_trigger_run_action_executes_in_work_dir(
    repository: GoalRepository,
    executor: TaskExecutor,
) -> None:
    service = _service(repository, executor)
    trigger = TriggerConfig(
        name="touch-marker",
        event="cron",
        schedule="0 * * * *",
        action=TriggerAction(run="touch marker.txt"),
    )

    await service.on_trigger_fired(trigger)

    assert (executor.work_dir / "marker.txt").exists()
    assert service.counters.triggers_fired == 1


@pytest.mark.asyncio
async def test_goal_progress_trigger_processes_queue(
    repository: GoalRepository,
    executor: TaskExecutor,
) -> None:
    goal = add_goal(repository)
    task = add_task(repository, goal.id, "Queued work")
    service = _service(repository, executor)
    trigger = TriggerConfig(
        name="goal-processor",
        event="goal.check",
        schedule="*/2 * * * *",
        action=TriggerAction(type="goal-progress"),
    )

    await service.on_trigger_fired(trigger)

    stored = repository.get_task(task.id)
    assert stored is not None
    assert stored.status == TaskStatus.COMPLETED


@pytest.mark.asyncio
async def test_start_registers_valid_triggers_and_shutdown_is_idempotent(
    repository: GoalRepository,
    executor: TaskExecutor,
) -> None:
    (executor.work_dir / "src").mkdir()
    triggers = [
        TriggerConfig(name="hourly", event="cron", schedule="0 * * * *"),
        TriggerConfig(name="hourly", event="cron", schedule="30 * * * *"),
        TriggerConfig(name="broken-cron", event="cron", schedule="not a cron"),
        TriggerConfig(name="no-schedule", event="goal.check"),
        TriggerConfig(name="webhook", event="webhook"),
        TriggerConfig(name="sources", event="file.changed", watch=("src/**/*.py",)),
        TriggerConfig(name="missing", event="file.changed", watch=("missing/*.txt",)),
    ]
    service = _service(repository, executor, triggers)

    await service.start()
    try:
        status = service.status()
        assert status.running
        assert status.cron_jobs == 1
        assert status.file_watchers == 1
        assert status.started_at is not None
    finally:
        await service.shutdown()

    assert not service.running
    await service.shutdown()
    assert not service.status().running


@pytest.mark.asyncio
async def test_heartbeat_reports_queue_state(
    repository: GoalRepository,
    executor: TaskExecutor,
    caplog: pytest.LogCaptureFixture,
) -> None:
    goal = add_goal(repository)
    add_task(repository, goal.id, "Needs a human", requires_approval=True)
    service = _service(repository, executor)

    await service.heartbeat()
    assert service.counters.heartbeats == 0

    await service.start()
    try:
        caplog.set_level(logging.INFO, logger="goalrunner.daemon.service")
        await service.heartbeat()
    finally:
        await service.shutdown()

    assert service.counters.heartbeats == 1
    assert "1 task(s) awaiting approval" in caplog.text
    assert "Heartbeat: 1 goals, 1 pending, 0 running" in caplog.text


@pytest.mark.asyncio
async def test_file_changes_are_debounced_per_trigger(
    repository: GoalRepository,
    executor: TaskExecutor,
) -> None:
    service = _service(repository, executor)
    fired: list[tuple[str, dict[str, str] | None]] = []

    async def record(trigger: TriggerConfig, context: dict[str, str] | None = None) -> None:
        fired.append((trigger.name, context))

    service.on_trigger_fired = record  # type: ignore[method-assign]
    trigger = TriggerConfig(
        name="docs",
        event="file.changed",
        watch=("*.md",),
        debounce_ms=50,
    )
    watch = _FileWatch(trigger=trigger, roots=(executor.work_dir,))

    for name in ("a.md", "b.md", "c.md"):
        service.notify_file_changed(watch, name)
        await asyncio.sleep(0.01)
    await asyncio.sleep(0.3)

    assert fired == [("docs", {"changed_file": "c.md"})]
    assert watch.pending is None


@pytest.mark.asyncio
async def test_run_forever_returns_after_stop_request(
    repository: GoalRepository,
    executor: TaskExecutor,
) -> None:
    service = _service(repository, executor)

    runner = asyncio.create_task(service.run_forever())
    for _ in range(200):
        if service.running:
            break
        await asyncio.sleep(0.01)
    assert service.running

    service.request_stop()
    await asyncio.wait_for(runner, timeout=5)

    assert not service.running


def test_format_uptime() -> None:
    assert format_uptime(0) == "0s"
    assert format_uptime(-5) == "0s"
    assert format_uptime(59.9) == "59s"
    assert format_uptime(3_725) == "1h 2m 5s"
    assert format_uptime(90_061) == "1d 1h 1m 1s"
    assert format_uptime(86_400) == "1d 0s"


def test_watch_root_is_static_prefix(tmp_path: Path) -> None:
    (tmp_path / "config").mkdir()
    (tmp_path / "config" / "app.yaml").write_text("a: 1\n", encoding="utf-8")

    assert watch_root("src/**/*.py", tmp_path) == tmp_path / "src"
    assert watch_root("*.txt", tmp_path) == tmp_path
    assert watch_root("config/app.yaml", tmp_path) == tmp_path / "config"


def test_matches_pattern(tmp_path: Path) -> None:
    assert matches_pattern(tmp_path / "src" / "pkg" / "mod.py", "src/**/*.py", tmp_path)
    assert matches_pattern(tmp_path / "src" / "mod.py", "src/**/*.py", tmp_path)
    assert not matches_pattern(tmp_path / "README.md", "src/**/*.py", tmp_path)
    assert not matches_pattern(tmp_path.parent / "elsewhere.py", "*.py", tmp_path)


def test_single_star_stays_within_one_directory(tmp_path: Path) -> None:
    nested = tmp_path / "src" / "deep" / "mod.py"

    assert matches_pattern(tmp_path / "setup.py", "*.py", tmp_path)
    assert not matches_pattern(nested, "*.py", tmp_path)
    assert matches_pattern(tmp_path / "src" / "mod.py", "src/*.py", tmp_path)
    assert not matches_pattern(nested, "src/*.py", tmp_path)
    assert not matches_pattern(tmp_path / "src" / "a.py", "src/?.txt", tmp_path)
    assert matches_pattern(nested, "**/*.py", tmp_path)
    assert matches_pattern(nested, "src/**", tmp_path)
    doc = tmp_path / "docs" / "api" / "v1" / "index.md"
    assert matches_pattern(doc, "docs/**/v1/*.md", tmp_path)


@pytest.mark.asyncio
async def test_service_restarts_after_shutdown(
    repository: GoalRepository,
    executor: TaskExecutor,
) -> None:
    service = _service(repository, executor)
    service.request_stop()
    await service.shutdown()

    await service.start()
    await service.shutdown()

    runner = asyncio.create_task(service.run_forever())
    await asyncio.sleep(0.2)
    assert not runner.done()
    assert service.status().running

    service.request_stop()
    await asyncio.wait_for(runner, timeout=5)
    assert not service.running
