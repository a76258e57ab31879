"""Controllers for goal and task CLI commands."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from goalrunner.config import Settings
from goalrunner.goals.models import (
    GoalCreate,
    GoalStatus,
    GoalView,
    QueueRunSummary,
    TaskCreate,
    TaskView,
)
from goalrunner.reasoning.base import ReasoningService
from goalrunner.runtime import open_memory, open_repository, open_runtime
from goalrunner.storage.common import JsonMap


@dataclass(slots=True)
class GoalAddCommand:
    """CLI input for goal creation."""

    db_path: Path | None
    work_dir: Path | None
    title: str
    description: str | None
    priority: int
    deadline: datetime | None
    parent_goal_id: int | None


@dataclass(slots=True)
class GoalListCommand:
    db_path: Path | None
    work_dir: Path | None
    status: str | None


@dataclass(slots=True)
class GoalStatusCommand:
    db_path: Path | None
    work_dir: Path | None
    goal_id: int | None


@dataclass(slots=True)
class GoalMutateCommand:
    """CLI input for commands acting on one goal."""

    db_path: Path | None
    work_dir: Path | None
    goal_id: int


@dataclass(slots=True)
class TaskAddCommand:
    """CLI input for adding a task by hand."""

    db_path: Path | None
    work_dir: Path | None
    goal_id: int
    title: str
    description: str | None
    skill: str | None
    depends_on: tuple[int, ...]
    requires_approval: bool
    max_retries: int
    input_json: str | None


@dataclass(slots=True)
class TaskMutateCommand:
    db_path: Path | None
    work_dir: Path | None
    task_id: int


@dataclass(slots=True)
class ApprovalsCommand:
    db_path: Path | None
    work_dir: Path | None


@dataclass(slots=True)
class SkillErrorsCommand:
    db_path: Path | None
    work_dir: Path | None
    skill: str
    limit: int


@dataclass(slots=True)
class RunQueueCommand:
    db_path: Path | None
    work_dir: Path | None
    max_tasks: int | None


@dataclass(slots=True)
class GoalCliController:
    """Coordinates goal, task and queue CLI operations.

    Methods return printable lines and raise ``ValueError`` for input the
    store cannot act on (unknown ids, bad status, malformed JSON).
    """

    reasoning: ReasoningService | None = None

    def add_goal(self, command: GoalAddCommand) -> list[str]:
        settings = _settings(command.db_path, command.work_dir)
        with open_repository(settings) as repository:
            if (
                command.parent_goal_id is not None
                and repository.get_goal(command.parent_goal_id) is None
            ):
                raise ValueError(f"Parent goal not found: {command.parent_goal_id}")
            goal = repository.add_goal(
                GoalCreate(
                    title=command.title,
                    description=command.description,
                    priority=command.priority,
                    deadline=command.deadline,
                    parent_goal_id=command.parent_goal_id,
                ),
            )
        return [
            f"Goal created: goal_id={goal.id} priority={goal.priority} status={goal.status.value}",
            f"Title: {goal.title}",
        ]

    def list_goals(self, command: GoalListCommand) -> list[str]:
        settings = _settings(command.db_path, command.work_dir)
        status = _parse_goal_status(command.status)
        with open_repository(settings) as repository:
            goals = repository.list_goals(status=status)

        lines = [f"Goals: {len(goals)}"]
        lines.extend(f"  {_goal_line(goal)}" for goal in goals)
        return lines

    def status(self, command: GoalStatusCommand) -> list[str]:
        """Overall counters, or one goal with its tasks."""

        settings = _settings(command.db_path, command.work_dir)
        with open_repository(settings) as repository:
            if command.goal_id is None:
                stats = repository.stats()
                active = repository.list_goals(status=GoalStatus.ACTIVE)
                lines = [
                    f"Goals: active={stats.active_goals} completed={stats.completed_goals}",
                    f"Tasks: pending={stats.pending_tasks} running={stats.running_tasks} "
                    f"completed={stats.completed_tasks} failed={stats.failed_tasks} "
                    f"awaiting_approval={stats.awaiting_approval}",
                ]
                lines.extend(f"  {_goal_line(goal)}" for goal in active)
                return lines

            goal = _require_goal(repository.get_goal(command.goal_id), command.goal_id)
            tasks = repository.list_tasks(goal.id)

        lines = [
            f"Goal: {goal.id} {goal.title}",
            f"Status: {goal.status.value}",
            f"Priority: {goal.priority}",
            f"Progress: {goal.progress:.0%}",
            f"Deadline: {goal.deadline.isoformat() if goal.deadline else '-'}",
            f"Parent: {goal.parent_goal_id if goal.parent_goal_id is not None else '-'}",
            f"Tasks: {len(tasks)}",
        ]
        lines.extend(f"  {_task_line(task)}" for task in tasks)
        return lines

    def remove_goal(self, command: GoalMutateCommand) -> list[str]:
        settings = _settings(command.db_path, command.work_dir)
        with open_repository(settings) as repository:
            removed = repository.remove_goal(command.goal_id)
        if not removed:
            raise ValueError(f"Goal not found: {command.goal_id}")
        return [f"Goal removed: {command.goal_id}"]

    def set_goal_status(self, command: GoalMutateCommand, status: GoalStatus) -> list[str]:
        settings = _settings(command.db_path, command.work_dir)
        with open_repository(settings) as repository:
            _require_goal(repository.get_goal(command.goal_id), command.goal_id)
            repository.update_goal_status(command.goal_id, status)
        return [f"Goal {command.goal_id} -> {status.value}"]

    def decompose_goal(self, command: GoalMutateCommand) -> list[str]:
        settings = _settings(command.db_path, command.work_dir)
        tasks = asyncio.run(self._decompose(settings, command.goal_id))
        lines = [f"Created {len(tasks)} task(s) for goal {command.goal_id}"]
        lines.extend(f"  {_task_line(task)}" for task in tasks)
        return lines

    async def _decompose(self, settings: Settings, goal_id: int) -> list[TaskView]:
        async with open_runtime(settings, reasoning=self.reasoning) as runtime:
            goal = _require_goal(runtime.repository.get_goal(goal_id), goal_id)
            return await runtime.decomposer.decompose_and_create(goal)

    def add_task(self, command: TaskAddCommand) -> list[str]:
        settings = _settings(command.db_path, command.work_dir)
        task_input = _parse_input_json(command.input_json)
        with open_repository(settings) as repository:
            _require_goal(repository.get_goal(command.goal_id), command.goal_id)
            for dependency_id in command.depends_on:
                if repository.get_task(dependency_id) is None:
                    raise ValueError(f"Dependency task not found: {dependency_id}")
            task = repository.add_task(
                TaskCreate(
                    goal_id=command.goal_id,
                    title=command.title,
                    description=command.description,
                    skill=command.skill,
                    input=task_input,
                    depends_on=command.depends_on,
                    requires_approval=command.requires_approval,
                    max_retries=command.max_retries,
                ),
            )
        return [f"Task created: {_task_line(task)}"]

    def approve_task(self, command: TaskMutateCommand) -> list[str]:
        settings = _settings(command.db_path, command.work_dir)
        with open_repository(settings) as repository:
            approved = repository.approve_task(command.task_id)
        if not approved:
            raise ValueError(
                f"Task {command.task_id} not found or not awaiting approval",
            )
        return [f"Task approved: {command.task_id}"]

    def approvals(self, command: ApprovalsCommand) -> list[str]:
        settings = _settings(command.db_path, command.work_dir)
        with open_repository(settings) as repository:
            tasks = repository.get_pending_approvals()
        lines = [f"Awaiting approval: {len(tasks)}"]
        lines.extend(f"  {_task_line(task)}" for task in tasks)
        return lines

    def inspect_task(self, command: TaskMutateCommand) -> list[str]:
        settings = _settings(command.db_path, command.work_dir)
        with open_repository(settings) as repository:
            task = repository.get_task(command.task_id)
            if task is None:
                raise ValueError(f"Task not found: {command.task_id}")
            events = repository.list_audit_events(entity_type="task", entity_id=task.id)

        lines = [
            f"Task: {task.id} {task.title}",
            f"Goal: {task.goal_id}",
            f"Status: {task.status.value}",
            f"Skill: {task.skill or '-'}",
            f"Depends on: {', '.join(str(dep) for dep in task.depends_on) or '-'}",
            f"Retries: {task.retry_count}/{task.max_retries}",
            f"Requires approval: {'yes' if task.requires_approval else 'no'}"
            + (f" (approved {task.approved_at.isoformat()})" if task.approved_at else ""),
            f"Input: {json.dumps(task.input, ensure_ascii=False, sort_keys=True)}",
            f"Error: {task.error or '-'}",
            f"Output: {task.output or '-'}",
            f"Events: {len(events)}",
        ]
        lines.extend(
            f"  {event.created_at.isoformat()} {event.event_type}"
            + (f" {event.details}" if event.details else "")
            for event in events
        )
        return lines

    def skill_errors(self, command: SkillErrorsCommand) -> list[str]:
        settings = _settings(command.db_path, command.work_dir)
        with open_repository(settings) as repository:
            errors = repository.get_skill_errors(command.skill, limit=command.limit)
        with open_memory(settings) as memory:
            summary = next(
                (item for item in memory.skill_summary() if item.skill_name == command.skill),
                None,
            )

        lines = [f"Skill: {command.skill}"]
        if summary is not None:
            lines.append(
                f"Runs: {summary.runs} success_rate={summary.success_rate:.0%} "
                f"avg_ms={summary.avg_duration_ms:.0f}",
            )
        lines.append(f"Recent errors: {len(errors)}")
        lines.extend(f"  - {error.splitlines()[0] if error else error}" for error in errors)
        return lines

    def run_queue(self, command: RunQueueCommand) -> list[str]:
        settings = _settings(command.db_path, command.work_dir)
        summary = asyncio.run(self._run_queue(settings, command.max_tasks))
        lines = [
            "Queue summary: "
            f"processed={summary.processed} completed={summary.completed} failed={summary.failed}",
        ]
        for result in summary.results:
            marker = "ok" if result.success else "failed"
            first_line = result.output.strip().splitlines()[0] if result.output.strip() else ""
            lines.append(f"  #{result.task_id} {marker} {result.title}: {first_line}")
        return lines

    async def _run_queue(self, settings: Settings, max_tasks: int | None) -> QueueRunSummary:
        async with open_runtime(settings, reasoning=self.reasoning) as runtime:
            return await runtime.executor.process_queue(max_tasks)


def _settings(db_path: Path | None, work_dir: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path, work_dir=work_dir)
    settings.validate()
    return settings


def _parse_goal_status(value: str | None) -> GoalStatus | None:
    if value is None:
        return None
    try:
        return GoalStatus(value.strip().lower())
    except ValueError as exc:
        allowed = ", ".join(status.value for status in GoalStatus)
        raise ValueError(f"Unknown goal status {value!r}; expected one of: {allowed}") from exc


def _parse_input_json(raw: str | None) -> JsonMap:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Task input is not valid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ValueError("Task input must be a JSON object")
    return parsed


def _require_goal(goal: GoalView | None, goal_id: int) -> GoalView:
    if goal is None:
        raise ValueError(f"Goal not found: {goal_id}")
    return goal


def _goal_line(goal: GoalView) -> str:
    return (
        f"#{goal.id} [{goal.status.value}] p{goal.priority} "
        f"{goal.progress:.0%} {goal.title}"
    )


def _task_line(task: TaskView) -> str:
    flags = []
    if task.skill:
        flags.append(f"skill={task.skill}")
    if task.depends_on:
        flags.append(f"after={','.join(str(dep) for dep in task.depends_on)}")
    if task.awaiting_approval:
        flags.append("needs-approval")
    suffix = f" ({' '.join(flags)})" if flags else ""
    return f"#{task.id} [{task.status.value}] {task.title}{suffix}"
