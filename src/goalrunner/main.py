"""CLI entrypoint for goalrunner."""

from collections.abc import Callable
from datetime import datetime
from pathlib import Path

import rich_click as click

from goalrunner import __version__
from goalrunner.daemon.controllers import DaemonCliController, DaemonCommand, DaemonLogsCommand
from goalrunner.goals.controllers import (
    ApprovalsCommand,
    GoalAddCommand,
    GoalCliController,
    GoalListCommand,
    GoalMutateCommand,
    GoalStatusCommand,
    RunQueueCommand,
    SkillErrorsCommand,
    TaskAddCommand,
    TaskMutateCommand,
)
from goalrunner.goals.models import GoalStatus
from goalrunner.memory.controllers import (
    MemoryCliController,
    MemoryForgetCommand,
    MemoryListCommand,
    MemorySaveCommand,
    MemorySearchCommand,
    MemoryStatsCommand,
)
from goalrunner.memory.store import MEMORY_CATEGORIES
from goalrunner.storage.common import from_iso

click.rich_click.USE_MARKDOWN = True
GOAL_CONTROLLER = GoalCliController()
MEMORY_CONTROLLER = MemoryCliController()
DAEMON_CONTROLLER = DaemonCliController()

db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)
work_dir_option = click.option(
    "--work-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Working directory (defaults to GOALRUNNER_WORK_DIR or cwd).",
)


@click.group()
@click.version_option(version=__version__, prog_name="goalrunner")
def goalrunner() -> None:
    """Autonomous goal and task runner."""


@goalrunner.group()
def goal() -> None:
    """Goal commands."""


@goal.command("add")
@click.argument("title")
@click.option("--description", default=None, help="Longer goal description.")
@click.option(
    "--priority",
    type=click.IntRange(min=1, max=10),
    default=5,
    show_default=True,
    help="1 is most urgent.",
)
@click.option("--deadline", default=None, help="ISO-8601 deadline, for example 2026-12-31.")
@click.option("--parent", "parent_goal_id", type=int, default=None, help="Parent goal id.")
@db_path_option
@work_dir_option
def goal_add(  # noqa: PLR0913
    title: str,
    description: str | None,
    priority: int,
    deadline: str | None,
    parent_goal_id: int | None,
    db_path: Path | None,
    work_dir: Path | None,
) -> None:
    """Create a new active goal."""

    parsed_deadline = _parse_deadline(deadline)
    _run(
        lambda: GOAL_CONTROLLER.add_goal(
            GoalAddCommand(
                db_path=db_path,
                work_dir=work_dir,
                title=title,
                description=description,
                priority=priority,
                deadline=parsed_deadline,
                parent_goal_id=parent_goal_id,
            ),
        ),
    )


@goal.command("list")
@click.option(
    "--status",
    type=click.Choice([status.value for status in GoalStatus]),
    default=None,
    help="Only goals in this status.",
)
@db_path_option
@work_dir_option
def goal_list(status: str | None, db_path: Path | None, work_dir: Path | None) -> None:
    """List goals."""

    _run(
        lambda: GOAL_CONTROLLER.list_goals(
            GoalListCommand(db_path=db_path, work_dir=work_dir, status=status),
        ),
    )


@goal.command("status")
@click.argument("goal_id", type=int, required=False)
@db_path_option
@work_dir_option
def goal_status(goal_id: int | None, db_path: Path | None, work_dir: Path | None) -> None:
    """Show overall counters, or one goal with its tasks."""

    _run(
        lambda: GOAL_CONTROLLER.status(
            GoalStatusCommand(db_path=db_path, work_dir=work_dir, goal_id=goal_id),
        ),
    )


@goal.command("remove")
@click.argument("goal_id", type=int)
@db_path_option
@work_dir_option
def goal_remove(goal_id: int, db_path: Path | None, work_dir: Path | None) -> None:
    """Delete a goal and its tasks."""

    _run(
        lambda: GOAL_CONTROLLER.remove_goal(
            GoalMutateCommand(db_path=db_path, work_dir=work_dir, goal_id=goal_id),
        ),
    )


def _goal_status_command(name: str, status: GoalStatus, help_text: str) -> None:
    @goal.command(name, help=help_text)
    @click.argument("goal_id", type=int)
    @db_path_option
    @work_dir_option
    def _command(goal_id: int, db_path: Path | None, work_dir: Path | None) -> None:
        _run(
            lambda: GOAL_CONTROLLER.set_goal_status(
                GoalMutateCommand(db_path=db_path, work_dir=work_dir, goal_id=goal_id),
                status,
            ),
        )


_goal_status_command("pause", GoalStatus.PAUSED, "Pause a goal; its tasks stop being scheduled.")
_goal_status_command("resume", GoalStatus.ACTIVE, "Resume a paused goal.")
_goal_status_command("cancel", GoalStatus.CANCELLED, "Cancel a goal.")


@goal.command("decompose")
@click.argument("goal_id", type=int)
@db_path_option
@work_dir_option
def goal_decompose(goal_id: int, db_path: Path | None, work_dir: Path | None) -> None:
    """Plan a goal into tasks with the reasoning service."""

    _run(
        lambda: GOAL_CONTROLLER.decompose_goal(
            GoalMutateCommand(db_path=db_path, work_dir=work_dir, goal_id=goal_id),
        ),
    )


@goalrunner.group()
def task() -> None:
    """Task commands."""


@task.command("add")
@click.argument("goal_id", type=int)
@click.argument("title")
@click.option("--description", default=None, help="Task description.")
@click.option("--skill", default=None, help="Skill name, for example system-monitor.")
@click.option(
    "--depends-on",
    "depends_on",
    type=int,
    multiple=True,
    help="Task id that must complete first. Can be repeated.",
)
@click.option(
    "--requires-approval",
    is_flag=True,
    default=False,
    help="Hold the task until it is approved.",
)
@click.option(
    "--max-retries",
    type=click.IntRange(min=0),
    default=3,
    show_default=True,
    help="Retries before the task fails for good.",
)
@click.option("--input", "input_json", default=None, help="Task input as a JSON object.")
@db_path_option
@work_dir_option
def task_add(  # noqa: PLR0913
    goal_id: int,
    title: str,
    description: str | None,
    skill: str | None,
    depends_on: tuple[int, ...],
    requires_approval: bool,
    max_retries: int,
    input_json: str | None,
    db_path: Path | None,
    work_dir: Path | None,
) -> None:
    """Add a task to a goal."""

    _run(
        lambda: GOAL_CONTROLLER.add_task(
            TaskAddCommand(
                db_path=db_path,
                work_dir=work_dir,
                goal_id=goal_id,
                title=title,
                description=description,
                skill=skill,
                depends_on=depends_on,
                requires_approval=requires_approval,
                max_retries=max_retries,
                input_json=input_json,
            ),
        ),
    )


@task.command("approve")
@click.argument("task_id", type=int)
@db_path_option
@work_dir_option
def task_approve(task_id: int, db_path: Path | None, work_dir: Path | None) -> None:
    """Approve a task that is waiting for approval."""

    _run(
        lambda: GOAL_CONTROLLER.approve_task(
            TaskMutateCommand(db_path=db_path, work_dir=work_dir, task_id=task_id),
        ),
    )


@task.command("approvals")
@db_path_option
@work_dir_option
def task_approvals(db_path: Path | None, work_dir: Path | None) -> None:
    """List tasks waiting for approval."""

    _run(lambda: GOAL_CONTROLLER.approvals(ApprovalsCommand(db_path=db_path, work_dir=work_dir)))


@task.command("inspect")
@click.argument("task_id", type=int)
@db_path_option
@work_dir_option
def task_inspect(task_id: int, db_path: Path | None, work_dir: Path | None) -> None:
    """Show one task with its audit trail."""

    _run(
        lambda: GOAL_CONTROLLER.inspect_task(
            TaskMutateCommand(db_path=db_path, work_dir=work_dir, task_id=task_id),
        ),
    )


@task.command("errors")
@click.argument("skill")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=100),
    default=5,
    show_default=True,
    help="How many recent errors to show.",
)
@db_path_option
@work_dir_option
def task_errors(skill: str, limit: int, db_path: Path | None, work_dir: Path | None) -> None:
    """Show recent failures and metrics for a skill."""

    _run(
        lambda: GOAL_CONTROLLER.skill_errors(
            SkillErrorsCommand(db_path=db_path, work_dir=work_dir, skill=skill, limit=limit),
        ),
    )


@goalrunner.command("run")
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Upper bound on tasks in this batch (default from GOALRUNNER_MAX_TASKS).",
)
@db_path_option
@work_dir_option
def run_queue(max_tasks: int | None, db_path: Path | None, work_dir: Path | None) -> None:
    """Execute eligible tasks once, in the foreground."""

    _run(
        lambda: GOAL_CONTROLLER.run_queue(
            RunQueueCommand(db_path=db_path, work_dir=work_dir, max_tasks=max_tasks),
        ),
    )


@goalrunner.group()
def memory() -> None:
    """Long-term memory commands."""


@memory.command("save")
@click.argument("content")
@click.option(
    "--category",
    type=click.Choice(sorted(MEMORY_CATEGORIES)),
    default="general",
    show_default=True,
    help="Memory category.",
)
@click.option("--tags", default=None, help="Comma-separated tags.")
@db_path_option
@work_dir_option
def memory_save(
    content: str,
    category: str,
    tags: str | None,
    db_path: Path | None,
    work_dir: Path | None,
) -> None:
    """Save a fact, preference or piece of project context."""

    _run(
        lambda: MEMORY_CONTROLLER.save(
            MemorySaveCommand(
                db_path=db_path,
                work_dir=work_dir,
                content=content,
                category=category,
                tags=tags,
            ),
        ),
    )


@memory.command("search")
@click.argument("query")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=100),
    default=10,
    show_default=True,
    help="Max results.",
)
@db_path_option
@work_dir_option
def memory_search(query: str, limit: int, db_path: Path | None, work_dir: Path | None) -> None:
    """Keyword search over saved memories, newest first."""

    _run(
        lambda: MEMORY_CONTROLLER.search(
            MemorySearchCommand(db_path=db_path, work_dir=work_dir, query=query, limit=limit),
        ),
    )


@memory.command("list")
@click.option(
    "--category",
    type=click.Choice(sorted(MEMORY_CATEGORIES)),
    default=None,
    help="Only memories in this category.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1),
    default=20,
    show_default=True,
    help="Max results.",
)
@db_path_option
@work_dir_option
def memory_list(
    category: str | None,
    limit: int,
    db_path: Path | None,
    work_dir: Path | None,
) -> None:
    """List saved memories, newest first."""

    _run(
        lambda: MEMORY_CONTROLLER.list_memories(
            MemoryListCommand(
                db_path=db_path,
                work_dir=work_dir,
                category=category,
                limit=limit,
            ),
        ),
    )


@memory.command("forget")
@click.argument("memory_id", type=int)
@db_path_option
@work_dir_option
def memory_forget(memory_id: int, db_path: Path | None, work_dir: Path | None) -> None:
    """Delete a memory by id."""

    _run(
        lambda: MEMORY_CONTROLLER.forget(
            MemoryForgetCommand(db_path=db_path, work_dir=work_dir, memory_id=memory_id),
        ),
    )


@memory.command("stats")
@db_path_option
@work_dir_option
def memory_stats(db_path: Path | None, work_dir: Path | None) -> None:
    """Show memory counts by category and source."""

    _run(lambda: MEMORY_CONTROLLER.stats(MemoryStatsCommand(db_path=db_path, work_dir=work_dir)))


@goalrunner.group()
def daemon() -> None:
    """Background daemon commands."""


@daemon.command("init")
@db_path_option
@work_dir_option
def daemon_init(db_path: Path | None, work_dir: Path | None) -> None:
    """Create the database and a default triggers file."""

    _run(lambda: DAEMON_CONTROLLER.init(DaemonCommand(db_path=db_path, work_dir=work_dir)))


@daemon.command("start")
@db_path_option
@work_dir_option
def daemon_start(db_path: Path | None, work_dir: Path | None) -> None:
    """Start the daemon in the background."""

    _run(lambda: DAEMON_CONTROLLER.start(DaemonCommand(db_path=db_path, work_dir=work_dir)))


@daemon.command("stop")
@db_path_option
@work_dir_option
def daemon_stop(db_path: Path | None, work_dir: Path | None) -> None:
    """Stop the background daemon."""

    _run(lambda: DAEMON_CONTROLLER.stop(DaemonCommand(db_path=db_path, work_dir=work_dir)))


@daemon.command("status")
@db_path_option
@work_dir_option
def daemon_status(db_path: Path | None, work_dir: Path | None) -> None:
    """Show daemon liveness, triggers and queue counters."""

    _run(lambda: DAEMON_CONTROLLER.status(DaemonCommand(db_path=db_path, work_dir=work_dir)))


@daemon.command("triggers")
@db_path_option
@work_dir_option
def daemon_triggers(db_path: Path | None, work_dir: Path | None) -> None:
    """Show the configured triggers."""

    _run(lambda: DAEMON_CONTROLLER.triggers(DaemonCommand(db_path=db_path, work_dir=work_dir)))


@daemon.command("logs")
@click.option(
    "--lines",
    type=click.IntRange(min=1),
    default=30,
    show_default=True,
    help="How many trailing log lines to show.",
)
@db_path_option
@work_dir_option
def daemon_logs(lines: int, db_path: Path | None, work_dir: Path | None) -> None:
    """Show the tail of the daemon log."""

    _run(
        lambda: DAEMON_CONTROLLER.logs(
            DaemonLogsCommand(db_path=db_path, work_dir=work_dir, lines=lines),
        ),
    )


@daemon.command("run")
@db_path_option
@work_dir_option
def daemon_run(db_path: Path | None, work_dir: Path | None) -> None:
    """Run the daemon in the foreground until interrupted."""

    result = DAEMON_CONTROLLER.run_foreground(DaemonCommand(db_path=db_path, work_dir=work_dir))
    _emit_lines(result.lines)
    if result.exit_code != 0:
        raise click.ClickException("Daemon exited with errors.")


def _parse_deadline(value: str | None) -> datetime | None:
    if value is None:
        return None
    try:
        return from_iso(value)
    except ValueError as exc:
        raise click.BadParameter(f"Invalid ISO-8601 date: {value!r}", param_hint="--deadline") from exc


def _run(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except (ValueError, RuntimeError) as exc:
        raise click.ClickException(str(exc)) from exc
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    goalrunner()
