"""Next-task selection: goal priority first, then insertion order.

The policy is greedy and single-pick. Candidates arrive ordered by the owning
goal's priority (ascending, 1 is most urgent) and then by task id; the first
one whose dependencies are all completed and whose approval gate is open wins.
There is no fairness window, so a steady stream of urgent work can starve
lower-priority goals indefinitely.
"""

from __future__ import annotations

from collections.abc import Callable, Collection
from typing import Protocol

from goalrunner.goals.models import SCHEDULABLE_TASK_STATUSES, GoalStatus, TaskStatus, TaskView


class TaskSource(Protocol):
    """Read side of the store needed for task selection."""

    def list_schedulable_candidates(self) -> list[TaskView]:
        """Pending/queued tasks of active goals in scheduling order."""

    def get_task(self, task_id: int) -> TaskView | None:
        """Look up a single task by id."""


def dependencies_met(
    task: TaskView,
    dependency_lookup: Callable[[int], TaskView | None],
) -> bool:
    """True when every dependency resolves to a completed task."""

    for dependency_id in task.depends_on:
        dependency = dependency_lookup(dependency_id)
        if dependency is None or dependency.status != TaskStatus.COMPLETED:
            return False
    return True


def is_eligible(
    task: TaskView,
    *,
    goal_status: GoalStatus,
    dependency_lookup: Callable[[int], TaskView | None],
) -> bool:
    """Full eligibility predicate for one task."""

    if goal_status != GoalStatus.ACTIVE:
        return False
    if task.status not in SCHEDULABLE_TASK_STATUSES:
        return False
    if task.awaiting_approval:
        return False
    return dependencies_met(task, dependency_lookup)


def select_next_task(
    source: TaskSource,
    *,
    exclude_ids: Collection[int] = (),
) -> TaskView | None:
    """Return the first eligible candidate, or None."""

    for candidate in source.list_schedulable_candidates():
        if candidate.id in exclude_ids:
            continue
        if is_eligible(
            candidate,
            goal_status=GoalStatus.ACTIVE,
            dependency_lookup=source.get_task,
        ):
            return candidate
    return None

