from __future__ import annotations

import allure

from goalrunner.goals.models import GoalStatus, TaskStatus
from goalrunner.goals.repository import GoalRepository
from goalrunner.goals.scheduler import dependencies_met, is_eligible
from tests.builders import add_goal, add_task

pytestmark = [
    allure.epic("Goal Engine"),
    allure.feature("Task Scheduling"),
]


def test_more_urgent_goal_wins_over_insertion_order(repository: GoalRepository) -> None:
    relaxed = add_goal(repository, "Relaxed", priority=8)
    urgent = add_goal(repository, "Urgent", priority=1)
    add_task(repository, relaxed.id, "Old relaxed task")
    urgent_task = add_task(repository, urgent.id, "New urgent task")

    selected = repository.get_next_task()

    assert selected is not None
    assert selected.id == urgent_task.id


def test_fifo_within_one_goal(repository: GoalRepository) -> None:
    goal = add_goal(repository)
    first = add_task(repository, goal.id, "First")
    add_task(repository, goal.id, "Second")

    selected = repository.get_next_task()

    assert selected is not None
    assert selected.id == first.id


def test_unmet_dependency_skips_to_next_candidate(repository: GoalRepository) -> None:
    goal = add_goal(repository)
    build = add_task(repository, goal.id, "Build")
    deploy = add_task(repository, goal.id, "Deploy", depends_on=(build.id,))
    notes = add_task(repository, goal.id, "Notes")

    assert repository.start_task(build.id)
    selected = repository.get_next_task()
    assert selected is not None
    assert selected.id == notes.id

    repository.complete_task(build.id, "ok")
    selected = repository.get_next_task()
    assert selected is not None
    assert selected.id == deploy.id


def test_unknown_dependency_never_resolves(repository: GoalRepository) -> None:
    goal = add_goal(repository)
    add_task(repository, goal.id, "Orphan", depends_on=(4242,))

    assert repository.get_next_task() is None


def test_failed_dependency_blocks_dependent(repository: GoalRepository) -> None:
    goal = add_goal(repository)
    build = add_task(repository, goal.id, "Build", max_retries=0)
    add_task(repository, goal.id, "Deploy", depends_on=(build.id,))

    repository.start_task(build.id)
    repository.fail_task(build.id, "compile error")

    assert repository.get_next_task() is None


def test_approval_gate_holds_task_until_approved(repository: GoalRepository) -> None:
    goal = add_goal(repository)
    gated = add_task(repository, goal.id, "Drop table", requires_approval=True)

    assert repository.get_next_task() is None

    repository.approve_task(gated.id)
    selected = repository.get_next_task()
    assert selected is not None
    assert selected.id == gated.id
    assert selected.status == TaskStatus.QUEUED


def test_tasks_of_inactive_goals_are_not_scheduled(repository: GoalRepository) -> None:
    goal = add_goal(repository)
    add_task(repository, goal.id, "Waiting")

    repository.update_goal_status(goal.id, GoalStatus.PAUSED)
    assert repository.get_next_task() is None

    repository.update_goal_status(goal.id, GoalStatus.ACTIVE)
    assert repository.get_next_task() is not None


def test_excluded_ids_are_passed_over(repository: GoalRepository) -> None:
    goal = add_goal(repository)
    first = add_task(repository, goal.id, "First")
    second = add_task(repository, goal.id, "Second")

    selected = repository.get_next_task(exclude_ids={first.id})
    assert selected is not None
    assert selected.id == second.id
    assert repository.get_next_task(exclude_ids={first.id, second.id}) is None


def test_is_eligible_predicate(repository: GoalRepository) -> None:
    goal = add_goal(repository)
    dependency = add_task(repository, goal.id, "Dependency")
    task = add_task(repository, goal.id, "Task", depends_on=(dependency.id,))

    assert not dependencies_met(task, repository.get_task)
    assert not is_eligible(
        task,
        goal_status=GoalStatus.ACTIVE,
        dependency_lookup=repository.get_task,
    )

    repository.start_task(dependency.id)
    repository.complete_task(dependency.id, "done")
    assert is_eligible(
        task,
        goal_status=GoalStatus.ACTIVE,
        dependency_lookup=repository.get_task,
    )
    assert not is_eligible(
        task,
        goal_status=GoalStatus.PAUSED,
        dependency_lookup=repository.get_task,
    )
