from __future__ import annotations

import json

import allure
import pytest

from goalrunner.goals.decomposer import (
    FALLBACK_TASK_TITLE,
    SKILLS_CATALOG,
    GoalDecomposer,
    parse_decomposition,
    skills_catalog_text,
)
from goalrunner.goals.repository import GoalRepository
from goalrunner.reasoning.base import ReasoningError
from tests.builders import add_goal
from tests.fakes import FakeMemory, FakeReasoning

pytestmark = [
    allure.epic("Goal Engine"),
    allure.feature("Goal Decomposition"),
]


def _plan(*tasks: dict, reasoning: str = "Build then ship", minutes: int = 45) -> str:
    body = json.dumps(
        {"reasoning": reasoning, "estimatedMinutes": minutes, "tasks": list(tasks)},
    )
    return f"Here is the plan:\n```json\n{body}\n```\nGood luck."


def test_parse_fenced_plan_with_defaults() -> None:
    result = parse_decomposition(
        _plan(
            {"title": "Build", "skill": "docker-deploy", "input": {"tag": "v1"}},
            {"description": "no title", "dependsOnIndex": [0], "requiresApproval": True},
        ),
    )

    assert result.reasoning == "Build then ship"
    assert result.estimated_minutes == 45
    first, second = result.tasks
    assert first.title == "Build"
    assert first.skill == "docker-deploy"
    assert first.input == {"tag": "v1"}
    assert first.depends_on_index == []
    assert second.title == "Unnamed task"
    assert second.skill is None
    assert second.depends_on_index == [0]
    assert second.requires_approval is True


def test_parse_raw_json_without_fence() -> None:
    result = parse_decomposition('{"tasks": [{"title": "Only"}]}')

    assert [task.title for task in result.tasks] == ["Only"]
    assert result.reasoning == "No reasoning provided"
    assert result.estimated_minutes == 30


@pytest.mark.parametrize(
    "content",
    [
        "I cannot help with that.",
        '```json\n{"reasoning": "missing tasks"}\n```',
        '["not", "an", "object"]',
    ],
)
def test_unreadable_plan_falls_back_to_manual_task(content: str) -> None:
    result = parse_decomposition(content)

    assert len(result.tasks) == 1
    fallback = result.tasks[0]
    assert fallback.title == FALLBACK_TASK_TITLE
    assert fallback.requires_approval is True
    assert fallback.description == f"LLM decomposition failed. Original response: {content[:200]}"
    assert result.reasoning.startswith("Decomposition failed: ")
    assert result.estimated_minutes == 60


def test_skills_catalog_lists_every_skill() -> None:
    text = skills_catalog_text()

    assert len(SKILLS_CATALOG) == 16
    for name, description in SKILLS_CATALOG:
        assert f"- {name}: {description}" in text


@pytest.mark.asyncio
async def test_decompose_and_create_resolves_dependencies(
    repository: GoalRepository,
    fake_memory: FakeMemory,
) -> None:
    reasoning = FakeReasoning(
        [
            _plan(
                {"title": "Build", "dependsOnIndex": [1]},
                {"title": "Test", "dependsOnIndex": [0, 1]},
                {"title": "Deploy", "dependsOnIndex": [0, 1, 7], "requiresApproval": True},
            ),
        ],
    )
    decomposer = GoalDecomposer(repository=repository, reasoning=reasoning, memory=fake_memory)
    goal = add_goal(repository, "Release v2", description="Ship it", priority=3)

    created = await decomposer.decompose_and_create(goal)

    build, test, deploy = created
    assert build.depends_on == ()
    assert test.depends_on == (build.id,)
    assert deploy.depends_on == (build.id, test.id)
    assert deploy.requires_approval is True
    assert [task.title for task in repository.list_tasks(goal.id)] == ["Build", "Test", "Deploy"]

    call = reasoning.calls[0]
    assert call.system.startswith("You are an autonomous AI agent planner.")
    assert "- backup: Create timestamped backups of files/directories" in call.system
    assert "Goal: Release v2" in call.user
    assert "Description: Ship it" in call.user
    assert "Priority: 3/10" in call.user
    assert call.options.temperature == pytest.approx(0.3)
    assert call.options.max_tokens == 2_000

    assert len(fake_memory.saved) == 1
    saved = fake_memory.saved[0]
    assert saved.content == (
        'Decomposed goal "Release v2" into 3 tasks. '
        "Strategy: Build then ship. Estimated: 45 minutes."
    )
    assert saved.category == "learned"
    assert saved.source == "agent"
    assert saved.tags == ["goal", "decomposition", "planning"]


@pytest.mark.asyncio
async def test_reasoning_failure_creates_single_gated_task(
    repository: GoalRepository,
    fake_memory: FakeMemory,
) -> None:
    reasoning = FakeReasoning([ReasoningError("provider down")])
    decomposer = GoalDecomposer(repository=repository, reasoning=reasoning, memory=fake_memory)
    goal = add_goal(repository, "Unplannable")

    created = await decomposer.decompose_and_create(goal)

    assert len(created) == 1
    assert created[0].title == FALLBACK_TASK_TITLE
    assert created[0].requires_approval is True
    assert repository.get_next_task() is None
    assert repository.get_pending_approvals()[0].id == created[0].id
    assert "Decomposition failed: provider down" in fake_memory.saved[0].content


@pytest.mark.asyncio
async def test_unparseable_plan_creates_single_gated_task(
    repository: GoalRepository,
    fake_memory: FakeMemory,
) -> None:
    reasoning = FakeReasoning(["I cannot help with that."])
    decomposer = GoalDecomposer(repository=repository, reasoning=reasoning, memory=fake_memory)
    goal = add_goal(repository, "Vague ambition")

    created = await decomposer.decompose_and_create(goal)

    assert len(created) == 1
    assert created[0].title == FALLBACK_TASK_TITLE
    assert created[0].requires_approval is True
    assert created[0].description == (
        "LLM decomposition failed. Original response: I cannot help with that."
    )
    assert [task.id for task in repository.list_tasks(goal.id)] == [created[0].id]
    assert repository.get_next_task() is None
