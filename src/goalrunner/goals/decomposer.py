"""Goal decomposition into a dependency-aware task list."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field

from goalrunner.config import DecomposerSettings
from goalrunner.goals.models import GoalView, TaskCreate, TaskView
from goalrunner.goals.repository import GoalRepository
from goalrunner.ports import MemoryContext
from goalrunner.reasoning.base import ChatMessage, ChatOptions, ReasoningError, ReasoningService
from goalrunner.storage.common import JsonMap

logger = logging.getLogger(__name__)

SKILLS_CATALOG: tuple[tuple[str, str], ...] = (
    ("code-review", "Analyze code for bugs, style, and improvements"),
    ("git-commit", "Stage, commit, and push changes using conventional commits"),
    ("docker-deploy", "Build Docker images and deploy containers"),
    ("project-scaffold", "Create new projects (React, Next.js, Express, etc.)"),
    ("npm-publish", "Version bump, build, and publish npm packages"),
    ("system-monitor", "Check CPU, memory, disk, and running processes"),
    ("log-analyzer", "Parse and summarize log files for errors/patterns"),
    ("file-organizer", "Sort and organize files by type/date/size"),
    ("web-search", "Search the web for information"),
    ("create-note", "Create markdown notes and documentation"),
    ("api-tester", "Test HTTP endpoints with assertions"),
    ("db-query", "Execute and explain database queries"),
    ("backup", "Create timestamped backups of files/directories"),
    ("cron-scheduler", "Schedule recurring tasks"),
    ("send-email", "Send notification emails"),
    ("open-vscode", "Open files/projects in VS Code"),
)

FALLBACK_TASK_TITLE = "Execute goal manually"
_FENCED_BLOCK = re.compile(r"```(?:json)?\s*\n?(.*?)\n?\s*```", re.DOTALL)

_RESPONSE_FORMAT = """{
  "reasoning": "Brief explanation of your decomposition strategy",
  "estimatedMinutes": <number>,
  "tasks": [
    {
      "title": "Short task title",
      "description": "What this task does",
      "skill": "skill-name or null",
      "dependsOnIndex": [0, 1],
      "requiresApproval": false,
      "input": {}
    }
  ]
}"""


class DecompositionParseError(ValueError):
    """Reasoning output could not be read as a task plan."""


@dataclass(slots=True)
class DecomposedTask:
    """One planned task; dependencies refer to positions in the plan."""

    title: str
    description: str = ""
    skill: str | None = None
    depends_on_index: list[int] = field(default_factory=list)
    requires_approval: bool = False
    input: JsonMap = field(default_factory=dict)


@dataclass(slots=True)
class DecompositionResult:
    tasks: list[DecomposedTask]
    reasoning: str
    estimated_minutes: float


def skills_catalog_text() -> str:
    lines = ["Available skills the agent can use:"]
    lines.extend(f"- {name}: {description}" for name, description in SKILLS_CATALOG)
    return "\n".join(lines)


def parse_decomposition(content: str) -> DecompositionResult:
    """Read a task plan from raw reasoning output.

    The first fenced block wins when present, otherwise the whole text is
    parsed. Anything unreadable degrades to a single approval-gated manual
    task instead of raising.
    """

    match = _FENCED_BLOCK.search(content)
    json_text = match.group(1) if match else content
    try:
        return _plan_from_payload(json.loads(json_text.strip()))
    except (ValueError, TypeError) as exc:
        logger.warning("Could not parse decomposition response: %s", exc)
        return fallback_decomposition(content, str(exc))


def fallback_decomposition(content: str, error: str) -> DecompositionResult:
    return DecompositionResult(
        tasks=[
            DecomposedTask(
                title=FALLBACK_TASK_TITLE,
                description=f"LLM decomposition failed. Original response: {content[:200]}",
                requires_approval=True,
            ),
        ],
        reasoning=f"Decomposition failed: {error}",
        estimated_minutes=60,
    )


def _plan_from_payload(payload: object) -> DecompositionResult:
    if not isinstance(payload, dict):
        raise DecompositionParseError("Response is not a JSON object")
    raw_tasks = payload.get("tasks")
    if not isinstance(raw_tasks, list):
        raise DecompositionParseError("Response missing tasks array")

    tasks: list[DecomposedTask] = []
    for position, raw in enumerate(raw_tasks):
        if not isinstance(raw, dict):
            raise DecompositionParseError(f"Task at index {position} is not an object")
        skill = raw.get("skill")
        raw_input = raw.get("input")
        raw_depends = raw.get("dependsOnIndex") or []
        tasks.append(
            DecomposedTask(
                title=str(raw.get("title") or "Unnamed task"),
                description=str(raw.get("description") or ""),
                skill=str(skill) if skill else None,
                depends_on_index=[
                    index
                    for index in (raw_depends if isinstance(raw_depends, list) else [])
                    if isinstance(index, int) and not isinstance(index, bool)
                ],
                requires_approval=bool(raw.get("requiresApproval", False)),
                input=raw_input if isinstance(raw_input, dict) else {},
            ),
        )

    estimated = payload.get("estimatedMinutes")
    return DecompositionResult(
        tasks=tasks,
        reasoning=str(payload.get("reasoning") or "No reasoning provided"),
        estimated_minutes=(
            estimated
            if isinstance(estimated, int | float) and not isinstance(estimated, bool)
            else 30
        ),
    )


class GoalDecomposer:
    """Turns a goal into stored tasks via one reasoning round trip."""

    def __init__(
        self,
        *,
        repository: GoalRepository,
        reasoning: ReasoningService,
        memory: MemoryContext,
        settings: DecomposerSettings | None = None,
    ) -> None:
        self.repository = repository
        self.reasoning = reasoning
        self.memory = memory
        self.settings = settings or DecomposerSettings()

    async def decompose(self, goal: GoalView) -> DecompositionResult:
        memory_context = self.memory.get_context(goal.title, self.settings.memory_context_tokens)
        system_prompt = (
            "You are an autonomous AI agent planner. Your job is to break down a "
            "high-level goal into specific, actionable tasks.\n\n"
            "Rules:\n"
            "1. Each task should be a single, concrete action\n"
            "2. Assign the most appropriate skill to each task (from the catalog below)\n"
            "3. Define dependencies between tasks (which tasks must complete first)\n"
            "4. Flag any task that modifies production systems or has destructive effects "
            "as requiresApproval: true\n"
            "5. Tasks should be ordered logically\n"
            "6. Keep tasks focused, one action per task\n"
            "7. Include a brief description for each task\n\n"
            f"{skills_catalog_text()}\n"
        )
        if memory_context:
            system_prompt += f"\nRelevant context from agent memory:\n{memory_context}\n"
        system_prompt += f"\nRespond ONLY with valid JSON in this exact format:\n{_RESPONSE_FORMAT}"

        user_lines = ["Decompose this goal into executable tasks:", "", f"Goal: {goal.title}"]
        if goal.description:
            user_lines.append(f"Description: {goal.description}")
        if goal.deadline:
            user_lines.append(f"Deadline: {goal.deadline.isoformat()}")
        user_lines.append(f"Priority: {goal.priority}/10")

        try:
            response = await self.reasoning.chat(
                [
                    ChatMessage(role="system", content=system_prompt),
                    ChatMessage(role="user", content="\n".join(user_lines)),
                ],
                ChatOptions(
                    temperature=self.settings.temperature,
                    max_tokens=self.settings.max_tokens,
                ),
            )
        except ReasoningError as exc:
            logger.warning("Decomposition request for goal #%s failed: %s", goal.id, exc)
            return fallback_decomposition("", str(exc))
        return parse_decomposition(response.content)

    async def decompose_and_create(self, goal: GoalView) -> list[TaskView]:
        """Decompose and store the plan, translating positions into task ids.

        A dependency only resolves to a task inserted earlier in the plan;
        forward, self and out-of-range references are dropped.
        """

        result = await self.decompose(goal)
        index_to_id: dict[int, int] = {}
        created: list[TaskView] = []
        for position, planned in enumerate(result.tasks):
            depends_on = tuple(
                index_to_id[index] for index in planned.depends_on_index if index in index_to_id
            )
            task = self.repository.add_task(
                TaskCreate(
                    goal_id=goal.id,
                    title=planned.title,
                    description=planned.description,
                    skill=planned.skill,
                    input=planned.input,
                    depends_on=depends_on,
                    requires_approval=planned.requires_approval,
                ),
            )
            index_to_id[position] = task.id
            created.append(task)

        self.memory.save(
            f'Decomposed goal "{goal.title}" into {len(created)} tasks. '
            f"Strategy: {result.reasoning}. "
            f"Estimated: {result.estimated_minutes:g} minutes.",
            category="learned",
            source="agent",
            tags=["goal", "decomposition", "planning"],
        )
        logger.info("Goal #%s decomposed into %s tasks", goal.id, len(created))
        return created
