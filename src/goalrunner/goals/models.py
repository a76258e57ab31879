"""Domain models for goals, tasks and the audit trail."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from goalrunner.storage.common import JsonMap


class GoalStatus(str, Enum):
    """Goal lifecycle states."""

    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    PENDING = "pending"
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"


SCHEDULABLE_TASK_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.QUEUED})
TERMINAL_TASK_STATUSES = frozenset(
    {TaskStatus.CANCELLED, TaskStatus.COMPLETED, TaskStatus.FAILED},
)


@dataclass(slots=True)
class GoalCreate:
    """Input payload for creating a goal."""

    title: str
    description: str | None = None
    priority: int = 5
    deadline: datetime | None = None
    parent_goal_id: int | None = None
    metadata: JsonMap = field(default_factory=dict)


@dataclass(slots=True)
class GoalView:
    """Readable goal view for CLI, scheduler and decomposer."""

    id: int
    title: str
    description: str | None
    status: GoalStatus
    priority: int
    created_at: datetime
    updated_at: datetime
    deadline: datetime | None
    parent_goal_id: int | None
    progress: float
    metadata: JsonMap = field(default_factory=dict)


@dataclass(slots=True)
class TaskCreate:
    """Input payload for adding a task to a goal."""

    goal_id: int
    title: str
    description: str | None = None
    skill: str | None = None
    input: JsonMap = field(default_factory=dict)
    depends_on: tuple[int, ...] = ()
    requires_approval: bool = False
    scheduled_at: datetime | None = None
    max_retries: int = 3


@dataclass(slots=True)
class TaskView:
    """Readable task view."""

    id: int
    goal_id: int
    title: str
    description: str | None
    status: TaskStatus
    skill: str | None
    input: JsonMap
    output: str | None
    error: str | None
    depends_on: tuple[int, ...]
    scheduled_at: datetime | None
    started_at: datetime | None
    completed_at: datetime | None
    retry_count: int
    max_retries: int
    requires_approval: bool
    approved_at: datetime | None
    created_at: datetime

    @property
    def awaiting_approval(self) -> bool:
        return self.requires_approval and self.approved_at is None


@dataclass(slots=True)
class AuditEventView:
    """Append-only audit trail entry."""

    id: int
    event_type: str
    entity_type: str | None
    entity_id: int | None
    action: str
    details: str | None
    created_at: datetime


@dataclass(slots=True)
class GoalStats:
    """Aggregate counters for dashboards and the daemon heartbeat."""

    active_goals: int = 0
    completed_goals: int = 0
    pending_tasks: int = 0
    running_tasks: int = 0
    completed_tasks: int = 0
    failed_tasks: int = 0
    awaiting_approval: int = 0


@dataclass(slots=True)
class TaskOutcome:
    """Result of executing one task."""

    task_id: int
    title: str
    success: bool
    output: str
    skipped: bool = False


@dataclass(slots=True)
class QueueRunSummary:
    """Aggregate counters for one batch drain."""

    processed: int = 0
    completed: int = 0
    failed: int = 0
    results: list[TaskOutcome] = field(default_factory=list)
