"""Persistent goal/task store with an implicit audit trail."""

from __future__ import annotations

import json
from collections.abc import Collection
from pathlib import Path

from sqlalchemy import delete as sa_delete
from sqlalchemy import func, or_
from sqlalchemy import update as sa_update
from sqlalchemy.sql.elements import ColumnElement
from sqlmodel import Session, col, select

from goalrunner.goals.models import (
    SCHEDULABLE_TASK_STATUSES,
    TERMINAL_TASK_STATUSES,
    AuditEventView,
    GoalCreate,
    GoalStats,
    GoalStatus,
    GoalView,
    TaskCreate,
    TaskStatus,
    TaskView,
)
from goalrunner.goals.scheduler import select_next_task
from goalrunner.storage.alembic_runner import upgrade_head
from goalrunner.storage.common import (
    build_sqlite_engine,
    dump_json_map,
    load_json_map,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from goalrunner.storage.sqlmodel_models import AuditEventRow, GoalRow, TaskRow

_APPROVABLE_STATUSES = (
    TaskStatus.PENDING.value,
    TaskStatus.QUEUED.value,
    TaskStatus.BLOCKED.value,
)


class GoalRepository:
    """Goal/task persistence facade backed by SQLModel + SQLite.

    Every mutating call writes its audit row in the same transaction as the
    state change. Storage errors propagate unchanged; nothing is retried here.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations to head."""

        upgrade_head(self.db_path)

    # -- goals ---------------------------------------------------------------

    def add_goal(self, payload: GoalCreate) -> GoalView:
        """Create an active goal with zero progress."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = GoalRow(
                title=payload.title,
                description=payload.description,
                status=GoalStatus.ACTIVE.value,
                priority=payload.priority,
                created_at=now,
                updated_at=now,
                deadline=to_db_datetime(payload.deadline) if payload.deadline else None,
                parent_goal_id=payload.parent_goal_id,
                progress=0.0,
                metadata_json=dump_json_map(payload.metadata),
            )
            session.add(row)
            session.flush()
            self._add_event(
                session=session,
                event_type="goal.created",
                entity_type="goal",
                entity_id=row.id,
                details={"title": payload.title, "priority": payload.priority},
            )
            session.commit()
            session.refresh(row)
            return _to_goal_view(row)

    def get_goal(self, goal_id: int) -> GoalView | None:
        with Session(self.engine) as session:
            row = session.get(GoalRow, goal_id)
            return _to_goal_view(row) if row is not None else None

    def list_goals(self, status: GoalStatus | None = None) -> list[GoalView]:
        """List goals; unfiltered results are grouped by status first."""

        with Session(self.engine) as session:
            statement = select(GoalRow)
            if status is not None:
                statement = statement.where(GoalRow.status == status.value).order_by(
                    col(GoalRow.priority).asc(),
                    col(GoalRow.created_at).desc(),
                    col(GoalRow.id).desc(),
                )
            else:
                statement = statement.order_by(
                    col(GoalRow.status).asc(),
                    col(GoalRow.priority).asc(),
                    col(GoalRow.created_at).desc(),
                    col(GoalRow.id).desc(),
                )
            rows = session.exec(statement).all()
        return [_to_goal_view(row) for row in rows]

    def update_goal_status(self, goal_id: int, status: GoalStatus) -> None:
        """Direct status write; transitions are not validated."""

        with Session(self.engine) as session:
            self._write_goal_status(session=session, goal_id=goal_id, status=status)
            session.commit()

    def update_goal_progress(self, goal_id: int) -> float | None:
        """Recompute progress from owned tasks; None when the goal has none."""

        with Session(self.engine) as session:
            progress = self._recompute_goal_progress(session=session, goal_id=goal_id)
            session.commit()
        return progress

    def remove_goal(self, goal_id: int) -> bool:
        """Delete a goal; owned tasks go with it."""

        with Session(self.engine) as session:
            task_count = session.exec(
                select(func.count()).select_from(TaskRow).where(TaskRow.goal_id == goal_id),
            ).one()
            result = session.exec(sa_delete(GoalRow).where(col(GoalRow.id) == goal_id))
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                event_type="goal.removed",
                entity_type="goal",
                entity_id=goal_id,
                details={"tasks_removed": task_count},
            )
            session.commit()
            return True

    # -- tasks ---------------------------------------------------------------

    def add_task(self, payload: TaskCreate) -> TaskView:
        """Create a pending task under an existing goal."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = TaskRow(
                goal_id=payload.goal_id,
                title=payload.title,
                description=payload.description,
                status=TaskStatus.PENDING.value,
                skill=payload.skill,
                input_json=dump_json_map(payload.input),
                depends_on_json=json.dumps([int(task_id) for task_id in payload.depends_on]),
                scheduled_at=(
                    to_db_datetime(payload.scheduled_at) if payload.scheduled_at else None
                ),
                retry_count=0,
                max_retries=payload.max_retries,
                requires_approval=payload.requires_approval,
                created_at=now,
            )
            session.add(row)
            session.flush()
            self._add_event(
                session=session,
                event_type="task.created",
                entity_type="task",
                entity_id=row.id,
                details={
                    "goal_id": payload.goal_id,
                    "title": payload.title,
                    "skill": payload.skill,
                    "depends_on": list(payload.depends_on),
                    "requires_approval": payload.requires_approval,
                },
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def get_task(self, task_id: int) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(TaskRow, task_id)
            return _to_task_view(row) if row is not None else None

    def list_tasks(self, goal_id: int) -> list[TaskView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRow)
                .where(TaskRow.goal_id == goal_id)
                .order_by(col(TaskRow.id).asc()),
            ).all()
        return [_to_task_view(row) for row in rows]

    def list_schedulable_candidates(self) -> list[TaskView]:
        """Pending/queued tasks of active goals, by goal priority then task id."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRow)
                .join(GoalRow, col(GoalRow.id) == col(TaskRow.goal_id))
                .where(
                    col(TaskRow.status).in_([status.value for status in SCHEDULABLE_TASK_STATUSES]),
                    GoalRow.status == GoalStatus.ACTIVE.value,
                )
                .order_by(col(GoalRow.priority).asc(), col(TaskRow.id).asc()),
            ).all()
        return [_to_task_view(row) for row in rows]

    def get_next_task(self, *, exclude_ids: Collection[int] = ()) -> TaskView | None:
        """Next eligible task per the scheduler's priority + FIFO policy."""

        return select_next_task(self, exclude_ids=exclude_ids)

    def start_task(self, task_id: int) -> bool:
        """Claim a pending/queued task for execution.

        The transition is a single conditional UPDATE, so when two processes
        race for the same task exactly one of them gets True.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(TaskRow)
                .where(
                    col(TaskRow.id) == task_id,
                    col(TaskRow.status).in_(
                        [status.value for status in SCHEDULABLE_TASK_STATUSES],
                    ),
                )
                .values(status=TaskStatus.RUNNING.value, started_at=now),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                event_type="task.started",
                entity_type="task",
                entity_id=task_id,
                details={},
            )
            session.commit()
            return True

    def complete_task(self, task_id: int, output: str) -> bool:
        """Mark a task completed and recompute the owning goal's progress."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.get(TaskRow, task_id)
            if row is None:
                return False
            row.status = TaskStatus.COMPLETED.value
            row.output = output
            row.completed_at = now
            session.add(row)
            self._add_event(
                session=session,
                event_type="task.completed",
                entity_type="task",
                entity_id=task_id,
                details={"output_chars": len(output)},
            )
            session.flush()
            self._recompute_goal_progress(session=session, goal_id=row.goal_id)
            session.commit()
            return True

    def fail_task(self, task_id: int, error: str) -> TaskStatus | None:
        """Apply the retry policy; returns the resulting status.

        Below ``max_retries`` the task goes back to pending with one more
        retry counted and is immediately schedulable again. At the limit it
        becomes terminally failed.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.get(TaskRow, task_id)
            if row is None:
                return None

            if row.retry_count < row.max_retries:
                retry_number = row.retry_count + 1
                values: dict[str, object] = {
                    "status": TaskStatus.PENDING.value,
                    "retry_count": retry_number,
                    "error": error,
                }
                event_type = "task.retry"
                new_status = TaskStatus.PENDING
                details: dict[str, object] = {
                    "retry": retry_number,
                    "max_retries": row.max_retries,
                    "error": error,
                }
            else:
                values = {
                    "status": TaskStatus.FAILED.value,
                    "error": error,
                    "completed_at": now,
                }
                event_type = "task.failed"
                new_status = TaskStatus.FAILED
                details = {"retries": row.retry_count, "error": error}

            result = session.exec(
                sa_update(TaskRow)
                .where(
                    col(TaskRow.id) == task_id,
                    col(TaskRow.retry_count) == row.retry_count,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(
                    "Task state changed concurrently while recording failure; "
                    f"task_id={task_id}.",
                )
            self._add_event(
                session=session,
                event_type=event_type,
                entity_type="task",
                entity_id=task_id,
                details=details,
            )
            session.commit()
            return new_status

    def approve_task(self, task_id: int) -> bool:
        """Open the approval gate of a task that requires it."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(TaskRow)
                .where(
                    col(TaskRow.id) == task_id,
                    col(TaskRow.requires_approval).is_(True),
                    col(TaskRow.approved_at).is_(None),
                    col(TaskRow.status).in_(_APPROVABLE_STATUSES),
                )
                .values(approved_at=now, status=TaskStatus.QUEUED.value),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                event_type="task.approved",
                entity_type="task",
                entity_id=task_id,
                details={},
            )
            session.commit()
            return True

    def get_pending_approvals(self) -> list[TaskView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRow).where(*_awaiting_approval_clauses()).order_by(col(TaskRow.id).asc()),
            ).all()
        return [_to_task_view(row) for row in rows]

    def get_skill_errors(self, skill_name: str, limit: int = 5) -> list[str]:
        """Most recent failure texts for tasks bound to one skill."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRow)
                .where(
                    TaskRow.skill == skill_name,
                    or_(
                        col(TaskRow.status).in_(
                            [TaskStatus.FAILED.value, TaskStatus.BLOCKED.value],
                        ),
                        col(TaskRow.error).is_not(None),
                    ),
                )
                .order_by(col(TaskRow.created_at).desc(), col(TaskRow.id).desc())
                .limit(limit),
            ).all()
        return [row.error or row.output or "Unknown error" for row in rows]

    def stats(self) -> GoalStats:
        with Session(self.engine) as session:

            def count_goals(*statuses: GoalStatus) -> int:
                return session.exec(
                    select(func.count())
                    .select_from(GoalRow)
                    .where(col(GoalRow.status).in_([status.value for status in statuses])),
                ).one()

            def count_tasks(*statuses: TaskStatus) -> int:
                return session.exec(
                    select(func.count())
                    .select_from(TaskRow)
                    .where(col(TaskRow.status).in_([status.value for status in statuses])),
                ).one()

            return GoalStats(
                active_goals=count_goals(GoalStatus.ACTIVE),
                completed_goals=count_goals(GoalStatus.COMPLETED),
                pending_tasks=count_tasks(TaskStatus.PENDING, TaskStatus.QUEUED),
                running_tasks=count_tasks(TaskStatus.RUNNING),
                completed_tasks=count_tasks(TaskStatus.COMPLETED),
                failed_tasks=count_tasks(TaskStatus.FAILED),
                awaiting_approval=session.exec(
                    select(func.count()).select_from(TaskRow).where(*_awaiting_approval_clauses()),
                ).one(),
            )

    def list_audit_events(
        self,
        *,
        entity_type: str | None = None,
        entity_id: int | None = None,
        limit: int = 100,
    ) -> list[AuditEventView]:
        """Read the audit trail, oldest first."""

        with Session(self.engine) as session:
            statement = select(AuditEventRow)
            if entity_type is not None:
                statement = statement.where(AuditEventRow.entity_type == entity_type)
            if entity_id is not None:
                statement = statement.where(AuditEventRow.entity_id == entity_id)
            rows = session.exec(statement.order_by(col(AuditEventRow.id).asc()).limit(limit)).all()
        return [
            AuditEventView(
                id=row.id or 0,
                event_type=row.event_type,
                entity_type=row.entity_type,
                entity_id=row.entity_id,
                action=row.action,
                details=row.details,
                created_at=to_utc_aware_datetime(row.created_at),
            )
            for row in rows
        ]

    # -- internals -----------------------------------------------------------

    def _write_goal_status(self, *, session: Session, goal_id: int, status: GoalStatus) -> None:
        session.exec(
            sa_update(GoalRow)
            .where(col(GoalRow.id) == goal_id)
            .values(status=status.value, updated_at=to_db_datetime(utc_now())),
        )
        self._add_event(
            session=session,
            event_type=f"goal.{status.value}",
            entity_type="goal",
            entity_id=goal_id,
            details={"status": status.value},
        )

    def _recompute_goal_progress(self, *, session: Session, goal_id: int) -> float | None:
        statuses = session.exec(select(TaskRow.status).where(TaskRow.goal_id == goal_id)).all()
        if not statuses:
            return None

        completed = sum(1 for status in statuses if status == TaskStatus.COMPLETED.value)
        progress = completed / len(statuses)
        session.exec(
            sa_update(GoalRow)
            .where(col(GoalRow.id) == goal_id)
            .values(progress=progress, updated_at=to_db_datetime(utc_now())),
        )
        self._add_event(
            session=session,
            event_type="goal.progress",
            entity_type="goal",
            entity_id=goal_id,
            details={"completed": completed, "total": len(statuses), "progress": progress},
        )

        if progress >= 1.0:
            goal_status = session.exec(
                select(GoalRow.status).where(GoalRow.id == goal_id),
            ).one_or_none()
            if goal_status != GoalStatus.COMPLETED.value:
                self._write_goal_status(
                    session=session,
                    goal_id=goal_id,
                    status=GoalStatus.COMPLETED,
                )
        return progress

    def _add_event(
        self,
        *,
        session: Session,
        event_type: str,
        entity_type: str,
        entity_id: int | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            AuditEventRow(
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                action=event_type.rsplit(".", 1)[-1],
                details=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _awaiting_approval_clauses() -> tuple[ColumnElement[bool], ...]:
    return (
        col(TaskRow.requires_approval).is_(True),
        col(TaskRow.approved_at).is_(None),
        col(TaskRow.status).not_in([status.value for status in TERMINAL_TASK_STATUSES]),
    )


def _to_goal_view(row: GoalRow) -> GoalView:
    return GoalView(
        id=row.id or 0,
        title=row.title,
        description=row.description,
        status=GoalStatus(row.status),
        priority=row.priority,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        deadline=optional_utc(row.deadline),
        parent_goal_id=row.parent_goal_id,
        progress=row.progress,
        metadata=load_json_map(row.metadata_json),
    )


def _to_task_view(row: TaskRow) -> TaskView:
    depends_on_raw = json.loads(row.depends_on_json or "[]")
    return TaskView(
        id=row.id or 0,
        goal_id=row.goal_id,
        title=row.title,
        description=row.description,
        status=TaskStatus(row.status),
        skill=row.skill,
        input=load_json_map(row.input_json),
        output=row.output,
        error=row.error,
        depends_on=tuple(int(task_id) for task_id in depends_on_raw),
        scheduled_at=optional_utc(row.scheduled_at),
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        requires_approval=bool(row.requires_approval),
        approved_at=optional_utc(row.approved_at),
        created_at=to_utc_aware_datetime(row.created_at),
    )
