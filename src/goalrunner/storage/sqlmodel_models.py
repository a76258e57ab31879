"""SQLModel ORM tables for the goal store and agent memory."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Text,
    text,
)
from sqlmodel import Field, SQLModel


class GoalRow(SQLModel, table=True):
    __tablename__ = "goals"  # type: ignore[bad-override]
    __table_args__ = (
        CheckConstraint(
            "status IN ('active','paused','completed','failed','cancelled')",
            name="ck_goals_status",
        ),
        CheckConstraint("priority BETWEEN 1 AND 10", name="ck_goals_priority"),
        Index("idx_goals_status", "status"),
    )

    id: int | None = Field(default=None, primary_key=True)
    title: str
    description: str | None = Field(default=None, sa_column=Column(Text))
    status: str = Field(default="active")
    priority: int = Field(default=5)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    deadline: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    parent_goal_id: int | None = Field(
        default=None,
        sa_column=Column(Integer, ForeignKey("goals.id", ondelete="SET NULL"), nullable=True),
    )
    progress: float = Field(default=0.0)
    metadata_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))


class TaskRow(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending','queued','running','completed','failed','blocked','cancelled')",
            name="ck_tasks_status",
        ),
        Index("idx_tasks_goal", "goal_id"),
        Index("idx_tasks_status", "status"),
        Index("idx_tasks_skill", "skill"),
    )

    id: int | None = Field(default=None, primary_key=True)
    goal_id: int = Field(
        sa_column=Column(Integer, ForeignKey("goals.id", ondelete="CASCADE"), nullable=False),
    )
    title: str
    description: str | None = Field(default=None, sa_column=Column(Text))
    status: str = Field(default="pending")
    skill: str | None = None
    input_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    output: str | None = Field(default=None, sa_column=Column(Text))
    depends_on_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    scheduled_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    retry_count: int = Field(default=0)
    max_retries: int = Field(default=3)
    error: str | None = Field(default=None, sa_column=Column(Text))
    requires_approval: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, server_default=text("0")),
    )
    approved_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AuditEventRow(SQLModel, table=True):
    __tablename__ = "audit_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_audit_entity", "entity_type", "entity_id"),)

    id: int | None = Field(default=None, primary_key=True)
    event_type: str
    entity_type: str | None = None
    entity_id: int | None = None
    action: str
    details: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class MemoryRow(SQLModel, table=True):
    __tablename__ = "memories"  # type: ignore[bad-override]
    __table_args__ = (
        CheckConstraint(
            "category IN ('project','preference','fact','learned','general')",
            name="ck_memories_category",
        ),
        CheckConstraint("source IN ('user','agent','auto')", name="ck_memories_source"),
        Index("idx_memories_created", "created_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    content: str = Field(sa_column=Column(Text, nullable=False))
    category: str = Field(default="general")
    source: str = Field(default="user")
    tags_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SkillMetricRow(SQLModel, table=True):
    __tablename__ = "skill_metrics"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_skill_metrics_skill_time", "skill_name", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    skill_name: str
    success: bool
    duration_ms: int
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
