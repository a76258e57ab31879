"""SQLite-backed long-term memory and skill telemetry."""

from __future__ import annotations

import json
import re
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from sqlalchemy import delete as sa_delete
from sqlalchemy import func, or_
from sqlmodel import Session, col, select

from goalrunner.storage.alembic_runner import upgrade_head
from goalrunner.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from goalrunner.storage.sqlmodel_models import AuditEventRow, MemoryRow, SkillMetricRow

MEMORY_CATEGORIES = frozenset({"project", "preference", "fact", "learned", "general"})
MEMORY_SOURCES = frozenset({"user", "agent", "auto"})
CHARS_PER_TOKEN = 4
_CONTEXT_RESULTS = 5
_NON_WORD = re.compile(r"[^\w\s]")


@dataclass(slots=True)
class MemoryView:
    id: int
    content: str
    category: str
    source: str
    tags: list[str]
    created_at: datetime


@dataclass(slots=True)
class MemoryStats:
    total: int
    by_category: dict[str, int]
    by_source: dict[str, int]


@dataclass(slots=True)
class SkillSummary:
    """Aggregated execution metrics for one skill."""

    skill_name: str
    runs: int
    successes: int
    avg_duration_ms: float

    @property
    def success_rate(self) -> float:
        return self.successes / self.runs if self.runs else 0.0


class MemoryStore:
    """Keyword-searchable memory plus per-skill metrics on the goal database.

    Search is a plain OR of ``LIKE`` terms, newest first. Good enough for
    prompt context; not a relevance ranker.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    def save(
        self,
        content: str,
        *,
        category: str = "general",
        source: str = "user",
        tags: Sequence[str] = (),
    ) -> int:
        """Persist one memory entry and return its id."""

        if category not in MEMORY_CATEGORIES:
            raise ValueError(f"Unknown memory category: {category}")
        if source not in MEMORY_SOURCES:
            raise ValueError(f"Unknown memory source: {source}")

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = MemoryRow(
                content=content,
                category=category,
                source=source,
                tags_json=json.dumps(list(tags), ensure_ascii=False),
                created_at=now,
            )
            session.add(row)
            session.flush()
            memory_id = row.id or 0
            session.add(
                AuditEventRow(
                    event_type="memory.save",
                    entity_type="memory",
                    entity_id=memory_id,
                    action="save",
                    details=content[:200],
                    created_at=now,
                ),
            )
            session.commit()
        return memory_id

    def search(self, query: str, limit: int = 10) -> list[MemoryView]:
        terms = _NON_WORD.sub(" ", query).split()
        if not terms:
            return []
        matches = [col(MemoryRow.content).contains(term, autoescape=True) for term in terms]
        with Session(self.engine) as session:
            rows = session.exec(
                select(MemoryRow)
                .where(or_(*matches))
                .order_by(col(MemoryRow.created_at).desc(), col(MemoryRow.id).desc())
                .limit(limit),
            ).all()
        return [_to_memory_view(row) for row in rows]

    def list_memories(self, category: str | None = None, limit: int = 50) -> list[MemoryView]:
        with Session(self.engine) as session:
            statement = select(MemoryRow)
            if category is not None:
                statement = statement.where(MemoryRow.category == category)
            rows = session.exec(
                statement.order_by(col(MemoryRow.created_at).desc(), col(MemoryRow.id).desc())
                .limit(limit),
            ).all()
        return [_to_memory_view(row) for row in rows]

    def forget(self, memory_id: int) -> bool:
        with Session(self.engine) as session:
            result = session.exec(sa_delete(MemoryRow).where(col(MemoryRow.id) == memory_id))
            if result.rowcount != 1:
                session.rollback()
                return False
            session.add(
                AuditEventRow(
                    event_type="memory.forget",
                    entity_type="memory",
                    entity_id=memory_id,
                    action="forget",
                    details=None,
                    created_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()
            return True

    def stats(self) -> MemoryStats:
        with Session(self.engine) as session:
            by_category = session.exec(
                select(MemoryRow.category, func.count())
                .group_by(MemoryRow.category)
                .order_by(col(MemoryRow.category).asc()),
            ).all()
            by_source = session.exec(
                select(MemoryRow.source, func.count())
                .group_by(MemoryRow.source)
                .order_by(col(MemoryRow.source).asc()),
            ).all()
        return MemoryStats(
            total=sum(int(count) for _, count in by_category),
            by_category={category: int(count) for category, count in by_category},
            by_source={source: int(count) for source, count in by_source},
        )

    def get_context(self, query: str, max_tokens: int = 500) -> str:
        """Format the best matches as prompt lines within a rough token budget."""

        results = self.search(query, limit=_CONTEXT_RESULTS)
        if not results:
            return ""
        context = "\n".join(f"- [{memory.category}] {memory.content}" for memory in results)
        max_chars = max_tokens * CHARS_PER_TOKEN
        if len(context) > max_chars:
            return f"{context[:max_chars]}\n..."
        return context

    def record_skill_metric(self, skill_name: str, success: bool, duration_ms: int) -> None:
        with Session(self.engine) as session:
            session.add(
                SkillMetricRow(
                    skill_name=skill_name,
                    success=success,
                    duration_ms=max(0, int(duration_ms)),
                    created_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()

    def skill_summary(self) -> list[SkillSummary]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(
                    SkillMetricRow.skill_name,
                    func.count(),
                    func.sum(SkillMetricRow.success),
                    func.avg(SkillMetricRow.duration_ms),
                )
                .group_by(SkillMetricRow.skill_name)
                .order_by(col(SkillMetricRow.skill_name).asc()),
            ).all()
        return [
            SkillSummary(
                skill_name=skill_name,
                runs=int(runs),
                successes=int(successes or 0),
                avg_duration_ms=float(avg_duration or 0.0),
            )
            for skill_name, runs, successes, avg_duration in rows
        ]


def _to_memory_view(row: MemoryRow) -> MemoryView:
    return MemoryView(
        id=row.id or 0,
        content=row.content,
        category=row.category,
        source=row.source,
        tags=list(json.loads(row.tags_json or "[]")),
        created_at=to_utc_aware_datetime(row.created_at),
    )
