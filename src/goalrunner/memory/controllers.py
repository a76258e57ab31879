"""Controllers for memory CLI commands."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from goalrunner.config import Settings
from goalrunner.memory.store import MemoryView
from goalrunner.runtime import open_memory


@dataclass(slots=True)
class MemorySaveCommand:
    """CLI input for saving a user memory."""

    db_path: Path | None
    work_dir: Path | None
    content: str
    category: str
    tags: str | None


@dataclass(slots=True)
class MemorySearchCommand:
    db_path: Path | None
    work_dir: Path | None
    query: str
    limit: int


@dataclass(slots=True)
class MemoryListCommand:
    db_path: Path | None
    work_dir: Path | None
    category: str | None
    limit: int


@dataclass(slots=True)
class MemoryForgetCommand:
    db_path: Path | None
    work_dir: Path | None
    memory_id: int


@dataclass(slots=True)
class MemoryStatsCommand:
    db_path: Path | None
    work_dir: Path | None


@dataclass(slots=True)
class MemoryCliController:
    """Save, search and prune the agent's long-term memory."""

    def save(self, command: MemorySaveCommand) -> list[str]:
        settings = _settings(command.db_path, command.work_dir)
        tags = _parse_tags(command.tags)
        with open_memory(settings) as memory:
            memory_id = memory.save(
                command.content,
                category=command.category,
                source="user",
                tags=tags,
            )
        lines = [f"Memory saved: memory_id={memory_id} category={command.category}"]
        if tags:
            lines.append(f"Tags: {', '.join(tags)}")
        lines.append(f"Content: {command.content}")
        return lines

    def search(self, command: MemorySearchCommand) -> list[str]:
        settings = _settings(command.db_path, command.work_dir)
        with open_memory(settings) as memory:
            results = memory.search(command.query, limit=command.limit)
        if not results:
            return [f'No memories found matching "{command.query}"']

        lines = [f'Memories matching "{command.query}": {len(results)}']
        for item in results:
            lines.extend(_memory_lines(item))
            lines.append(f"    Saved: {item.created_at.isoformat()} | Source: {item.source}")
        return lines

    def list_memories(self, command: MemoryListCommand) -> list[str]:
        settings = _settings(command.db_path, command.work_dir)
        with open_memory(settings) as memory:
            items = memory.list_memories(category=command.category, limit=command.limit)
            total = memory.stats().total
        if not items:
            return ["No memories saved yet.", 'Save one: goalrunner memory save "some fact"']

        lines: list[str] = []
        for item in items:
            lines.extend(_memory_lines(item))
        lines.append(f"Total: {total} memories")
        return lines

    def forget(self, command: MemoryForgetCommand) -> list[str]:
        settings = _settings(command.db_path, command.work_dir)
        with open_memory(settings) as memory:
            deleted = memory.forget(command.memory_id)
        if not deleted:
            raise ValueError(f"Memory not found: {command.memory_id}")
        return [f"Memory deleted: {command.memory_id}"]

    def stats(self, command: MemoryStatsCommand) -> list[str]:
        settings = _settings(command.db_path, command.work_dir)
        with open_memory(settings) as memory:
            stats = memory.stats()
        lines = [f"Total: {stats.total}", "By category:"]
        lines.extend(f"  {category}: {count}" for category, count in stats.by_category.items())
        lines.append("By source:")
        lines.extend(f"  {source}: {count}" for source, count in stats.by_source.items())
        return lines


def _settings(db_path: Path | None, work_dir: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path, work_dir=work_dir)
    settings.validate()
    return settings


def _parse_tags(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [tag.strip() for tag in raw.split(",") if tag.strip()]


def _memory_lines(item: MemoryView) -> list[str]:
    lines = [f"  #{item.id} [{item.category}] {item.content}"]
    if item.tags:
        lines.append(f"    Tags: {', '.join(item.tags)}")
    return lines
