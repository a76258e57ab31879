from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import allure
import pytest

from goalrunner.memory.store import MemoryStore

pytestmark = [
    allure.epic("Agent Memory"),
    allure.feature("Memory Store"),
]


@pytest.fixture()
def memory(tmp_path: Path) -> Iterator[MemoryStore]:
    store = MemoryStore(tmp_path / "memory.db")
    store.init_schema()
    try:
        yield store
    finally:
        store.close()


def test_save_and_search_newest_first(memory: MemoryStore) -> None:
    older = memory.save("Deploys use blue/green switching", category="fact")
    newer = memory.save("Deploy window is Tuesday", category="preference", tags=["ops"])
    memory.save("Coffee machine is on floor 2")

    results = memory.search("deploy?")

    assert [item.id for item in results] == [newer, older]
    assert results[0].category == "preference"
    assert results[0].source == "user"
    assert results[0].tags == ["ops"]
    assert memory.search("!!!") == []


def test_save_rejects_unknown_category_and_source(memory: MemoryStore) -> None:
    with pytest.raises(ValueError, match="category"):
        memory.save("x", category="gossip")
    with pytest.raises(ValueError, match="source"):
        memory.save("x", source="rumour")


def test_get_context_formats_and_truncates(memory: MemoryStore) -> None:
    memory.save("Release branch is main", category="project")

    assert memory.get_context("release") == "- [project] Release branch is main"
    assert memory.get_context("nothing matches") == ""

    memory.save("release " + "x" * 200, category="learned")
    truncated = memory.get_context("release", max_tokens=10)
    assert truncated.endswith("\n...")
    assert len(truncated) == 10 * 4 + len("\n...")


def test_forget_and_list(memory: MemoryStore) -> None:
    first = memory.save("first", category="general")
    memory.save("second", category="fact")

    assert [item.content for item in memory.list_memories(category="fact")] == ["second"]
    assert memory.forget(first) is True
    assert memory.forget(first) is False
    assert [item.content for item in memory.list_memories()] == ["second"]


def test_skill_summary_aggregates_metrics(memory: MemoryStore) -> None:
    memory.record_skill_metric("backup", True, 100)
    memory.record_skill_metric("backup", False, 300)
    memory.record_skill_metric("code-review", True, 50)

    summaries = {summary.skill_name: summary for summary in memory.skill_summary()}

    assert summaries["backup"].runs == 2
    assert summaries["backup"].successes == 1
    assert summaries["backup"].success_rate == pytest.approx(0.5)
    assert summaries["backup"].avg_duration_ms == pytest.approx(200.0)
    assert summaries["code-review"].success_rate == pytest.approx(1.0)


def test_search_treats_underscore_literally(memory: MemoryStore) -> None:
    memory.save("fooXbar unrelated")
    wanted = memory.save("foo_bar is the staging flag", category="fact")

    assert [item.id for item in memory.search("foo_bar")] == [wanted]


def test_stats_counts_by_category_and_source(memory: MemoryStore) -> None:
    memory.save("one", category="fact")
    memory.save("two", category="fact", source="agent")
    memory.save("three", category="project")

    stats = memory.stats()

    assert stats.total == 3
    assert stats.by_category == {"fact": 2, "project": 1}
    assert stats.by_source == {"agent": 1, "user": 2}
