from pathlib import Path

import allure
import pytest
from sqlalchemy import text

import goalrunner
from goalrunner.goals.repository import GoalRepository
from goalrunner.storage.alembic_runner import MIGRATIONS_DIR, build_alembic_config, upgrade_head

pytestmark = [
    allure.epic("Goal Engine"),
    allure.feature("Goal Store"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = GoalRepository(tmp_path / "migrations.db")
    try:
        repository.init_schema()
        repository.init_schema()

        with repository.engine.connect() as connection:
            version = connection.execute(
                text("SELECT version_num FROM alembic_version"),
            ).scalar_one()
            tables = connection.execute(
                text(
                    """
                    SELECT name
                    FROM sqlite_master
                    WHERE type = 'table'
                      AND name IN ('goals', 'tasks', 'audit_events', 'memories', 'skill_metrics')
                    ORDER BY name
                    """,
                ),
            ).scalars().all()
    finally:
        repository.close()

    assert version == "20261019_0002"
    assert tables == ["audit_events", "goals", "memories", "skill_metrics", "tasks"]


def test_migrations_ship_inside_the_package(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    package_dir = Path(goalrunner.__file__).resolve().parent
    assert package_dir in MIGRATIONS_DIR.parents
    assert (MIGRATIONS_DIR / "env.py").is_file()
    assert sorted(path.name for path in (MIGRATIONS_DIR / "versions").glob("*.py")) == [
        "20261019_0001_goal_store.py",
        "20261019_0002_memory_tables.py",
    ]

    config = build_alembic_config(tmp_path / "any.db")
    assert config.get_main_option("script_location") == str(MIGRATIONS_DIR)

    monkeypatch.chdir(tmp_path)
    upgrade_head(tmp_path / "nested" / "fresh.db")
    assert (tmp_path / "nested" / "fresh.db").is_file()
