"""Run the packaged Alembic migrations against a SQLite database."""

from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config

MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"


def build_alembic_config(db_path: Path) -> Config:
    config = Config()
    config.set_main_option("script_location", str(MIGRATIONS_DIR))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def upgrade_head(db_path: Path) -> None:
    """Create the parent directory and migrate the database to head."""

    db_path.parent.mkdir(parents=True, exist_ok=True)
    command.upgrade(build_alembic_config(db_path), "head")
