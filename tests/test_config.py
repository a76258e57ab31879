from __future__ import annotations

from pathlib import Path

import allure
import pytest

from goalrunner.config import ReasoningSettings, Settings

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]


def test_defaults_live_under_agent_dir(tmp_path: Path) -> None:
    settings = Settings.from_env(work_dir=tmp_path)
    settings.validate()

    assert settings.work_dir == tmp_path.resolve()
    assert settings.db_path == tmp_path.resolve() / ".agent" / "goalrunner.db"
    assert settings.daemon.pid_path == tmp_path.resolve() / ".agent" / "daemon.pid"
    assert settings.daemon.log_path == tmp_path.resolve() / ".agent" / "daemon.log"
    assert settings.reasoning.provider == "offline"
    assert settings.executor.command_timeout_seconds == 60.0
    assert settings.executor.run_commands is True
    assert settings.executor.default_max_tasks == 5
    assert settings.decomposer.temperature == pytest.approx(0.3)
    assert settings.decomposer.max_tokens == 2_000
    assert settings.daemon.heartbeat_seconds == 60.0


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("GOALRUNNER_WORK_DIR", str(tmp_path))
    monkeypatch.setenv("GOALRUNNER_DB_PATH", str(tmp_path / "custom.db"))
    monkeypatch.setenv("GOALRUNNER_REASONING_PROVIDER", " HTTP ")
    monkeypatch.setenv("GOALRUNNER_REASONING_BASE_URL", "http://localhost:11434/v1")
    monkeypatch.setenv("GOALRUNNER_REASONING_MODEL", "llama3")
    monkeypatch.setenv("GOALRUNNER_RUN_COMMANDS", "off")
    monkeypatch.setenv("GOALRUNNER_MAX_TASKS", "9")
    monkeypatch.setenv("GOALRUNNER_COMMAND_TIMEOUT_SECONDS", "15")

    settings = Settings.from_env()
    settings.validate()

    assert settings.work_dir == tmp_path.resolve()
    assert settings.db_path == tmp_path / "custom.db"
    assert settings.reasoning.provider == "http"
    assert settings.reasoning.base_url == "http://localhost:11434/v1"
    assert settings.reasoning.model == "llama3"
    assert settings.executor.run_commands is False
    assert settings.executor.default_max_tasks == 9
    assert settings.executor.command_timeout_seconds == 15.0


def test_explicit_db_path_wins_over_environment(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    monkeypatch.setenv("GOALRUNNER_DB_PATH", str(tmp_path / "env.db"))

    settings = Settings.from_env(db_path=tmp_path / "cli.db", work_dir=tmp_path)

    assert settings.db_path == tmp_path / "cli.db"


def test_invalid_boolean_is_rejected(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("GOALRUNNER_RUN_COMMANDS", "maybe")

    with pytest.raises(ValueError, match="GOALRUNNER_RUN_COMMANDS"):
        Settings.from_env(work_dir=tmp_path)


def test_unknown_provider_is_rejected(tmp_path: Path) -> None:
    settings = Settings(work_dir=tmp_path, reasoning=ReasoningSettings(provider="carrier-pigeon"))

    with pytest.raises(ValueError, match="GOALRUNNER_REASONING_PROVIDER"):
        settings.validate()


def test_http_provider_requires_absolute_url(tmp_path: Path) -> None:
    settings = Settings(
        work_dir=tmp_path,
        reasoning=ReasoningSettings(provider="http", base_url="localhost:8080"),
    )

    with pytest.raises(ValueError, match="GOALRUNNER_REASONING_BASE_URL"):
        settings.validate()


def test_non_positive_limits_are_rejected(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("GOALRUNNER_MAX_TASKS", "0")

    with pytest.raises(ValueError, match="GOALRUNNER_MAX_TASKS"):
        Settings.from_env(work_dir=tmp_path).validate()
