"""Runtime configuration for the goal engine, executor and daemon."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

AGENT_DIR_NAME = ".agent"
REASONING_PROVIDERS = ("http", "offline")


@dataclass(slots=True)
class ReasoningSettings:
    """Reasoning service connection settings."""

    provider: str = "offline"
    base_url: str = "https://api.openai.com/v1"
    api_key: str | None = None
    model: str = "gpt-4o-mini"
    timeout_seconds: float = 120.0


@dataclass(slots=True)
class ExecutorSettings:
    """Task execution settings."""

    command_timeout_seconds: float = 60.0
    run_commands: bool = True
    skill_max_tokens: int = 1_500
    plain_max_tokens: int = 1_000
    temperature: float = 0.2
    memory_context_tokens: int = 200
    result_preview_chars: int = 500
    default_max_tasks: int = 5


@dataclass(slots=True)
class DecomposerSettings:
    """Goal decomposition settings."""

    temperature: float = 0.3
    max_tokens: int = 2_000
    memory_context_tokens: int = 300


@dataclass(slots=True)
class DaemonSettings:
    """Background daemon settings."""

    agent_dir: Path = Path(AGENT_DIR_NAME)
    heartbeat_seconds: float = 60.0
    trigger_command_timeout_seconds: float = 30.0

    @property
    def pid_path(self) -> Path:
        return self.agent_dir / "daemon.pid"

    @property
    def log_path(self) -> Path:
        return self.agent_dir / "daemon.log"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    work_dir: Path = Path()
    db_path: Path = Path(AGENT_DIR_NAME) / "goalrunner.db"
    sqlite_busy_timeout_ms: int = 5_000
    reasoning: ReasoningSettings = field(default_factory=ReasoningSettings)
    executor: ExecutorSettings = field(default_factory=ExecutorSettings)
    decomposer: DecomposerSettings = field(default_factory=DecomposerSettings)
    daemon: DaemonSettings = field(default_factory=DaemonSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None, work_dir: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        resolved_work_dir = (
            work_dir or Path(os.getenv("GOALRUNNER_WORK_DIR", "") or Path.cwd())
        ).resolve()
        agent_dir = resolved_work_dir / AGENT_DIR_NAME
        env_db_path = os.getenv("GOALRUNNER_DB_PATH")
        return cls(
            work_dir=resolved_work_dir,
            db_path=db_path or (Path(env_db_path) if env_db_path else agent_dir / "goalrunner.db"),
            sqlite_busy_timeout_ms=int(os.getenv("GOALRUNNER_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            reasoning=ReasoningSettings(
                provider=os.getenv("GOALRUNNER_REASONING_PROVIDER", "offline").strip().lower(),
                base_url=os.getenv("GOALRUNNER_REASONING_BASE_URL", "https://api.openai.com/v1"),
                api_key=os.getenv("GOALRUNNER_REASONING_API_KEY") or None,
                model=os.getenv("GOALRUNNER_REASONING_MODEL", "gpt-4o-mini"),
                timeout_seconds=float(os.getenv("GOALRUNNER_REASONING_TIMEOUT_SECONDS", "120")),
            ),
            executor=ExecutorSettings(
                command_timeout_seconds=float(
                    os.getenv("GOALRUNNER_COMMAND_TIMEOUT_SECONDS", "60"),
                ),
                run_commands=_env_bool("GOALRUNNER_RUN_COMMANDS", True),
                default_max_tasks=int(os.getenv("GOALRUNNER_MAX_TASKS", "5")),
            ),
            decomposer=DecomposerSettings(
                temperature=float(os.getenv("GOALRUNNER_DECOMPOSER_TEMPERATURE", "0.3")),
                max_tokens=int(os.getenv("GOALRUNNER_DECOMPOSER_MAX_TOKENS", "2000")),
            ),
            daemon=DaemonSettings(
                agent_dir=agent_dir,
                heartbeat_seconds=float(os.getenv("GOALRUNNER_HEARTBEAT_SECONDS", "60")),
                trigger_command_timeout_seconds=float(
                    os.getenv("GOALRUNNER_TRIGGER_COMMAND_TIMEOUT_SECONDS", "30"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the runtime cannot work with."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("GOALRUNNER_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.reasoning.provider not in REASONING_PROVIDERS:
            raise ValueError(
                "GOALRUNNER_REASONING_PROVIDER must be one of: "
                f"{', '.join(REASONING_PROVIDERS)}; got {self.reasoning.provider!r}.",
            )
        if self.reasoning.provider == "http":
            parsed = urlparse(self.reasoning.base_url)
            if parsed.scheme not in {"http", "https"} or not parsed.netloc:
                raise ValueError(
                    "GOALRUNNER_REASONING_BASE_URL must be an absolute http(s) URL: "
                    f"{self.reasoning.base_url!r}",
                )
        if self.reasoning.timeout_seconds <= 0:
            raise ValueError("GOALRUNNER_REASONING_TIMEOUT_SECONDS must be > 0.")
        if self.executor.command_timeout_seconds <= 0:
            raise ValueError("GOALRUNNER_COMMAND_TIMEOUT_SECONDS must be > 0.")
        if self.executor.default_max_tasks <= 0:
            raise ValueError("GOALRUNNER_MAX_TASKS must be a positive integer.")
        if self.decomposer.max_tokens <= 0:
            raise ValueError("GOALRUNNER_DECOMPOSER_MAX_TOKENS must be a positive integer.")
        if self.daemon.heartbeat_seconds <= 0:
            raise ValueError("GOALRUNNER_HEARTBEAT_SECONDS must be > 0.")
        if self.daemon.trigger_command_timeout_seconds <= 0:
            raise ValueError("GOALRUNNER_TRIGGER_COMMAND_TIMEOUT_SECONDS must be > 0.")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
