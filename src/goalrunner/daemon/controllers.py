"""Controllers for daemon CLI commands."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from goalrunner.config import Settings
from goalrunner.daemon.manager import DaemonManager
from goalrunner.daemon.service import run_daemon
from goalrunner.daemon.triggers import ensure_triggers_file, load_triggers, triggers_path
from goalrunner.logging_setup import setup_logging
from goalrunner.runtime import open_repository


@dataclass(slots=True)
class DaemonCommand:
    """CLI input shared by daemon commands."""

    db_path: Path | None
    work_dir: Path | None


@dataclass(slots=True)
class DaemonLogsCommand:
    db_path: Path | None
    work_dir: Path | None
    lines: int


@dataclass(slots=True)
class DaemonRunResult:
    lines: list[str]
    exit_code: int


@dataclass(slots=True)
class DaemonCliController:
    """Background daemon lifecycle and inspection."""

    def init(self, command: DaemonCommand) -> list[str]:
        """Create the agent directory, the database and a default triggers file."""

        settings = _settings(command)
        path, created = ensure_triggers_file(settings.work_dir)
        with open_repository(settings) as repository:
            goal_count = len(repository.list_goals())
        return [
            f"{'Created' if created else 'Kept existing'} triggers file: {path}",
            f"Database: {settings.db_path} (goals={goal_count})",
        ]

    def start(self, command: DaemonCommand) -> list[str]:
        settings = _settings(command)
        ensure_triggers_file(settings.work_dir)
        manager = _manager(settings)
        result = manager.start(db_path=command.db_path)
        return [result.message, f"Logs: {manager.log_file}"]

    def stop(self, command: DaemonCommand) -> list[str]:
        settings = _settings(command)
        return [_manager(settings).stop()]

    def status(self, command: DaemonCommand) -> list[str]:
        settings = _settings(command)
        process = _manager(settings).status()
        triggers = load_triggers(settings.work_dir)
        with open_repository(settings) as repository:
            stats = repository.stats()

        lines = [
            f"Daemon: running (PID: {process.pid})" if process.running else "Daemon: stopped",
            f"Triggers: {len(triggers)}",
        ]
        lines.extend(
            f"  {trigger.name} event={trigger.event}"
            + (f" schedule={trigger.schedule}" if trigger.schedule else "")
            + (f" watch={','.join(trigger.watch)}" if trigger.watch else "")
            for trigger in triggers
        )
        lines.append(
            f"Queue: active_goals={stats.active_goals} pending={stats.pending_tasks} "
            f"running={stats.running_tasks} awaiting_approval={stats.awaiting_approval}",
        )
        return lines

    def triggers(self, command: DaemonCommand) -> list[str]:
        """Describe the enabled triggers from the work dir's triggers file."""

        settings = _settings(command)
        triggers = load_triggers(settings.work_dir)
        if not triggers:
            return [
                "No triggers configured.",
                f"Create {triggers_path(settings.work_dir)} or run: goalrunner daemon init",
            ]

        lines = [f"Triggers: {len(triggers)}"]
        for trigger in triggers:
            lines.append(f"  {trigger.name} [{trigger.event}]")
            if trigger.schedule:
                lines.append(f"    Schedule: {trigger.schedule}")
            if trigger.watch:
                lines.append(
                    f"    Watch: {', '.join(trigger.watch)} (debounce {trigger.debounce_ms}ms)",
                )
            if trigger.action.skill:
                lines.append(f"    Action: skill -> {trigger.action.skill}")
            if trigger.action.run:
                lines.append(f"    Action: run -> {trigger.action.run}")
            if trigger.action.type:
                lines.append(f"    Action: {trigger.action.type}")
        return lines

    def logs(self, command: DaemonLogsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path, work_dir=command.work_dir)
        return _manager(settings).logs(lines=command.lines)

    def run_foreground(self, command: DaemonCommand) -> DaemonRunResult:
        """Serve in this process until SIGINT/SIGTERM."""

        settings = _settings(command)
        ensure_triggers_file(settings.work_dir)
        setup_logging(log_file=settings.daemon.log_path)
        exit_code = run_daemon(settings)
        message = "Daemon stopped." if exit_code == 0 else "Daemon exited with errors."
        return DaemonRunResult(lines=[message], exit_code=exit_code)


def _settings(command: DaemonCommand) -> Settings:
    settings = Settings.from_env(db_path=command.db_path, work_dir=command.work_dir)
    settings.validate()
    return settings


def _manager(settings: Settings) -> DaemonManager:
    return DaemonManager(settings.daemon, work_dir=settings.work_dir)
