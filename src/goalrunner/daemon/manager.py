"""Start/stop/status of the background daemon process via a PID marker."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path

from goalrunner.config import DaemonSettings

logger = logging.getLogger(__name__)

DAEMON_MODULE = "goalrunner.daemon.service"
NO_LOGS_MESSAGE = "No daemon logs found."


@dataclass(slots=True)
class DaemonProcessStatus:
    running: bool
    pid: int | None = None


@dataclass(slots=True)
class DaemonStartResult:
    pid: int
    message: str
    already_running: bool = False


def pid_alive(pid: int) -> bool:
    """Signal-0 liveness check."""

    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by someone else.
        return True
    return True


class DaemonManager:
    """Manages the daemon through ``daemon.pid`` and ``daemon.log`` in the agent dir."""

    def __init__(self, settings: DaemonSettings, *, work_dir: Path) -> None:
        self.settings = settings
        self.work_dir = work_dir

    @property
    def pid_file(self) -> Path:
        return self.settings.pid_path

    @property
    def log_file(self) -> Path:
        return self.settings.log_path

    def start(self, *, db_path: Path | None = None) -> DaemonStartResult:
        """Spawn the daemon detached; a live daemon is reported, not duplicated."""

        existing = self.status()
        if existing.running and existing.pid is not None:
            return DaemonStartResult(
                pid=existing.pid,
                message=f"Daemon already running (PID: {existing.pid})",
                already_running=True,
            )

        self.pid_file.parent.mkdir(parents=True, exist_ok=True)
        env = dict(os.environ)
        env["GOALRUNNER_WORK_DIR"] = str(self.work_dir)
        if db_path is not None:
            env["GOALRUNNER_DB_PATH"] = str(db_path)
        process = subprocess.Popen(  # noqa: S603
            [sys.executable, "-m", DAEMON_MODULE],
            cwd=str(self.work_dir),
            env=env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
        self.write_pid(process.pid)
        logger.info("Daemon spawned with PID %s", process.pid)
        return DaemonStartResult(pid=process.pid, message=f"Daemon started (PID: {process.pid})")

    def stop(self) -> str:
        status = self.status()
        if not status.running or status.pid is None:
            return "Daemon is not running"
        try:
            os.kill(status.pid, signal.SIGTERM)
        except OSError as exc:
            return f"Failed to stop daemon: {exc}"
        self.pid_file.unlink(missing_ok=True)
        return f"Daemon stopped (PID: {status.pid})"

    def status(self) -> DaemonProcessStatus:
        """Liveness from the marker; a marker left by a dead process is removed."""

        pid = self.read_pid()
        if pid is None:
            return DaemonProcessStatus(running=False)
        if pid_alive(pid):
            return DaemonProcessStatus(running=True, pid=pid)
        logger.info("Removing stale daemon marker for PID %s", pid)
        self.pid_file.unlink(missing_ok=True)
        return DaemonProcessStatus(running=False)

    def logs(self, lines: int = 30) -> list[str]:
        try:
            content = self.log_file.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            return [NO_LOGS_MESSAGE]
        all_lines = [line for line in content.splitlines() if line.strip()]
        return all_lines[-lines:] if lines > 0 else []

    def read_pid(self) -> int | None:
        try:
            raw = self.pid_file.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        try:
            return int(raw)
        except ValueError:
            logger.warning("Ignoring malformed daemon marker %s", self.pid_file)
            self.pid_file.unlink(missing_ok=True)
            return None

    def write_pid(self, pid: int | None = None) -> None:
        self.pid_file.parent.mkdir(parents=True, exist_ok=True)
        self.pid_file.write_text(str(pid if pid is not None else os.getpid()), encoding="utf-8")

    def clear_pid(self) -> None:
        """Remove the marker only when it still names this process."""

        if self.read_pid() == os.getpid():
            self.pid_file.unlink(missing_ok=True)
