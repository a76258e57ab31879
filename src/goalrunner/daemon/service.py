"""Long-running daemon: cron and file triggers driving the task queue.

Run with ``python -m goalrunner.daemon.service``; the daemon manager spawns
exactly that as a detached background process.
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
import os
import signal
import sys
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path, PurePosixPath

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from watchfiles import Change, awatch

from goalrunner.config import DaemonSettings, Settings
from goalrunner.daemon.manager import DaemonManager
from goalrunner.daemon.triggers import CRON_EVENTS, FILE_EVENTS, TriggerConfig, load_triggers
from goalrunner.goals.executor import TaskExecutor, run_shell_command
from goalrunner.goals.repository import GoalRepository
from goalrunner.logging_setup import setup_logging
from goalrunner.runtime import open_runtime
from goalrunner.storage.common import utc_now

logger = logging.getLogger(__name__)

GOAL_PROGRESS_ACTION = "goal-progress"
_GLOB_CHARS = frozenset("*?[")


@dataclass(slots=True)
class DaemonCounters:
    tasks_processed: int = 0
    tasks_completed: int = 0
    tasks_failed: int = 0
    triggers_fired: int = 0
    heartbeats: int = 0


@dataclass(slots=True)
class DaemonStatus:
    """Snapshot of the in-process daemon state."""

    running: bool
    started_at: datetime | None
    uptime: str
    counters: DaemonCounters
    cron_jobs: int
    file_watchers: int


@dataclass(slots=True)
class _FileWatch:
    trigger: TriggerConfig
    roots: tuple[Path, ...]
    task: asyncio.Task[None] | None = None
    pending: asyncio.TimerHandle | None = None
    fired: set[asyncio.Task[None]] = field(default_factory=set)


def format_uptime(seconds: float) -> str:
    """Render ``1d 2h 3m 4s``; zero units are omitted except seconds."""

    total = max(0, int(seconds))
    days, remainder = divmod(total, 86_400)
    hours, remainder = divmod(remainder, 3_600)
    minutes, secs = divmod(remainder, 60)
    parts = []
    if days:
        parts.append(f"{days}d")
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    parts.append(f"{secs}s")
    return " ".join(parts)


def watch_root(pattern: str, work_dir: Path) -> Path:
    """Deepest directory of a glob pattern that contains no wildcard."""

    static_parts: list[str] = []
    for part in Path(pattern).parts:
        if _GLOB_CHARS.intersection(part):
            break
        static_parts.append(part)
    root = work_dir.joinpath(*static_parts) if static_parts else work_dir
    if len(static_parts) == len(Path(pattern).parts) and root.is_file():
        return root.parent
    return root


def matches_pattern(path: Path, pattern: str, work_dir: Path) -> bool:
    """Match a changed file against a work-dir relative glob.

    ``*``, ``?`` and ``[...]`` stay within one path segment; a ``**`` segment
    spans any number of directories, including none.
    """

    try:
        relative = path.resolve().relative_to(work_dir.resolve())
    except ValueError:
        return False
    return _match_segments(relative.parts, PurePosixPath(pattern).parts)


def _match_segments(parts: tuple[str, ...], pattern_parts: tuple[str, ...]) -> bool:
    if not pattern_parts:
        return not parts
    head, rest = pattern_parts[0], pattern_parts[1:]
    if head == "**":
        return any(_match_segments(parts[skip:], rest) for skip in range(len(parts) + 1))
    if not parts or not fnmatch.fnmatchcase(parts[0], head):
        return False
    return _match_segments(parts[1:], rest)


class DaemonService:
    """Single-process daemon driving the goal queue.

    All queue draining goes through one lock, so cron ticks, file triggers and
    the startup pass never execute tasks concurrently within this process.
    """

    def __init__(
        self,
        *,
        repository: GoalRepository,
        executor: TaskExecutor,
        work_dir: Path,
        settings: DaemonSettings | None = None,
        triggers: list[TriggerConfig] | None = None,
    ) -> None:
        self.repository = repository
        self.executor = executor
        self.work_dir = work_dir
        self.settings = settings or DaemonSettings(agent_dir=work_dir / ".agent")
        self.counters = DaemonCounters()
        self._triggers = triggers
        self._running = False
        self._started_at: datetime | None = None
        self._scheduler: AsyncIOScheduler | None = None
        self._cron_jobs: list[str] = []
        self._watches: list[_FileWatch] = []
        self._queue_lock = asyncio.Lock()
        self._watch_stop = asyncio.Event()
        self._stop_requested = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._started_at = utc_now()
        self._watch_stop.clear()
        self._stop_requested.clear()
        self._cron_jobs = []
        self._watches = []

        logger.info("Agent daemon started")
        logger.info("Working directory: %s", self.work_dir)

        triggers = self._triggers if self._triggers is not None else load_triggers(self.work_dir)
        logger.info("Loaded %s trigger(s)", len(triggers))

        scheduler = AsyncIOScheduler()
        self._scheduler = scheduler
        for trigger in triggers:
            self._register_trigger(scheduler, trigger)
        scheduler.add_job(
            self.heartbeat,
            trigger=IntervalTrigger(seconds=self.settings.heartbeat_seconds),
            id="heartbeat",
            name="heartbeat",
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()

        await self.process_goal_queue()
        logger.info("Daemon is ready. Waiting for events...")

    def _register_trigger(self, scheduler: AsyncIOScheduler, trigger: TriggerConfig) -> None:
        if trigger.event in CRON_EVENTS:
            if not trigger.schedule:
                logger.warning('Trigger "%s" has no schedule; skipped', trigger.name)
                return
            try:
                cron = CronTrigger.from_crontab(trigger.schedule)
            except ValueError as exc:
                logger.warning(
                    'Trigger "%s" has invalid schedule %r: %s',
                    trigger.name,
                    trigger.schedule,
                    exc,
                )
                return
            job_id = f"trigger:{trigger.name}"
            scheduler.add_job(
                self.on_trigger_fired,
                trigger=cron,
                args=[trigger],
                id=job_id,
                name=trigger.name,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            if job_id not in self._cron_jobs:
                self._cron_jobs.append(job_id)
            logger.info('Cron registered: "%s" -> %s', trigger.name, trigger.schedule)
            return

        if trigger.event in FILE_EVENTS:
            roots: list[Path] = []
            for pattern in trigger.watch:
                root = watch_root(pattern, self.work_dir)
                if root.exists():
                    roots.append(root)
                else:
                    logger.warning(
                        'Trigger "%s": watch root %s does not exist; pattern %r skipped',
                        trigger.name,
                        root,
                        pattern,
                    )
            if not roots:
                logger.warning('Trigger "%s" has nothing to watch; skipped', trigger.name)
                return
            watch = _FileWatch(trigger=trigger, roots=tuple(dict.fromkeys(roots)))
            watch.task = asyncio.create_task(self._watch_files(watch))
            self._watches.append(watch)
            logger.info(
                'Watcher registered: "%s" -> %s',
                trigger.name,
                ", ".join(trigger.watch),
            )
            return

        logger.warning('Unknown trigger event "%s" for "%s"; skipped', trigger.event, trigger.name)

    async def _watch_files(self, watch: _FileWatch) -> None:
        try:
            async for changes in awatch(*watch.roots, stop_event=self._watch_stop):
                for change, raw_path in changes:
                    if change == Change.deleted:
                        continue
                    if any(
                        matches_pattern(Path(raw_path), pattern, self.work_dir)
                        for pattern in watch.trigger.watch
                    ):
                        self.notify_file_changed(watch, raw_path)
        except asyncio.CancelledError:
            raise
        except Exception:  # noqa: BLE001
            logger.exception('File watcher for "%s" stopped', watch.trigger.name)

    def notify_file_changed(self, watch: _FileWatch, changed_file: str) -> None:
        """Restart the trigger's debounce window for one matching change."""

        if watch.pending is not None:
            watch.pending.cancel()
        loop = asyncio.get_running_loop()
        watch.pending = loop.call_later(
            watch.trigger.debounce_ms / 1000,
            self._fire_debounced,
            watch,
            changed_file,
        )

    def _fire_debounced(self, watch: _FileWatch, changed_file: str) -> None:
        watch.pending = None
        task = asyncio.create_task(
            self.on_trigger_fired(watch.trigger, {"changed_file": changed_file}),
        )
        watch.fired.add(task)
        task.add_done_callback(watch.fired.discard)

    async def on_trigger_fired(
        self,
        trigger: TriggerConfig,
        context: dict[str, str] | None = None,
    ) -> None:
        self.counters.triggers_fired += 1
        action = trigger.action

        if action.type == GOAL_PROGRESS_ACTION:
            await self.process_goal_queue()
            return

        if action.skill:
            logger.info('Trigger "%s" fired -> skill: %s', trigger.name, action.skill)
            logger.info("Skill execution: %s (queued)", action.skill)

        if action.run:
            logger.info('Trigger "%s" fired -> run: %s', trigger.name, action.run)
            if context:
                logger.debug('Trigger "%s" context: %s', trigger.name, context)
            result = await run_shell_command(
                action.run,
                cwd=self.work_dir,
                timeout_seconds=self.settings.trigger_command_timeout_seconds,
            )
            if not result.ok:
                logger.warning("Command failed: %s", result.error)
                return
            if result.stdout:
                logger.info("stdout: %s", result.stdout)
            if result.stderr:
                logger.info("stderr: %s", result.stderr)

    async def process_goal_queue(self) -> int:
        """Execute eligible tasks one by one until none is left or one fails.

        Returns the number of tasks executed in this pass.
        """

        async with self._queue_lock:
            executed = 0
            while True:
                task = self.repository.get_next_task()
                if task is None:
                    return executed

                logger.info('Processing task #%s: "%s"', task.id, task.title)
                outcome = await self.executor.execute(task)
                if outcome.skipped:
                    logger.info("Task #%s was claimed elsewhere; pass ends", task.id)
                    return executed

                executed += 1
                self.counters.tasks_processed += 1
                if outcome.success:
                    self.counters.tasks_completed += 1
                    logger.info("Task #%s completed: %s", task.id, outcome.output[:100])
                    continue

                self.counters.tasks_failed += 1
                logger.warning("Task #%s failed: %s", task.id, outcome.output[:200])
                return executed

    async def heartbeat(self) -> None:
        if not self._running:
            return
        self.counters.heartbeats += 1

        approvals = self.repository.get_pending_approvals()
        if approvals:
            logger.info("%s task(s) awaiting approval", len(approvals))

        stats = self.repository.stats()
        if stats.running_tasks > 0 or stats.pending_tasks > 0:
            logger.info(
                "Heartbeat: %s goals, %s pending, %s running",
                stats.active_goals,
                stats.pending_tasks,
                stats.running_tasks,
            )

    def request_stop(self) -> None:
        self._stop_requested.set()

    async def shutdown(self) -> None:
        if not self._running:
            return
        logger.info("Daemon shutting down...")
        self._running = False

        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._watch_stop.set()

        pending: list[asyncio.Task[None]] = []
        for watch in self._watches:
            if watch.pending is not None:
                watch.pending.cancel()
                watch.pending = None
            if watch.task is not None and not watch.task.done():
                watch.task.cancel()
                pending.append(watch.task)
            for fired in list(watch.fired):
                fired.cancel()
                pending.append(fired)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        logger.info(
            "Uptime: %s | Tasks: %s processed, %s completed, %s failed",
            self._uptime(),
            self.counters.tasks_processed,
            self.counters.tasks_completed,
            self.counters.tasks_failed,
        )
        logger.info("Goodbye.")
        self.request_stop()

    async def run_forever(self) -> None:
        """Start, then block until SIGTERM/SIGINT (or ``request_stop``) and shut down."""

        await self.start()
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(signum, self.request_stop)
            except NotImplementedError:
                signal.signal(
                    signum,
                    lambda *_: loop.call_soon_threadsafe(self.request_stop),
                )
        try:
            await self._stop_requested.wait()
        finally:
            await self.shutdown()

    def status(self) -> DaemonStatus:
        return DaemonStatus(
            running=self._running,
            started_at=self._started_at,
            uptime=self._uptime(),
            counters=DaemonCounters(
                tasks_processed=self.counters.tasks_processed,
                tasks_completed=self.counters.tasks_completed,
                tasks_failed=self.counters.tasks_failed,
                triggers_fired=self.counters.triggers_fired,
                heartbeats=self.counters.heartbeats,
            ),
            cron_jobs=len(self._cron_jobs),
            file_watchers=len(self._watches),
        )

    def _uptime(self) -> str:
        if self._started_at is None:
            return "0s"
        return format_uptime((utc_now() - self._started_at).total_seconds())


async def serve(settings: Settings) -> None:
    async with open_runtime(settings) as runtime:
        daemon = DaemonService(
            repository=runtime.repository,
            executor=runtime.executor,
            work_dir=settings.work_dir,
            settings=settings.daemon,
        )
        await daemon.run_forever()


def run_daemon(settings: Settings) -> int:
    """Own the PID marker and serve until stopped; returns a process exit code."""

    manager = DaemonManager(settings.daemon, work_dir=settings.work_dir)
    existing = manager.status()
    if existing.running and existing.pid != os.getpid():
        logger.error("Daemon already running (PID: %s)", existing.pid)
        return 1

    manager.write_pid()
    try:
        asyncio.run(serve(settings))
    except Exception:
        logger.exception("Fatal daemon error")
        return 1
    finally:
        manager.clear_pid()
    return 0


def main() -> int:
    settings = Settings.from_env()
    settings.validate()
    setup_logging(log_file=settings.daemon.log_path)
    return run_daemon(settings)


if __name__ == "__main__":
    sys.exit(main())
