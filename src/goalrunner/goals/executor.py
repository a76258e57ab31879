"""Task execution: one reasoning round trip, optional shell commands, bookkeeping."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import signal
import time
from dataclasses import dataclass
from pathlib import Path

from sqlalchemy.exc import SQLAlchemyError

from goalrunner.config import ExecutorSettings
from goalrunner.goals.models import QueueRunSummary, TaskOutcome, TaskView
from goalrunner.goals.repository import GoalRepository
from goalrunner.ports import MemoryContext, SkillMetrics
from goalrunner.reasoning.base import ChatMessage, ChatOptions, ReasoningError, ReasoningService

logger = logging.getLogger(__name__)

COMMANDS_SEPARATOR = "--- Executed Commands ---"
_SHELL_BLOCK = re.compile(r"```(?:bash|sh|shell)[ \t]*\r?\n(.*?)```", re.DOTALL)


@dataclass(slots=True)
class CommandResult:
    """Outcome of one shell command line."""

    command: str
    exit_code: int | None
    stdout: str
    stderr: str
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def render(self) -> str:
        if self.error is not None:
            return f"$ {self.command}\nFailed: {self.error}"
        text = f"$ {self.command}\n{self.stdout}"
        if self.stderr:
            text += f"\nstderr: {self.stderr}"
        return text


@dataclass(slots=True)
class ExecutionResult:
    success: bool
    output: str


def extract_commands(content: str) -> list[str]:
    """Collect command lines from fenced bash/sh/shell blocks, in order.

    Blank lines and ``#`` comments are dropped; every remaining line is one
    command.
    """

    commands: list[str] = []
    for block in _SHELL_BLOCK.findall(content):
        for line in block.strip().splitlines():
            stripped = line.strip()
            if stripped and not stripped.startswith("#"):
                commands.append(stripped)
    return commands


async def run_shell_command(command: str, *, cwd: Path, timeout_seconds: float) -> CommandResult:
    """Run one command line through the shell, killing its process group on timeout."""

    try:
        process = await asyncio.create_subprocess_shell(
            command,
            cwd=str(cwd),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
    except OSError as exc:
        return CommandResult(command=command, exit_code=None, stdout="", stderr="", error=str(exc))

    try:
        stdout_raw, stderr_raw = await asyncio.wait_for(
            process.communicate(),
            timeout=timeout_seconds,
        )
    except TimeoutError:
        _kill_process_group(process.pid)
        await process.wait()
        return CommandResult(
            command=command,
            exit_code=None,
            stdout="",
            stderr="",
            error=f"Command timed out after {timeout_seconds:g}s",
        )

    stdout = stdout_raw.decode("utf-8", errors="replace").strip()
    stderr = stderr_raw.decode("utf-8", errors="replace").strip()
    if process.returncode != 0:
        detail = stderr or stdout
        error = f"exit code {process.returncode}"
        return CommandResult(
            command=command,
            exit_code=process.returncode,
            stdout=stdout,
            stderr=stderr,
            error=f"{error}: {detail}" if detail else error,
        )
    return CommandResult(command=command, exit_code=0, stdout=stdout, stderr=stderr)


def _kill_process_group(pid: int) -> None:
    try:
        os.killpg(pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


class TaskExecutor:
    """Runs single tasks and drains the queue in batches."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: GoalRepository,
        reasoning: ReasoningService,
        memory: MemoryContext,
        metrics: SkillMetrics,
        work_dir: Path,
        settings: ExecutorSettings | None = None,
    ) -> None:
        self.repository = repository
        self.reasoning = reasoning
        self.memory = memory
        self.metrics = metrics
        self.work_dir = work_dir
        self.settings = settings or ExecutorSettings()

    async def execute(self, task: TaskView) -> TaskOutcome:
        """Claim, run and settle one task.

        Any failure in the run phase is routed through ``fail_task`` so the
        retry policy applies; storage errors propagate.
        """

        if not self.repository.start_task(task.id):
            logger.info("Task #%s was claimed by another runner; skipping", task.id)
            return TaskOutcome(
                task_id=task.id,
                title=task.title,
                success=False,
                output="Task was claimed by another runner.",
                skipped=True,
            )

        logger.info("Executing task #%s: %s (skill=%s)", task.id, task.title, task.skill)
        started = time.monotonic()
        success = False
        try:
            if task.skill:
                result = await self._execute_with_skill(task)
            else:
                result = await self._execute_plain(task)
            success = result.success
        except SQLAlchemyError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.exception("Task #%s raised during execution", task.id)
            message = str(exc) or exc.__class__.__name__
            self.repository.fail_task(task.id, message)
            return TaskOutcome(task_id=task.id, title=task.title, success=False, output=message)
        finally:
            if task.skill:
                self.metrics.record_skill_metric(
                    task.skill,
                    success,
                    int((time.monotonic() - started) * 1000),
                )

        if result.success:
            self.repository.complete_task(task.id, result.output)
            self._remember_completion(task, result.output)
            logger.info("Task #%s completed", task.id)
        else:
            new_status = self.repository.fail_task(task.id, result.output)
            logger.warning(
                "Task #%s failed (now %s)",
                task.id,
                new_status.value if new_status else "unknown",
            )
        return TaskOutcome(
            task_id=task.id,
            title=task.title,
            success=result.success,
            output=result.output,
        )

    async def process_queue(self, max_tasks: int | None = None) -> QueueRunSummary:
        """Run up to ``max_tasks`` eligible tasks, continuing past failures.

        A task attempted earlier in the batch is not picked again within the
        same batch even when a retry put it back to pending.
        """

        limit = max_tasks if max_tasks is not None else self.settings.default_max_tasks
        summary = QueueRunSummary()
        attempted: set[int] = set()
        while summary.processed < limit:
            task = self.repository.get_next_task(exclude_ids=attempted)
            if task is None:
                break
            attempted.add(task.id)
            outcome = await self.execute(task)
            if outcome.skipped:
                continue

            summary.processed += 1
            if outcome.success:
                summary.completed += 1
            else:
                summary.failed += 1
            summary.results.append(
                TaskOutcome(
                    task_id=outcome.task_id,
                    title=outcome.title,
                    success=outcome.success,
                    output=outcome.output[: self.settings.result_preview_chars],
                ),
            )
        logger.info(
            "Queue batch done: processed=%s completed=%s failed=%s",
            summary.processed,
            summary.completed,
            summary.failed,
        )
        return summary

    async def _execute_with_skill(self, task: TaskView) -> ExecutionResult:
        memory_context = self.memory.get_context(task.title, self.settings.memory_context_tokens)
        goal = self.repository.get_goal(task.goal_id)

        system_prompt = (
            "You are an autonomous agent executing a task as part of a larger goal.\n"
            f'You have the skill "{task.skill}" available.\n\n'
            "Your job:\n"
            "1. Analyze the task and determine the exact actions needed\n"
            "2. Provide shell commands to execute (if applicable)\n"
            "3. Report what was accomplished\n\n"
            "Important:\n"
            "- Be specific and actionable\n"
            "- If you need to run commands, wrap them in ```bash blocks\n"
            "- Report results clearly\n"
            f"- Working directory: {self.work_dir}\n"
        )
        if memory_context:
            system_prompt += f"\nRelevant context:\n{memory_context}"

        user_lines = ["Execute this task:", "", f"Task: {task.title}"]
        if task.description:
            user_lines.append(f"Description: {task.description}")
        user_lines.append(f"Skill: {task.skill}")
        if goal is not None:
            user_lines.append(f"Parent Goal: {goal.title}")
        if task.input:
            user_lines.append(f"Input: {json.dumps(task.input, ensure_ascii=False)}")

        try:
            response = await self.reasoning.chat(
                [
                    ChatMessage(role="system", content=system_prompt),
                    ChatMessage(role="user", content="\n".join(user_lines)),
                ],
                ChatOptions(
                    temperature=self.settings.temperature,
                    max_tokens=self.settings.skill_max_tokens,
                    skill_name=task.skill,
                ),
            )
        except ReasoningError as exc:
            return ExecutionResult(success=False, output=f"LLM/Execution Error: {exc}")

        commands = extract_commands(response.content)
        if not commands:
            return ExecutionResult(success=True, output=response.content)

        success = True
        rendered: list[str] = []
        for command in commands:
            if not self.settings.run_commands:
                rendered.append(f"$ {command}\nSkipped: command execution disabled")
                continue
            logger.info("Task #%s running: %s", task.id, command)
            result = await run_shell_command(
                command,
                cwd=self.work_dir,
                timeout_seconds=self.settings.command_timeout_seconds,
            )
            if not result.ok:
                success = False
                logger.warning("Task #%s command failed: %s (%s)", task.id, command, result.error)
            rendered.append(result.render())

        output = f"{response.content}\n\n{COMMANDS_SEPARATOR}\n" + "\n\n".join(rendered)
        return ExecutionResult(success=success, output=output)

    async def _execute_plain(self, task: TaskView) -> ExecutionResult:
        memory_context = self.memory.get_context(task.title, self.settings.memory_context_tokens)
        system_prompt = (
            "You are an autonomous agent. Analyze and execute the given task.\n"
            "Provide clear, actionable results.\n"
            "If shell commands are needed, wrap them in ```bash blocks.\n"
            f"Working directory: {self.work_dir}\n"
        )
        if memory_context:
            system_prompt += f"\nContext:\n{memory_context}"

        response = await self.reasoning.chat(
            [
                ChatMessage(role="system", content=system_prompt),
                ChatMessage(role="user", content=f"Execute: {task.title}\n{task.description or ''}"),
            ],
            ChatOptions(
                temperature=self.settings.temperature,
                max_tokens=self.settings.plain_max_tokens,
            ),
        )
        return ExecutionResult(success=True, output=response.content)

    def _remember_completion(self, task: TaskView, output: str) -> None:
        try:
            self.memory.save(
                f'Task completed: "{task.title}" → {output[:300]}',
                category="learned",
                source="agent",
                tags=["task", "execution", task.skill or "general"],
            )
        except SQLAlchemyError:
            # Task is already committed as completed.
            logger.exception("Could not save memory for completed task #%s", task.id)
