"""Trigger definitions read from ``.agent/triggers.yaml``."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from goalrunner.storage.common import JsonMap

logger = logging.getLogger(__name__)

TRIGGERS_FILE_NAME = "triggers.yaml"
DEFAULT_DEBOUNCE_MS = 2_000

CRON_EVENTS = frozenset({"cron", "goal.check"})
FILE_EVENTS = frozenset({"file.changed"})


@dataclass(slots=True)
class TriggerAction:
    """What a fired trigger does."""

    type: str | None = None
    skill: str | None = None
    run: str | None = None
    input: JsonMap = field(default_factory=dict)


@dataclass(slots=True)
class TriggerConfig:
    name: str
    event: str
    enabled: bool = True
    schedule: str | None = None
    watch: tuple[str, ...] = ()
    debounce_ms: int = DEFAULT_DEBOUNCE_MS
    action: TriggerAction = field(default_factory=TriggerAction)


def triggers_path(work_dir: Path) -> Path:
    return work_dir / ".agent" / TRIGGERS_FILE_NAME


def load_triggers(work_dir: Path) -> list[TriggerConfig]:
    """Load enabled triggers; a missing or unreadable file yields no triggers."""

    path = triggers_path(work_dir)
    if not path.exists():
        return []
    try:
        document = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, ValueError, yaml.YAMLError) as exc:
        logger.warning("Could not read triggers from %s: %s", path, exc)
        return []
    return parse_triggers(document)


def parse_triggers(document: object) -> list[TriggerConfig]:
    if not isinstance(document, dict):
        return []
    raw_triggers = document.get("triggers")
    if not isinstance(raw_triggers, list):
        return []

    triggers: list[TriggerConfig] = []
    for position, raw in enumerate(raw_triggers):
        if not isinstance(raw, dict) or not raw.get("name") or not raw.get("event"):
            logger.warning("Skipping malformed trigger at index %s", position)
            continue
        if raw.get("enabled") is False:
            continue
        triggers.append(_trigger_from_mapping(raw))
    return triggers


def _trigger_from_mapping(raw: dict) -> TriggerConfig:
    watch = raw.get("watch") or ()
    if isinstance(watch, str):
        watch = (watch,)
    raw_action = raw.get("action") if isinstance(raw.get("action"), dict) else {}
    raw_input = raw_action.get("input")
    debounce = raw.get("debounce")
    return TriggerConfig(
        name=str(raw["name"]),
        event=str(raw["event"]),
        enabled=True,
        schedule=str(raw["schedule"]) if raw.get("schedule") else None,
        watch=tuple(str(pattern) for pattern in watch),
        debounce_ms=int(debounce) if isinstance(debounce, int | float) else DEFAULT_DEBOUNCE_MS,
        action=TriggerAction(
            type=raw_action.get("type"),
            skill=raw_action.get("skill"),
            run=raw_action.get("run"),
            input=raw_input if isinstance(raw_input, dict) else {},
        ),
    )


def default_triggers_yaml() -> str:
    return """\
# Agent daemon triggers.
# Event types: file.changed, cron, goal.check

triggers:
  # Process the goal/task queue every 2 minutes
  - name: goal-processor
    event: goal.check
    schedule: "*/2 * * * *"
    enabled: true
    action:
      type: goal-progress

  # Daily standup report from git log
  # - name: morning-standup
  #   event: cron
  #   schedule: "0 9 * * 1-5"
  #   enabled: false
  #   action:
  #     skill: git-commit
  #     input:
  #       type: standup-report

  # Auto code-review on file changes
  # - name: auto-review
  #   event: file.changed
  #   watch: "src/**/*.py"
  #   debounce: 5000
  #   enabled: false
  #   action:
  #     skill: code-review
  #     input:
  #       scope: changed-files

  # Run a command every hour
  # - name: health-check
  #   event: cron
  #   schedule: "0 * * * *"
  #   enabled: false
  #   action:
  #     run: "df -h ."
"""


def ensure_triggers_file(work_dir: Path) -> tuple[Path, bool]:
    """Write the default template when absent; returns (path, created)."""

    path = triggers_path(work_dir)
    if path.exists():
        return path, False
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(default_triggers_yaml(), encoding="utf-8")
    return path, True
