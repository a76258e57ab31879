from __future__ import annotations

from pathlib import Path

import allure
import yaml

from goalrunner.daemon.triggers import (
    DEFAULT_DEBOUNCE_MS,
    default_triggers_yaml,
    ensure_triggers_file,
    load_triggers,
    parse_triggers,
    triggers_path,
)

pytestmark = [
    allure.epic("Daemon"),
    allure.feature("Trigger Configuration"),
]


def test_missing_file_yields_no_triggers(tmp_path: Path) -> None:
    assert load_triggers(tmp_path) == []


def test_default_template_has_enabled_goal_processor(tmp_path: Path) -> None:
    path, created = ensure_triggers_file(tmp_path)
    assert created
    assert path == triggers_path(tmp_path)

    triggers = load_triggers(tmp_path)

    assert [trigger.name for trigger in triggers] == ["goal-processor"]
    assert triggers[0].event == "goal.check"
    assert triggers[0].schedule == "*/2 * * * *"
    assert triggers[0].action.type == "goal-progress"

    path.write_text("triggers: []\n", encoding="utf-8")
    assert ensure_triggers_file(tmp_path) == (path, False)
    assert path.read_text(encoding="utf-8") == "triggers: []\n"


def test_parse_triggers_reads_actions_and_skips_bad_entries() -> None:
    document = yaml.safe_load(
        """
triggers:
  - name: auto-review
    event: file.changed
    watch: "src/**/*.py"
    debounce: 5000
    action:
      skill: code-review
      input:
        scope: changed-files
  - name: health-check
    event: cron
    schedule: "0 * * * *"
    action:
      run: "df -h ."
      report: true
  - name: disabled
    event: cron
    schedule: "0 0 * * *"
    enabled: false
  - event: cron
  - just a string
""",
    )

    review, health = parse_triggers(document)

    assert review.watch == ("src/**/*.py",)
    assert review.debounce_ms == 5000
    assert review.action.skill == "code-review"
    assert review.action.input == {"scope": "changed-files"}
    assert health.schedule == "0 * * * *"
    assert health.debounce_ms == DEFAULT_DEBOUNCE_MS
    assert health.action.run == "df -h ."
    assert health.action.type is None


def test_unreadable_yaml_is_ignored(tmp_path: Path) -> None:
    path = triggers_path(tmp_path)
    path.parent.mkdir(parents=True)
    path.write_text("triggers: [unclosed\n", encoding="utf-8")

    assert load_triggers(tmp_path) == []
    assert parse_triggers(None) == []
    assert parse_triggers({"triggers": "nope"}) == []


def test_default_template_is_valid_yaml() -> None:
    document = yaml.safe_load(default_triggers_yaml())

    assert isinstance(document, dict)
    assert len(document["triggers"]) == 1
