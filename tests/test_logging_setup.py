from __future__ import annotations

import logging
from collections.abc import Iterator
from pathlib import Path

import allure
import pytest

from goalrunner.logging_setup import _ConsoleNoiseFilter, setup_logging

pytestmark = [
    allure.epic("Daemon"),
    allure.feature("Logging"),
]


@pytest.fixture()
def restore_root_logger() -> Iterator[None]:
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    try:
        yield
    finally:
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()
        for handler in handlers:
            root.addHandler(handler)
        root.setLevel(level)
        logging.captureWarnings(False)


def _record(name: str, level: int) -> logging.LogRecord:
    return logging.LogRecord(name, level, __file__, 1, "message", None, None)


def test_console_filter_hides_third_party_info() -> None:
    noise_filter = _ConsoleNoiseFilter()

    assert noise_filter.filter(_record("goalrunner.daemon.service", logging.DEBUG))
    assert not noise_filter.filter(_record("apscheduler.scheduler", logging.INFO))
    assert noise_filter.filter(_record("httpx", logging.WARNING))


@pytest.mark.usefixtures("restore_root_logger")
def test_setup_logging_writes_debug_to_file(tmp_path: Path) -> None:
    log_file = tmp_path / "agent" / "daemon.log"

    setup_logging(log_file=log_file)
    setup_logging(log_file=log_file)
    logging.getLogger("goalrunner.test").debug("debug detail")
    for handler in logging.getLogger().handlers:
        handler.flush()

    root = logging.getLogger()
    assert len(root.handlers) == 2
    assert root.level == logging.DEBUG
    content = log_file.read_text(encoding="utf-8")
    assert content.count("debug detail") == 1
    assert "DEBUG goalrunner.test: debug detail" in content
