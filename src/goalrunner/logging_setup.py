"""Process-wide logging configuration for the CLI and the daemon."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

LOG_FORMAT = "%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class _ConsoleNoiseFilter(logging.Filter):
    """Keep goalrunner records; third-party loggers only from WARNING up."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.name.startswith("goalrunner"):
            return True
        return record.levelno >= logging.WARNING


def setup_logging(
    *,
    log_file: Path | None = None,
    level: int = logging.INFO,
    file_level: int = logging.DEBUG,
) -> None:
    """Install a stderr handler and, optionally, a file handler on the root logger.

    Call once, early. Existing root handlers are replaced so repeated calls do
    not duplicate output.
    """

    root = logging.getLogger()
    root.setLevel(min(level, file_level) if log_file is not None else level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(level)
    console.setFormatter(formatter)
    console.addFilter(_ConsoleNoiseFilter())
    root.addHandler(console)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(str(log_file), encoding="utf-8")
        file_handler.setLevel(file_level)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    # apscheduler logs every job run at INFO
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
    logging.captureWarnings(True)
