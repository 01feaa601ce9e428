"""Root logger configuration for the command line."""

from __future__ import annotations

import logging
import sys


class _ConsoleNoiseFilter(logging.Filter):
    """Keep task_scheduler logs; let third-party loggers through only at WARNING+."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.name == "task_scheduler" or record.name.startswith("task_scheduler."):
            return True
        return record.levelno >= logging.WARNING


def setup_logging(*, level: int = logging.INFO) -> None:
    """Configure a single stderr handler on the root logger.

    Safe to call repeatedly; previously installed handlers are replaced.
    """

    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(level)
    console.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ),
    )
    console.addFilter(_ConsoleNoiseFilter())
    root.addHandler(console)
    logging.captureWarnings(True)
