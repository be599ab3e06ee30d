"""
Logging configuration for the sync engine and CLI.
"""

from __future__ import annotations

import logging
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

from imagesync.config import LogLevel

LOGGER_NAME = "imagesync"
LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"


def apply_log_level(level: LogLevel) -> None:
    """Set the verbosity of every ``imagesync.*`` logger."""
    logging.getLogger(LOGGER_NAME).setLevel(level.to_logging())


def configure_logging(
    level: LogLevel = LogLevel.INFO,
    log_path: str | Path | None = None,
    console: Console | None = None,
) -> logging.Logger:
    """
    Install handlers on the ``imagesync`` logger.

    Console output goes through rich; ``log_path`` adds a plain-text file
    handler (parent directories are created). Safe to call repeatedly.
    """
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    logger.addHandler(
        RichHandler(console=console, show_path=False, rich_tracebacks=True)
    )

    if log_path is not None:
        path = Path(log_path).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(file_handler)

    apply_log_level(level)
    return logger
