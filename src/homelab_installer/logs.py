"""Logging setup: daily install log file plus colored console output."""

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.markup import escape

LOGGER_NAME = "homelab_installer"
FILE_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
FILE_DATEFMT = "%Y-%m-%d %H:%M:%S"

_LEVEL_STYLES = {
    "DEBUG": ("DEBUG", "blue"),
    "INFO": ("INFO", "green"),
    "WARNING": ("WARN", "yellow"),
    "ERROR": ("ERROR", "red"),
    "CRITICAL": ("ERROR", "bold red"),
}


class _ShortLevelFormatter(logging.Formatter):
    """Writes WARN instead of WARNING so log lines match the historical format."""

    def format(self, record: logging.LogRecord) -> str:
        original = record.levelname
        if record.levelname == "WARNING":
            record.levelname = "WARN"
        try:
            return super().format(record)
        finally:
            record.levelname = original


class ConsoleLevelHandler(logging.Handler):
    """Prints ``[LEVEL] message`` with a severity-colored prefix."""

    def __init__(self, console: Optional[Console] = None, level: int = logging.INFO):
        super().__init__(level)
        self.console = console or Console(stderr=True)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            label, style = _LEVEL_STYLES.get(record.levelname, (record.levelname, "white"))
            message = escape(record.getMessage())
            self.console.print(f"[{style}]\\[{label}][/{style}] {message}", highlight=False)
        except Exception:
            self.handleError(record)


def daily_log_path(logs_dir: Path, when: Optional[datetime] = None) -> Path:
    """Path of the install log for the given day."""
    when = when or datetime.now()
    return logs_dir / f"install-{when:%Y%m%d}.log"


def setup_logging(
    logs_dir: Optional[Path] = None,
    debug: bool = False,
    console: Optional[Console] = None,
) -> logging.Logger:
    """Configure the package logger.

    Args:
        logs_dir: Directory for the daily install log. No file handler is
            attached when None or when the directory does not exist yet.
        debug: Show DEBUG records on the console.
        console: Rich console to print to (defaults to stderr).

    Returns:
        The configured package logger.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = False

    logger.addHandler(ConsoleLevelHandler(console, level=logging.DEBUG if debug else logging.INFO))

    if logs_dir is not None and logs_dir.is_dir():
        file_handler = logging.FileHandler(daily_log_path(logs_dir), encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(_ShortLevelFormatter(FILE_FORMAT, datefmt=FILE_DATEFMT))
        logger.addHandler(file_handler)

    return logger
