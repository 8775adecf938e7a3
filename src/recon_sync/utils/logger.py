"""
Logging setup for Recon Sync.

Provides structured logging with:
- Rich colored console output
- File logging with rotation
- JSON format option
- An append-only sync activity log handed to the engine
"""

from __future__ import annotations

import json
import logging
import sys
from collections import deque
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler


# Global console for rich output
console = Console()

# Package logger
logger = logging.getLogger("recon_sync")

ACTIVITY_LEVELS = {
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRON": logging.INFO,
}


def setup_logging(
    level: str = "INFO",
    log_file: Path | str | None = None,
    format_style: str = "rich",
    max_file_size_mb: int = 10,
    backup_count: int = 3,
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path to log file
        format_style: "rich", "json", or "simple"
        max_file_size_mb: Max log file size before rotation
        backup_count: Number of backup files to keep
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    logger.handlers.clear()
    logger.setLevel(log_level)

    handler: logging.Handler
    if format_style == "rich":
        handler = RichHandler(
            console=console,
            rich_tracebacks=True,
            show_time=True,
            show_path=False,
        )
        handler.setFormatter(logging.Formatter("%(message)s"))
    elif format_style == "json":
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JsonFormatter())
    else:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s | %(levelname)-8s | %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

    handler.setLevel(log_level)
    logger.addHandler(handler)

    if log_file:
        file_path = Path(log_file)
        file_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            file_path,
            maxBytes=max_file_size_mb * 1024 * 1024,
            backupCount=backup_count,
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        logger.addHandler(file_handler)


class JsonFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        activity_level = getattr(record, "activity_level", None)
        if activity_level:
            log_data["activity_level"] = activity_level

        return json.dumps(log_data)


def get_logger(name: str = "recon_sync") -> logging.Logger:
    """Get a logger instance."""
    return logging.getLogger(name)


class ActivityLog:
    """
    Append-only log of sync activity.

    Every entry is forwarded to the package logger, optionally appended
    to a file, and kept in a bounded in-memory buffer so an operator
    screen can show the latest lines without reading the file.

    Example:
        activity = ActivityLog(Path("logs/sync.log"))
        activity.log("Starting date-range sync", "INFO")
        activity.log("Fetch failed for invoice abc", "ERROR")

        for line in activity.latest(20):
            print(line)
    """

    def __init__(
        self,
        file: Path | str | None = None,
        buffer_size: int = 500,
        name: str = "recon_sync.activity",
    ) -> None:
        self.file = Path(file) if file else None
        self._buffer: deque[str] = deque(maxlen=buffer_size)
        self._logger = logging.getLogger(name)

    def log(self, message: str, level: str = "INFO") -> str:
        """Record one activity line and return it as written."""
        level = level.upper()
        if level == "WARN":
            level = "WARNING"
        if level not in ACTIVITY_LEVELS:
            raise ValueError(f"Unknown activity level: {level}")

        timestamp = datetime.now(timezone.utc).isoformat()
        line = f"[{timestamp}] [{level}] {message}"

        self._buffer.append(line)
        self._logger.log(
            ACTIVITY_LEVELS[level],
            message,
            extra={"activity_level": level},
        )

        if self.file:
            self.file.parent.mkdir(parents=True, exist_ok=True)
            with self.file.open("a", encoding="utf-8") as fh:
                fh.write(line + "\n")

        return line

    def latest(self, limit: int = 50) -> list[str]:
        """Newest entries first."""
        if limit <= 0:
            return []
        entries = list(self._buffer)[-limit:]
        entries.reverse()
        return entries

    def clear(self) -> None:
        self._buffer.clear()

    def __len__(self) -> int:
        return len(self._buffer)
