"""
Logging setup for Report Sync.

All modules log through ``logging.getLogger(__name__)``, so every record
from the package ends up under the ``report_sync`` logger configured here:
- Rich console output (stderr, keeps stdout for tables)
- JSON lines carrying the ``extra`` fields (scope, sync_queue_id, ...)
- Optional rotating log file
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

from report_sync.config import LoggingConfig


ROOT_LOGGER = "report_sync"

console = Console(stderr=True)

logger = logging.getLogger(ROOT_LOGGER)

# Attributes every LogRecord carries; anything else came in through `extra`
_RESERVED_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
) | {"message", "asctime", "component"}

# Libraries logging every request at INFO
_NOISY_LOGGERS = ("httpx", "httpcore")


class ComponentFilter(logging.Filter):
    """Tag records with the package-relative module name (``core.coordinator``)."""

    def filter(self, record: logging.LogRecord) -> bool:
        name = record.name
        if name.startswith(f"{ROOT_LOGGER}."):
            name = name[len(ROOT_LOGGER) + 1:]
        record.component = name
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per record, ``extra`` fields included."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc)
            .isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "component": getattr(record, "component", record.name),
            "message": record.getMessage(),
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def _console_handler(format_style: str) -> logging.Handler:
    if format_style == "rich":
        handler: logging.Handler = RichHandler(
            console=console,
            rich_tracebacks=True,
            show_time=True,
            show_path=False,
        )
        handler.setFormatter(logging.Formatter("[%(component)s] %(message)s"))
        return handler

    handler = logging.StreamHandler(sys.stderr)
    if format_style == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s | %(levelname)-8s | %(component)s | %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
    return handler


def setup_logging(config: LoggingConfig | None = None) -> logging.Logger:
    """
    Configure the ``report_sync`` logger.

    Calling it again replaces the previous handlers.

    Args:
        config: Logging settings (defaults to rich output at INFO)

    Returns:
        The configured package logger
    """
    config = config or LoggingConfig()
    log_level = getattr(logging, config.level.upper(), logging.INFO)

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(log_level)

    component_filter = ComponentFilter()

    handler = _console_handler(config.format)
    handler.setLevel(log_level)
    handler.addFilter(component_filter)
    logger.addHandler(handler)

    if config.file:
        file_path = Path(config.file)
        file_path.parent.mkdir(parents=True, exist_ok=True)

        # The file always gets JSON lines so runs can be inspected later
        file_handler = RotatingFileHandler(
            file_path,
            maxBytes=config.max_file_size_mb * 1024 * 1024,
            backupCount=config.backup_count,
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(JsonFormatter())
        file_handler.addFilter(component_filter)
        logger.addHandler(file_handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    return logger


def get_logger(component: str | None = None) -> logging.Logger:
    """Logger of a package component, e.g. ``get_logger("core.recalc")``."""
    if not component:
        return logger
    return logging.getLogger(f"{ROOT_LOGGER}.{component}")
