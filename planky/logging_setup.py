"""Structured JSON logging for the sync engine."""

import logging
from pathlib import Path
from typing import Any, Optional

import orjson

from planky.settings import settings

DIAGNOSTICS_LOGGER = "planky.http"

_RESERVED_ATTRS = frozenset(
    [
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "message",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "thread",
        "threadName",
        "taskName",
        "exc_info",
        "exc_text",
        "stack_info",
    ]
)


class StructuredFormatter(logging.Formatter):
    """Format log records as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_obj: dict[str, Any] = {
            "severity": record.levelname,
            "message": record.getMessage(),
            "timestamp": self.formatTime(record, self.datefmt),
            "logger": record.name,
        }

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        # Extra fields passed through `extra={...}`
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_obj[key] = value

        return orjson.dumps(log_obj, default=str).decode("utf-8")


def _file_handler(path: Path) -> logging.Handler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setFormatter(StructuredFormatter())
    return handler


def setup_logging(log_path: Optional[Path] = None) -> None:
    """
    Configure structured logging for the application.

    Logs go to a file in the data directory because the terminal UI owns stdout.

    Args:
        log_path: Override for the log file location
    """
    path = log_path or settings.path_for(settings.log_file)

    root_logger = logging.getLogger()
    root_logger.setLevel(settings.log_level)
    root_logger.addHandler(_file_handler(path))

    # Reduce noise from external libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    if settings.diagnostics_enabled:
        setup_diagnostics_log()


def setup_diagnostics_log(path: Optional[Path] = None) -> logging.Logger:
    """
    Configure the auxiliary HTTP diagnostics log.

    The diagnostics logger does not propagate, so request bodies never end up
    in the main application log.
    """
    logger = logging.getLogger(DIAGNOSTICS_LOGGER)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    if not logger.handlers:
        logger.addHandler(_file_handler(path or settings.path_for(settings.diagnostics_file)))
    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance with the given name."""
    return logging.getLogger(name)
