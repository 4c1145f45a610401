"""
Structured logging for the pie menu IPC packages.

Both the client package (``pie_ipc``) and the server package
(``pie_ipc_host``) log through this module so that a host application and
the command-line tools produce the same record shape.

Features:
- JSON-formatted log output for machine-readable logs
- Plain text output for interactive use
- Consistent field structure across all log entries
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from pie_ipc.config import LoggingConfig

DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Package loggers configured by setup_logging()
PACKAGE_LOGGERS = ("pie_ipc", "pie_ipc_host")

# LogRecord attributes that are not user-supplied extra fields
_RESERVED_ATTRS = frozenset(
    {
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
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JSONFormatter(logging.Formatter):
    """
    A logging formatter that outputs log records as JSON objects.

    Each record becomes one JSON object with the fields:
    - timestamp: ISO 8601 formatted timestamp in UTC
    - level: Log level name
    - logger: Logger name
    - message: Log message
    - exception: Formatted traceback, if any
    - any extra fields passed via ``extra={...}``
    """

    def format(self, record: logging.LogRecord) -> str:
        """
        Format the log record as a JSON string.

        Args:
            record: The log record to format.

        Returns:
            JSON-formatted string representation of the log record.
        """
        log_entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        for key in set(record.__dict__) - _RESERVED_ATTRS:
            value = getattr(record, key, None)
            if value is not None:
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


def setup_logging(
    config: LoggingConfig | None = None,
    *,
    level: str = "INFO",
    json_format: bool = True,
    log_to_stdout: bool = True,
) -> logging.Logger:
    """
    Configure logging for the IPC packages.

    Args:
        config: Optional LoggingConfig. If provided, it overrides the keyword
            arguments.
        level: Log level if no config is provided.
        json_format: Whether to use JSON formatting.
        log_to_stdout: Whether to log to stdout (stderr otherwise).

    Returns:
        The ``pie_ipc`` package logger.

    Example:
        >>> from pie_ipc.logging import setup_logging
        >>> logger = setup_logging(level="DEBUG", json_format=False)
        >>> logger.info("Server started", extra={"port": 53811})
    """
    if config is not None:
        log_level = "DEBUG" if config.debug_mode else config.level.upper()
        json_format = config.json_format
        log_to_stdout = config.log_to_stdout
    else:
        log_level = level.upper()

    numeric_level = getattr(logging, log_level, logging.INFO)

    if json_format:
        formatter: logging.Formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(DEFAULT_LOG_FORMAT)

    for package in PACKAGE_LOGGERS:
        logger = logging.getLogger(package)
        logger.setLevel(numeric_level)
        logger.handlers.clear()

        handler = logging.StreamHandler(sys.stdout if log_to_stdout else sys.stderr)
        handler.setLevel(numeric_level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

        # Avoid duplicate records through the root logger
        logger.propagate = False

    return logging.getLogger(PACKAGE_LOGGERS[0])


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger for a module.

    Names that already belong to one of the IPC packages are used as-is,
    anything else is placed below ``pie_ipc``.

    Args:
        name: Logger name, typically ``__name__`` of the calling module.

    Returns:
        A logger instance.
    """
    if not name.startswith(PACKAGE_LOGGERS):
        name = f"pie_ipc.{name}"

    return logging.getLogger(name)
