"""
Structured logging for the hot reload server and relaunch supervisor.

Two output formats share one logger tree rooted at ``hotreload``:

- JSON lines on stdout for the long-running processes (machine-readable
  application logs).
- The relaunch session log: a plain text file with one
  ``[<ISO-8601>] <LEVEL> <message>`` line per event. Callers scan these
  lines for the literal substrings ERROR, FATAL and WARN, so WARNING is
  written as WARN and CRITICAL as FATAL.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from hotreload.config import LoggingConfig

ROOT_LOGGER_NAME = "hotreload"

# Default log format for fallback
DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Last line a relaunch session writes before the server takes over its log
COMPLETE_MARKER = "RELAUNCH COMPLETE"
SAFE_FAILURE_MARKER = "Previous server restarted after safe failure"

_SESSION_LEVEL_NAMES = {
    "WARNING": "WARN",
    "CRITICAL": "FATAL",
}

_RESERVED_RECORD_KEYS = frozenset(
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

    Each log record is formatted as a JSON object with consistent fields:
    - timestamp: ISO 8601 formatted timestamp in UTC
    - level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    - logger: Logger name
    - message: Log message
    - Additional fields from the record's extra dict
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
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        # Fields passed through the `extra` parameter
        for key in set(record.__dict__.keys()) - _RESERVED_RECORD_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


class SessionLogFormatter(logging.Formatter):
    """
    Formatter for relaunch session log files.

    Produces ``[2025-01-15T14:30:00.123456+00:00] INFO message`` lines.
    Exception tracebacks are folded onto continuation lines prefixed with
    the same level so a line-based scan still sees them.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format a record as a single timestamped session log line."""
        timestamp = datetime.fromtimestamp(record.created, tz=UTC).isoformat()
        level = _SESSION_LEVEL_NAMES.get(record.levelname, record.levelname)
        line = f"[{timestamp}] {level} {record.getMessage()}"
        if record.exc_info:
            trace = self.formatException(record.exc_info)
            line += "".join(f"\n[{timestamp}] {level}   {t}" for t in trace.splitlines())
        return line


def setup_logging(
    config: LoggingConfig | None = None,
    *,
    level: str = "INFO",
    json_format: bool = True,
    log_to_stdout: bool = True,
) -> logging.Logger:
    """
    Configure the logging system for a hot reload process.

    Args:
        config: Optional LoggingConfig object with logging settings.
            If provided, overrides other parameters.
        level: Default log level if no config is provided.
        json_format: Whether to use JSON formatting (default: True).
        log_to_stdout: Whether to log to stdout (default: True).

    Returns:
        The root logger configured for the hotreload package.

    Example:
        >>> from hotreload.logging import setup_logging
        >>> logger = setup_logging(level="DEBUG")
        >>> logger.info("Server started", extra={"port": 8080})
    """
    if config is not None:
        log_level = "DEBUG" if config.debug_mode else config.level.upper()
        json_format = config.json_format
        log_to_stdout = config.log_to_stdout
    else:
        log_level = level.upper()

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(getattr(logging, log_level, logging.INFO))

    # Session handlers survive reconfiguration; only stream handlers are replaced
    for handler in list(logger.handlers):
        if not isinstance(handler, SessionLogHandler):
            logger.removeHandler(handler)

    if log_to_stdout:
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(getattr(logging, log_level, logging.INFO))

        if json_format:
            handler.setFormatter(JSONFormatter())
        else:
            handler.setFormatter(logging.Formatter(DEFAULT_LOG_FORMAT))

        logger.addHandler(handler)

    logger.propagate = False

    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for a specific module.

    Args:
        name: The name for the logger, typically __name__ of the calling module.
            The "hotreload." prefix is added automatically if not present.

    Returns:
        A configured logger instance.
    """
    if not name.startswith(ROOT_LOGGER_NAME):
        name = f"{ROOT_LOGGER_NAME}.{name}"

    return logging.getLogger(name)


class SessionLogHandler(logging.FileHandler):
    """File handler writing session log lines, flushed after every record."""

    def __init__(self, path: Path | str) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        super().__init__(path, mode="a", encoding="utf-8")
        self.setFormatter(SessionLogFormatter())
        self.setLevel(logging.DEBUG)


def attach_session_log(
    path: Path | str,
    logger: logging.Logger | None = None,
) -> SessionLogHandler:
    """
    Attach a session log file to a logger (the package root by default).

    Args:
        path: Session log file path. Parent directories are created.
        logger: Logger to attach to.

    Returns:
        The attached handler, so the caller can detach it later.
    """
    target = logger or logging.getLogger(ROOT_LOGGER_NAME)
    handler = SessionLogHandler(path)
    target.addHandler(handler)
    if target.level == logging.NOTSET or target.level > logging.INFO:
        target.setLevel(logging.INFO)
    return handler


@contextmanager
def session_log(
    path: Path | str,
    logger: logging.Logger | None = None,
) -> Iterator[SessionLogHandler]:
    """Temporarily attach a session log file to a logger."""
    target = logger or logging.getLogger(ROOT_LOGGER_NAME)
    handler = attach_session_log(path, target)
    try:
        yield handler
    finally:
        target.removeHandler(handler)
        handler.close()


@dataclass
class LogSignals:
    """Error and warning lines found in a session log."""

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    finished: bool = False

    @property
    def ok(self) -> bool:
        """True when the log holds no ERROR or FATAL line."""
        return not self.errors


def summarize_log(text: str) -> LogSignals:
    """
    Scan session log text for machine-checkable signal lines.

    Lines containing ERROR or FATAL are errors; lines containing WARN are
    warnings. A line is counted once, errors first. The log is finished
    once the supervisor recorded its outcome (completion or a safe failure).

    Args:
        text: Session log content (a status route prefix line is harmless).

    Returns:
        LogSignals with the matching lines in order.
    """
    signals = LogSignals()
    for line in text.splitlines():
        if "ERROR" in line or "FATAL" in line:
            signals.errors.append(line)
        elif "WARN" in line:
            signals.warnings.append(line)
        if COMPLETE_MARKER in line or SAFE_FAILURE_MARKER in line:
            signals.finished = True
    return signals
