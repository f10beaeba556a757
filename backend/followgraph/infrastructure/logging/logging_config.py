"""
Global logging configuration for followgraph.

Features:
- Log level driven by LoggingSettings or FOLLOWGRAPH_LOGGING__LEVEL
- Structured JSON logging with timestamps
- Optional rotating log file
- Context propagation (unit of work id, user ids) via log_context()
"""

import contextvars
import json
import logging
import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Iterator

from followgraph.core.config import LoggingSettings

_current_context: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar(
    "followgraph_log_context", default={}
)

_QUIET_LOGGERS = ("sqlalchemy.engine", "sqlalchemy.pool", "aiosqlite", "asyncio")


class StructuredFormatter(logging.Formatter):
    """Formatter that outputs structured JSON logs."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if getattr(record, "context", None):
            log_data["context"] = record.context

        if getattr(record, "extra_data", None):
            log_data["extra"] = record.extra_data

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


class HumanFormatter(logging.Formatter):
    """Human-readable formatter for console output."""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def __init__(self, use_color: bool = True):
        super().__init__()
        self._use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "") if self._use_color else ""
        reset = self.RESET if self._use_color else ""
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]

        base_msg = f"[{timestamp}] {color}{record.levelname:8}{reset} | {record.name:30} | {record.getMessage()}"

        if getattr(record, "context", None):
            base_msg += f" | context={json.dumps(record.context, ensure_ascii=False, default=str)}"

        if record.exc_info:
            base_msg += f"\n{self.formatException(record.exc_info)}"

        return base_msg


class ContextFilter(logging.Filter):
    """Filter that copies the active log_context() onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = dict(getattr(record, "context", None) or {})
        record.context = {**_current_context.get(), **context}
        return True


@contextmanager
def log_context(**kwargs: Any) -> Iterator[dict[str, Any]]:
    """
    Context manager for adding context to logs.

    Context is stored in a ContextVar so concurrent units of work running in
    separate tasks do not see each other's values.

    Usage:
        with log_context(unit_id="uow_1a2b", user_id=1):
            logger.info("Following user")
    """
    merged = {**_current_context.get(), **kwargs}
    token = _current_context.set(merged)
    try:
        yield merged
    finally:
        _current_context.reset(token)


def get_log_context() -> dict[str, Any]:
    """Return a copy of the active log context."""
    return dict(_current_context.get())


def setup_logging(
    settings: LoggingSettings | None = None,
    level: str | None = None,
    enable_console: bool = True,
) -> None:
    """
    Setup logging configuration.

    Args:
        settings: Logging settings (defaults to LoggingSettings())
        level: Log level override (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        enable_console: Enable console logging
    """
    settings = settings or LoggingSettings()
    log_level = getattr(logging, (level or settings.level).upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()

    context_filter = ContextFilter()

    if enable_console:
        console_handler = logging.StreamHandler(sys.stdout)
        if settings.structured:
            console_handler.setFormatter(StructuredFormatter())
        else:
            console_handler.setFormatter(HumanFormatter(use_color=sys.stdout.isatty()))
        console_handler.setLevel(log_level)
        console_handler.addFilter(context_filter)
        root_logger.addHandler(console_handler)

    if settings.file:
        log_file = Path(settings.file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=settings.max_bytes,
            backupCount=settings.backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(StructuredFormatter())
        file_handler.setLevel(log_level)
        file_handler.addFilter(context_filter)
        root_logger.addHandler(file_handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)


def set_log_level(level: str) -> None:
    """
    Dynamically set the log level.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    logging.getLogger().setLevel(log_level)
    for handler in logging.getLogger().handlers:
        handler.setLevel(log_level)
