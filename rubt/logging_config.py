"""Logging configuration for rubt.

Console output goes through rich, file output is plain or structured JSON,
and every record carries the correlation ID of the current context.
"""

from __future__ import annotations

import json
import logging
import logging.config
import time
import uuid
from contextvars import ContextVar
from pathlib import Path
from typing import TYPE_CHECKING, Any

from rich.console import Console
from rich.logging import RichHandler

from rubt.exceptions import RUBTError

if TYPE_CHECKING:
    from rubt.models import ObservabilityConfig

correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)

# Attributes every LogRecord carries; anything else was passed through ``extra``.
_RECORD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__,
) | {"message", "asctime", "correlation_id", "taskName"}


class CorrelationFilter(logging.Filter):
    """Filter to add correlation ID to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        """Add correlation ID to log record."""
        record.correlation_id = correlation_id.get() or "-"
        return True


class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as structured JSON."""
        entry: dict[str, Any] = {
            "timestamp": time.time(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "function": record.funcName,
            "line": record.lineno,
            "correlation_id": getattr(record, "correlation_id", None),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        entry.update(
            {k: v for k, v in record.__dict__.items() if k not in _RECORD_ATTRS},
        )
        return json.dumps(entry, default=str)


def _console_handler() -> logging.Handler:
    handler = RichHandler(
        console=Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
        markup=False,
    )
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    return handler


def setup_logging(config: ObservabilityConfig) -> None:
    """Configure the ``rubt`` logger hierarchy from observability settings."""
    level = config.log_level.value

    handlers: dict[str, dict[str, Any]] = {
        "console": {
            "()": _console_handler,
            "level": level,
            "filters": ["correlation"],
        },
    }
    if config.structured_logging:
        handlers["console"] = {
            "class": "logging.StreamHandler",
            "level": level,
            "formatter": "structured",
            "filters": ["correlation"],
            "stream": "ext://sys.stderr",
        }

    if config.log_file:
        Path(config.log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "level": level,
            "formatter": "structured" if config.structured_logging else "plain",
            "filters": ["correlation"],
            "filename": config.log_file,
            "maxBytes": 10 * 1024 * 1024,
            "backupCount": 5,
            "encoding": "utf-8",
        }

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "structured": {"()": StructuredFormatter},
                "plain": {
                    "format": "%(asctime)s %(levelname)s [%(correlation_id)s] %(name)s: %(message)s",
                    "datefmt": "%Y-%m-%d %H:%M:%S",
                },
            },
            "filters": {"correlation": {"()": CorrelationFilter}},
            "handlers": handlers,
            "loggers": {
                "rubt": {
                    "level": level,
                    "handlers": list(handlers),
                    "propagate": False,
                },
            },
        },
    )

    if config.log_correlation_id:
        set_correlation_id()


def get_logger(name: str) -> logging.Logger:
    """Get a logger below the ``rubt`` namespace."""
    if name == "rubt" or name.startswith("rubt."):
        return logging.getLogger(name)
    return logging.getLogger(f"rubt.{name}")


def set_correlation_id(corr_id: str | None = None) -> str:
    """Set correlation ID for the current context."""
    if corr_id is None:
        corr_id = uuid.uuid4().hex[:12]
    correlation_id.set(corr_id)
    return corr_id


def get_correlation_id() -> str | None:
    """Get the current correlation ID."""
    return correlation_id.get()


class LoggingContext:
    """Log the start, end and duration of an operation.

    A fresh correlation ID is bound for the duration of the block so that
    everything logged inside it can be grouped.
    """

    def __init__(self, operation: str, logger: logging.Logger | None = None, **kwargs: Any):
        """Initialize operation context manager."""
        self.operation = operation
        self.kwargs = kwargs
        self.logger = logger or get_logger(__name__)
        self.start_time: float | None = None

    def __enter__(self) -> LoggingContext:
        """Enter the context manager."""
        self.start_time = time.monotonic()
        set_correlation_id()
        self.logger.info("Starting %s", self.operation, extra=self.kwargs)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        """Exit the context manager."""
        duration = time.monotonic() - self.start_time if self.start_time else 0.0
        if exc_type is None:
            self.logger.info(
                "Completed %s in %.3fs",
                self.operation,
                duration,
                extra=self.kwargs,
            )
        else:
            self.logger.error(
                "Failed %s in %.3fs: %s",
                self.operation,
                duration,
                exc_val,
                extra=self.kwargs,
            )
        return False


def log_exception(logger: logging.Logger, exc: Exception, context: str = "") -> None:
    """Log an exception with context."""
    if isinstance(exc, RUBTError):
        logger.error(
            "%s: %s",
            context,
            exc.message,
            extra={"details": exc.details},
            exc_info=exc,
        )
    else:
        logger.error("%s: %s", context, exc, exc_info=exc)
