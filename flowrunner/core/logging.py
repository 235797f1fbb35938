"""Logging configuration for the workflow runner.

Log records carry a run context (request id, session id, workflow id, node
id) held in a ``ContextVar``. Each request, worker thread and test session
call therefore sees its own context; ``logging_context`` scopes additions to
a block and restores the previous fields on exit.
"""

import json
import logging
import sys
import traceback
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Iterator, Optional


DEFAULT_LOG_FORMAT = (
    "%(asctime)s - %(name)s - %(levelname)s - "
    "[%(module)s:%(funcName)s:%(lineno)d] - %(message)s%(run_context)s"
)

# Never mutated in place; every change sets a new dict
_run_context: ContextVar[Dict[str, Any]] = ContextVar("flowrunner_run_context", default={})


class StructuredFormatter(logging.Formatter):
    """Formats records as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }

        # Run context and per-call fields
        log_entry.update(getattr(record, "extra_fields", {}))

        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": traceback.format_exception(*record.exc_info),
            }

        return json.dumps(log_entry, default=str)


class RunContextFilter(logging.Filter):
    """Attaches the current run context to every record passing a handler.

    Fields passed explicitly through ``log_with_context`` win over the
    ambient context. ``run_context`` holds a ``[key=value ...]`` suffix for
    plain-text formats.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        fields = {
            key: value for key, value in _run_context.get().items()
            if value is not None
        }
        fields.update(getattr(record, "extra_fields", None) or {})
        record.extra_fields = fields

        ambient = [f"{key}={value}" for key, value in fields.items() if key in _run_context.get()]
        record.run_context = f" [{' '.join(ambient)}]" if ambient else ""
        return True


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    log_format: Optional[str] = None,
    structured: bool = False,
    max_size: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5
) -> logging.Logger:
    """
    Configure root logging for the service.

    Args:
        level: Logging level name
        log_file: Optional path of a rotating log file
        log_format: Plain-text format; ``%(run_context)s`` expands to the run context
        structured: Emit JSON lines instead of plain text
        max_size: Bytes before the log file rotates
        backup_count: Rotated files to keep

    Returns:
        Root logger instance
    """
    if structured:
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(fmt=log_format or DEFAULT_LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(log_file, maxBytes=max_size, backupCount=backup_count))

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    # Replace handlers from an earlier setup (app reloads, tests)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    context_filter = RunContextFilter()
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(context_filter)
        root_logger.addHandler(handler)

    # Quiet third-party loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for the given name."""
    return logging.getLogger(name)


def get_logging_context() -> Dict[str, Any]:
    return dict(_run_context.get())


def set_logging_context(**fields):
    """Add fields to the run context of the current execution context."""
    _run_context.set({**_run_context.get(), **fields})


def clear_logging_context():
    _run_context.set({})


@contextmanager
def logging_context(**fields) -> Iterator[Dict[str, Any]]:
    """Add fields for the duration of a block.

    Anything set inside the block, including through
    ``set_logging_context``, is dropped when the block exits.
    """
    token = _run_context.set({**_run_context.get(), **fields})
    try:
        yield _run_context.get()
    finally:
        _run_context.reset(token)


def log_with_context(logger: logging.Logger, level: int, message: str, **context):
    """Log a message with additional context fields."""
    logger.log(level, message, extra={"extra_fields": context})
