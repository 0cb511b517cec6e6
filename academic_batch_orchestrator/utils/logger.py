"""
Logging utilities for Academic Batch Orchestrator

Log records are emitted as one JSON object per line. The job name, run key,
step and reconciliation pass of the code currently running are kept in a context
variable, so two executions interleaved on the same event loop each tag their
own records correctly.
"""

import contextvars
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional


_batch_context: contextvars.ContextVar = contextvars.ContextVar("batch_log_context", default={})

# Fields promoted to the top level of a JSON record instead of "extra".
CONTEXT_FIELDS = ("job_name", "run_key", "step_name", "reconciliation_pass")

_STANDARD_ATTRIBUTES = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime", "taskName"}


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for batch log records.

    Batch context fields appear at the top level; every other value passed
    through `extra=` is grouped under "extra".
    """

    def __init__(self, include_extra: bool = True):
        super().__init__()
        self.include_extra = include_extra

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                entry[field] = value

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info)
            }

        if self.include_extra:
            extra = {
                key: value for key, value in vars(record).items()
                if key not in _STANDARD_ATTRIBUTES and key not in CONTEXT_FIELDS
            }
            if extra:
                entry["extra"] = extra

        return json.dumps(entry, default=str, ensure_ascii=False)


class JobContextFilter(logging.Filter):
    """Copies the current batch context onto every record it sees."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _batch_context.get().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


def _handlers(structured: bool, log_file: Optional[str]) -> List[logging.Handler]:
    formatter: logging.Formatter
    if structured:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(JobContextFilter())
    return handlers


def setup_logger(
    name: str,
    level: str = "INFO",
    structured: bool = True,
    log_file: Optional[str] = None
) -> logging.Logger:
    """
    Configure the package logger once per process.

    Args:
        name: Logger name, normally the top-level package
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        structured: Emit JSON lines instead of plain text
        log_file: Optional file receiving the same records as stdout

    Returns:
        The configured logger
    """
    logger = logging.getLogger(name)
    if any(not isinstance(handler, logging.NullHandler) for handler in logger.handlers):
        return logger

    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        raise ValueError(f"unknown log level {level!r}")

    logger.setLevel(numeric_level)
    for handler in _handlers(structured, log_file):
        handler.setLevel(numeric_level)
        logger.addHandler(handler)
    return logger


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def set_log_context(**values) -> contextvars.Token:
    """
    Add values to the batch context of the current task.

    Returns:
        Token restoring the previous context when passed to the context variable's reset()
    """
    context = dict(_batch_context.get())
    context.update(values)
    return _batch_context.set(context)


def current_log_context() -> Dict[str, Any]:
    return dict(_batch_context.get())


class LoggerContext:
    """Scopes batch context values to a with block."""

    def __init__(self, **values):
        self.values = values
        self._token: Optional[contextvars.Token] = None

    def __enter__(self):
        self._token = set_log_context(**self.values)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._token is not None:
            _batch_context.reset(self._token)
            self._token = None
