# ============================================================================
# src/fhir_validation/utils/logging.py
# ============================================================================
"""
Logging configuration and utilities for the validation engine.

Validation context (resource type/id, aspect, bulk run) is kept in a
contextvar so concurrent validations on one event loop each tag their own
log records. setup_logging() installs the filter that copies it onto
every record.
"""

import contextvars
import json
import logging
import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

CONTEXT_FIELDS = ("resource_type", "resource_id", "aspect", "run_id")

_log_context: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar(
    "validation_log_context", default={}
)


def setup_logging(
    level: str = "INFO",
    log_file: Optional[Path] = None,
    format_json: bool = False
) -> None:
    """
    Setup logging configuration.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file path for logging
        format_json: Whether to use JSON format
    """
    log_level = getattr(logging, level.upper())

    if format_json:
        formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(ValidationContextFilter())

    logging.basicConfig(level=log_level, handlers=handlers, force=True)


class ValidationContextFilter(logging.Filter):
    """Copies the current validation context onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _log_context.get().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


class JsonFormatter(logging.Formatter):
    """JSON log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno
        }

        for key in CONTEXT_FIELDS:
            if getattr(record, key, None) is not None:
                log_data[key] = getattr(record, key)

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


@contextmanager
def validation_log_context(**fields: Any) -> Iterator[Dict[str, Any]]:
    """
    Tag log records emitted inside the block.

    Nested blocks extend the outer context; unknown keys are ignored.
    """
    current = dict(_log_context.get())
    current.update({k: v for k, v in fields.items() if k in CONTEXT_FIELDS})
    token = _log_context.set(current)
    try:
        yield current
    finally:
        _log_context.reset(token)


def current_log_context() -> Dict[str, Any]:
    return dict(_log_context.get())
