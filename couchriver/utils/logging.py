"""
Structured logging for the river.

Every record is rendered as one JSON object. Structured fields passed with
``extra=`` (``database``, ``seq``, ``operations`` ...) become top-level keys,
and records logged while a bulk batch is being built carry that batch's
correlation id, so one batch can be followed from feed line to bulk response.
"""

import json
import logging
import uuid
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Dict, Optional

_correlation_id: ContextVar[Optional[str]] = ContextVar('couchriver_correlation_id', default=None)

# Attributes every LogRecord carries; anything else came in through ``extra=``
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord('', 0, '', 0, '', (), None)).keys()
) | {'message', 'asctime'}


def get_correlation_id() -> Optional[str]:
    """Correlation id of the batch being built on this thread, if any."""
    return _correlation_id.get()


class JSONFormatter(logging.Formatter):
    """Render a record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            'timestamp': datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'thread': record.threadName,
            'message': record.getMessage(),
        }

        correlation_id = get_correlation_id()
        if correlation_id:
            entry['correlation_id'] = correlation_id

        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRS and not key.startswith('_'):
                entry[key] = value

        if record.exc_info:
            entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def get_logger(name: str = "couchriver", level: int = logging.INFO) -> logging.Logger:
    """Attach a JSON stream handler to ``name`` and set its level.

    Module loggers under ``couchriver.`` propagate here, so configuring the
    package logger once covers the reader and indexer threads.

    Args:
        name: Logger to configure
        level: Logging level, applied again on repeated calls

    Returns:
        The configured logger
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if not any(isinstance(h.formatter, JSONFormatter) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(JSONFormatter())
        logger.addHandler(handler)
        logger.propagate = False

    return logger


class CorrelationContext:
    """Tag all records logged inside the block with one correlation id.

    Nested contexts restore the outer id on exit.
    """

    def __init__(self, correlation_id: Optional[str] = None):
        self.correlation_id = correlation_id or uuid.uuid4().hex
        self._token: Optional[Token] = None

    def __enter__(self) -> str:
        self._token = _correlation_id.set(self.correlation_id)
        return self.correlation_id

    def __exit__(self, exc_type, exc_val, exc_tb):
        _correlation_id.reset(self._token)
        self._token = None
