"""
Structured JSON logging for the indexer.

Every record is one JSON line.  Records emitted while an event is being
applied carry the ledger position of that event (transaction hash, block
number, event name, batch id) and the correlation id of the sync pass or
retry run that picked it up, so a single ``grep`` on a transaction hash
returns the whole story of that transaction across passes.

Usage::

    logger = get_logger("services.indexer")
    with LogContext.bind(block_number=block.block_number):
        logger.info("block_started")
"""

__all__ = [
    "StructuredFormatter",
    "LogContext",
    "get_logger",
    "configure_logging",
    "reset_logging",
]

import json
import logging
import sys
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

# Fields the indexer binds around a pass, a block or a single log
EVENT_FIELDS = (
    "correlation_id",
    "transaction_hash",
    "block_number",
    "batch_id",
    "event_name",
)

_event_context: ContextVar[dict[str, Any]] = ContextVar("pharmatrace_event_context", default={})


class LogContext:
    """Per-task ledger position attached to every record."""

    @staticmethod
    def get_all() -> dict[str, Any]:
        return dict(_event_context.get())

    @staticmethod
    def clear() -> None:
        _event_context.set({})

    @staticmethod
    @contextmanager
    def bind(**fields: Any) -> Iterator[None]:
        """Overlay ``fields`` for the duration of the block.

        None values leave an outer binding in place, so a processor that
        cannot decode a batch id does not blank the one bound by its caller.
        Names outside EVENT_FIELDS are dropped.
        """
        merged = dict(_event_context.get())
        merged.update(
            (name, value) for name, value in fields.items()
            if name in EVENT_FIELDS and value is not None
        )
        token = _event_context.set(merged)
        try:
            yield
        finally:
            _event_context.reset(token)


# Attributes every LogRecord has; anything else came in through ``extra``
_RECORD_ATTRS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "taskName"}


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


class StructuredFormatter(logging.Formatter):

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_event_context.get(),
        }
        for key, value in vars(record).items():
            if key not in _RECORD_ATTRS:
                payload.setdefault(key, value)

        if record.exc_info and record.exc_info[1] is not None:
            payload.update(_exception_fields(record.exc_info[1]))
            payload["traceback"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=_json_default)


def _exception_fields(exc: BaseException) -> dict[str, Any]:
    # PharmaTraceError subclasses carry a stable code plus the offending ids
    fields: dict[str, Any] = {
        "exc_type": type(exc).__name__,
        "exc_message": str(exc),
    }
    code = getattr(exc, "code", None)
    if code is not None:
        fields["exc_code"] = code
    for name, value in vars(exc).items():
        if not name.startswith("_") and name != "code":
            fields[f"exc_{name}"] = value
    return fields


_ROOT = "pharmatrace"


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"{_ROOT}.{name}")


_configured = False
_lock = threading.Lock()


def configure_logging(
    *,
    level: int | str = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> None:
    """Install the JSON handler on the ``pharmatrace`` logger once per process.

    Later calls are no-ops, so both ``scripts/run_indexer.py`` and
    ``db.engine.init_engine_from_url`` may call it.
    """
    global _configured
    with _lock:
        if _configured:
            return
        _configured = True

    root = logging.getLogger(_ROOT)
    root.setLevel(level)
    root.propagate = False
    target = handler if handler is not None else logging.StreamHandler(stream or sys.stderr)
    target.setFormatter(StructuredFormatter())
    root.addHandler(target)


def reset_logging() -> None:
    """Drop the installed handler so tests can configure again."""
    global _configured
    with _lock:
        _configured = False
    root = logging.getLogger(_ROOT)
    root.handlers.clear()
    root.setLevel(logging.WARNING)
