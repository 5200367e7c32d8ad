"""Tests for the structured logging system (pharmatrace/logging_config.py)."""

import json
import logging
from io import StringIO

import pytest

from pharmatrace.exceptions import QuantityUnderflowError
from pharmatrace.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
    reset_logging,
)

@pytest.fixture(autouse=True)
def _clean_logging():
    """Reset logging state around each test, then restore the suite's setup."""
    reset_logging()
    LogContext.clear()
    yield
    LogContext.clear()
    reset_logging()
    configure_logging(level=logging.DEBUG, stream=StringIO())

def _make_handler() -> tuple[logging.Handler, StringIO]:
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    return handler, stream

def _parse_all_logs(stream: StringIO) -> list[dict]:
    lines = stream.getvalue().strip().split("\n")
    return [json.loads(line) for line in lines if line]

# ---------------------------------------------------------------------------
# StructuredFormatter
# ---------------------------------------------------------------------------

class TestStructuredFormatter:

    def test_basic_json_output(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("hello")

        [record] = _parse_all_logs(stream)
        assert record["level"] == "INFO"
        assert record["message"] == "hello"
        assert record["logger"] == "pharmatrace.test"
        assert "ts" in record

    def test_extra_and_context_fields(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        with LogContext.bind(transaction_hash="0xabc", block_number=12, batch_id=3):
            get_logger("test").info("event_processed", extra={"log_index": 1})

        [record] = _parse_all_logs(stream)
        assert record["transaction_hash"] == "0xabc"
        assert record["block_number"] == 12
        assert record["batch_id"] == 3
        assert record["log_index"] == 1

    def test_error_code_and_fields_extracted(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        try:
            raise QuantityUnderflowError(7, 10, 25)
        except QuantityUnderflowError:
            get_logger("test").error("split_failed", exc_info=True)

        [record] = _parse_all_logs(stream)
        assert record["exc_code"] == "QUANTITY_UNDERFLOW"
        assert record["exc_type"] == "QuantityUnderflowError"
        assert record["exc_batch_id"] == 7
        assert "traceback" in record

    def test_debug_filtered_at_info(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        logger.info("first")
        logger.debug("hidden")

        assert [r["message"] for r in _parse_all_logs(stream)] == ["first"]

# ---------------------------------------------------------------------------
# LogContext
# ---------------------------------------------------------------------------

class TestLogContext:

    def test_bind_restores_previous(self):
        with LogContext.bind(correlation_id="outer"):
            with LogContext.bind(correlation_id="inner", event_name="BatchSplit"):
                assert LogContext.get_all() == {"correlation_id": "inner", "event_name": "BatchSplit"}
            assert LogContext.get_all() == {"correlation_id": "outer"}
        assert LogContext.get_all() == {}

    def test_none_keeps_outer_value(self):
        with LogContext.bind(batch_id=4, block_number=9):
            with LogContext.bind(batch_id=None, event_name="UnknownEvent"):
                assert LogContext.get_all() == {
                    "batch_id": 4, "block_number": 9, "event_name": "UnknownEvent",
                }

    def test_unknown_bind_keys_are_ignored(self):
        with LogContext.bind(operator="ops"):
            assert LogContext.get_all() == {}

    def test_clear(self):
        with LogContext.bind(block_number=5):
            LogContext.clear()
            assert LogContext.get_all() == {}

# ---------------------------------------------------------------------------
# configure_logging
# ---------------------------------------------------------------------------

class TestConfigureLogging:

    def test_idempotent(self):
        h1, _ = _make_handler()
        configure_logging(handler=h1)
        h2, _ = _make_handler()
        configure_logging(handler=h2)

        assert logging.getLogger("pharmatrace").handlers == [h1]

    def test_does_not_propagate(self):
        configure_logging(handler=_make_handler()[0])

        assert logging.getLogger("pharmatrace").propagate is False
