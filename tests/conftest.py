"""
Pytest fixtures for the pharmatrace test suite.

Provides:
- A file-backed SQLite database per test (tables created from the models)
- Session factory, deterministic clock and an in-memory fake ledger
- An EventProcessor and an Indexer wired to those
- Structured log capture

Environment Variables:
- PHARMATRACE_TEST_DATABASE_URL: run against another database (e.g.
  PostgreSQL) instead of the per-test SQLite file.  Tables are dropped
  after each test.
"""

import json
import logging
import os
from io import StringIO

import pytest
from sqlalchemy.orm import sessionmaker

from pharmatrace.config.schema import IndexerConfig, RetrySettings
from pharmatrace.db.engine import build_engine, create_tables, drop_tables
from pharmatrace.domain.clock import DeterministicClock
from pharmatrace.domain.retry_policy import RetryPolicy
from pharmatrace.domain.status import ParticipantRole
from pharmatrace.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from pharmatrace.services.batch_projector import BatchProjector
from pharmatrace.services.event_processor import EventProcessor
from pharmatrace.services.indexer import Indexer
from pharmatrace.services.recall_service import RecallService

from fakes import DISTRIBUTOR, MANUFACTURER, PHARMACY, FakeLedger

# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG, stream=StringIO())
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture pharmatrace logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, processor, session):
            processor.process_log(session, raw)
            logs = captured_logs()
            assert any(r["message"] == "event_processed" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("pharmatrace")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def engine(tmp_path):
    url = os.environ.get("PHARMATRACE_TEST_DATABASE_URL") or f"sqlite:///{tmp_path / 'pharmatrace.db'}"
    engine = build_engine(url)
    create_tables(engine)
    yield engine
    if not url.startswith("sqlite"):
        drop_tables(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def session(session_factory):
    """
    A session for direct processor/selector calls.

    Close or commit it before handing control to code that opens its own
    sessions and writes.
    """
    session = session_factory()
    yield session
    session.rollback()
    session.close()


# =============================================================================
# Domain fixtures
# =============================================================================


@pytest.fixture
def clock():
    return DeterministicClock()


@pytest.fixture
def participants():
    return {
        MANUFACTURER: ParticipantRole.MANUFACTURER,
        DISTRIBUTOR: ParticipantRole.DISTRIBUTOR,
        PHARMACY: ParticipantRole.PHARMACY,
    }


@pytest.fixture
def config(participants):
    return IndexerConfig(
        database_url="sqlite://",
        contract_address="0x00000000000000000000000000000000000000aa",
        chain_id=31337,
        deployment_block=1,
        chunk_size=10,
        poll_interval_seconds=0.01,
        participants=participants,
        retry=RetrySettings(concurrency=1, rate_per_second=1000.0, poll_interval_seconds=60.0),
    )


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def projector(config, clock):
    return BatchProjector(
        recall_service=RecallService(),
        role_of=config.role_of,
        clock=clock,
    )


@pytest.fixture
def processor(projector, clock):
    return EventProcessor(projector=projector, clock=clock, retry_policy=RetryPolicy())


@pytest.fixture
def indexer(config, ledger, session_factory, clock):
    indexer = Indexer(config, ledger, session_factory, clock=clock)
    yield indexer
    indexer.stop(timeout=5)
