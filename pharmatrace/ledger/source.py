"""
Module: pharmatrace.ledger.source
Responsibility: Event Source Adapter.  Turns block-range log queries against
    the ledger into an ordered, lazy stream of per-block log lists.
Architecture position: Ledger.  May import from domain/ and exceptions.py.

Invariants enforced:
    - Logs come out strictly increasing in (block_number, log_index).
    - Block ranges are fetched in windows of at most ``chunk_size`` blocks.
    - A failed chunk raises LedgerUnavailableError and ends the pass; no
      block is ever skipped.
    - Every chunk ends with an empty end-of-window marker so the caller can
      advance its cursor across blocks that carry no logs.

Failure modes:
    - LedgerUnavailableError on any ledger client exception.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Iterator, Protocol, Sequence

from pharmatrace.domain.events import RawLog
from pharmatrace.exceptions import LedgerUnavailableError
from pharmatrace.logging_config import get_logger

logger = get_logger("ledger.source")

DEFAULT_CHUNK_SIZE = 1000


class LedgerClient(Protocol):
    """What the indexer needs from the ledger.  The ledger itself is a black box."""

    def get_block_number(self) -> int:
        """Current chain head."""
        ...

    def get_logs(self, from_block: int, to_block: int) -> Sequence[RawLog]:
        """All contract logs in the inclusive block range."""
        ...

    def get_transaction_receipt(self, transaction_hash: str) -> int | None:
        """Block number of a mined transaction, or None if unknown."""
        ...


@dataclass(frozen=True)
class BlockLogs:
    """Logs of one block, in log_index order.

    An empty ``logs`` tuple marks the end of a fetched window: every block up
    to and including ``block_number`` has been delivered.
    """

    block_number: int
    logs: tuple[RawLog, ...]

    @property
    def is_window_end(self) -> bool:
        return not self.logs


def order_logs(logs: Sequence[RawLog], from_block: int, to_block: int) -> list[RawLog]:
    """Sort by (block, log_index), drop exact redeliveries and out-of-range entries."""
    seen: set[tuple[str, int]] = set()
    ordered: list[RawLog] = []
    for log in sorted(logs, key=lambda item: item.position):
        if not from_block <= log.block_number <= to_block:
            logger.warning(
                "log_outside_requested_range",
                extra={
                    "transaction_hash": log.transaction_hash,
                    "block_number": log.block_number,
                    "from_block": from_block,
                    "to_block": to_block,
                },
            )
            continue
        if log.key in seen:
            continue
        seen.add(log.key)
        ordered.append(log)
    return ordered


class EventSource:
    """
    Chunked reader over a LedgerClient.

    ``catch_up(from_block)`` is finite: it stops at the head observed when it
    started.  ``live(from_block, stop_event)`` polls for new heads until the
    event is set.
    """

    def __init__(
        self,
        client: LedgerClient,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        poll_interval_seconds: float = 5.0,
    ):
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        self._client = client
        self._chunk_size = chunk_size
        self._poll_interval = poll_interval_seconds

    @property
    def client(self) -> LedgerClient:
        return self._client

    def head(self) -> int:
        try:
            return int(self._client.get_block_number())
        except Exception as exc:
            raise LedgerUnavailableError(-1, -1, f"head query failed: {exc}") from exc

    def windows(self, from_block: int, to_block: int) -> Iterator[tuple[int, int]]:
        start = from_block
        while start <= to_block:
            end = min(start + self._chunk_size - 1, to_block)
            yield start, end
            start = end + 1

    def fetch_window(self, from_block: int, to_block: int) -> list[RawLog]:
        try:
            logs = self._client.get_logs(from_block, to_block)
        except Exception as exc:
            logger.warning(
                "ledger_chunk_failed",
                extra={"from_block": from_block, "to_block": to_block, "error": str(exc)},
            )
            raise LedgerUnavailableError(from_block, to_block, str(exc)) from exc
        return order_logs(logs, from_block, to_block)

    def iter_blocks(self, from_block: int, to_block: int) -> Iterator[BlockLogs]:
        """Yield per-block log lists for the inclusive range, window by window."""
        for start, end in self.windows(from_block, to_block):
            logs = self.fetch_window(start, end)
            logger.debug(
                "ledger_window_fetched",
                extra={"from_block": start, "to_block": end, "log_count": len(logs)},
            )
            block: list[RawLog] = []
            for log in logs:
                if block and block[0].block_number != log.block_number:
                    yield BlockLogs(block[0].block_number, tuple(block))
                    block = []
                block.append(log)
            if block:
                yield BlockLogs(block[0].block_number, tuple(block))
            yield BlockLogs(end, ())

    def catch_up(self, from_block: int, to_block: int | None = None) -> Iterator[BlockLogs]:
        head = self.head() if to_block is None else to_block
        if head < from_block:
            return
        logger.info("catch_up_range", extra={"from_block": from_block, "to_block": head})
        yield from self.iter_blocks(from_block, head)

    def live(self, from_block: int, stop_event: threading.Event) -> Iterator[BlockLogs]:
        """Open-ended stream.  Returns once ``stop_event`` is set."""
        next_block = from_block
        while not stop_event.is_set():
            head = self.head()
            if head >= next_block:
                for block in self.iter_blocks(next_block, head):
                    yield block
                    if stop_event.is_set():
                        return
                next_block = head + 1
            else:
                stop_event.wait(timeout=self._poll_interval)
