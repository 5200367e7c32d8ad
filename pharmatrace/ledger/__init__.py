"""Ledger boundary: client protocol, chunked event source, manifest fetcher."""

from pharmatrace.ledger.ipfs import ManifestFetcher
from pharmatrace.ledger.source import BlockLogs, EventSource, LedgerClient

__all__ = ["BlockLogs", "EventSource", "LedgerClient", "ManifestFetcher"]
