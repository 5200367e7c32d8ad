"""
Indexer configuration schema.

Frozen dataclasses produced by the loader.  Defaults match a single-instance
deployment against one contract.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from pharmatrace.domain.status import ParticipantRole

# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RetrySettings:
    """Event-application retry pipeline."""

    max_attempts: int = 3
    base_delay_seconds: float = 2.0
    concurrency: int = 5
    rate_per_second: float = 10.0
    poll_interval_seconds: float = 1.0


@dataclass(frozen=True)
class AlertSettings:
    max_attempts: int = 3
    base_delay_seconds: float = 2.0
    poll_interval_seconds: float = 5.0
    batch_size: int = 100


@dataclass(frozen=True)
class TraceSettings:
    max_depth: int = 1000
    max_nodes: int = 10000
    search_page_size: int = 50


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class IndexerConfig:
    database_url: str = "sqlite:///pharmatrace.db"
    contract_address: str | None = None
    chain_id: int | None = None
    deployment_block: int = 0
    chunk_size: int = 1000
    poll_interval_seconds: float = 5.0
    stale_sync_after_seconds: float = 600.0
    reset_on_rewind: bool = False
    ipfs_gateway: str | None = None
    ledger_factory: str | None = None  # "package.module:callable"
    log_level: str = "INFO"
    participants: dict[str, ParticipantRole] = field(default_factory=dict)
    retry: RetrySettings = field(default_factory=RetrySettings)
    alerts: AlertSettings = field(default_factory=AlertSettings)
    trace: TraceSettings = field(default_factory=TraceSettings)

    def role_of(self, address: str) -> ParticipantRole:
        return self.participants.get(address.lower(), ParticipantRole.UNKNOWN)
