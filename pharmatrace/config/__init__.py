"""Indexer configuration: YAML file plus environment overrides."""

from pharmatrace.config.loader import compute_checksum, load_config, normalize_database_url
from pharmatrace.config.schema import AlertSettings, IndexerConfig, RetrySettings, TraceSettings

__all__ = [
    "AlertSettings",
    "IndexerConfig",
    "RetrySettings",
    "TraceSettings",
    "compute_checksum",
    "load_config",
    "normalize_database_url",
]
