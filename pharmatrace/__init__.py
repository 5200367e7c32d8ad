"""
PharmaTrace - event indexing and traceability engine.

Projects an append-only ledger event log into a queryable store:
- Exactly-once application of each ledger log entry
- Crash-safe resumption from a durable block cursor
- Multi-hop batch lineage (upstream and downstream)
- Cascading recall notifications with bounded retries
"""

__version__ = "0.1.0"
