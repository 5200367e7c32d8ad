#!/usr/bin/env python3
"""
Show or reset the sync cursor.

Usage:
    python3 scripts/reset_sync.py --show
    python3 scripts/reset_sync.py --to-block 1200000
    python3 scripts/reset_sync.py --to-deployment

Resetting only moves the cursor.  Events already recorded in the event log
are skipped on replay, so moving backwards re-reads blocks without
re-applying them.
"""

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def main() -> int:
    parser = argparse.ArgumentParser(description="Show or reset the indexer sync cursor.")
    parser.add_argument(
        "--config", type=str, default=None,
        help="Path to the YAML config (default: $PHARMATRACE_CONFIG)",
    )
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--show", action="store_true", help="Print the current cursor")
    group.add_argument("--to-block", type=int, help="Set last processed block")
    group.add_argument(
        "--to-deployment", action="store_true",
        help="Set the cursor just before the deployment block",
    )
    args = parser.parse_args()

    from pharmatrace.config import load_config
    from pharmatrace.db.engine import create_tables, get_session_factory, init_engine_from_url
    from pharmatrace.exceptions import PharmaTraceError
    from pharmatrace.services.sync_cursor import SyncCursor

    try:
        config = load_config(args.config)
    except PharmaTraceError as exc:
        print(f"  ERROR: {exc}", file=sys.stderr)
        return 2

    init_engine_from_url(config.database_url)
    create_tables()
    cursor = SyncCursor(
        get_session_factory(),
        contract_address=config.contract_address,
        chain_id=config.chain_id,
        deployment_block=config.deployment_block,
        stale_after_seconds=config.stale_sync_after_seconds,
    )

    if args.show:
        state = cursor.get()
        print(f"  last_processed_block: {state.last_processed_block}")
        print(f"  is_syncing:           {state.is_syncing}")
        print(f"  last_synced_at:       {state.last_synced_at}")
        return 0

    target = cursor.start_block if args.to_deployment else args.to_block
    try:
        cursor.reset(target)
    except PharmaTraceError as exc:
        print(f"  ERROR: {exc}", file=sys.stderr)
        return 1
    print(f"  cursor reset to block {target}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
