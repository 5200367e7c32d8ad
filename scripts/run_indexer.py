#!/usr/bin/env python3
"""
Run the event indexer: catch up to the chain head, then follow new blocks.

Usage:
    python3 scripts/run_indexer.py --config config/pharmatrace.yaml
    python3 scripts/run_indexer.py --catch-up-only
    python3 scripts/run_indexer.py --process-tx 0xabc...

The ledger client is built by the ``ledger_factory`` named in the config
("package.module:callable").  The callable receives the IndexerConfig and
returns an object with get_block_number / get_logs / get_transaction_receipt.

SIGINT / SIGTERM let the in-flight block finish, then stop every loop.
"""

import argparse
import importlib
import logging
import signal
import sys
import threading
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def build_ledger_client(config):
    from pharmatrace.exceptions import ConfigError

    if not config.ledger_factory:
        raise ConfigError("ledger_factory", "required to run the indexer")
    module_name, _, attr = config.ledger_factory.partition(":")
    try:
        factory = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as exc:
        raise ConfigError("ledger_factory", f"cannot load {config.ledger_factory}: {exc}") from exc
    return factory(config)


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Run the pharmatrace event indexer.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config", type=str, default=None,
        help="Path to the YAML config (default: $PHARMATRACE_CONFIG)",
    )
    parser.add_argument(
        "--catch-up-only", action="store_true",
        help="Process up to the current head and exit",
    )
    parser.add_argument(
        "--process-tx", type=str, default=None,
        help="Process a single transaction synchronously and exit",
    )
    args = parser.parse_args()

    from pharmatrace.config import load_config
    from pharmatrace.db.engine import create_tables, get_session_factory, init_engine_from_url
    from pharmatrace.exceptions import PharmaTraceError, TransactionRejectedError
    from pharmatrace.logging_config import configure_logging
    from pharmatrace.services.indexer import Indexer

    try:
        config = load_config(args.config)
    except PharmaTraceError as exc:
        print(f"  ERROR: {exc}", file=sys.stderr)
        return 2

    configure_logging(level=getattr(logging, config.log_level))
    init_engine_from_url(config.database_url)
    create_tables()

    try:
        client = build_ledger_client(config)
    except PharmaTraceError as exc:
        print(f"  ERROR: {exc}", file=sys.stderr)
        return 2

    indexer = Indexer(config, client, get_session_factory())

    if args.process_tx:
        try:
            result = indexer.process_transaction(args.process_tx)
        except TransactionRejectedError as exc:
            for failure in exc.failures:
                print(f"  REJECTED: {failure}", file=sys.stderr)
            return 1
        except PharmaTraceError as exc:
            print(f"  ERROR: {exc}", file=sys.stderr)
            return 1
        print(
            f"  {result.transaction_hash}: processed={result.processed} "
            f"skipped={result.skipped} retrying={result.retrying}"
        )
        return 0

    if args.catch_up_only:
        indexer.cursor.ensure()
        if not indexer.cursor.try_enter_sync():
            print("  ERROR: another indexer holds the sync flag", file=sys.stderr)
            return 1
        try:
            report = indexer.catch_up()
        except PharmaTraceError as exc:
            print(f"  ERROR: {exc}", file=sys.stderr)
            return 1
        finally:
            indexer.cursor.exit_sync()
        print(
            f"  blocks {report.from_block}..{report.to_block}: processed={report.processed} "
            f"failed={report.failed} retrying={report.retrying} cursor={report.cursor}"
        )
        return 0

    done = threading.Event()

    def _shutdown(signum, frame):
        done.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    try:
        indexer.start_sync()
    except PharmaTraceError as exc:
        print(f"  ERROR: {exc}", file=sys.stderr)
        return 1

    done.wait()
    indexer.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
