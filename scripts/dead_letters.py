#!/usr/bin/env python3
"""
List dead-lettered events and record operator review.

Usage:
    python3 scripts/dead_letters.py
    python3 scripts/dead_letters.py --all --json
    python3 scripts/dead_letters.py --review 7 --note "replayed manually"
"""

import argparse
import json
import sys
from dataclasses import asdict
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def main() -> int:
    parser = argparse.ArgumentParser(description="Inspect the dead-letter store.")
    parser.add_argument(
        "--config", type=str, default=None,
        help="Path to the YAML config (default: $PHARMATRACE_CONFIG)",
    )
    parser.add_argument("--all", action="store_true", help="Include reviewed entries")
    parser.add_argument("--limit", type=int, default=100)
    parser.add_argument("--json", action="store_true", help="Output JSON")
    parser.add_argument("--review", type=int, default=None, help="Mark an entry reviewed")
    parser.add_argument("--note", type=str, default=None, help="Review note")
    args = parser.parse_args()

    from pharmatrace.config import load_config
    from pharmatrace.db.engine import get_session_factory, init_engine_from_url
    from pharmatrace.exceptions import PharmaTraceError
    from pharmatrace.services.dead_letter_service import DeadLetterService

    try:
        config = load_config(args.config)
    except PharmaTraceError as exc:
        print(f"  ERROR: {exc}", file=sys.stderr)
        return 2

    init_engine_from_url(config.database_url)
    service = DeadLetterService(get_session_factory())

    if args.review is not None:
        try:
            entry = service.mark_reviewed(args.review, args.note)
        except PharmaTraceError as exc:
            print(f"  ERROR: {exc}", file=sys.stderr)
            return 1
        print(f"  dead letter {entry.id} marked reviewed")
        return 0

    entries = service.list_dead_letters(include_reviewed=args.all, limit=args.limit)
    if args.json:
        print(json.dumps([asdict(e) for e in entries], indent=2, default=str))
        return 0
    if not entries:
        print("  (no dead letters)")
    for e in entries:
        mark = "x" if e.reviewed else " "
        print(
            f"  [{mark}] #{e.id} block {e.block_number} {e.event_name} "
            f"{e.transaction_hash}:{e.log_index} attempts={e.attempts}"
        )
        print(f"        {e.error}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
