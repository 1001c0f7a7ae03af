"""Pending transaction reconciliation worker.

Settles checkouts whose client callback and webhook never arrived by asking
the gateway about the order.

Usage:
    python -m invoiz.workers.reconcile_pending --once
    python -m invoiz.workers.reconcile_pending --loop --sleep 300

Settings:
- RECONCILE_MIN_AGE_MINUTES (default 10)
- RECONCILE_BATCH_SIZE (default 100)
"""
from __future__ import annotations

import argparse
import time
from typing import Dict, Optional, Sequence

from invoiz.core.config import get_settings
from invoiz.core.database import init_engine
from invoiz.core.errors import UpstreamUnavailableError
from invoiz.core.logging import configure_logging, log_event
from invoiz.features.billing.service import reconcile_pending


DEFAULT_LOOP_SECONDS = 300


def run_once(limit: Optional[int] = None, min_age: Optional[int] = None) -> Dict[str, int]:
    stats = reconcile_pending(min_age_minutes=min_age, limit=limit)
    log_event("info", "reconcile.run", event_type="reconcile", extra=stats)
    return stats


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Pending transaction reconciliation worker")
    parser.add_argument("--once", action="store_true", help="Process one batch and exit")
    parser.add_argument("--loop", action="store_true", help="Run in continuous loop")
    parser.add_argument("--limit", type=int, default=None, help="Batch size per iteration")
    parser.add_argument("--min-age", type=int, default=None, help="Only entries older than N minutes")
    parser.add_argument(
        "--sleep",
        type=int,
        default=DEFAULT_LOOP_SECONDS,
        help="Seconds to sleep between loops (when --loop)",
    )
    args = parser.parse_args(argv)

    configure_logging(get_settings().ENV)
    init_engine()

    try:
        if not args.loop:
            stats = run_once(limit=args.limit, min_age=args.min_age)
            print(f"[reconcile] {stats}")
            return 0

        print(f"[reconcile] Starting loop (sleep={args.sleep}s). CTRL+C to stop.")
        while True:
            run_once(limit=args.limit, min_age=args.min_age)
            time.sleep(args.sleep)
    except UpstreamUnavailableError as e:
        print(f"[reconcile] Billing unavailable: {e.message}")
        return 1
    except KeyboardInterrupt:
        print("[reconcile] Stopped")
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
