"""Ledger sweep worker: scheduled plan changes, then earning maturation.

Usage:
    python -m marketplace.workers.ledger_sweeps --once
    python -m marketplace.workers.ledger_sweeps --loop

Both sweeps are idempotent, so an interrupted run is simply repeated on the
next cycle.
"""
from __future__ import annotations

import argparse
import logging
import time
from datetime import datetime
from typing import Dict, Optional

from marketplace.core.config import settings
from marketplace.core.logging import configure_logging
from marketplace.features.orders.lifecycle import mature_earnings
from marketplace.features.subscriptions.service import materialize_scheduled_changes

logger = logging.getLogger("marketplace.workers.sweeps")


def run_sweeps_once(now: Optional[datetime] = None, batch_size: Optional[int] = None) -> Dict:
    plan_report = materialize_scheduled_changes(now, batch_size=batch_size)
    maturation_report = mature_earnings(now, batch_size=batch_size)
    summary = {
        "plan_changes": plan_report.processed,
        "matured": maturation_report.processed,
        "failures": len(plan_report.failures) + len(maturation_report.failures),
    }
    logger.info("[sweeps] cycle complete", extra={"status": "ok" if not summary["failures"] else "partial"})
    return summary


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Ledger sweep worker")
    parser.add_argument("--once", action="store_true", help="Run both sweeps once and exit")
    parser.add_argument("--loop", action="store_true", help="Run in continuous loop")
    parser.add_argument("--limit", type=int, default=settings.SWEEP_BATCH_SIZE, help="Batch size per sweep")
    parser.add_argument(
        "--sleep",
        type=int,
        default=settings.SWEEP_INTERVAL_SECONDS,
        help="Seconds to sleep between loops (when --loop)",
    )
    args = parser.parse_args(argv)
    configure_logging(settings.ENV)

    if args.once:
        summary = run_sweeps_once(batch_size=args.limit)
        print(f"[sweeps] plan changes: {summary['plan_changes']}, matured: {summary['matured']}, failures: {summary['failures']}")
        return

    # Default to loop mode when not explicitly once
    print(f"[sweeps] Starting loop (sleep={args.sleep}s, batch={args.limit}). CTRL+C to stop.")
    try:
        while True:
            try:
                run_sweeps_once(batch_size=args.limit)
            except Exception:
                # Failed cycles are retried on the next tick
                logger.exception("[sweeps] cycle failed")
            time.sleep(args.sleep)
    except KeyboardInterrupt:
        print("[sweeps] Stopped")


if __name__ == "__main__":
    main()
