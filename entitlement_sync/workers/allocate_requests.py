"""Monthly request allocation job.

Usage:
    python -m entitlement_sync.workers.allocate_requests --once
    python -m entitlement_sync.workers.allocate_requests --loop

Environment flags:
- ALLOCATION_LOOP_SECONDS (default 3600)
"""
from __future__ import annotations

import argparse
import os
import time

from entitlement_sync.core.config import settings
from entitlement_sync.core.logging import configure_logging
from entitlement_sync.features.billing.allocation import allocate_monthly_requests


DEFAULT_LOOP_SECONDS = int(os.getenv("ALLOCATION_LOOP_SECONDS", "3600") or 3600)


def main() -> None:
    parser = argparse.ArgumentParser(description="Monthly request allocation")
    parser.add_argument("--once", action="store_true", help="Run one allocation pass and exit")
    parser.add_argument("--loop", action="store_true", help="Run in continuous loop")
    parser.add_argument(
        "--sleep",
        type=int,
        default=DEFAULT_LOOP_SECONDS,
        help="Seconds to sleep between passes (when --loop)",
    )
    args = parser.parse_args()

    configure_logging(settings.ENV)

    if args.once or not args.loop:
        summary = allocate_monthly_requests()
        print(f"[allocation] Allocated: {len(summary.allocated)}, skipped: {len(summary.skipped)}")
        return

    print(f"[allocation] Starting loop (sleep={args.sleep}s). CTRL+C to stop.")
    try:
        while True:
            summary = allocate_monthly_requests()
            if summary.allocated:
                print(f"[allocation] Allocated {len(summary.allocated)} users")
            time.sleep(args.sleep)
    except KeyboardInterrupt:
        print("[allocation] Stopped")


if __name__ == "__main__":
    main()
