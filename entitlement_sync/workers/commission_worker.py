"""Referral commission worker.

Usage:
    python -m entitlement_sync.workers.commission_worker
    python -m entitlement_sync.workers.commission_worker --burst

Environment flags:
- REDIS_URL (default redis://localhost:6379)
- COMMISSION_QUEUE_ENABLED (0/1) default 0
"""
from __future__ import annotations

import argparse

from redis import Redis
from rq import Worker

from entitlement_sync.core.config import settings
from entitlement_sync.core.logging import configure_logging
from entitlement_sync.features.referrals.publisher import get_queue


def build_worker(redis_url: str | None = None) -> Worker:
    queue = get_queue(redis_url)
    return Worker([queue], connection=Redis.from_url(redis_url or settings.REDIS_URL))


def main() -> None:
    parser = argparse.ArgumentParser(description="Referral commission worker")
    parser.add_argument("--burst", action="store_true", help="Drain the queue once and exit")
    parser.add_argument("--redis-url", default=None, help="Override REDIS_URL")
    args = parser.parse_args()

    configure_logging(settings.ENV)

    if not settings.COMMISSION_QUEUE_ENABLED:
        print("[commission-worker] Queue disabled (COMMISSION_QUEUE_ENABLED=0). Exiting.")
        return

    worker = build_worker(args.redis_url)
    print(f"[commission-worker] Listening on '{get_queue(args.redis_url).name}'. CTRL+C to stop.")
    worker.work(burst=args.burst)


if __name__ == "__main__":
    main()
