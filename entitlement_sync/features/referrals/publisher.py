"""
Referral commission publisher.

Published after an activation commits, never inside the transaction.
With COMMISSION_QUEUE_ENABLED the delivery job goes onto an RQ queue and
runs in workers/commission_worker.py; otherwise it is delivered inline.
Delivery failures are logged and dropped.
"""
from dataclasses import dataclass
from typing import Optional

import httpx
from redis import Redis
from rq import Queue

from entitlement_sync.core.config import settings
from entitlement_sync.core.logging import log_event


COMMISSION_QUEUE_NAME = "commissions"


@dataclass(frozen=True)
class CommissionEvent:
    user_id: str
    referral_code: str
    plan_name: str


def get_queue(redis_url: Optional[str] = None) -> Queue:
    redis_conn = Redis.from_url(redis_url or settings.REDIS_URL)
    return Queue(COMMISSION_QUEUE_NAME, connection=redis_conn)


def deliver_commission(user_id: str, referral_code: str, plan_name: str) -> bool:
    """
    POST the commission trigger to the affiliate service.

    Runs as the RQ job body, so it takes plain arguments.
    Raises httpx.HTTPError on transport or non-2xx responses.
    """
    url = settings.AFFILIATE_COMMISSION_URL
    if not url:
        log_event(
            "info",
            "referral.commission_skipped",
            user_id=user_id,
            extra={"reason": "AFFILIATE_COMMISSION_URL not configured"},
        )
        return False

    headers = {"Content-Type": "application/json"}
    if settings.AFFILIATE_COMMISSION_TOKEN:
        headers["Authorization"] = f"Bearer {settings.AFFILIATE_COMMISSION_TOKEN}"

    response = httpx.post(
        url,
        json={
            "userId": user_id,
            "referralCode": referral_code,
            "planName": plan_name,
            "forceProcess": True,
        },
        headers=headers,
        timeout=settings.AFFILIATE_COMMISSION_TIMEOUT_SECONDS,
    )
    response.raise_for_status()
    log_event(
        "info",
        "referral.commission_delivered",
        user_id=user_id,
        extra={"referral_code": referral_code, "plan_name": plan_name},
    )
    return True


def publish_commission(event: CommissionEvent, queue: Optional[Queue] = None) -> None:
    """Hand a commission event to the queue (or deliver it inline)."""
    try:
        if settings.COMMISSION_QUEUE_ENABLED:
            target = queue or get_queue()
            job = target.enqueue(
                deliver_commission,
                event.user_id,
                event.referral_code,
                event.plan_name,
                job_timeout="2m",
                result_ttl=3600,
            )
            log_event(
                "info",
                "referral.commission_enqueued",
                user_id=event.user_id,
                extra={"job_id": job.id},
            )
        else:
            deliver_commission(event.user_id, event.referral_code, event.plan_name)
    except Exception as e:
        log_event(
            "warning",
            "referral.commission_failed",
            user_id=event.user_id,
            error_code=type(e).__name__,
            extra={"error": str(e), "referral_code": event.referral_code},
        )
