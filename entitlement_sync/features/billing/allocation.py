"""
Monthly request allocation.

Active recurring users whose renewal date has passed get their quota reset
to the plan allowance and their renewal date moved a month out. A user with
an allocation in the last ALLOCATION_DEDUP_HOURS only gets the date moved.
"""
import calendar
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from entitlement_sync.core.config import settings
from entitlement_sync.core.logging import log_event
from entitlement_sync.features.entitlements import store
from entitlement_sync.models.plan import parse_plan, plan_rule, quota_for


@dataclass
class AllocationSummary:
    allocated: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)


def add_one_month(value: datetime) -> datetime:
    year = value.year + value.month // 12
    month = value.month % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def allocate_monthly_requests(now: Optional[datetime] = None) -> AllocationSummary:
    now = now or store.utc_now()
    since = now - timedelta(hours=settings.ALLOCATION_DEDUP_HOURS)
    next_renewal = add_one_month(now)
    summary = AllocationSummary()

    with store.transaction() as session:
        due = store.find_due_for_allocation(session, now)

    for record in due:
        rule = plan_rule(parse_plan(record.subscription_plan))
        if not rule.is_recurring or rule.is_unlimited:
            summary.skipped.append(record.user_id)
            continue

        with store.transaction() as session:
            current = store.lock_entitlement(session, record.user_id)
            if current is None:
                continue

            if store.recent_allocations(session, record.user_id, since):
                store.update_entitlement(session, record.user_id, {"renewal_date": next_renewal})
                summary.skipped.append(record.user_id)
                log_event(
                    "info",
                    "billing.allocation_skipped_recent",
                    user_id=record.user_id,
                )
                continue

            quota = quota_for(rule.kind)
            store.update_entitlement(
                session,
                record.user_id,
                {
                    "requests_remaining": quota,
                    "renewal_date": next_renewal,
                    "last_allocation_at": now,
                },
            )
            store.insert_allocation(
                session,
                user_id=record.user_id,
                amount=quota,
                allocation_type="monthly",
                previous_amount=current.requests_remaining,
                now=now,
            )
        summary.allocated.append(record.user_id)

    log_event(
        "info",
        "billing.allocation_run",
        extra={"allocated": len(summary.allocated), "skipped": len(summary.skipped)},
    )
    return summary
