"""
Entitlement store.

Thin SQLAlchemy Core layer over the entitlements, payment_history and
allocation_history tables. Reads outside a transaction go through their own
short-lived session; writes take a caller-owned session so that entitlement
fields and the history rows land in one commit.
"""
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import and_, insert, select, update
from sqlalchemy.orm import Session

from entitlement_sync.core.database import (
    allocation_history,
    entitlements,
    get_db_session,
    payment_history,
)
from entitlement_sync.core.errors import NotFoundError
from entitlement_sync.models.entitlement import (
    EntitlementRecord,
    PaymentHistoryEntry,
    SubscriptionStatus,
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@contextmanager
def transaction() -> Iterator[Session]:
    """Begin/commit/rollback boundary for entitlement writes."""
    with get_db_session() as session:
        yield session


def create_entitlement(
    user_id: str,
    *,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
    email: Optional[str] = None,
    referred_by: Optional[str] = None,
) -> EntitlementRecord:
    """Create the default (inactive, zero quota) record at signup."""
    now = utc_now()
    with get_db_session() as session:
        session.execute(
            insert(entitlements).values(
                user_id=user_id,
                first_name=first_name,
                last_name=last_name,
                email=email,
                referred_by=referred_by,
                subscription_status=SubscriptionStatus.INACTIVE.value,
                requests_remaining=0,
                is_canceled=False,
                has_received_initial_allocation=False,
                created_at=now,
                updated_at=now,
            )
        )
    return get_entitlement(user_id)


def get_entitlement(user_id: str) -> Optional[EntitlementRecord]:
    with get_db_session() as session:
        row = session.execute(
            select(entitlements).where(entitlements.c.user_id == user_id)
        ).mappings().first()
    return EntitlementRecord.from_row(row) if row else None


def find_by_subscription_id(subscription_id: str) -> Optional[EntitlementRecord]:
    with get_db_session() as session:
        row = session.execute(
            select(entitlements).where(entitlements.c.subscription_id == subscription_id)
        ).mappings().first()
    return EntitlementRecord.from_row(row) if row else None


def require_entitlement(user_id: str) -> EntitlementRecord:
    record = get_entitlement(user_id)
    if record is None:
        raise NotFoundError(f"No entitlement record for user {user_id}")
    return record


def lock_entitlement(session: Session, user_id: str) -> Optional[EntitlementRecord]:
    """Read the record inside a transaction, holding a row lock until commit."""
    row = session.execute(
        select(entitlements)
        .where(entitlements.c.user_id == user_id)
        .with_for_update()
    ).mappings().first()
    return EntitlementRecord.from_row(row) if row else None


def update_entitlement(
    session: Session,
    user_id: str,
    values: Dict[str, Any],
    *,
    only_if_subscription_id: Optional[str] = None,
) -> int:
    """
    Update entitlement fields for a user.

    With only_if_subscription_id the update applies only while the stored
    subscription id still matches, so a stale event cannot clobber a newer
    subscription. Returns the number of rows changed.
    """
    condition = entitlements.c.user_id == user_id
    if only_if_subscription_id is not None:
        condition = and_(condition, entitlements.c.subscription_id == only_if_subscription_id)

    payload = dict(values)
    for key, value in payload.items():
        if isinstance(value, SubscriptionStatus):
            payload[key] = value.value
    payload["updated_at"] = utc_now()

    result = session.execute(update(entitlements).where(condition).values(**payload))
    return result.rowcount


def link_customer(user_id: str, customer_id: str) -> None:
    with get_db_session() as session:
        update_entitlement(session, user_id, {"billing_customer_id": customer_id})


def insert_payment_history(
    session: Session,
    *,
    user_id: str,
    amount: int,
    currency: str,
    description: str,
    provider_payment_id: Optional[str],
    payment_status: str = "completed",
    payment_method: str = "card",
) -> None:
    session.execute(
        insert(payment_history).values(
            user_id=user_id,
            amount=amount,
            currency=currency,
            description=description,
            provider_payment_id=provider_payment_id,
            payment_status=payment_status,
            payment_method=payment_method,
            created_at=utc_now(),
        )
    )


def insert_allocation(
    session: Session,
    *,
    user_id: str,
    amount: int,
    allocation_type: str,
    previous_amount: Optional[int],
    now: Optional[datetime] = None,
) -> None:
    session.execute(
        insert(allocation_history).values(
            user_id=user_id,
            amount=amount,
            allocation_type=allocation_type,
            previous_amount=previous_amount,
            created_at=now or utc_now(),
        )
    )


def list_payment_history(user_id: str) -> List[PaymentHistoryEntry]:
    with get_db_session() as session:
        rows = session.execute(
            select(payment_history)
            .where(payment_history.c.user_id == user_id)
            .order_by(payment_history.c.id.asc())
        ).mappings().all()
    return [PaymentHistoryEntry.from_row(row) for row in rows]


def recent_allocations(session: Session, user_id: str, since: datetime) -> int:
    rows = session.execute(
        select(allocation_history.c.id)
        .where(allocation_history.c.user_id == user_id)
        .where(allocation_history.c.created_at > since)
    ).fetchall()
    return len(rows)


def find_due_for_allocation(session: Session, now: datetime) -> List[EntitlementRecord]:
    """Active users past their renewal date who already had their first grant."""
    rows = session.execute(
        select(entitlements)
        .where(entitlements.c.subscription_status == SubscriptionStatus.ACTIVE.value)
        .where(entitlements.c.has_received_initial_allocation.is_(True))
        .where(entitlements.c.renewal_date.is_not(None))
        .where(entitlements.c.renewal_date < now)
        .order_by(entitlements.c.user_id.asc())
    ).mappings().all()
    return [EntitlementRecord.from_row(row) for row in rows]
