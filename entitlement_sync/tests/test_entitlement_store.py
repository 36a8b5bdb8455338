"""Entitlement store: defaults, scoped updates, history, transactions."""
from datetime import datetime, timedelta, timezone

import pytest

from entitlement_sync.core.errors import NotFoundError
from entitlement_sync.features.entitlements import store
from entitlement_sync.models.entitlement import SubscriptionStatus


def test_signup_creates_default_record(user):
    assert user.subscription_status == SubscriptionStatus.INACTIVE
    assert user.requests_remaining == 0
    assert user.subscription_plan is None
    assert user.subscription_id is None
    assert user.billing_customer_id is None
    assert user.is_canceled is False
    assert user.has_received_initial_allocation is False
    assert user.display_name == "Amina Khan"


def test_require_entitlement_raises_for_unknown_user():
    with pytest.raises(NotFoundError):
        store.require_entitlement("missing-user")


def test_update_scoped_by_subscription_id(user):
    with store.transaction() as session:
        store.update_entitlement(
            session,
            user.user_id,
            {"subscription_status": SubscriptionStatus.ACTIVE, "subscription_id": "sub_new"},
        )

    with store.transaction() as session:
        changed = store.update_entitlement(
            session,
            user.user_id,
            {"subscription_status": SubscriptionStatus.INACTIVE, "subscription_id": None},
            only_if_subscription_id="sub_old",
        )

    assert changed == 0
    record = store.get_entitlement(user.user_id)
    assert record.subscription_status == SubscriptionStatus.ACTIVE
    assert record.subscription_id == "sub_new"


def test_transaction_rolls_back_fields_and_history_together(user):
    with pytest.raises(RuntimeError):
        with store.transaction() as session:
            store.update_entitlement(session, user.user_id, {"requests_remaining": 10})
            store.insert_payment_history(
                session,
                user_id=user.user_id,
                amount=999,
                currency="gbp",
                description="Payment for Monthly Plan",
                provider_payment_id="pi_1",
            )
            raise RuntimeError("store write failed")

    assert store.get_entitlement(user.user_id).requests_remaining == 0
    assert store.list_payment_history(user.user_id) == []


def test_payment_history_is_append_only_log(user):
    with store.transaction() as session:
        for _ in range(2):
            store.insert_payment_history(
                session,
                user_id=user.user_id,
                amount=999,
                currency="gbp",
                description="Payment for Monthly Plan",
                provider_payment_id="pi_dup",
            )

    history = store.list_payment_history(user.user_id)
    assert [entry.provider_payment_id for entry in history] == ["pi_dup", "pi_dup"]
    assert history[0].payment_status == "completed"
    assert history[0].payment_method == "card"


def test_link_customer_and_lookup_by_subscription(user):
    store.link_customer(user.user_id, "cus_42")
    with store.transaction() as session:
        store.update_entitlement(session, user.user_id, {"subscription_id": "sub_9"})

    assert store.get_entitlement(user.user_id).billing_customer_id == "cus_42"
    assert store.find_by_subscription_id("sub_9").user_id == user.user_id
    assert store.find_by_subscription_id("sub_other") is None


def test_renewal_date_comes_back_timezone_aware(user):
    renewal = datetime(2030, 5, 1, tzinfo=timezone.utc)
    with store.transaction() as session:
        store.update_entitlement(session, user.user_id, {"renewal_date": renewal})

    assert store.get_entitlement(user.user_id).renewal_date == renewal


def test_recent_allocations_counts_window(user):
    now = datetime(2030, 5, 1, 12, 0, tzinfo=timezone.utc)
    with store.transaction() as session:
        store.insert_allocation(
            session,
            user_id=user.user_id,
            amount=10,
            allocation_type="monthly",
            previous_amount=0,
            now=now - timedelta(hours=2),
        )
        store.insert_allocation(
            session,
            user_id=user.user_id,
            amount=10,
            allocation_type="monthly",
            previous_amount=0,
            now=now - timedelta(days=3),
        )

    with store.transaction() as session:
        assert store.recent_allocations(session, user.user_id, now - timedelta(hours=24)) == 1
