"""Webhook ingestion: signature gate, event dedup, handlers, failure bookkeeping."""
import pytest
from sqlalchemy import select

from entitlement_sync.core.database import billing_events, get_db_session
from entitlement_sync.core.errors import BillingDisabledError
from entitlement_sync.features.billing.provider import BillingProviderError, BillingWebhookError
from entitlement_sync.features.billing.webhooks import ingest
from entitlement_sync.features.entitlements import store
from entitlement_sync.models.entitlement import SubscriptionStatus
from entitlement_sync.models.plan import UNLIMITED_REQUESTS
from entitlement_sync.tests.mocks import PERIOD_END, VALID_SIGNATURE, FakeBillingProvider, event_body


@pytest.fixture
def provider():
    return FakeBillingProvider()


def _event_row(event_id):
    with get_db_session() as session:
        return session.execute(
            select(billing_events).where(billing_events.c.stripe_event_id == event_id)
        ).mappings().first()


def _activate(user_id, subscription_id, plan="Monthly Plan", requests=10):
    with store.transaction() as session:
        store.update_entitlement(
            session,
            user_id,
            {
                "subscription_status": SubscriptionStatus.ACTIVE,
                "subscription_plan": plan,
                "subscription_id": subscription_id,
                "requests_remaining": requests,
            },
        )


def _intent_event(user_id, **fields):
    obj = {
        "id": "pi_hook",
        "object": "payment_intent",
        "status": "succeeded",
        "amount": 9999,
        "currency": "gbp",
        "customer": None,
        "metadata": {"user_id": user_id, "plan_name": "Unlimited Plan"},
    }
    obj.update(fields)
    return obj


def test_invalid_signature_is_rejected(user, provider):
    body = event_body("evt_bad", "payment_intent.succeeded", _intent_event(user.user_id))

    with pytest.raises(BillingWebhookError):
        ingest(body, "t=1,v1=forged", provider=provider)

    assert _event_row("evt_bad") is None
    assert store.get_entitlement(user.user_id).requests_remaining == 0


def test_billing_disabled(billing_disabled):
    with pytest.raises(BillingDisabledError):
        ingest(b"{}", VALID_SIGNATURE)


def test_unhandled_event_type_is_acknowledged(provider):
    body = event_body("evt_other", "charge.refunded", {"id": "ch_1"})

    ack = ingest(body, VALID_SIGNATURE, provider=provider)

    assert ack.handled is False
    assert ack.duplicate is False
    row = _event_row("evt_other")
    assert row["processed"] is True
    assert row["event_type"] == "charge.refunded"
    assert len(row["payload_hash"]) == 64


def test_payment_intent_succeeded_applies_purchase(user, provider):
    body = event_body("evt_pi", "payment_intent.succeeded", _intent_event(user.user_id))

    ack = ingest(body, VALID_SIGNATURE, provider=provider)

    assert ack.handled is True
    record = store.get_entitlement(user.user_id)
    assert record.subscription_status == SubscriptionStatus.ACTIVE
    assert record.subscription_plan == "Unlimited Plan"
    assert record.requests_remaining == UNLIMITED_REQUESTS
    history = store.list_payment_history(user.user_id)
    assert len(history) == 1
    assert history[0].amount == 9999
    assert history[0].provider_payment_id == "pi_hook"
    assert _event_row("evt_pi")["processed"] is True


def test_duplicate_delivery_is_skipped(user, provider):
    body = event_body("evt_dup", "payment_intent.succeeded", _intent_event(user.user_id))

    first = ingest(body, VALID_SIGNATURE, provider=provider)
    second = ingest(body, VALID_SIGNATURE, provider=provider)

    assert first.duplicate is False
    assert second.duplicate is True
    assert second.handled is False
    assert len(store.list_payment_history(user.user_id)) == 1


def test_same_purchase_under_new_event_id_is_already_processed(user, provider):
    ingest(event_body("evt_a", "payment_intent.succeeded", _intent_event(user.user_id)), VALID_SIGNATURE, provider=provider)
    ingest(event_body("evt_b", "payment_intent.succeeded", _intent_event(user.user_id)), VALID_SIGNATURE, provider=provider)

    assert len(store.list_payment_history(user.user_id)) == 1


def test_payment_intent_falls_back_to_description(user, provider):
    obj = _intent_event(
        user.user_id,
        metadata={},
        description=f"Limited Offer - Unlimited Plan for App user: {user.user_id}",
    )

    ack = ingest(event_body("evt_desc", "payment_intent.succeeded", obj), VALID_SIGNATURE, provider=provider)

    assert ack.handled is True
    record = store.get_entitlement(user.user_id)
    assert record.subscription_plan == "Limited Offer - Unlimited Plan"
    assert record.requests_remaining == UNLIMITED_REQUESTS


def test_payment_intent_without_user_is_ignored(user, provider):
    obj = _intent_event(user.user_id, metadata={}, description="Top-up")

    ack = ingest(event_body("evt_anon", "payment_intent.succeeded", obj), VALID_SIGNATURE, provider=provider)

    assert ack.handled is False
    assert _event_row("evt_anon")["processed"] is True
    assert store.list_payment_history(user.user_id) == []


def test_recurring_payment_intent_creates_subscription(user, provider):
    obj = _intent_event(
        user.user_id,
        customer="cus_pay",
        amount=999,
        metadata={"user_id": user.user_id, "plan_name": "Monthly Plan", "price_id": "price_monthly"},
    )

    ingest(event_body("evt_rec", "payment_intent.succeeded", obj), VALID_SIGNATURE, provider=provider)

    created = [call for call in provider.calls if call[0] == "create_subscription"]
    assert created == [("create_subscription", "cus_pay", "price_monthly", False)]
    record = store.get_entitlement(user.user_id)
    assert record.subscription_id is not None
    assert record.subscription_id in provider.subscriptions
    assert record.requests_remaining == 10
    assert record.renewal_date == PERIOD_END
    assert record.billing_customer_id == "cus_pay"


def test_recurring_payment_intent_reuses_active_subscription(user, provider):
    existing = provider.add_subscription("active", customer_id="cus_pay")
    obj = _intent_event(
        user.user_id,
        customer="cus_pay",
        metadata={"user_id": user.user_id, "plan_name": "Monthly Plan", "price_id": "price_monthly"},
    )

    ingest(event_body("evt_reuse", "payment_intent.succeeded", obj), VALID_SIGNATURE, provider=provider)

    assert "create_subscription" not in provider.call_names()
    assert store.get_entitlement(user.user_id).subscription_id == existing.id


def test_unknown_user_is_acknowledged_with_error(provider):
    obj = _intent_event("3f1d2c4b-0000-4000-8000-000000000000")

    ack = ingest(event_body("evt_ghost", "payment_intent.succeeded", obj), VALID_SIGNATURE, provider=provider)

    assert ack.handled is False
    row = _event_row("evt_ghost")
    assert row["processed"] is True
    assert "No entitlement record" in row["error"]


def test_checkout_subscription_mode_activates(user, provider):
    sub = provider.add_subscription("active", product_name="Annual Plan", customer_id="cus_co", unit_amount=7499)
    obj = {
        "id": "cs_1",
        "object": "checkout.session",
        "mode": "subscription",
        "customer": "cus_co",
        "subscription": sub.id,
        "client_reference_id": user.user_id,
    }

    ack = ingest(event_body("evt_co", "checkout.session.completed", obj), VALID_SIGNATURE, provider=provider)

    assert ack.handled is True
    record = store.get_entitlement(user.user_id)
    assert record.subscription_plan == "Annual Plan"
    assert record.subscription_id == sub.id
    assert record.requests_remaining == 15
    history = store.list_payment_history(user.user_id)
    assert history[0].description == "Subscription payment - Annual Plan"
    assert history[0].amount == 7499


def test_checkout_resolves_user_from_customer_marker(user, provider):
    provider.add_customer(id="cus_marked", description=f"App user: {user.user_id}")
    sub = provider.add_subscription("active", customer_id="cus_marked")
    obj = {
        "id": "cs_2",
        "mode": "subscription",
        "customer": "cus_marked",
        "subscription": sub.id,
        "metadata": {"planName": "Monthly Plan"},
    }

    ingest(event_body("evt_marker", "checkout.session.completed", obj), VALID_SIGNATURE, provider=provider)

    assert store.get_entitlement(user.user_id).subscription_id == sub.id


def test_checkout_payment_mode_is_ignored(user, provider):
    obj = {"id": "cs_3", "mode": "payment", "client_reference_id": user.user_id}

    ack = ingest(event_body("evt_pay_mode", "checkout.session.completed", obj), VALID_SIGNATURE, provider=provider)

    assert ack.handled is False
    assert store.get_entitlement(user.user_id).subscription_status == SubscriptionStatus.INACTIVE


def test_invoice_renewal_replenishes_every_time(user, provider):
    provider.add_customer(id="cus_renew", description=f"App user: {user.user_id}")
    sub = provider.add_subscription("active", customer_id="cus_renew")
    _activate(user.user_id, sub.id, requests=10)

    for number in (1, 2):
        invoice = {
            "id": f"in_cycle_{number}",
            "subscription": sub.id,
            "amount_paid": 999,
            "currency": "gbp",
            "billing_reason": "subscription_cycle",
        }
        ingest(event_body(f"evt_cycle_{number}", "invoice.payment_succeeded", invoice), VALID_SIGNATURE, provider=provider)

    record = store.get_entitlement(user.user_id)
    assert record.requests_remaining == 10
    assert record.renewal_date == PERIOD_END
    history = store.list_payment_history(user.user_id)
    assert [entry.provider_payment_id for entry in history] == ["in_cycle_1", "in_cycle_2"]
    assert history[0].description == "Subscription renewal - Monthly Plan"


def test_invoice_renewal_resets_spent_quota(user, provider):
    sub = provider.add_subscription("active")
    _activate(user.user_id, sub.id, requests=1)
    invoice = {"id": "in_cycle", "subscription": sub.id, "amount_paid": 999, "billing_reason": "subscription_cycle"}

    ack = ingest(event_body("evt_spent", "invoice.payment_succeeded", invoice), VALID_SIGNATURE, provider=provider)

    # No customer marker: resolved through the stored subscription id
    assert ack.handled is True
    assert store.get_entitlement(user.user_id).requests_remaining == 10


def _first_invoice(subscription_id, invoice_id="in_first"):
    return {
        "id": invoice_id,
        "subscription": subscription_id,
        "amount_paid": 999,
        "currency": "gbp",
        "billing_reason": "subscription_create",
        "payment_intent": "pi_first",
    }


def test_first_invoice_activates_checkout_subscription(user, provider):
    provider.add_customer(id="cus_x", description=f"App user: {user.user_id}")
    sub = provider.add_subscription("active", customer_id="cus_x")
    # The first invoice's intent carries no metadata, only a generic description
    intent = _intent_event(None, id="pi_first", amount=999, customer="cus_x", metadata={}, description="Subscription creation")

    intent_ack = ingest(event_body("evt_pi", "payment_intent.succeeded", intent), VALID_SIGNATURE, provider=provider)
    ack = ingest(event_body("evt_first", "invoice.payment_succeeded", _first_invoice(sub.id)), VALID_SIGNATURE, provider=provider)

    assert intent_ack.handled is False
    assert ack.handled is True
    record = store.get_entitlement(user.user_id)
    assert record.subscription_status == SubscriptionStatus.ACTIVE
    assert record.subscription_plan == "Monthly Plan"
    assert record.subscription_id == sub.id
    assert record.requests_remaining == 10
    assert record.renewal_date == PERIOD_END
    assert record.billing_customer_id == "cus_x"

    history = store.list_payment_history(user.user_id)
    assert len(history) == 1
    assert history[0].amount == 999
    assert history[0].provider_payment_id == "pi_first"


def test_first_invoice_reads_subscription_metadata(user, provider):
    sub = provider.add_subscription(
        "active",
        product_name="Something else",
        metadata={"user_id": user.user_id, "plan_name": "Annual Plan"},
    )

    ack = ingest(event_body("evt_meta", "invoice.payment_succeeded", _first_invoice(sub.id)), VALID_SIGNATURE, provider=provider)

    assert ack.handled is True
    record = store.get_entitlement(user.user_id)
    assert record.subscription_plan == "Annual Plan"
    assert record.requests_remaining == 15


def test_first_invoice_after_activation_is_a_no_op(user, provider):
    sub = provider.add_subscription("active", metadata={"user_id": user.user_id, "plan_name": "Monthly Plan"})
    ingest(event_body("evt_a", "invoice.payment_succeeded", _first_invoice(sub.id)), VALID_SIGNATURE, provider=provider)
    with store.transaction() as session:
        store.update_entitlement(session, user.user_id, {"requests_remaining": 4})

    ack = ingest(event_body("evt_b", "invoice.payment_succeeded", _first_invoice(sub.id)), VALID_SIGNATURE, provider=provider)

    assert ack.handled is True
    assert ack.duplicate is False
    assert store.get_entitlement(user.user_id).requests_remaining == 4
    assert len(store.list_payment_history(user.user_id)) == 1


def test_subscription_deleted_deactivates_current(user, provider):
    _activate(user.user_id, "sub_live")
    obj = {"id": "sub_live", "object": "subscription", "status": "canceled"}

    ack = ingest(event_body("evt_del", "customer.subscription.deleted", obj), VALID_SIGNATURE, provider=provider)

    assert ack.handled is True
    record = store.get_entitlement(user.user_id)
    assert record.subscription_status == SubscriptionStatus.INACTIVE
    assert record.subscription_id is None


def test_stale_subscription_deleted_leaves_newer_subscription(user, provider):
    provider.add_customer(id="cus_both", description=f"App user: {user.user_id}")
    _activate(user.user_id, "sub_new", plan="Annual Plan", requests=15)
    obj = {"id": "sub_old", "object": "subscription", "status": "canceled", "customer": "cus_both"}

    ack = ingest(event_body("evt_stale", "customer.subscription.deleted", obj), VALID_SIGNATURE, provider=provider)

    assert ack.handled is False
    record = store.get_entitlement(user.user_id)
    assert record.subscription_status == SubscriptionStatus.ACTIVE
    assert record.subscription_id == "sub_new"
    assert record.requests_remaining == 15


def test_handler_failure_is_recorded_and_retried(user, provider):
    sub = provider.add_subscription("active")
    _activate(user.user_id, sub.id, requests=2)
    invoice = {"id": "in_retry", "subscription": sub.id, "amount_paid": 999, "billing_reason": "subscription_cycle"}
    body = event_body("evt_retry", "invoice.payment_succeeded", invoice)

    provider.fail_with = BillingProviderError("Stripe subscription retrieval failed: timeout")
    with pytest.raises(BillingProviderError):
        ingest(body, VALID_SIGNATURE, provider=provider)

    row = _event_row("evt_retry")
    assert row["processed"] is False
    assert "timeout" in row["error"]
    assert store.get_entitlement(user.user_id).requests_remaining == 2

    provider.fail_with = None
    ack = ingest(body, VALID_SIGNATURE, provider=provider)

    assert ack.duplicate is False
    assert ack.handled is True
    assert _event_row("evt_retry")["processed"] is True
    assert store.get_entitlement(user.user_id).requests_remaining == 10
