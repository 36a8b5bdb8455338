"""StripeProvider: webhook verification, object conversion, error mapping."""
import hashlib
import hmac
import json
import time
from datetime import datetime, timezone

import pytest
import stripe

from entitlement_sync.features.billing.provider import (
    BillingProviderError,
    BillingWebhookError,
    CardError,
    ResourceMissingError,
)
from entitlement_sync.features.billing.stripe_provider import (
    StripeProvider,
    to_invoice,
    to_subscription,
)


WEBHOOK_SECRET = "whsec_test123"


def _sign(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


@pytest.fixture
def provider():
    return StripeProvider(secret_key="sk_test_123", webhook_secret=WEBHOOK_SECRET)


def test_requires_secret_key(monkeypatch):
    from entitlement_sync.core.config import settings

    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", None)
    with pytest.raises(BillingProviderError):
        StripeProvider(secret_key=None)


def test_construct_event_accepts_valid_signature(provider):
    payload = json.dumps({
        "id": "evt_1",
        "type": "payment_intent.succeeded",
        "data": {"object": {"id": "pi_1", "status": "succeeded"}},
    })

    event = provider.construct_event(payload.encode("utf-8"), _sign(payload))

    assert event.id == "evt_1"
    assert event.type == "payment_intent.succeeded"
    assert event.data["id"] == "pi_1"


def test_construct_event_rejects_wrong_secret(provider):
    payload = json.dumps({"id": "evt_1", "type": "invoice.payment_succeeded", "data": {"object": {}}})

    with pytest.raises(BillingWebhookError):
        provider.construct_event(payload.encode("utf-8"), _sign(payload, secret="whsec_other"))


def test_construct_event_rejects_tampered_body(provider):
    payload = json.dumps({"id": "evt_1", "type": "invoice.payment_succeeded", "data": {"object": {}}})
    signature = _sign(payload)

    with pytest.raises(BillingWebhookError):
        provider.construct_event(payload.replace("evt_1", "evt_2").encode("utf-8"), signature)


def test_construct_event_rejects_old_timestamp(provider):
    payload = json.dumps({"id": "evt_1", "type": "invoice.payment_succeeded", "data": {"object": {}}})

    with pytest.raises(BillingWebhookError):
        provider.construct_event(payload.encode("utf-8"), _sign(payload, timestamp=int(time.time()) - 3600))


def test_construct_event_requires_header(provider):
    with pytest.raises(BillingWebhookError):
        provider.construct_event(b"{}", None)


def test_construct_event_requires_webhook_secret(monkeypatch):
    from entitlement_sync.core.config import settings

    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", None)
    provider = StripeProvider(secret_key="sk_test_123", webhook_secret=None)
    with pytest.raises(BillingWebhookError):
        provider.construct_event(b"{}", "t=1,v1=abc")


def test_construct_event_rejects_invalid_json(provider):
    payload = "not json"

    with pytest.raises(BillingWebhookError):
        provider.construct_event(payload.encode("utf-8"), _sign(payload))


def test_to_subscription_reads_first_item():
    period_end = 1893456000
    subscription = to_subscription({
        "id": "sub_1",
        "status": "active",
        "customer": {"id": "cus_1", "object": "customer"},
        "items": {
            "data": [
                {
                    "current_period_end": period_end,
                    "price": {"id": "price_monthly", "product": "prod_1", "unit_amount": 999},
                }
            ]
        },
        "latest_invoice": {
            "id": "in_1",
            "status": "paid",
            "amount_paid": 999,
            "payment_intent": {"id": "pi_1", "status": "succeeded", "amount": 999},
        },
    })

    assert subscription.customer_id == "cus_1"
    assert subscription.price_id == "price_monthly"
    assert subscription.product_id == "prod_1"
    assert subscription.unit_amount == 999
    assert subscription.current_period_end == datetime.fromtimestamp(period_end, tz=timezone.utc)
    assert subscription.latest_invoice.payment_intent.status == "succeeded"


def test_to_subscription_with_unexpanded_invoice():
    subscription = to_subscription({"id": "sub_1", "status": "incomplete", "latest_invoice": "in_7"})

    assert subscription.latest_invoice.id == "in_7"
    assert subscription.latest_invoice.payment_intent is None
    assert subscription.current_period_end is None


def test_to_invoice_keeps_subscription_reference():
    invoice = to_invoice({
        "id": "in_2",
        "subscription": "sub_1",
        "amount_paid": 7499,
        "billing_reason": "subscription_cycle",
        "payment_intent": "pi_2",
    })

    assert invoice.subscription_id == "sub_1"
    assert invoice.amount_paid == 7499
    assert invoice.payment_intent is None
    assert invoice.payment_intent_id == "pi_2"


def test_retrieve_payment_intent(provider, monkeypatch):
    monkeypatch.setattr(
        stripe.PaymentIntent,
        "retrieve",
        lambda payment_intent_id, **kwargs: {
            "id": payment_intent_id,
            "status": "processing",
            "amount": 9999,
            "currency": "gbp",
            "customer": "cus_1",
            "metadata": {"user_id": "u1"},
        },
    )

    intent = provider.retrieve_payment_intent("pi_1")

    assert intent.status == "processing"
    assert intent.customer_id == "cus_1"
    assert intent.metadata == {"user_id": "u1"}


def test_missing_resource_is_mapped(provider, monkeypatch):
    def missing(subscription_id, **kwargs):
        raise stripe.InvalidRequestError("No such subscription: 'sub_x'", "id", code="resource_missing")

    monkeypatch.setattr(stripe.Subscription, "modify", missing)

    with pytest.raises(ResourceMissingError):
        provider.cancel_subscription_at_period_end("sub_x")


def test_card_error_is_mapped(provider, monkeypatch):
    def decline(payment_intent_id, **kwargs):
        raise stripe.CardError(
            "Your card has insufficient funds.",
            None,
            "card_declined",
            json_body={
                "error": {
                    "type": "card_error",
                    "code": "card_declined",
                    "decline_code": "insufficient_funds",
                    "message": "Your card has insufficient funds.",
                }
            },
        )

    monkeypatch.setattr(stripe.PaymentIntent, "confirm", decline)

    with pytest.raises(CardError) as exc_info:
        provider.confirm_payment_intent("pi_1", payment_method="pm_card_chargeDeclined")

    assert exc_info.value.code == "card_declined"
    assert exc_info.value.decline_code == "insufficient_funds"


def test_other_stripe_errors_are_wrapped(provider, monkeypatch):
    def unavailable(customer_id, **kwargs):
        raise stripe.APIConnectionError("Network error")

    monkeypatch.setattr(stripe.Customer, "retrieve", unavailable)

    with pytest.raises(BillingProviderError) as exc_info:
        provider.retrieve_customer("cus_1")

    assert not isinstance(exc_info.value, ResourceMissingError)
    assert "customer retrieval" in str(exc_info.value)


def test_change_subscription_price_swaps_first_item(provider, monkeypatch):
    modified = {}

    def retrieve(subscription_id, **kwargs):
        return {
            "id": subscription_id,
            "status": "active",
            "items": {"data": [{"id": "si_1", "price": {"id": "price_monthly", "product": "prod_1"}}]},
        }

    def modify(subscription_id, **kwargs):
        modified.update(kwargs)
        return {
            "id": subscription_id,
            "status": "active",
            "items": {"data": [{"id": "si_1", "price": {"id": "price_annual", "product": "prod_2"}}]},
        }

    monkeypatch.setattr(stripe.Subscription, "retrieve", retrieve)
    monkeypatch.setattr(stripe.Subscription, "modify", modify)

    subscription = provider.change_subscription_price("sub_1", "price_annual")

    assert modified == {"items": [{"id": "si_1", "price": "price_annual"}]}
    assert subscription.item_id == "si_1"
    assert subscription.price_id == "price_annual"
