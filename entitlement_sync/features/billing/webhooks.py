"""
Webhook ingestor.

1. Verify signature (the only authentication for async events)
2. Record the event id in billing_events; skip ids already processed
3. Dispatch by event type into the reconciliation write paths
4. Mark processed, or store the error and re-raise so the provider retries

Event types nobody handles are acknowledged and ignored.
"""
import hashlib
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError

from entitlement_sync.core.database import billing_events, get_db_session
from entitlement_sync.core.errors import BillingDisabledError, NotFoundError
from entitlement_sync.core.logging import log_event
from entitlement_sync.features.billing.provider import (
    BillingProvider,
    BillingWebhookError,
    ProviderEvent,
)
from entitlement_sync.features.billing.reconciliation import (
    Activation,
    apply_activation,
    apply_renewal,
    apply_subscription_deleted,
)
from entitlement_sync.features.billing.service import (
    extract_user_id_from_description,
    get_provider,
    resolve_user_for_customer,
)
from entitlement_sync.features.billing.stripe_provider import (
    to_invoice,
    to_payment_intent,
    to_subscription,
)
from entitlement_sync.features.entitlements import store
from entitlement_sync.models.plan import parse_plan, plan_from_description, plan_rule


EVENT_CHECKOUT_COMPLETED = "checkout.session.completed"
EVENT_PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
EVENT_INVOICE_PAID = "invoice.payment_succeeded"
EVENT_SUBSCRIPTION_DELETED = "customer.subscription.deleted"


@dataclass
class WebhookAck:
    event_id: str
    event_type: str
    handled: bool = False
    duplicate: bool = False


def ingest(body: bytes, signature: Optional[str], provider: Optional[BillingProvider] = None) -> WebhookAck:
    """
    Process a raw webhook delivery.

    Raises:
        BillingDisabledError: no provider configured
        BillingWebhookError: signature invalid or payload malformed (HTTP 400)
        Exception: handler failure after a valid signature (HTTP 500)
    """
    provider = provider or get_provider()
    if provider is None:
        raise BillingDisabledError()

    try:
        event = provider.construct_event(body, signature)
    except BillingWebhookError as e:
        log_event(
            "warning",
            "billing.webhook_rejected",
            event_type="security.webhook_signature_invalid",
            extra={"reason": str(e)},
        )
        raise

    ack = WebhookAck(event_id=event.id, event_type=event.type)
    if not _record_event(event, body):
        ack.duplicate = True
        log_event("info", "billing.webhook_duplicate", event_type=event.type, extra={"event_id": event.id})
        return ack

    handler = HANDLERS.get(event.type)
    if handler is None:
        log_event("info", "billing.webhook_ignored", event_type=event.type, extra={"event_id": event.id})
        _mark_processed(event.id)
        return ack

    try:
        ack.handled = handler(provider, event)
    except NotFoundError as e:
        # Unknown user: retrying will not help
        log_event("warning", "billing.webhook_unknown_user", event_type=event.type, extra={"event_id": event.id, "error": str(e)})
        _mark_processed(event.id, error=str(e))
        return ack
    except Exception as e:
        log_event(
            "error",
            "billing.webhook_failed",
            event_type=event.type,
            error_code=type(e).__name__,
            extra={"event_id": event.id, "error": str(e)},
        )
        _mark_failed(event.id, str(e))
        raise

    _mark_processed(event.id)
    log_event("info", "billing.webhook_processed", event_type=event.type, extra={"event_id": event.id, "handled": ack.handled})
    return ack


def _record_event(event: ProviderEvent, body: bytes) -> bool:
    """Insert the event id. False when it has already been processed."""
    payload_hash = hashlib.sha256(body).hexdigest()
    with get_db_session() as session:
        existing = session.execute(
            select(billing_events.c.processed).where(billing_events.c.stripe_event_id == event.id)
        ).fetchone()
        if existing:
            # A previous delivery failed part way; let the retry through
            return not existing[0]

    try:
        with get_db_session() as session:
            session.execute(
                insert(billing_events).values(
                    stripe_event_id=event.id,
                    event_type=event.type,
                    payload_hash=payload_hash,
                    processed=False,
                    received_at=store.utc_now(),
                )
            )
    except IntegrityError:
        # Another delivery of the same event got there first
        return False
    return True


def _mark_processed(event_id: str, error: Optional[str] = None) -> None:
    with get_db_session() as session:
        session.execute(
            update(billing_events)
            .where(billing_events.c.stripe_event_id == event_id)
            .values(processed=True, processed_at=store.utc_now(), error=error)
        )


def _mark_failed(event_id: str, error: str) -> None:
    with get_db_session() as session:
        session.execute(
            update(billing_events)
            .where(billing_events.c.stripe_event_id == event_id)
            .values(error=error)
        )


# Handlers return True when they changed (or confirmed) entitlement state.

def handle_checkout_completed(provider: BillingProvider, event: ProviderEvent) -> bool:
    session_obj = event.data
    if session_obj.get("mode") != "subscription":
        return False

    customer_id = session_obj.get("customer")
    subscription_id = session_obj.get("subscription")
    user_id = session_obj.get("client_reference_id")
    if not user_id and customer_id:
        user_id = resolve_user_for_customer(provider, customer_id)
    if not user_id or not customer_id or not subscription_id:
        log_event(
            "warning",
            "billing.webhook_missing_data",
            event_type=event.type,
            extra={"user_id": user_id, "customer_id": customer_id, "subscription_id": subscription_id},
        )
        return False

    subscription = provider.retrieve_subscription(subscription_id)
    plan_name = (session_obj.get("metadata") or {}).get("planName")
    if not plan_name and subscription.product_id:
        plan_name = provider.retrieve_product_name(subscription.product_id)

    activation = Activation(
        user_id=user_id,
        plan_name=plan_name or "",
        amount=subscription.unit_amount or 0,
        currency=subscription.currency,
        provider_payment_id=subscription.id,
        subscription_id=subscription.id,
        customer_id=customer_id,
        period_end=subscription.current_period_end,
    )
    activation.description = f"Subscription payment - {activation.plan_name}"
    apply_activation(activation, provider)
    return True


def handle_payment_intent_succeeded(provider: BillingProvider, event: ProviderEvent) -> bool:
    intent = to_payment_intent(event.data)
    user_id = intent.metadata.get("user_id") or extract_user_id_from_description(intent.description)
    plan_name = intent.metadata.get("plan_name") or plan_from_description(intent.description)
    if not user_id or not plan_name:
        log_event(
            "warning",
            "billing.webhook_missing_data",
            event_type=event.type,
            extra={"payment_intent_id": intent.id, "user_id": user_id, "plan": plan_name},
        )
        return False

    subscription = None
    price_id = intent.metadata.get("price_id")
    if plan_rule(parse_plan(plan_name)).is_recurring and price_id and intent.customer_id:
        existing = provider.list_active_subscriptions(intent.customer_id, limit=1)
        if existing:
            subscription = existing[0]
        else:
            subscription = provider.create_subscription(
                customer_id=intent.customer_id,
                price_id=price_id,
                description=f"{plan_name} subscription for user {user_id}",
                metadata={"user_id": user_id, "plan_name": plan_name},
                default_incomplete=False,
            )
            log_event(
                "info",
                "billing.subscription_created_from_payment",
                user_id=user_id,
                extra={"payment_intent_id": intent.id, "subscription_id": subscription.id},
            )

    activation = Activation(
        user_id=user_id,
        plan_name=plan_name,
        amount=intent.amount,
        currency=intent.currency,
        provider_payment_id=intent.id,
        subscription_id=subscription.id if subscription else None,
        customer_id=intent.customer_id,
        period_end=subscription.current_period_end if subscription else None,
    )
    apply_activation(activation, provider)
    return True


def handle_invoice_paid(provider: BillingProvider, event: ProviderEvent) -> bool:
    invoice = to_invoice(event.data)
    if not invoice.subscription_id:
        return False

    subscription = provider.retrieve_subscription(invoice.subscription_id)
    user_id = subscription.metadata.get("user_id") or _user_for_subscription(
        provider, subscription.id, subscription.customer_id
    )
    if not user_id:
        log_event("warning", "billing.webhook_unknown_customer", event_type=event.type, extra={"customer_id": subscription.customer_id})
        return False

    if invoice.billing_reason == "subscription_create":
        # First invoice of a subscription; a no-op when the poller got there first
        plan_name = subscription.metadata.get("plan_name")
        if not plan_name and subscription.product_id:
            plan_name = provider.retrieve_product_name(subscription.product_id)
        activation = Activation(
            user_id=user_id,
            plan_name=plan_name or "",
            amount=invoice.amount_paid,
            currency=invoice.currency,
            provider_payment_id=invoice.payment_intent_id or invoice.id,
            subscription_id=subscription.id,
            customer_id=subscription.customer_id,
            period_end=subscription.current_period_end,
        )
        apply_activation(activation, provider)
        return True

    # The product follows plan changes; subscription metadata does not
    plan_name = provider.retrieve_product_name(subscription.product_id) if subscription.product_id else None
    if not plan_name:
        plan_name = store.require_entitlement(user_id).subscription_plan or ""

    apply_renewal(user_id, subscription, plan_name, invoice)
    return True


def handle_subscription_deleted(provider: BillingProvider, event: ProviderEvent) -> bool:
    subscription = to_subscription(event.data)
    user_id = _user_for_subscription(provider, subscription.id, subscription.customer_id)
    if not user_id:
        log_event("warning", "billing.webhook_unknown_customer", event_type=event.type, extra={"customer_id": subscription.customer_id})
        return False
    return apply_subscription_deleted(user_id, subscription.id)


def _user_for_subscription(provider: BillingProvider, subscription_id: str, customer_id: Optional[str]) -> Optional[str]:
    user_id = resolve_user_for_customer(provider, customer_id)
    if user_id:
        return user_id
    record = store.find_by_subscription_id(subscription_id)
    return record.user_id if record else None


HANDLERS: Dict[str, Callable[[BillingProvider, ProviderEvent], bool]] = {
    EVENT_CHECKOUT_COMPLETED: handle_checkout_completed,
    EVENT_PAYMENT_INTENT_SUCCEEDED: handle_payment_intent_succeeded,
    EVENT_INVOICE_PAID: handle_invoice_paid,
    EVENT_SUBSCRIPTION_DELETED: handle_subscription_deleted,
}
