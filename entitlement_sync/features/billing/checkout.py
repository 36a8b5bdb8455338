"""
Checkout and subscription lifecycle.

start_payment creates the provider object the client confirms:
- One-time plans: a payment intent
- Recurring plans: a default_incomplete subscription, confirmed through the
  payment intent on its first invoice

cancel_subscription sets cancel-at-period-end; the user keeps access until
the provider sends customer.subscription.deleted.

change_plan swaps the price on the live subscription. The remaining quota
and the renewal date carry over; only the unlimited plan resets quota.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from entitlement_sync.core.config import settings
from entitlement_sync.core.errors import (
    BillingDisabledError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from entitlement_sync.core.logging import log_event
from entitlement_sync.features.billing.provider import (
    PI_PROCESSING,
    PI_SUCCEEDED,
    BillingProvider,
    PaymentIntentInfo,
    ResourceMissingError,
)
from entitlement_sync.features.billing.service import ensure_customer_for_user, get_provider
from entitlement_sync.features.entitlements import store
from entitlement_sync.models.entitlement import SubscriptionStatus
from entitlement_sync.models.plan import (
    UNLIMITED_REQUESTS,
    PlanKind,
    canonical_plan_name,
    parse_amount_minor,
    parse_plan,
    plan_rule,
)


@dataclass
class PaymentStart:
    is_subscription: bool
    client_secret: Optional[str]
    customer_id: str
    payment_intent_id: Optional[str] = None
    subscription_id: Optional[str] = None
    price_id: Optional[str] = None


@dataclass
class CancelResult:
    subscription_id: str
    canceled: bool
    reset_locally: bool = False
    cancel_at: Optional[datetime] = None


@dataclass
class PlanChange:
    subscription_id: str
    plan_name: str
    requests_remaining: Optional[int]
    renewal_date: Optional[datetime]


def get_price_for_plan(kind: PlanKind) -> Optional[str]:
    """Map a plan to the provider price id a subscription can carry."""
    price_map = {
        PlanKind.MONTHLY: settings.STRIPE_PRICE_MONTHLY,
        PlanKind.ANNUAL: settings.STRIPE_PRICE_ANNUAL,
        PlanKind.UNLIMITED: settings.STRIPE_PRICE_UNLIMITED,
    }
    return price_map.get(kind)


def _require_provider(provider: Optional[BillingProvider]) -> BillingProvider:
    provider = provider or get_provider()
    if provider is None:
        raise BillingDisabledError()
    return provider


def start_payment(
    user_id: str,
    plan_name: str,
    plan_price: Optional[str] = None,
    provider: Optional[BillingProvider] = None,
) -> PaymentStart:
    """
    Start a payment for a plan.

    Raises:
        ValidationError: free plan, or no price configured for a recurring plan
        NotFoundError: no entitlement record
        BillingProviderError: provider call failed
    """
    provider = _require_provider(provider)
    kind = parse_plan(plan_name)
    if kind == PlanKind.FREE:
        raise ValidationError("A paid plan is required")

    record = store.require_entitlement(user_id)
    customer_id = ensure_customer_for_user(provider, record)
    if customer_id != record.billing_customer_id:
        store.link_customer(user_id, customer_id)

    display_name = canonical_plan_name(plan_name)
    metadata = {"user_id": user_id, "plan_name": display_name}

    if plan_rule(kind).is_recurring:
        price_id = get_price_for_plan(kind)
        if not price_id:
            raise ValidationError(f"No price configured for plan: {display_name}")
        subscription = provider.create_subscription(
            customer_id=customer_id,
            price_id=price_id,
            description=f"{display_name} subscription for user {user_id}",
            metadata=metadata,
        )
        invoice = subscription.latest_invoice
        intent = invoice.payment_intent if invoice is not None else None
        log_event(
            "info",
            "billing.subscription_started",
            user_id=user_id,
            extra={"subscription_id": subscription.id, "plan": display_name},
        )
        return PaymentStart(
            is_subscription=True,
            client_secret=intent.client_secret if intent else None,
            customer_id=customer_id,
            payment_intent_id=intent.id if intent else None,
            subscription_id=subscription.id,
            price_id=price_id,
        )

    intent = provider.create_payment_intent(
        amount=parse_amount_minor(plan_price, kind),
        currency=settings.BILLING_CURRENCY,
        customer_id=customer_id,
        description=f"{display_name} for user {user_id}",
        metadata=metadata,
    )
    log_event(
        "info",
        "billing.payment_started",
        user_id=user_id,
        extra={"payment_intent_id": intent.id, "plan": display_name, "amount": intent.amount},
    )
    return PaymentStart(
        is_subscription=False,
        client_secret=intent.client_secret,
        customer_id=customer_id,
        payment_intent_id=intent.id,
    )


def cancel_subscription(
    user_id: str,
    subscription_id: Optional[str] = None,
    provider: Optional[BillingProvider] = None,
) -> CancelResult:
    """
    Cancel at period end. Status stays active; only is_canceled flips.

    If the provider no longer knows the subscription, the local record is
    reset to inactive.
    """
    provider = _require_provider(provider)
    record = store.require_entitlement(user_id)
    subscription_id = subscription_id or record.subscription_id
    if not subscription_id:
        raise ValidationError("No subscription to cancel")
    if record.subscription_id and record.subscription_id != subscription_id:
        raise ConflictError("Subscription does not belong to the current plan")

    try:
        subscription = provider.cancel_subscription_at_period_end(subscription_id)
    except ResourceMissingError:
        with store.transaction() as session:
            store.update_entitlement(
                session,
                user_id,
                {
                    "subscription_status": SubscriptionStatus.INACTIVE,
                    "subscription_id": None,
                    "is_canceled": False,
                },
                only_if_subscription_id=subscription_id,
            )
        log_event(
            "warning",
            "billing.cancel_subscription_missing",
            user_id=user_id,
            extra={"subscription_id": subscription_id},
        )
        return CancelResult(subscription_id=subscription_id, canceled=True, reset_locally=True)

    with store.transaction() as session:
        store.update_entitlement(
            session,
            user_id,
            {"is_canceled": True},
            only_if_subscription_id=subscription_id,
        )

    log_event(
        "info",
        "billing.subscription_cancel_scheduled",
        user_id=user_id,
        extra={"subscription_id": subscription_id},
    )
    return CancelResult(
        subscription_id=subscription_id,
        canceled=True,
        cancel_at=subscription.cancel_at or subscription.current_period_end,
    )


def change_plan(
    user_id: str,
    new_plan_name: str,
    subscription_id: Optional[str] = None,
    provider: Optional[BillingProvider] = None,
) -> PlanChange:
    """
    Move the user's subscription to another plan.

    Raises:
        ValidationError: unknown plan, no price for it, or no subscription
        ConflictError: subscription_id is not the user's current subscription
        NotFoundError: no entitlement record
        BillingProviderError: provider call failed
    """
    provider = _require_provider(provider)
    kind = parse_plan(new_plan_name)
    if kind in (PlanKind.FREE, PlanKind.OTHER):
        raise ValidationError(f"Invalid plan name specified: {new_plan_name}")

    record = store.require_entitlement(user_id)
    subscription_id = subscription_id or record.subscription_id
    if not subscription_id:
        raise ValidationError("No subscription to change")
    if record.subscription_id and record.subscription_id != subscription_id:
        raise ConflictError("Subscription does not belong to the current plan")

    display_name = canonical_plan_name(new_plan_name)
    price_id = get_price_for_plan(kind)
    if not price_id:
        raise ValidationError(f"No price configured for plan: {display_name}")

    subscription = provider.change_subscription_price(subscription_id, price_id)

    values = {
        "subscription_plan": display_name,
        "subscription_status": SubscriptionStatus.ACTIVE,
        "subscription_id": subscription.id,
    }
    with store.transaction() as session:
        current = store.lock_entitlement(session, user_id)
        if current is None:
            raise NotFoundError(f"No entitlement record for user {user_id}")
        requests_remaining = current.requests_remaining
        if plan_rule(kind).is_unlimited:
            requests_remaining = UNLIMITED_REQUESTS
            values["requests_remaining"] = UNLIMITED_REQUESTS
            values["last_allocation_at"] = store.utc_now()
            store.insert_allocation(
                session,
                user_id=user_id,
                amount=UNLIMITED_REQUESTS,
                allocation_type="plan_change",
                previous_amount=current.requests_remaining,
            )
        store.update_entitlement(session, user_id, values)

    log_event(
        "info",
        "billing.plan_changed",
        user_id=user_id,
        extra={
            "subscription_id": subscription.id,
            "from_plan": record.subscription_plan,
            "plan": display_name,
        },
    )
    return PlanChange(
        subscription_id=subscription.id,
        plan_name=display_name,
        requests_remaining=requests_remaining,
        renewal_date=current.renewal_date,
    )


def confirm_payment(
    user_id: str,
    payment_intent_id: str,
    payment_method: Optional[str] = None,
    provider: Optional[BillingProvider] = None,
) -> PaymentIntentInfo:
    """
    Confirm an existing payment intent.

    Used for both the first submission and a user-initiated retry, so it never
    creates a new charge. An intent that already succeeded or is processing is
    returned as is.

    Raises:
        CardError: the card was declined
        ConflictError: the intent belongs to another user
    """
    provider = _require_provider(provider)
    intent = provider.retrieve_payment_intent(payment_intent_id)
    owner = intent.metadata.get("user_id")
    if owner and owner != user_id:
        raise ConflictError("Payment does not belong to this user")
    if intent.status in (PI_SUCCEEDED, PI_PROCESSING):
        return intent

    confirmed = provider.confirm_payment_intent(payment_intent_id, payment_method=payment_method)
    log_event(
        "info",
        "billing.payment_confirmed",
        user_id=user_id,
        extra={"payment_intent_id": payment_intent_id, "status": confirmed.status},
    )
    return confirmed
