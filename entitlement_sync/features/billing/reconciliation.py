"""
Reconciliation engine.

Takes a payment intent or subscription reference, asks the provider whether
it has actually been paid, and applies the resulting entitlement change
exactly once. The poller and the webhook ingestor both land here and may race;
the entitlement row itself arbitrates:

1. Pre-check against a plain read (cheap no-op for duplicates)
2. Provider calls (customer sync) outside any transaction
3. Re-check on the row locked FOR UPDATE, then write fields + history in one commit
4. Publish the referral commission after commit
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from entitlement_sync.core.config import settings
from entitlement_sync.core.errors import BillingDisabledError, NotFoundError, ValidationError
from entitlement_sync.core.logging import log_event
from entitlement_sync.features.billing.provider import (
    PI_PROCESSING,
    PI_SUCCEEDED,
    SUB_ACTIVE,
    SUB_INCOMPLETE,
    SUB_TRIALING,
    BillingProvider,
    InvoiceInfo,
    SubscriptionInfo,
)
from entitlement_sync.features.billing.service import ensure_customer_for_user, get_provider
from entitlement_sync.features.entitlements import store
from entitlement_sync.features.referrals.publisher import CommissionEvent, publish_commission
from entitlement_sync.models.entitlement import EntitlementRecord, SubscriptionStatus
from entitlement_sync.models.plan import (
    PlanKind,
    canonical_plan_name,
    parse_amount_minor,
    parse_plan,
    plan_rule,
    quota_for,
    renewal_date_for,
    same_plan,
)


@dataclass
class ReconcileRequest:
    user_id: str
    plan_name: Optional[str] = None
    plan_price: Optional[str] = None
    payment_intent_id: Optional[str] = None
    subscription_id: Optional[str] = None
    requests_override: Optional[int] = None


@dataclass
class ReconcileResult:
    applied: bool
    already_processed: bool = False
    is_subscription: bool = False
    tentative: bool = False
    subscription_id: Optional[str] = None
    message: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.applied or self.already_processed or self.tentative


@dataclass
class Activation:
    """A provider-confirmed purchase, ready to be written to the entitlement row."""
    user_id: str
    plan_name: str
    amount: int
    currency: str
    provider_payment_id: Optional[str]
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    period_end: Optional[datetime] = None
    requests_override: Optional[int] = None
    description: Optional[str] = None
    kind: PlanKind = field(init=False)

    def __post_init__(self):
        self.kind = parse_plan(self.plan_name)
        self.plan_name = canonical_plan_name(self.plan_name) or self.plan_name


def is_already_applied(record: EntitlementRecord, activation: Activation) -> bool:
    """
    active AND same plan AND (same subscription id for recurring references,
    or a recognized one-time plan for payment references).
    """
    if not record.is_active or not same_plan(record.subscription_plan, activation.plan_name):
        return False
    if activation.subscription_id is not None:
        return record.subscription_id == activation.subscription_id
    rule = plan_rule(activation.kind)
    return rule.is_unlimited and not rule.is_recurring


def should_overwrite_quota(record: EntitlementRecord, activation: Activation) -> bool:
    if not record.is_active:
        return True
    if not same_plan(record.subscription_plan, activation.plan_name):
        return True
    return not record.requests_remaining


def reconcile(request: ReconcileRequest, provider: Optional[BillingProvider] = None) -> ReconcileResult:
    """
    Verify a payment/subscription with the provider and apply it.

    A reference that is not paid yet is a normal, non-applied result.
    Provider and store errors propagate; nothing is written in that case.

    Raises:
        ValidationError: user id or reference missing
        BillingDisabledError: no provider configured
        BillingProviderError: provider call failed
        NotFoundError: no entitlement record for the user
    """
    if not request.user_id:
        raise ValidationError("userId is required")
    if not request.subscription_id and not request.payment_intent_id:
        raise ValidationError("paymentIntentId or subscriptionId is required")

    provider = provider or get_provider()
    if provider is None:
        raise BillingDisabledError()

    kind = parse_plan(request.plan_name)

    # subscriptionRef wins when both are supplied
    if request.subscription_id:
        subscription = provider.retrieve_subscription(request.subscription_id, expand_invoice=True)
        subscription = _settle_incomplete(provider, subscription, request.user_id)
        if subscription.status not in (SUB_ACTIVE, SUB_TRIALING):
            return ReconcileResult(
                applied=False,
                is_subscription=True,
                subscription_id=subscription.id,
                message=f"Subscription not active yet (status: {subscription.status})",
            )
        invoice = subscription.latest_invoice
        payment_ref = _invoice_payment_ref(invoice) or subscription.id
        amount = invoice.amount_paid if invoice is not None and invoice.amount_paid else parse_amount_minor(request.plan_price, kind)
        activation = Activation(
            user_id=request.user_id,
            plan_name=request.plan_name,
            amount=amount,
            currency=subscription.currency,
            provider_payment_id=payment_ref,
            subscription_id=subscription.id,
            customer_id=subscription.customer_id,
            period_end=subscription.current_period_end,
            requests_override=request.requests_override,
        )
        return apply_activation(activation, provider)

    intent = provider.retrieve_payment_intent(request.payment_intent_id)
    if intent.status == PI_PROCESSING:
        # Reported as success to unblock the client; the webhook writes the entitlement
        log_event(
            "info",
            "billing.reconcile_tentative",
            user_id=request.user_id,
            extra={"payment_intent_id": intent.id},
        )
        return ReconcileResult(
            applied=False,
            tentative=True,
            message="Payment is processing and will be confirmed shortly",
        )
    if intent.status != PI_SUCCEEDED:
        return ReconcileResult(
            applied=False,
            message=f"Payment not completed yet (status: {intent.status})",
        )

    activation = Activation(
        user_id=request.user_id,
        plan_name=request.plan_name,
        amount=parse_amount_minor(request.plan_price, kind),
        currency=intent.currency or settings.BILLING_CURRENCY,
        provider_payment_id=intent.id,
        customer_id=intent.customer_id,
        requests_override=request.requests_override,
    )
    return apply_activation(activation, provider)


def _settle_incomplete(provider: BillingProvider, subscription: SubscriptionInfo, user_id: str) -> SubscriptionInfo:
    """An incomplete subscription whose first payment succeeded is activated."""
    if subscription.status != SUB_INCOMPLETE:
        return subscription
    invoice = subscription.latest_invoice
    intent = invoice.payment_intent if invoice is not None else None
    if intent is None and invoice is not None and invoice.id:
        invoice = provider.retrieve_invoice(invoice.id)
        intent = invoice.payment_intent
    if intent is None or intent.status != PI_SUCCEEDED:
        return subscription

    activated = provider.activate_subscription(subscription)
    log_event(
        "info",
        "billing.subscription_activated",
        user_id=user_id,
        extra={"subscription_id": subscription.id, "status": activated.status},
    )
    if activated.latest_invoice is None:
        activated.latest_invoice = invoice
    return activated


def _invoice_payment_ref(invoice: Optional[InvoiceInfo]) -> Optional[str]:
    if invoice is None:
        return None
    if invoice.payment_intent is not None:
        return invoice.payment_intent.id
    return invoice.id


def apply_activation(activation: Activation, provider: BillingProvider) -> ReconcileResult:
    """Shared write path for poller-driven and webhook-driven activations."""
    is_subscription = activation.subscription_id is not None
    record = store.require_entitlement(activation.user_id)

    if is_already_applied(record, activation):
        log_event(
            "info",
            "billing.reconcile_already_processed",
            user_id=activation.user_id,
            extra={"plan": activation.plan_name, "subscription_id": activation.subscription_id},
        )
        return ReconcileResult(
            applied=False,
            already_processed=True,
            is_subscription=is_subscription,
            subscription_id=activation.subscription_id,
            message="Payment already processed",
        )

    customer_id = ensure_customer_for_user(provider, record, activation.customer_id)

    now = store.utc_now()
    rule = plan_rule(activation.kind)
    quota = quota_for(activation.kind, activation.requests_override)
    renewal_date = renewal_date_for(activation.kind, now, activation.period_end)

    with store.transaction() as session:
        current = store.lock_entitlement(session, activation.user_id)
        if current is None:
            raise NotFoundError(f"No entitlement record for user {activation.user_id}")

        if is_already_applied(current, activation):
            already_processed = True
        else:
            already_processed = False
            values = {
                "subscription_plan": activation.plan_name,
                "subscription_status": SubscriptionStatus.ACTIVE,
                "subscription_id": activation.subscription_id,
                "billing_customer_id": customer_id,
                "renewal_date": renewal_date,
                "is_canceled": False,
                "has_received_initial_allocation": True,
            }
            overwrite = should_overwrite_quota(current, activation)
            if overwrite:
                values["requests_remaining"] = quota
                values["last_allocation_at"] = now
            store.update_entitlement(session, activation.user_id, values)
            store.insert_payment_history(
                session,
                user_id=activation.user_id,
                amount=activation.amount,
                currency=activation.currency,
                description=activation.description or _payment_description(activation),
                provider_payment_id=activation.provider_payment_id,
            )
            if overwrite and rule.is_unlimited:
                store.insert_allocation(
                    session,
                    user_id=activation.user_id,
                    amount=quota,
                    allocation_type="unlimited_purchase",
                    previous_amount=current.requests_remaining,
                    now=now,
                )

    if already_processed:
        log_event(
            "info",
            "billing.reconcile_race_lost",
            user_id=activation.user_id,
            extra={"plan": activation.plan_name},
        )
        return ReconcileResult(
            applied=False,
            already_processed=True,
            is_subscription=is_subscription,
            subscription_id=activation.subscription_id,
            message="Payment already processed",
        )

    log_event(
        "info",
        "billing.reconcile_applied",
        user_id=activation.user_id,
        extra={
            "plan": activation.plan_name,
            "subscription_id": activation.subscription_id,
            "requests_overwritten": overwrite,
        },
    )

    if current.referred_by:
        publish_commission(
            CommissionEvent(
                user_id=activation.user_id,
                referral_code=current.referred_by,
                plan_name=activation.plan_name,
            )
        )

    return ReconcileResult(
        applied=True,
        is_subscription=is_subscription,
        subscription_id=activation.subscription_id,
        message=f"{activation.plan_name} activated",
    )


def _payment_description(activation: Activation) -> str:
    suffix = " subscription" if activation.subscription_id else ""
    return f"Payment for {activation.plan_name}{suffix}"


def apply_renewal(
    user_id: str,
    subscription: SubscriptionInfo,
    plan_name: str,
    invoice: InvoiceInfo,
) -> ReconcileResult:
    """
    Renewal always replenishes: quota is reset to the plan allowance whatever
    its current value, and a history row is always written.
    """
    kind = parse_plan(plan_name)
    display_name = canonical_plan_name(plan_name) or plan_name
    now = store.utc_now()
    quota = quota_for(kind)

    with store.transaction() as session:
        current = store.lock_entitlement(session, user_id)
        if current is None:
            raise NotFoundError(f"No entitlement record for user {user_id}")

        store.update_entitlement(
            session,
            user_id,
            {
                "subscription_status": SubscriptionStatus.ACTIVE,
                "renewal_date": renewal_date_for(kind, now, subscription.current_period_end),
                "requests_remaining": quota,
                "last_allocation_at": now,
                "is_canceled": False,
            },
        )
        store.insert_payment_history(
            session,
            user_id=user_id,
            amount=invoice.amount_paid,
            currency=invoice.currency,
            description=f"Subscription renewal - {display_name}",
            provider_payment_id=invoice.id,
        )
        store.insert_allocation(
            session,
            user_id=user_id,
            amount=quota,
            allocation_type="renewal",
            previous_amount=current.requests_remaining,
            now=now,
        )

    log_event(
        "info",
        "billing.subscription_renewed",
        user_id=user_id,
        extra={"subscription_id": subscription.id, "plan": display_name, "requests": quota},
    )
    return ReconcileResult(
        applied=True,
        is_subscription=True,
        subscription_id=subscription.id,
        message=f"{display_name} renewed",
    )


def apply_subscription_deleted(user_id: str, subscription_id: str) -> bool:
    """
    Deactivate the user only while the stored subscription id matches, so a
    late deletion of an old subscription leaves a newer one alone.
    """
    with store.transaction() as session:
        changed = store.update_entitlement(
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
        "info",
        "billing.subscription_deleted" if changed else "billing.subscription_deleted_stale",
        user_id=user_id,
        extra={"subscription_id": subscription_id},
    )
    return changed > 0
