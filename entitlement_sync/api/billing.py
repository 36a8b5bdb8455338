"""
Billing API routes.

Surface (prefix /api/billing):
- POST /reconcile: Verify a payment/subscription and apply the entitlement
- POST /webhook: Stripe webhooks (raw body + stripe-signature)
- POST /payments: Start a payment or subscription for a plan
- POST /confirm: Confirm the stored payment intent (submit and retry)
- POST /cancel: Cancel a subscription at period end
- POST /change-plan: Move the current subscription to another plan
- GET  /status/{user_id}: Entitlement snapshot
- GET  /history/{user_id}: Payment history

Request and response bodies are camelCase.
"""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Header, Request
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from entitlement_sync.core.errors import (
    AppError,
    BillingDisabledError,
    PaymentDeclinedError,
    UpstreamError,
    ValidationError,
)
from entitlement_sync.features.billing import checkout, webhooks
from entitlement_sync.features.billing.provider import (
    BillingProviderError,
    BillingWebhookError,
    CardError,
)
from entitlement_sync.features.billing.reconciliation import ReconcileRequest, reconcile
from entitlement_sync.features.billing.service import billing_enabled, get_billing_status
from entitlement_sync.features.entitlements import store


router = APIRouter(prefix="/billing", tags=["billing"])


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ReconcileBody(CamelModel):
    user_id: str
    payment_intent_id: Optional[str] = None
    subscription_id: Optional[str] = None
    plan_name: Optional[str] = None
    plan_price: Optional[str] = None
    requests_amount: Optional[int] = None


class ReconcileResponse(CamelModel):
    success: bool
    already_processed: bool = False
    is_subscription: bool = False
    tentative: bool = False
    subscription_id: Optional[str] = None
    message: Optional[str] = None


class StartPaymentBody(CamelModel):
    user_id: str
    plan_name: str
    plan_price: Optional[str] = None


class StartPaymentResponse(CamelModel):
    is_subscription: bool
    client_secret: Optional[str] = None
    customer_id: str
    payment_intent_id: Optional[str] = None
    subscription_id: Optional[str] = None
    price_id: Optional[str] = None


class ConfirmBody(CamelModel):
    user_id: str
    payment_intent_id: str
    payment_method: Optional[str] = None


class ConfirmResponse(CamelModel):
    payment_intent_id: str
    status: str


class CancelBody(CamelModel):
    user_id: str
    subscription_id: Optional[str] = None


class CancelResponse(CamelModel):
    canceled: bool
    subscription_id: str
    reset_locally: bool = False
    cancel_at: Optional[datetime] = None


class ChangePlanBody(CamelModel):
    user_id: str
    new_plan_name: str
    subscription_id: Optional[str] = None


class ChangePlanResponse(CamelModel):
    success: bool
    subscription_id: str
    plan_name: str
    requests_remaining: Optional[int] = None
    renewal_date: Optional[datetime] = None
    message: str


class StatusResponse(CamelModel):
    enabled: bool
    user_id: str
    subscription_status: str
    subscription_plan: Optional[str] = None
    subscription_id: Optional[str] = None
    requests_remaining: Optional[int] = None
    renewal_date: Optional[datetime] = None
    is_canceled: bool = False


class PaymentHistoryItem(CamelModel):
    amount: int
    currency: str
    description: Optional[str] = None
    provider_payment_id: Optional[str] = None
    payment_status: str
    payment_method: str
    created_at: Optional[datetime] = None


def _dump(model: BaseModel) -> dict:
    return model.model_dump(by_alias=True, mode="json")


def _require_billing() -> None:
    if not billing_enabled():
        raise BillingDisabledError(
            "Billing disabled: Stripe is not configured. Set STRIPE_SECRET_KEY environment variable."
        )


def _provider_failure(e: BillingProviderError) -> AppError:
    if isinstance(e, CardError):
        return PaymentDeclinedError(str(e), code=e.decline_code or e.code or "card_declined")
    return UpstreamError(str(e))


@router.post("/reconcile")
async def reconcile_payment(body: ReconcileBody):
    """
    Verify a payment intent or subscription and apply the entitlement.

    Returns:
        {"success", "alreadyProcessed", "isSubscription", "tentative", "subscriptionId", "message"}

    Errors:
        400: userId or reference missing
        404: No entitlement record
        502: Provider error (nothing written)
        503: Billing disabled
    """
    _require_billing()
    try:
        result = reconcile(
            ReconcileRequest(
                user_id=body.user_id,
                plan_name=body.plan_name,
                plan_price=body.plan_price,
                payment_intent_id=body.payment_intent_id,
                subscription_id=body.subscription_id,
                requests_override=body.requests_amount,
            )
        )
    except BillingProviderError as e:
        raise _provider_failure(e) from e

    return _dump(
        ReconcileResponse(
            success=result.success,
            already_processed=result.already_processed,
            is_subscription=result.is_subscription,
            tentative=result.tentative,
            subscription_id=result.subscription_id,
            message=result.message,
        )
    )


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="stripe-signature"),
):
    """
    Handle Stripe webhook events.

    Errors:
        400: Invalid signature or payload
        500: Processing failed (Stripe retries)
        503: Billing disabled
    """
    _require_billing()
    body = await request.body()

    try:
        ack = webhooks.ingest(body, stripe_signature)
    except BillingWebhookError as e:
        raise ValidationError(str(e), code="invalid_webhook") from e
    except AppError:
        raise
    except Exception as e:
        raise AppError("Webhook processing failed", code="webhook_failed", status_code=500) from e

    return {
        "received": True,
        "eventId": ack.event_id,
        "eventType": ack.event_type,
        "handled": ack.handled,
        "duplicate": ack.duplicate,
    }


@router.post("/payments")
async def start_payment(body: StartPaymentBody):
    """Create the payment intent or incomplete subscription the client confirms."""
    _require_billing()
    try:
        started = checkout.start_payment(body.user_id, body.plan_name, body.plan_price)
    except BillingProviderError as e:
        raise _provider_failure(e) from e

    return _dump(
        StartPaymentResponse(
            is_subscription=started.is_subscription,
            client_secret=started.client_secret,
            customer_id=started.customer_id,
            payment_intent_id=started.payment_intent_id,
            subscription_id=started.subscription_id,
            price_id=started.price_id,
        )
    )


@router.post("/confirm")
async def confirm_payment(body: ConfirmBody):
    """
    Confirm the stored payment intent.

    Errors:
        402: Card declined (code carries the decline reason)
        409: Intent belongs to another user
    """
    _require_billing()
    try:
        intent = checkout.confirm_payment(body.user_id, body.payment_intent_id, body.payment_method)
    except BillingProviderError as e:
        raise _provider_failure(e) from e

    return _dump(ConfirmResponse(payment_intent_id=intent.id, status=intent.status))


@router.post("/cancel")
async def cancel_subscription(body: CancelBody):
    _require_billing()
    try:
        result = checkout.cancel_subscription(body.user_id, body.subscription_id)
    except BillingProviderError as e:
        raise _provider_failure(e) from e

    return _dump(
        CancelResponse(
            canceled=result.canceled,
            subscription_id=result.subscription_id,
            reset_locally=result.reset_locally,
            cancel_at=result.cancel_at,
        )
    )


@router.post("/change-plan")
async def change_plan(body: ChangePlanBody):
    """
    Move the current subscription to another plan.

    Errors:
        400: Unknown plan, no price configured, or no subscription
        409: subscriptionId is not the user's current subscription
    """
    _require_billing()
    try:
        result = checkout.change_plan(body.user_id, body.new_plan_name, body.subscription_id)
    except BillingProviderError as e:
        raise _provider_failure(e) from e

    return _dump(
        ChangePlanResponse(
            success=True,
            subscription_id=result.subscription_id,
            plan_name=result.plan_name,
            requests_remaining=result.requests_remaining,
            renewal_date=result.renewal_date,
            message=f"Subscription changed to {result.plan_name}",
        )
    )


@router.get("/status/{user_id}")
async def billing_status(user_id: str):
    return _dump(StatusResponse(**get_billing_status(user_id)))


@router.get("/history/{user_id}")
async def payment_history(user_id: str):
    store.require_entitlement(user_id)
    items: List[PaymentHistoryItem] = [
        PaymentHistoryItem(
            amount=entry.amount,
            currency=entry.currency,
            description=entry.description,
            provider_payment_id=entry.provider_payment_id,
            payment_status=entry.payment_status,
            payment_method=entry.payment_method,
            created_at=entry.created_at,
        )
        for entry in store.list_payment_history(user_id)
    ]
    return {"payments": [_dump(item) for item in items]}
