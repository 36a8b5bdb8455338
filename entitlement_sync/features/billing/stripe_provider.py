"""
Stripe billing provider implementation.

Implements BillingProvider protocol using the Stripe API.
Handles webhook signature verification and converts Stripe objects
into the provider-neutral dataclasses in provider.py.
"""
import json
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

import stripe

from entitlement_sync.core.config import settings
from entitlement_sync.features.billing.provider import (
    BillingProviderError,
    BillingWebhookError,
    CardError,
    CustomerInfo,
    InvoiceInfo,
    PaymentIntentInfo,
    ProviderEvent,
    ResourceMissingError,
    SubscriptionInfo,
)


WEBHOOK_TOLERANCE_SECONDS = 300


def _get(obj: Any, name: str, default: Any = None) -> Any:
    """Read a field from a Stripe object or a plain dict."""
    if obj is None:
        return default
    try:
        value = obj[name]
    except (KeyError, TypeError):
        return default
    return default if value is None else value


def _id_of(value: Any) -> Optional[str]:
    """Stripe references are either an id string or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return _get(value, "id")


def _as_dict(value: Any) -> Dict[str, Any]:
    if not value:
        return {}
    if isinstance(value, dict):
        return {k: v for k, v in value.items()}
    to_dict = getattr(value, "to_dict", None)
    return to_dict() if callable(to_dict) else {}


def _timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def to_payment_intent(obj: Any) -> PaymentIntentInfo:
    return PaymentIntentInfo(
        id=_get(obj, "id"),
        status=_get(obj, "status"),
        amount=int(_get(obj, "amount", 0)),
        currency=_get(obj, "currency", settings.BILLING_CURRENCY),
        customer_id=_id_of(_get(obj, "customer")),
        description=_get(obj, "description"),
        client_secret=_get(obj, "client_secret"),
        metadata=_as_dict(_get(obj, "metadata")),
    )


def to_invoice(obj: Any) -> InvoiceInfo:
    payment_intent = _get(obj, "payment_intent")
    return InvoiceInfo(
        id=_get(obj, "id"),
        status=_get(obj, "status"),
        subscription_id=_id_of(_get(obj, "subscription")),
        amount_paid=int(_get(obj, "amount_paid", 0)),
        currency=_get(obj, "currency", settings.BILLING_CURRENCY),
        billing_reason=_get(obj, "billing_reason"),
        payment_intent=(
            to_payment_intent(payment_intent)
            if payment_intent is not None and not isinstance(payment_intent, str)
            else None
        ),
        payment_intent_id=_id_of(payment_intent),
    )


def to_subscription(obj: Any) -> SubscriptionInfo:
    items = _get(_get(obj, "items"), "data", [])
    first_item = items[0] if items else None
    price = _get(first_item, "price")
    period_end = _get(obj, "current_period_end") or _get(first_item, "current_period_end")
    latest_invoice = _get(obj, "latest_invoice")
    return SubscriptionInfo(
        id=_get(obj, "id"),
        status=_get(obj, "status"),
        customer_id=_id_of(_get(obj, "customer")),
        current_period_end=_timestamp(period_end),
        cancel_at_period_end=bool(_get(obj, "cancel_at_period_end", False)),
        cancel_at=_timestamp(_get(obj, "cancel_at")),
        item_id=_get(first_item, "id"),
        price_id=_get(price, "id"),
        product_id=_id_of(_get(price, "product")),
        unit_amount=_get(price, "unit_amount"),
        currency=_get(obj, "currency", settings.BILLING_CURRENCY),
        latest_invoice=(
            to_invoice(latest_invoice)
            if latest_invoice is not None and not isinstance(latest_invoice, str)
            else (InvoiceInfo(id=latest_invoice) if latest_invoice else None)
        ),
        metadata=_as_dict(_get(obj, "metadata")),
    )


def to_customer(obj: Any) -> CustomerInfo:
    return CustomerInfo(
        id=_get(obj, "id"),
        name=_get(obj, "name"),
        email=_get(obj, "email"),
        description=_get(obj, "description"),
        metadata=_as_dict(_get(obj, "metadata")),
    )


@contextmanager
def _stripe_call(action: str) -> Iterator[None]:
    """Translate Stripe SDK exceptions into provider errors."""
    try:
        yield
    except stripe.CardError as e:
        raise CardError(
            e.user_message or str(e),
            code=e.code,
            decline_code=_get(getattr(e, "error", None), "decline_code"),
        ) from e
    except stripe.InvalidRequestError as e:
        if e.code == "resource_missing":
            raise ResourceMissingError(f"Stripe {action} failed: {e}", code=e.code) from e
        raise BillingProviderError(f"Stripe {action} failed: {e}", code=e.code) from e
    except stripe.StripeError as e:
        raise BillingProviderError(f"Stripe {action} failed: {e}", code=getattr(e, "code", None)) from e


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(self, secret_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY)
            webhook_secret: Stripe webhook secret (defaults to STRIPE_WEBHOOK_SECRET)
        """
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET

        if not self.secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key
        stripe.api_version = settings.STRIPE_API_VERSION

    # Payment intents

    def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntentInfo:
        with _stripe_call("payment intent retrieval"):
            return to_payment_intent(stripe.PaymentIntent.retrieve(payment_intent_id))

    def create_payment_intent(
        self,
        amount: int,
        currency: str,
        customer_id: Optional[str],
        description: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> PaymentIntentInfo:
        with _stripe_call("payment intent creation"):
            intent = stripe.PaymentIntent.create(
                amount=amount,
                currency=currency,
                customer=customer_id,
                automatic_payment_methods={"enabled": True},
                description=description,
                metadata=metadata or {},
            )
            return to_payment_intent(intent)

    def confirm_payment_intent(self, payment_intent_id: str, payment_method: Optional[str] = None) -> PaymentIntentInfo:
        params: Dict[str, Any] = {}
        if payment_method:
            params["payment_method"] = payment_method
        with _stripe_call("payment confirmation"):
            return to_payment_intent(stripe.PaymentIntent.confirm(payment_intent_id, **params))

    # Subscriptions

    def retrieve_subscription(self, subscription_id: str, expand_invoice: bool = False) -> SubscriptionInfo:
        with _stripe_call("subscription retrieval"):
            if expand_invoice:
                sub = stripe.Subscription.retrieve(
                    subscription_id, expand=["latest_invoice.payment_intent"]
                )
            else:
                sub = stripe.Subscription.retrieve(subscription_id)
            return to_subscription(sub)

    def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        description: str,
        metadata: Optional[Dict[str, str]] = None,
        default_incomplete: bool = True,
    ) -> SubscriptionInfo:
        params: Dict[str, Any] = {
            "customer": customer_id,
            "items": [{"price": price_id}],
            "description": description,
            "metadata": metadata or {},
            "expand": ["latest_invoice.payment_intent"],
        }
        if default_incomplete:
            params["payment_behavior"] = "default_incomplete"
            params["payment_settings"] = {"save_default_payment_method": "on_subscription"}
        with _stripe_call("subscription creation"):
            return to_subscription(stripe.Subscription.create(**params))

    def cancel_subscription_at_period_end(self, subscription_id: str) -> SubscriptionInfo:
        with _stripe_call("subscription cancellation"):
            return to_subscription(
                stripe.Subscription.modify(subscription_id, cancel_at_period_end=True)
            )

    def change_subscription_price(self, subscription_id: str, price_id: str) -> SubscriptionInfo:
        with _stripe_call("subscription update"):
            current = to_subscription(stripe.Subscription.retrieve(subscription_id))
            if not current.item_id:
                raise BillingProviderError(f"Subscription {subscription_id} has no items")
            return to_subscription(
                stripe.Subscription.modify(
                    subscription_id,
                    items=[{"id": current.item_id, "price": price_id}],
                )
            )

    def activate_subscription(self, subscription: SubscriptionInfo) -> SubscriptionInfo:
        """Pay the still-open first invoice so Stripe moves the subscription to active."""
        invoice = subscription.latest_invoice
        with _stripe_call("subscription activation"):
            if invoice is not None and invoice.status == "open":
                stripe.Invoice.pay(invoice.id)
            return to_subscription(stripe.Subscription.retrieve(subscription.id))

    def list_active_subscriptions(self, customer_id: str, limit: int = 1) -> List[SubscriptionInfo]:
        with _stripe_call("subscription listing"):
            result = stripe.Subscription.list(customer=customer_id, status="active", limit=limit)
            return [to_subscription(sub) for sub in _get(result, "data", [])]

    # Invoices, products

    def retrieve_invoice(self, invoice_id: str) -> InvoiceInfo:
        with _stripe_call("invoice retrieval"):
            return to_invoice(stripe.Invoice.retrieve(invoice_id))

    def retrieve_product_name(self, product_id: str) -> Optional[str]:
        with _stripe_call("product retrieval"):
            return _get(stripe.Product.retrieve(product_id), "name")

    # Customers

    def retrieve_customer(self, customer_id: str) -> CustomerInfo:
        with _stripe_call("customer retrieval"):
            return to_customer(stripe.Customer.retrieve(customer_id))

    def create_customer(self, name: Optional[str], email: Optional[str], description: str) -> CustomerInfo:
        customer_data: Dict[str, Any] = {"description": description}
        if name:
            customer_data["name"] = name
        if email:
            customer_data["email"] = email
        with _stripe_call("customer creation"):
            return to_customer(stripe.Customer.create(**customer_data))

    def update_customer(
        self,
        customer_id: str,
        name: Optional[str] = None,
        email: Optional[str] = None,
        description: Optional[str] = None,
    ) -> CustomerInfo:
        fields: Dict[str, Any] = {}
        if name:
            fields["name"] = name
        if email:
            fields["email"] = email
        if description:
            fields["description"] = description
        with _stripe_call("customer update"):
            return to_customer(stripe.Customer.modify(customer_id, **fields))

    # Webhooks

    def construct_event(self, body: bytes, signature: Optional[str]) -> ProviderEvent:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise BillingWebhookError("STRIPE_WEBHOOK_SECRET not configured")
        if not signature:
            raise BillingWebhookError("Missing stripe-signature header")

        try:
            payload = body.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                payload, signature, self.webhook_secret, WEBHOOK_TOLERANCE_SECONDS
            )
            event = json.loads(payload)
        except UnicodeDecodeError as e:
            raise BillingWebhookError(f"Invalid payload encoding: {e}") from e
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}") from e
        except stripe.SignatureVerificationError as e:
            raise BillingWebhookError(f"Invalid signature: {e}") from e

        if not isinstance(event, dict) or "id" not in event or "type" not in event:
            raise BillingWebhookError("Invalid payload: missing event id or type")

        return ProviderEvent(
            id=event["id"],
            type=event["type"],
            data=event.get("data", {}).get("object", {}) or {},
        )
