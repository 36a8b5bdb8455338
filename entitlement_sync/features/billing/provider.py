"""
Billing provider protocol.

Defines the interface for billing providers (Stripe, etc.) and the
normalized objects they return, so reconciliation never touches
provider SDK objects directly.
"""
from typing import Protocol, Dict, Any, List, Optional
from dataclasses import dataclass, field
from datetime import datetime


# Provider status vocabulary
PI_SUCCEEDED = "succeeded"
PI_PROCESSING = "processing"
PI_REQUIRES_PAYMENT_METHOD = "requires_payment_method"
SUB_ACTIVE = "active"
SUB_TRIALING = "trialing"
SUB_INCOMPLETE = "incomplete"
SUB_CANCELED = "canceled"


@dataclass
class PaymentIntentInfo:
    id: str
    status: str
    amount: int = 0
    currency: str = "gbp"
    customer_id: Optional[str] = None
    description: Optional[str] = None
    client_secret: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class InvoiceInfo:
    id: str
    status: Optional[str] = None
    subscription_id: Optional[str] = None
    amount_paid: int = 0
    currency: str = "gbp"
    billing_reason: Optional[str] = None
    payment_intent: Optional[PaymentIntentInfo] = None
    payment_intent_id: Optional[str] = None


@dataclass
class SubscriptionInfo:
    id: str
    status: str
    customer_id: Optional[str] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    cancel_at: Optional[datetime] = None
    item_id: Optional[str] = None
    price_id: Optional[str] = None
    product_id: Optional[str] = None
    unit_amount: Optional[int] = None
    currency: str = "gbp"
    latest_invoice: Optional[InvoiceInfo] = None
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class CustomerInfo:
    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    description: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class ProviderEvent:
    """A verified webhook event; `data` is the event's data.object."""
    id: str
    type: str
    data: Dict[str, Any]


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Every method is a network round trip. Implementations raise
    BillingProviderError for transport/auth/request failures and
    CardError for card-level declines.
    """

    def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntentInfo:
        ...

    def create_payment_intent(
        self,
        amount: int,
        currency: str,
        customer_id: Optional[str],
        description: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> PaymentIntentInfo:
        ...

    def confirm_payment_intent(self, payment_intent_id: str, payment_method: Optional[str] = None) -> PaymentIntentInfo:
        ...

    def retrieve_subscription(self, subscription_id: str, expand_invoice: bool = False) -> SubscriptionInfo:
        ...

    def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        description: str,
        metadata: Optional[Dict[str, str]] = None,
        default_incomplete: bool = True,
    ) -> SubscriptionInfo:
        ...

    def cancel_subscription_at_period_end(self, subscription_id: str) -> SubscriptionInfo:
        ...

    def change_subscription_price(self, subscription_id: str, price_id: str) -> SubscriptionInfo:
        """Swap the price on the subscription's first item."""
        ...

    def activate_subscription(self, subscription: SubscriptionInfo) -> SubscriptionInfo:
        """Move an incomplete subscription whose first payment succeeded to active."""
        ...

    def list_active_subscriptions(self, customer_id: str, limit: int = 1) -> List[SubscriptionInfo]:
        ...

    def retrieve_invoice(self, invoice_id: str) -> InvoiceInfo:
        ...

    def retrieve_product_name(self, product_id: str) -> Optional[str]:
        ...

    def retrieve_customer(self, customer_id: str) -> CustomerInfo:
        ...

    def create_customer(self, name: Optional[str], email: Optional[str], description: str) -> CustomerInfo:
        ...

    def update_customer(
        self,
        customer_id: str,
        name: Optional[str] = None,
        email: Optional[str] = None,
        description: Optional[str] = None,
    ) -> CustomerInfo:
        ...

    def construct_event(self, body: bytes, signature: Optional[str]) -> ProviderEvent:
        """
        Verify webhook signature and parse event.

        Raises:
            BillingWebhookError: If signature invalid or payload malformed
        """
        ...


class BillingProviderError(Exception):
    """Base exception for billing provider errors."""

    def __init__(self, message: str, *, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class ResourceMissingError(BillingProviderError):
    """The referenced provider object does not exist."""


class CardError(BillingProviderError):
    """The card was declined; the user has to resubmit payment details."""

    def __init__(self, message: str, *, code: Optional[str] = None, decline_code: Optional[str] = None):
        super().__init__(message, code=code)
        self.decline_code = decline_code


class BillingWebhookError(BillingProviderError):
    """Exception for webhook processing errors."""
    pass
