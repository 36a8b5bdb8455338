"""
Billing service helpers.

Coordinates:
- Billing enablement / provider construction
- Customer resolution and profile sync
- Customer description marker ("<label>: <user id>")
- Billing status read model

All Stripe-specific code is in stripe_provider.py.
"""
import os
import re
from typing import Any, Dict, Optional

from entitlement_sync.core.config import settings
from entitlement_sync.core.logging import log_event
from entitlement_sync.features.billing.provider import (
    BillingProvider,
    BillingProviderError,
    ResourceMissingError,
)
from entitlement_sync.features.billing.stripe_provider import StripeProvider
from entitlement_sync.features.entitlements import store
from entitlement_sync.models.entitlement import EntitlementRecord


_UUID_PATTERN = r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}"


def billing_enabled() -> bool:
    """Check if billing is enabled (Stripe configured)."""
    return bool(os.getenv("STRIPE_SECRET_KEY") or settings.STRIPE_SECRET_KEY)


def get_provider() -> Optional[BillingProvider]:
    """Get billing provider if billing is enabled."""
    if not billing_enabled():
        return None
    try:
        return StripeProvider(
            secret_key=os.getenv("STRIPE_SECRET_KEY"),
            webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET"),
        )
    except BillingProviderError:
        return None


def customer_marker(user_id: str) -> str:
    return f"{settings.CUSTOMER_MARKER_LABEL}: {user_id}"


def extract_user_id_from_description(description: Optional[str]) -> Optional[str]:
    """Pull the user id out of a "<label>: <uuid>" customer description."""
    if not description:
        return None
    label = re.escape(settings.CUSTOMER_MARKER_LABEL)
    match = re.search(rf"{label}:\s*({_UUID_PATTERN})", description)
    return match.group(1) if match else None


def ensure_customer_for_user(
    provider: BillingProvider,
    record: EntitlementRecord,
    provider_customer_id: Optional[str] = None,
) -> str:
    """
    Resolve the billing customer for a user and refresh its profile fields.

    Order: the customer already linked to the user, then a customer the
    provider attached to the payment/subscription, then a new customer.
    The caller persists the returned id.

    Raises:
        BillingProviderError: If the provider call fails
    """
    name = record.display_name or settings.DEFAULT_CUSTOMER_NAME
    description = customer_marker(record.user_id)

    if record.billing_customer_id:
        provider.update_customer(
            record.billing_customer_id,
            name=record.display_name or None,
            email=record.email,
        )
        return record.billing_customer_id

    if provider_customer_id:
        provider.update_customer(
            provider_customer_id,
            name=name,
            email=record.email,
            description=description,
        )
        log_event(
            "info",
            "billing.customer_linked",
            user_id=record.user_id,
            extra={"customer_id": provider_customer_id},
        )
        return provider_customer_id

    customer = provider.create_customer(name=name, email=record.email, description=description)
    log_event(
        "info",
        "billing.customer_created",
        user_id=record.user_id,
        extra={"customer_id": customer.id},
    )
    return customer.id


def resolve_user_for_customer(provider: BillingProvider, customer_id: Optional[str]) -> Optional[str]:
    """Fallback user lookup through the customer's description marker."""
    if not customer_id:
        return None
    try:
        customer = provider.retrieve_customer(customer_id)
    except ResourceMissingError:
        return None
    return extract_user_id_from_description(customer.description)


def get_billing_status(user_id: str) -> Dict[str, Any]:
    """
    Get user's billing status.

    Returns:
        {
            "enabled": bool,
            "user_id": str,
            "subscription_status": str,
            "subscription_plan": str | None,
            "subscription_id": str | None,
            "requests_remaining": int | None,
            "renewal_date": datetime | None,
            "is_canceled": bool
        }
    """
    record = store.require_entitlement(user_id)
    return {
        "enabled": billing_enabled(),
        "user_id": record.user_id,
        "subscription_status": record.subscription_status.value,
        "subscription_plan": record.subscription_plan,
        "subscription_id": record.subscription_id,
        "requests_remaining": record.requests_remaining,
        "renewal_date": record.renewal_date,
        "is_canceled": record.is_canceled,
    }
