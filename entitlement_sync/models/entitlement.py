"""
entitlement_sync/models/entitlement.py

Entitlement record: what a user has paid for and how many requests remain.

Created with default values at signup and only mutated by reconciliation,
renewal, cancellation and the monthly allocation job.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, field_validator


class SubscriptionStatus(str, Enum):
    INACTIVE = "inactive"
    ACTIVE = "active"


class EntitlementRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    subscription_status: SubscriptionStatus = SubscriptionStatus.INACTIVE
    subscription_plan: Optional[str] = None
    subscription_id: Optional[str] = None
    billing_customer_id: Optional[str] = None
    requests_remaining: Optional[int] = 0
    renewal_date: Optional[datetime] = None
    is_canceled: bool = False
    has_received_initial_allocation: bool = False
    referred_by: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    last_allocation_at: Optional[datetime] = None

    @field_validator("renewal_date", "last_allocation_at")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        # SQLite hands back naive timestamps; everything is stored as UTC
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "EntitlementRecord":
        fields = {key: row[key] for key in cls.model_fields if key in row}
        return cls(**fields)

    @property
    def is_active(self) -> bool:
        return self.subscription_status == SubscriptionStatus.ACTIVE

    @property
    def display_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()


class PaymentHistoryEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    user_id: str
    amount: int
    currency: str
    description: Optional[str] = None
    provider_payment_id: Optional[str] = None
    payment_status: str
    payment_method: str = "card"
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "PaymentHistoryEntry":
        fields = {key: row[key] for key in cls.model_fields if key in row}
        return cls(**fields)
