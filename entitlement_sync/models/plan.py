"""
entitlement_sync/models/plan.py

Plan catalogue.

Plan names arrive as free text from the client and from Stripe metadata.
They are parsed once into a PlanKind at the boundary; everything downstream
looks up behaviour in PLAN_RULES instead of comparing strings.
"""

import re
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict


UNLIMITED_REQUESTS = 999999


class PlanKind(str, Enum):
    FREE = "free"
    MONTHLY = "monthly"
    ANNUAL = "annual"
    UNLIMITED = "unlimited"
    LIMITED_OFFER_UNLIMITED = "limited_offer_unlimited"
    OTHER = "other"


class RenewalPolicy(str, Enum):
    PROVIDER_PERIOD = "provider_period"  # subscription's current_period_end
    PERPETUAL = "perpetual"  # no renewal date
    THIRTY_DAYS = "thirty_days"


class PlanRule(BaseModel):
    """
    What a plan grants.

    quota is the request allowance written on activation and on every renewal.
    amount_minor is the list price used when the client's display price
    cannot be parsed.
    """
    model_config = ConfigDict(frozen=True)

    kind: PlanKind
    display_name: str
    quota: int
    renewal: RenewalPolicy
    is_recurring: bool
    amount_minor: int = 0

    @property
    def is_unlimited(self) -> bool:
        return self.quota == UNLIMITED_REQUESTS


PLAN_RULES: Dict[PlanKind, PlanRule] = {
    PlanKind.FREE: PlanRule(
        kind=PlanKind.FREE,
        display_name="Free Plan",
        quota=0,
        renewal=RenewalPolicy.THIRTY_DAYS,
        is_recurring=False,
    ),
    PlanKind.MONTHLY: PlanRule(
        kind=PlanKind.MONTHLY,
        display_name="Monthly Plan",
        quota=10,
        renewal=RenewalPolicy.PROVIDER_PERIOD,
        is_recurring=True,
        amount_minor=999,
    ),
    PlanKind.ANNUAL: PlanRule(
        kind=PlanKind.ANNUAL,
        display_name="Annual Plan",
        quota=15,
        renewal=RenewalPolicy.PROVIDER_PERIOD,
        is_recurring=True,
        amount_minor=7499,
    ),
    PlanKind.UNLIMITED: PlanRule(
        kind=PlanKind.UNLIMITED,
        display_name="Unlimited Plan",
        quota=UNLIMITED_REQUESTS,
        renewal=RenewalPolicy.PERPETUAL,
        is_recurring=False,
        amount_minor=9999,
    ),
    PlanKind.LIMITED_OFFER_UNLIMITED: PlanRule(
        kind=PlanKind.LIMITED_OFFER_UNLIMITED,
        display_name="Limited Offer - Unlimited Plan",
        quota=UNLIMITED_REQUESTS,
        renewal=RenewalPolicy.PERPETUAL,
        is_recurring=False,
        amount_minor=4999,
    ),
    PlanKind.OTHER: PlanRule(
        kind=PlanKind.OTHER,
        display_name="",
        quota=0,
        renewal=RenewalPolicy.THIRTY_DAYS,
        is_recurring=False,
    ),
}

_BY_NAME = {
    rule.display_name.casefold(): kind
    for kind, rule in PLAN_RULES.items()
    if rule.display_name
}

# Known display prices; anything else is parsed numerically
DISPLAY_PRICES: Dict[str, int] = {
    "£9.99": 999,
    "£74.99": 7499,
    "£99.99": 9999,
    "£49.99": 4999,
    "£3": 300,
    "£5": 500,
    "£10": 1000,
}


def parse_plan(name: Optional[str]) -> PlanKind:
    """Map a plan name to its kind. Empty means free, unknown means OTHER."""
    if not name or not name.strip():
        return PlanKind.FREE
    return _BY_NAME.get(name.strip().casefold(), PlanKind.OTHER)


def plan_rule(kind: PlanKind) -> PlanRule:
    return PLAN_RULES[kind]


def canonical_plan_name(name: Optional[str]) -> Optional[str]:
    """Catalogue spelling for known plans; unknown names are kept as given."""
    kind = parse_plan(name)
    if kind == PlanKind.FREE:
        return None
    return PLAN_RULES[kind].display_name or name.strip()


def same_plan(stored_name: Optional[str], incoming_name: Optional[str]) -> bool:
    kind = parse_plan(incoming_name)
    if parse_plan(stored_name) != kind:
        return False
    if kind == PlanKind.OTHER:
        return stored_name.strip().casefold() == incoming_name.strip().casefold()
    return True


def plan_from_description(description: Optional[str]) -> Optional[str]:
    """Find a plan display name embedded in a free-text description.

    Longer names are tried first so "Limited Offer - Unlimited Plan" is not
    mistaken for "Unlimited Plan".
    """
    if not description:
        return None
    names = sorted(
        (rule.display_name for rule in PLAN_RULES.values() if rule.is_recurring or rule.is_unlimited),
        key=len,
        reverse=True,
    )
    for name in names:
        if name in description:
            return name
    if "Limited Offer" in description:
        return PLAN_RULES[PlanKind.LIMITED_OFFER_UNLIMITED].display_name
    return None


def quota_for(kind: PlanKind, requests_override: Optional[int] = None) -> int:
    """Requests granted by a plan. Unlimited plans ignore overrides."""
    rule = PLAN_RULES[kind]
    if rule.is_unlimited:
        return UNLIMITED_REQUESTS
    if requests_override is not None:
        return requests_override
    return rule.quota


def renewal_date_for(
    kind: PlanKind,
    now: datetime,
    provider_period_end: Optional[datetime] = None,
) -> Optional[datetime]:
    rule = PLAN_RULES[kind]
    if provider_period_end is not None and rule.renewal != RenewalPolicy.PERPETUAL:
        return provider_period_end
    if rule.renewal == RenewalPolicy.PERPETUAL:
        return None
    return now + timedelta(days=30)


def parse_amount_minor(price_display: Optional[str], kind: PlanKind) -> int:
    """Convert a display price such as "£9.99" into minor units."""
    if price_display:
        known = DISPLAY_PRICES.get(price_display.strip())
        if known:
            return known
        digits = re.sub(r"[^0-9.]", "", price_display)
        try:
            value = float(digits)
        except ValueError:
            value = None
        if value is not None and value > 0:
            return int(round(value * 100))
    return PLAN_RULES[kind].amount_minor
