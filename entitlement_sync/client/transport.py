"""
HTTP transport for the payment controller.

Talks to the billing API (start, confirm, reconcile) with httpx and turns
the JSON error envelope back into exceptions the controller understands.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import httpx

from entitlement_sync.client.storage import InFlightAttempt


DEFAULT_TIMEOUT_SECONDS = 10.0


class BillingClientError(Exception):
    """Transport failure or a non-card error response."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class CardDeclinedError(BillingClientError):
    """The card was rejected; the user has to enter new details."""


@dataclass
class StartedPayment:
    is_subscription: bool
    customer_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    subscription_id: Optional[str] = None
    price_id: Optional[str] = None
    client_secret: Optional[str] = None


@dataclass
class ReconcileOutcome:
    success: bool
    already_processed: bool = False
    is_subscription: bool = False
    message: Optional[str] = None


class BillingGateway(Protocol):
    def start_payment(self, user_id: str, plan_name: str, plan_price: Optional[str]) -> StartedPayment:
        ...

    def confirm_payment(self, user_id: str, payment_intent_id: str, payment_method: Optional[str] = None) -> str:
        """Confirm the stored intent; returns its provider status."""
        ...

    def reconcile(self, user_id: str, attempt: InFlightAttempt) -> ReconcileOutcome:
        ...


class HttpBillingClient:
    """BillingGateway over the service's /api/billing routes."""

    def __init__(
        self,
        base_url: str,
        *,
        client: Optional[httpx.Client] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.Client(timeout=timeout)

    def close(self) -> None:
        self.client.close()

    def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = self.client.post(f"{self.base_url}/api/billing{path}", json=payload)
        except httpx.HTTPError as e:
            raise BillingClientError(f"Billing service unreachable: {e}") from e

        if response.status_code >= 400:
            try:
                error = response.json().get("error") or {}
            except ValueError:
                error = {}
            message = error.get("message") or response.text or "Billing request failed"
            if response.status_code == 402:
                raise CardDeclinedError(message, status_code=402, code=error.get("code"))
            raise BillingClientError(message, status_code=response.status_code, code=error.get("code"))

        return response.json()

    def start_payment(self, user_id: str, plan_name: str, plan_price: Optional[str]) -> StartedPayment:
        data = self._post(
            "/payments",
            {"userId": user_id, "planName": plan_name, "planPrice": plan_price},
        )
        return StartedPayment(
            is_subscription=bool(data.get("isSubscription")),
            customer_id=data.get("customerId"),
            payment_intent_id=data.get("paymentIntentId"),
            subscription_id=data.get("subscriptionId"),
            price_id=data.get("priceId"),
            client_secret=data.get("clientSecret"),
        )

    def confirm_payment(self, user_id: str, payment_intent_id: str, payment_method: Optional[str] = None) -> str:
        data = self._post(
            "/confirm",
            {"userId": user_id, "paymentIntentId": payment_intent_id, "paymentMethod": payment_method},
        )
        return data.get("status", "")

    def reconcile(self, user_id: str, attempt: InFlightAttempt) -> ReconcileOutcome:
        data = self._post(
            "/reconcile",
            {
                "userId": user_id,
                "paymentIntentId": attempt.payment_intent_id,
                "subscriptionId": attempt.subscription_id,
                "planName": attempt.plan_name,
                "planPrice": attempt.plan_price,
            },
        )
        return ReconcileOutcome(
            success=bool(data.get("success")),
            already_processed=bool(data.get("alreadyProcessed")),
            is_subscription=bool(data.get("isSubscription")),
            message=data.get("message"),
        )
