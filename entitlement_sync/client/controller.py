"""
Payment poller / retry controller.

Cooperative state machine, driven by calls rather than threads:

    idle -> submitting -> confirming -> succeeded
                                     -> buffering -> succeeded
                                                  -> retrying -> confirming ...
              submitting -> failed (card or submission error, no buffering)

While buffering, reconcile is polled every POLL_INTERVAL_SECONDS (via tick)
and on every visibility regain. After BUFFER_SECONDS without confirmation the
controller moves to retrying and waits for the user; retry re-confirms the
stored reference and never starts a new charge.

An attempt submitted (or retried) in this session stops polling after
MAX_POLLS and is treated as accepted; the webhook finishes it. An attempt
resumed from storage has no such cap and runs the full buffer window.
"""
import asyncio
import time
from enum import Enum
from typing import Awaitable, Callable, Optional

from entitlement_sync.client.messages import translate_card_error
from entitlement_sync.client.storage import AttemptStore, InFlightAttempt
from entitlement_sync.client.transport import (
    BillingClientError,
    BillingGateway,
    CardDeclinedError,
)
from entitlement_sync.core.logging import log_event


BUFFER_SECONDS = 120.0
POLL_INTERVAL_SECONDS = 2.0
MAX_POLLS = 10


class PaymentState(str, Enum):
    IDLE = "idle"
    SUBMITTING = "submitting"
    CONFIRMING = "confirming"
    BUFFERING = "buffering"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class AttemptInProgressError(RuntimeError):
    """A previous attempt is still in flight; resume or cancel it first."""


class PaymentController:
    def __init__(
        self,
        gateway: BillingGateway,
        store: AttemptStore,
        user_id: str,
        *,
        clock: Callable[[], float] = time.monotonic,
        buffer_seconds: float = BUFFER_SECONDS,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        max_polls: int = MAX_POLLS,
    ):
        self.gateway = gateway
        self.store = store
        self.user_id = user_id
        self.clock = clock
        self.buffer_seconds = buffer_seconds
        self.poll_interval = poll_interval
        self.max_polls = max_polls

        self.state = PaymentState.IDLE
        self.attempt: Optional[InFlightAttempt] = None
        self.error_message: Optional[str] = None
        self.polls = 0
        self.optimistic = False
        self._poll_cap_applies = False
        self._buffer_started_at: Optional[float] = None
        self._last_poll_at: Optional[float] = None

    @property
    def progress(self) -> float:
        """Buffer fill, 0.0 to 1.0."""
        if self.state == PaymentState.RETRYING:
            return 1.0
        if self.state != PaymentState.BUFFERING or self._buffer_started_at is None:
            return 0.0
        elapsed = self.clock() - self._buffer_started_at
        return min(1.0, max(0.0, elapsed / self.buffer_seconds))

    def submit(
        self,
        plan_name: str,
        plan_price: Optional[str] = None,
        payment_method: Optional[str] = None,
    ) -> PaymentState:
        if self.state not in (PaymentState.IDLE, PaymentState.FAILED, PaymentState.SUCCEEDED):
            raise AttemptInProgressError(f"Cannot submit while {self.state.value}")
        stored = self.store.load()
        if stored is not None and stored.in_progress:
            raise AttemptInProgressError("A payment is already in progress")

        self.state = PaymentState.SUBMITTING
        self.error_message = None
        self.optimistic = False

        try:
            started = self.gateway.start_payment(self.user_id, plan_name, plan_price)
        except CardDeclinedError as e:
            return self._fail(translate_card_error(e.code, message=str(e)))
        except BillingClientError as e:
            return self._fail(str(e))

        self.attempt = InFlightAttempt(
            in_progress=True,
            is_subscription=started.is_subscription,
            payment_intent_id=started.payment_intent_id,
            subscription_id=started.subscription_id,
            customer_id=started.customer_id,
            price_id=started.price_id,
            plan_name=plan_name,
            plan_price=plan_price,
        )
        self.store.save(self.attempt)

        if started.payment_intent_id:
            try:
                self.gateway.confirm_payment(self.user_id, started.payment_intent_id, payment_method)
            except CardDeclinedError as e:
                return self._fail(translate_card_error(e.code, message=str(e)))
            except BillingClientError as e:
                return self._fail(str(e))

        self.polls = 0
        self._poll_cap_applies = True
        return self.confirm()

    def confirm(self) -> PaymentState:
        if self.attempt is None:
            raise RuntimeError("No payment attempt to confirm")
        self.state = PaymentState.CONFIRMING
        if self._check():
            return self.state
        self._start_buffering()
        return self.state

    def poll(self) -> PaymentState:
        if self.state != PaymentState.BUFFERING:
            return self.state
        if self._check():
            return self.state
        if self._poll_cap_applies and self.polls >= self.max_polls:
            log_event(
                "info",
                "payment.poll_cap_reached",
                user_id=self.user_id,
                extra={"polls": self.polls, "is_subscription": self.attempt.is_subscription},
            )
            self.optimistic = True
            self._succeed()
        return self.state

    def on_visibility_regained(self) -> PaymentState:
        return self.poll()

    def tick(self) -> PaymentState:
        if self.state != PaymentState.BUFFERING:
            return self.state
        now = self.clock()
        if now - self._buffer_started_at >= self.buffer_seconds:
            self.state = PaymentState.RETRYING
            log_event("info", "payment.buffer_expired", user_id=self.user_id, extra={"polls": self.polls})
            return self.state
        if self._last_poll_at is None or now - self._last_poll_at >= self.poll_interval:
            return self.poll()
        return self.state

    def retry(self, payment_method: Optional[str] = None) -> PaymentState:
        if self.state != PaymentState.RETRYING or self.attempt is None:
            raise RuntimeError(f"Nothing to retry while {self.state.value}")

        self.state = PaymentState.CONFIRMING
        if self.attempt.payment_intent_id:
            try:
                self.gateway.confirm_payment(self.user_id, self.attempt.payment_intent_id, payment_method)
            except CardDeclinedError as e:
                return self._fail(translate_card_error(e.code, message=str(e)))
            except BillingClientError as e:
                # Reconcile below is the source of truth
                log_event("warning", "payment.retry_confirm_failed", user_id=self.user_id, extra={"error": str(e)})

        self.polls = 0
        self._poll_cap_applies = True
        return self.confirm()

    def cancel(self) -> PaymentState:
        """Forget the attempt locally. The provider's charge is left alone."""
        self.store.clear()
        self.attempt = None
        self.error_message = None
        self.polls = 0
        self._buffer_started_at = None
        self._last_poll_at = None
        self.state = PaymentState.IDLE
        return self.state

    def resume(self) -> PaymentState:
        stored = self.store.load()
        if stored is None or not stored.in_progress:
            return self.state
        self.attempt = stored
        self.polls = 0
        self._poll_cap_applies = False
        log_event("info", "payment.resumed", user_id=self.user_id, extra={"plan": stored.plan_name})
        return self.confirm()

    async def run_until_settled(
        self,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> PaymentState:
        """Drive tick() until the controller leaves buffering."""
        while self.state == PaymentState.BUFFERING:
            await sleep(self.poll_interval)
            self.tick()
        return self.state

    def _check(self) -> bool:
        self.polls += 1
        self._last_poll_at = self.clock()
        try:
            outcome = self.gateway.reconcile(self.user_id, self.attempt)
        except BillingClientError as e:
            log_event("warning", "payment.reconcile_failed", user_id=self.user_id, extra={"error": str(e)})
            return False
        if outcome.success:
            self._succeed()
            return True
        return False

    def _start_buffering(self) -> None:
        self.state = PaymentState.BUFFERING
        self._buffer_started_at = self.clock()

    def _succeed(self) -> None:
        self.state = PaymentState.SUCCEEDED
        self.store.clear()

    def _fail(self, message: str) -> PaymentState:
        self.state = PaymentState.FAILED
        self.error_message = message
        self.attempt = None
        self.store.clear()
        return self.state
