"""
iching/features/payments/orchestrator.py

Payment attempt state machine (client side).

One attempt runs:
    idle -> method_selected -> intent_requested -> intent_ready | intent_failed
         -> confirming -> verified | verification_failed -> fulfilled | failed
and may be cancelled from any state before fulfilled.

Invariants:
- The entitlement store is mutated only after verification succeeded, at most once per attempt
- Only one attempt is in flight per orchestrator
- Simulated confirmation is only reachable in the sandbox environment
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional

from iching.core.config import settings
from iching.core.errors import GatewayError, InternalFault, PaymentInProgressError, ValidationError
from iching.core.logging import log_event
from iching.features.entitlements.store import EntitlementStore
from iching.features.payments.api_client import IntentHandle, PaymentApiClient
from iching.features.payments.validators import generate_order_id, normalize_client_request
from iching.features.payments.wallet import (
    Cancelled,
    Confirmed,
    ExternalWalletConfirmer,
    Failed,
    SimulatedWalletConfirmer,
    WalletConfirmer,
    display_name,
    methods_for_platform,
)
from iching.models.payment import Environment, PaymentMethod, PaymentRequest, Platform


logger = logging.getLogger("iching")


class AttemptState(str, Enum):
    IDLE = "idle"
    METHOD_SELECTED = "method_selected"
    INTENT_REQUESTED = "intent_requested"
    INTENT_READY = "intent_ready"
    INTENT_FAILED = "intent_failed"
    CONFIRMING = "confirming"
    VERIFIED = "verified"
    VERIFICATION_FAILED = "verification_failed"
    FULFILLED = "fulfilled"
    FAILED = "failed"
    CANCELLED = "cancelled"


S = AttemptState

TERMINAL_STATES: FrozenSet[AttemptState] = frozenset({S.FULFILLED, S.FAILED, S.CANCELLED})

ALLOWED_TRANSITIONS: Dict[AttemptState, FrozenSet[AttemptState]] = {
    S.IDLE: frozenset({S.METHOD_SELECTED, S.FAILED, S.CANCELLED}),
    S.METHOD_SELECTED: frozenset({S.INTENT_REQUESTED, S.FAILED, S.CANCELLED}),
    S.INTENT_REQUESTED: frozenset({S.INTENT_READY, S.INTENT_FAILED, S.CANCELLED}),
    S.INTENT_READY: frozenset({S.CONFIRMING, S.CANCELLED}),
    # intent_failed -> confirming is the sandbox simulated path
    S.INTENT_FAILED: frozenset({S.CONFIRMING, S.FAILED, S.CANCELLED}),
    S.CONFIRMING: frozenset({S.VERIFIED, S.VERIFICATION_FAILED, S.FAILED, S.CANCELLED}),
    S.VERIFIED: frozenset({S.FULFILLED, S.FAILED, S.CANCELLED}),
    S.VERIFICATION_FAILED: frozenset({S.FAILED, S.CANCELLED}),
    S.FULFILLED: frozenset(),
    S.FAILED: frozenset(),
    S.CANCELLED: frozenset(),
}

Consumer = Callable[[], Awaitable[Any]]


class _AttemptCancelled(Exception):
    pass


@dataclass
class PaymentOutcome:
    state: AttemptState
    order_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    transaction_id: Optional[str] = None
    simulated: bool = False
    message: str = ""
    result: Any = None
    error: Optional[Exception] = None

    @property
    def fulfilled(self) -> bool:
        return self.state is S.FULFILLED


@dataclass
class _Attempt:
    method: PaymentMethod
    state: AttemptState = S.IDLE
    order_id: Optional[str] = None
    intent: Optional[IntentHandle] = None
    cancel_requested: bool = False
    paid: bool = False


class PaymentOrchestrator:
    def __init__(
        self,
        api: PaymentApiClient,
        entitlements: EntitlementStore,
        *,
        environment: Optional[Environment] = None,
        platform: Optional[Platform] = None,
        confirmer: Optional[WalletConfirmer] = None,
        simulated_confirmer: Optional[WalletConfirmer] = None,
        order_id_factory: Optional[Callable[[], str]] = None,
    ):
        self.api = api
        self.entitlements = entitlements
        self.environment = Environment(environment or settings.PAYMENT_ENVIRONMENT)
        self.platform = Platform(platform or settings.PLATFORM)
        self.confirmer = confirmer or ExternalWalletConfirmer()
        self.simulated_confirmer = simulated_confirmer or SimulatedWalletConfirmer()
        self.order_id_factory = order_id_factory or generate_order_id
        self._attempt: Optional[_Attempt] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def state(self) -> AttemptState:
        return self._attempt.state if self._attempt else S.IDLE

    @property
    def in_progress(self) -> bool:
        return self._task is not None and not self._task.done()

    def available_methods(self) -> List[PaymentMethod]:
        return methods_for_platform(self.platform)

    def _transition(self, attempt: _Attempt, new_state: AttemptState) -> None:
        if attempt.cancel_requested:
            raise _AttemptCancelled()
        if new_state not in ALLOWED_TRANSITIONS[attempt.state]:
            raise InternalFault(f"Illegal payment transition {attempt.state.value} -> {new_state.value}")
        logger.debug(
            "payment.transition",
            extra={"order_id": attempt.order_id, "from": attempt.state.value, "to": new_state.value},
        )
        attempt.state = new_state

    def _finish(self, attempt: _Attempt, state: AttemptState, message: str, **fields) -> PaymentOutcome:
        self._transition(attempt, state)
        log_event(
            "info" if state is S.FULFILLED else "warning",
            f"payment.{state.value}",
            order_id=attempt.order_id,
            payment_intent_id=attempt.intent.payment_intent_id if attempt.intent else None,
            extra={"method": attempt.method.value, "reason": message},
        )
        return PaymentOutcome(
            state=state,
            order_id=attempt.order_id,
            payment_intent_id=attempt.intent.payment_intent_id if attempt.intent else None,
            message=message,
            **fields,
        )

    async def pay(
        self,
        method: PaymentMethod,
        amount: Any,
        currency: str,
        description: str = "",
        consumer: Optional[Consumer] = None,
    ) -> PaymentOutcome:
        """
        Run one payment attempt to a terminal state.

        Raises:
            PaymentInProgressError: another attempt is still in flight
        """
        if self.in_progress:
            raise PaymentInProgressError("A payment is already in progress")

        attempt = _Attempt(method=PaymentMethod(method))
        self._attempt = attempt
        self._task = asyncio.ensure_future(self._run(attempt, amount, currency, description, consumer))
        try:
            return await self._task
        except asyncio.CancelledError:
            if attempt.cancel_requested:
                return self._cancelled_outcome(attempt)
            raise

    def cancel(self) -> bool:
        """Cancel the in-flight attempt. Late results of its network calls are discarded."""
        attempt = self._attempt
        if attempt is None or attempt.state in TERMINAL_STATES or not self.in_progress:
            return False
        self._transition(attempt, S.CANCELLED)
        attempt.cancel_requested = True
        self._task.cancel()
        log_event("info", "payment.cancelled", order_id=attempt.order_id,
                  extra={"method": attempt.method.value})
        return True

    def _cancelled_outcome(self, attempt: _Attempt) -> PaymentOutcome:
        return PaymentOutcome(
            state=S.CANCELLED,
            order_id=attempt.order_id,
            payment_intent_id=attempt.intent.payment_intent_id if attempt.intent else None,
            message="Payment cancelled",
        )

    async def _run(self, attempt, amount, currency, description, consumer) -> PaymentOutcome:
        try:
            return await self._drive(attempt, amount, currency, description, consumer)
        except _AttemptCancelled:
            return self._cancelled_outcome(attempt)
        except asyncio.CancelledError:
            # Cancelled from outside (timeout, caller task); pay() re-raises
            if attempt.state not in TERMINAL_STATES:
                attempt.state = S.CANCELLED
            raise

    async def _drive(self, attempt, amount, currency, description, consumer) -> PaymentOutcome:
        if attempt.method not in self.available_methods():
            return self._finish(
                attempt, S.FAILED,
                f"{display_name(attempt.method)} is not available on this device",
            )
        self._transition(attempt, S.METHOD_SELECTED)

        try:
            request = normalize_client_request(amount, currency, description, self.order_id_factory())
        except ValidationError as e:
            return self._finish(attempt, S.FAILED, f"Invalid payment request: {e.message}", error=e)
        attempt.order_id = request.order_id

        self._transition(attempt, S.INTENT_REQUESTED)
        try:
            attempt.intent = await self.api.create_intent(request)
        except ValidationError as e:
            self._transition(attempt, S.INTENT_FAILED)
            return self._finish(attempt, S.FAILED, f"Payment request was rejected: {e.message}", error=e)
        except GatewayError as e:
            self._transition(attempt, S.INTENT_FAILED)
            if self.environment is not Environment.SANDBOX:
                return self._finish(
                    attempt, S.FAILED, "Payment service is unavailable. Please try again later.", error=e,
                )
            log_event("warning", "payment.sandbox_fallback", order_id=attempt.order_id,
                      error_code=e.code, extra={"reason": e.message})
            return await self._confirm_simulated(attempt, request, consumer)

        self._transition(attempt, S.INTENT_READY)
        return await self._confirm_and_verify(attempt, request, consumer)

    async def _confirm_simulated(self, attempt, request: PaymentRequest, consumer) -> PaymentOutcome:
        self._transition(attempt, S.CONFIRMING)
        result = await self.simulated_confirmer.confirm(attempt.method, request, None)
        outcome = self._wallet_outcome(attempt, result)
        if outcome is not None:
            return outcome
        # No gateway intent exists, so there is nothing to verify
        self._transition(attempt, S.VERIFIED)
        transaction_id = result.transaction_id or f"mock_{attempt.method.value}_{attempt.order_id}"
        return await self._fulfil(attempt, consumer, transaction_id=transaction_id, simulated=True)

    async def _confirm_and_verify(self, attempt, request: PaymentRequest, consumer) -> PaymentOutcome:
        self._transition(attempt, S.CONFIRMING)
        result = await self.confirmer.confirm(attempt.method, request, attempt.intent)
        outcome = self._wallet_outcome(attempt, result)
        if outcome is not None:
            return outcome

        try:
            verification = await self.api.verify(attempt.intent.payment_intent_id)
        except (GatewayError, ValidationError) as e:
            self._transition(attempt, S.VERIFICATION_FAILED)
            return self._finish(attempt, S.FAILED, "Could not verify payment. Please try again.", error=e)

        if not verification.success:
            self._transition(attempt, S.VERIFICATION_FAILED)
            return self._finish(attempt, S.FAILED, f"Payment not completed (status: {verification.status})")

        self._transition(attempt, S.VERIFIED)
        return await self._fulfil(
            attempt, consumer,
            transaction_id=verification.transaction_id or attempt.intent.payment_intent_id,
            simulated=False,
        )

    def _wallet_outcome(self, attempt, result) -> Optional[PaymentOutcome]:
        if isinstance(result, Confirmed):
            return None
        if isinstance(result, Cancelled):
            return self._finish(attempt, S.CANCELLED, "Payment cancelled")
        if isinstance(result, Failed):
            return self._finish(attempt, S.FAILED, f"Payment failed: {result.reason}")
        raise InternalFault(f"Unknown wallet confirmation result: {result!r}")

    async def _fulfil(self, attempt, consumer, *, transaction_id: str, simulated: bool) -> PaymentOutcome:
        if attempt.paid:
            raise InternalFault("Entitlement already granted for this attempt")
        try:
            self.entitlements.mark_paid()
        except Exception:
            attempt.state = S.FAILED
            raise
        attempt.paid = True

        outcome = self._finish(
            attempt, S.FULFILLED,
            "Payment successful (simulated)" if simulated else "Payment successful",
            transaction_id=transaction_id,
            simulated=simulated,
        )
        if consumer is None:
            return outcome
        try:
            outcome.result = await consumer()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("payment.consumer_failed", extra={"order_id": attempt.order_id, "error": str(e)[:200]})
            outcome.error = e
        return outcome
