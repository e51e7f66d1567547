"""
iching/features/divination/service.py

Reading flow: entitlement gate -> (payment) -> divination -> history.

A free use is consumed before the divination call is made. A paid reading is
requested only after the payment attempt is fulfilled.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

from iching.core.config import settings
from iching.core.errors import DivinationError
from iching.features.divination.client import DivinationClient
from iching.features.divination.history import HistoryStore
from iching.features.entitlements.store import EntitlementStore
from iching.features.payments.orchestrator import PaymentOrchestrator, PaymentOutcome
from iching.models.divination import DivinationRequest, DivinationResponse, HistoryItem
from iching.models.payment import PaymentMethod, PricingMode


logger = logging.getLogger("iching")

PAYMENT_DESCRIPTION = "I Ching divination reading"


@dataclass(frozen=True)
class Quote:
    """What the paywall shows."""
    amount: Decimal
    currency: str
    pricing_mode: PricingMode
    free_uses_remaining: int
    needs_payment: bool


@dataclass
class ReadingOutcome:
    payment_required: bool = False
    response: Optional[DivinationResponse] = None
    error: Optional[str] = None
    payment: Optional[PaymentOutcome] = None
    history: List[HistoryItem] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.response is not None


class ReadingService:
    def __init__(
        self,
        entitlements: EntitlementStore,
        divination: DivinationClient,
        history: HistoryStore,
        orchestrator: PaymentOrchestrator,
        *,
        price_amount: Optional[float] = None,
        price_currency: Optional[str] = None,
    ):
        self.entitlements = entitlements
        self.divination = divination
        self.history = history
        self.orchestrator = orchestrator
        self.price_amount = Decimal(str(settings.PAID_PRICE_AMOUNT if price_amount is None else price_amount))
        self.price_currency = (price_currency or settings.PAID_PRICE_CURRENCY).lower()

    def quote(self) -> Quote:
        state = self.entitlements.state
        return Quote(
            amount=self.price_amount,
            currency=self.price_currency,
            pricing_mode=self.entitlements.pricing_mode,
            free_uses_remaining=state.free_uses_remaining,
            needs_payment=self.entitlements.needs_payment(),
        )

    async def _divine(self, request: DivinationRequest) -> ReadingOutcome:
        try:
            response = await self.divination.divine(request)
        except DivinationError as e:
            return ReadingOutcome(error=e.message)
        items = self.history.add(request, response)
        return ReadingOutcome(response=response, history=items)

    async def submit(self, request: DivinationRequest) -> ReadingOutcome:
        """Run a reading if the user is entitled; otherwise ask for payment."""
        if self.entitlements.needs_payment():
            return ReadingOutcome(payment_required=True)

        # Unlimited and paid with no free uses left: nothing to consume
        if self.entitlements.can_use_free() and not self.entitlements.consume_free_use():
            return ReadingOutcome(payment_required=True)
        return await self._divine(request)

    async def pay_and_submit(self, method: PaymentMethod, request: DivinationRequest) -> ReadingOutcome:
        """Pay for one reading, then request it."""
        async def consumer() -> ReadingOutcome:
            return await self._divine(request)

        payment = await self.orchestrator.pay(
            method,
            self.price_amount,
            self.price_currency,
            PAYMENT_DESCRIPTION,
            consumer=consumer,
        )
        if not payment.fulfilled:
            return ReadingOutcome(payment_required=True, error=payment.message, payment=payment)
        if payment.error is not None:
            logger.error("reading.after_payment_failed", extra={"order_id": payment.order_id})
            return ReadingOutcome(error=str(payment.error), payment=payment)

        outcome: ReadingOutcome = payment.result
        outcome.payment = payment
        return outcome
