"""
Native wallet confirmation.

The real confirmation happens in the platform's payment sheet (Apple Pay /
Google Pay); this module only models its outcome and the sandbox stand-in.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Protocol, Union

from iching.features.payments.api_client import IntentHandle
from iching.models.payment import PaymentMethod, PaymentRequest, Platform


logger = logging.getLogger("iching")

SIMULATED_DELAY_SECONDS = 1.5

_PLATFORM_METHODS = {
    Platform.IOS: [PaymentMethod.APPLE_PAY],
    Platform.ANDROID: [PaymentMethod.GOOGLE_PAY],
    Platform.WEB: [],
}

_DISPLAY_NAMES = {
    PaymentMethod.APPLE_PAY: "Apple Pay",
    PaymentMethod.GOOGLE_PAY: "Google Pay",
}


def methods_for_platform(platform: Union[Platform, str]) -> List[PaymentMethod]:
    """The native wallet method a platform can present (none on web)."""
    return list(_PLATFORM_METHODS.get(Platform(platform), []))


def display_name(method: Union[PaymentMethod, str]) -> str:
    return _DISPLAY_NAMES[PaymentMethod(method)]


@dataclass(frozen=True)
class Confirmed:
    transaction_id: Optional[str] = None


@dataclass(frozen=True)
class Cancelled:
    pass


@dataclass(frozen=True)
class Failed:
    reason: str


ConfirmationResult = Union[Confirmed, Cancelled, Failed]


class WalletConfirmer(Protocol):
    async def confirm(
        self,
        method: PaymentMethod,
        request: PaymentRequest,
        intent: Optional[IntentHandle],
    ) -> ConfirmationResult:
        """Present (or stand in for) the wallet sheet and report the user's decision."""
        ...


class ExternalWalletConfirmer:
    """The native sheet already confirmed the intent; the server verifies it next."""

    async def confirm(self, method, request, intent) -> ConfirmationResult:
        return Confirmed(transaction_id=intent.payment_intent_id if intent else None)


class SimulatedWalletConfirmer:
    """
    Sandbox-only stand-in for the wallet sheet.

    Args:
        delay: seconds to wait before answering
        decide: optional coroutine returning the result (e.g. a simulated cancel)
    """

    def __init__(
        self,
        delay: float = SIMULATED_DELAY_SECONDS,
        decide: Optional[Callable[[PaymentMethod, PaymentRequest], Awaitable[ConfirmationResult]]] = None,
    ):
        self.delay = delay
        self.decide = decide

    async def confirm(self, method, request, intent) -> ConfirmationResult:
        logger.warning(
            "wallet.simulated_confirmation",
            extra={"order_id": request.order_id, "method": PaymentMethod(method).value},
        )
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.decide is not None:
            return await self.decide(method, request)
        return Confirmed(transaction_id=f"mock_{PaymentMethod(method).value}_{request.order_id}")
