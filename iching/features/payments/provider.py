"""
Payment gateway protocol.

Defines the interface the payment server needs from a gateway (Stripe, etc.)
so intent creation, verification and webhook reconciliation never touch SDK
objects directly.
"""
from typing import Protocol, Dict, Any, Optional
from dataclasses import dataclass, field


@dataclass(frozen=True)
class GatewayIntent:
    """Gateway payment intent, relayed to the client and never mutated by us."""
    id: str
    client_secret: Optional[str]
    amount_minor: int  # smallest currency unit as reported by the gateway
    currency: str
    status: str
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class GatewayEvent:
    """Verified webhook event."""
    id: str
    type: str
    payload: Dict[str, Any]  # the event's data.object

    @property
    def object_id(self) -> Optional[str]:
        return self.payload.get("id")

    @property
    def metadata(self) -> Dict[str, str]:
        return self.payload.get("metadata") or {}


class PaymentGateway(Protocol):
    """
    Protocol for payment gateways.

    Implementations must handle:
    - Intent creation with caller-supplied idempotency key
    - Read-only intent retrieval
    - Webhook signature verification and parsing
    """

    def create_intent(
        self,
        *,
        amount_minor: int,
        currency: str,
        description: Optional[str],
        metadata: Dict[str, str],
        idempotency_key: str,
    ) -> GatewayIntent:
        """
        Create a payment intent.

        Raises:
            GatewayError: If the gateway rejects the call or is unreachable
        """
        ...

    def retrieve_intent(self, payment_intent_id: str) -> GatewayIntent:
        """
        Fetch the current state of an intent (no mutation at the gateway).

        Raises:
            GatewayError: If the gateway call fails
        """
        ...

    def construct_event(self, body: bytes, signature: Optional[str]) -> GatewayEvent:
        """
        Verify the signature over the exact raw body and parse the event.

        Raises:
            SignatureError: If the signature is missing, invalid or the payload is not an event
            InternalFault: If the webhook secret is not configured
        """
        ...
