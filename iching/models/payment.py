"""
iching/models/payment.py

Payment and entitlement models shared by the app client and the payment server.

Wire formats keep the camelCase keys the mobile client already sends and stores
(freeUsesRemaining, orderId, paymentIntentId, ...); Python attributes are snake_case.
"""

from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, NonNegativeInt


class Environment(str, Enum):
    """Payment environment. Only SANDBOX may fall back to simulated confirmation."""
    PRODUCTION = "production"
    SANDBOX = "sandbox"


class PricingMode(str, Enum):
    """PER_USE: every non-free reading is paid. UNLIMITED: one payment unlocks forever."""
    PER_USE = "per_use"
    UNLIMITED = "unlimited"


class Platform(str, Enum):
    IOS = "ios"
    ANDROID = "android"
    WEB = "web"


class PaymentMethod(str, Enum):
    APPLE_PAY = "apple_pay"
    GOOGLE_PAY = "google_pay"


class IntentStatus(str, Enum):
    """Stripe PaymentIntent statuses plus the webhook-only failure signal."""
    REQUIRES_PAYMENT_METHOD = "requires_payment_method"
    REQUIRES_CONFIRMATION = "requires_confirmation"
    REQUIRES_ACTION = "requires_action"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    CANCELED = "canceled"
    PAYMENT_FAILED = "payment_failed"
    REFUNDED = "refunded"


class EntitlementState(BaseModel):
    """
    Client-side entitlement record, persisted as one JSON blob.

    Invariants:
    - free_uses_remaining only decreases, by consuming a free use
    - total_uses increases once per fulfilled reading (free or paid)
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    free_uses_remaining: NonNegativeInt = Field(alias="freeUsesRemaining")
    total_uses: NonNegativeInt = Field(default=0, alias="totalUses")
    has_paid: bool = Field(default=False, alias="hasPaid")

    @classmethod
    def default(cls, free_limit: int) -> "EntitlementState":
        return cls(free_uses_remaining=free_limit, total_uses=0, has_paid=False)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


class PaymentRequest(BaseModel):
    """Normalized payment request (amount rounded to cents, currency lower-cased)."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    amount: Decimal
    currency: str
    description: str = ""
    order_id: str = Field(alias="orderId")

    def to_wire(self) -> dict:
        return {
            "amount": float(self.amount),
            "currency": self.currency,
            "description": self.description,
            "orderId": self.order_id,
        }


class CreatePaymentIntentRequest(BaseModel):
    """Raw /create-payment-intent body. Typed loosely; the service validates it."""
    model_config = ConfigDict(populate_by_name=True)

    amount: Any = None
    currency: Any = None
    description: Optional[Any] = None
    order_id: Any = Field(default=None, alias="orderId")


class CreatePaymentIntentResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    client_secret: str = Field(alias="clientSecret")
    payment_intent_id: str = Field(alias="paymentIntentId")


class VerifyPaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    payment_intent_id: Optional[str] = Field(default=None, alias="paymentIntentId")


class VerifyPaymentResponse(BaseModel):
    """success is true only for the terminal-success status; anything else is not an error."""
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    status: str
    transaction_id: Optional[str] = Field(default=None, alias="transactionId")
    amount: Optional[float] = None
    currency: Optional[str] = None


class WebhookAck(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    received: bool = True
    event_id: Optional[str] = Field(default=None, alias="eventId")
    duplicate: bool = False
