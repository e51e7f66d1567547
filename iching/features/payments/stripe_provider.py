"""
Stripe payment gateway implementation.

Implements the PaymentGateway protocol with Stripe PaymentIntents.
Handles webhook signature verification over the raw request body.
"""
import json
import logging
from typing import Any, Dict, Optional

import stripe

from iching.core.config import settings
from iching.core.errors import GatewayError, InternalFault, SignatureError
from iching.features.payments.provider import GatewayEvent, GatewayIntent


logger = logging.getLogger("iching")


def _to_intent(obj: Any) -> GatewayIntent:
    metadata = obj.get("metadata") or {}
    return GatewayIntent(
        id=obj.get("id"),
        client_secret=obj.get("client_secret"),
        amount_minor=int(obj.get("amount") or 0),
        currency=str(obj.get("currency") or "").lower(),
        status=obj.get("status") or "unknown",
        metadata={str(k): str(v) for k, v in metadata.items()},
    )


class StripeGateway:
    """Stripe implementation of the PaymentGateway protocol."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        tolerance_seconds: Optional[int] = None,
    ):
        """
        Initialize the Stripe gateway.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY)
            webhook_secret: Stripe webhook signing secret (defaults to STRIPE_WEBHOOK_SECRET)
            tolerance_seconds: Max age of a signed webhook timestamp
        """
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET
        self.tolerance_seconds = tolerance_seconds or settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS

    def _require_key(self) -> str:
        if not self.secret_key:
            raise GatewayError("Payment gateway is not configured (STRIPE_SECRET_KEY missing)")
        return self.secret_key

    def create_intent(
        self,
        *,
        amount_minor: int,
        currency: str,
        description: Optional[str],
        metadata: Dict[str, str],
        idempotency_key: str,
    ) -> GatewayIntent:
        """Create a Stripe PaymentIntent; retries with the same key return the same intent."""
        api_key = self._require_key()
        try:
            intent = stripe.PaymentIntent.create(
                api_key=api_key,
                amount=amount_minor,
                currency=currency,
                description=description or None,
                metadata=metadata,
                automatic_payment_methods={"enabled": True},
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            raise GatewayError(
                f"Stripe payment intent creation failed: {e.user_message or str(e)}",
                upstream_status=getattr(e, "http_status", None),
            )
        return _to_intent(intent)

    def retrieve_intent(self, payment_intent_id: str) -> GatewayIntent:
        """Retrieve a Stripe PaymentIntent."""
        api_key = self._require_key()
        try:
            intent = stripe.PaymentIntent.retrieve(payment_intent_id, api_key=api_key)
        except stripe.StripeError as e:
            raise GatewayError(
                f"Stripe payment intent retrieval failed: {e.user_message or str(e)}",
                upstream_status=getattr(e, "http_status", None),
            )
        return _to_intent(intent)

    def construct_event(self, body: bytes, signature: Optional[str]) -> GatewayEvent:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            # Misconfiguration, not a forged payload: let Stripe retry once fixed
            raise InternalFault("STRIPE_WEBHOOK_SECRET not configured")
        if not signature:
            raise SignatureError("Missing Stripe-Signature header")

        payload = body.decode("utf-8", errors="replace")
        try:
            stripe.WebhookSignature.verify_header(
                payload, signature, self.webhook_secret, self.tolerance_seconds
            )
        except stripe.SignatureVerificationError as e:
            raise SignatureError(f"Invalid signature: {e}")

        try:
            event = json.loads(payload)
            return GatewayEvent(
                id=event["id"],
                type=event["type"],
                payload=(event.get("data") or {}).get("object") or {},
            )
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise SignatureError(f"Invalid payload: {e}")
