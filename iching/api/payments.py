"""
Payment API routes.

Stateless surface used by the app and by Stripe:
- POST /create-payment-intent: Create a PaymentIntent for a validated order
- POST /verify-payment: Report an intent's current status
- POST /webhook: Handle Stripe webhooks (signature verified, idempotent)

Non-POST methods on these paths answer 405 with the standard error body.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

from iching.features.payments.provider import PaymentGateway
from iching.features.payments.service import (
    create_payment_intent,
    verify_payment,
    process_webhook_event,
)
from iching.models.payment import (
    CreatePaymentIntentRequest,
    CreatePaymentIntentResponse,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
    WebhookAck,
)


router = APIRouter(tags=["payments"])


def get_payment_gateway(request: Request) -> PaymentGateway:
    """Gateway configured on the app (tests install a fake one)."""
    return request.app.state.gateway


@router.post(
    "/create-payment-intent",
    response_model=CreatePaymentIntentResponse,
    response_model_by_alias=True,
)
def create_intent(
    body: CreatePaymentIntentRequest,
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    """
    Create a Stripe PaymentIntent.

    Returns:
        {"clientSecret": "...", "paymentIntentId": "pi_..."}

    Errors:
        400: Missing/invalid amount, currency or orderId
        500: Stripe API error (message carries the upstream reason)
    """
    return create_payment_intent(gateway, body.model_dump(by_alias=True))


@router.post(
    "/verify-payment",
    response_model=VerifyPaymentResponse,
    response_model_by_alias=True,
    response_model_exclude_none=True,
)
def verify(
    body: VerifyPaymentRequest,
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    """
    Verify a PaymentIntent's status.

    A not-yet-succeeded intent is a normal 200 answer with success=false.

    Errors:
        400: paymentIntentId missing
        500: Stripe API error
    """
    return verify_payment(gateway, body.payment_intent_id)


@router.post("/webhook", response_model=WebhookAck, response_model_by_alias=True)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    """
    Handle Stripe webhook events.

    Signature is verified over the raw body. Events are recorded by id, so
    redelivery of a processed event is acknowledged without side effects.

    Errors:
        400: Invalid signature or payload
        500: Processing failed (Stripe retries)
    """
    payload = await request.body()
    return process_webhook_event(gateway, payload, stripe_signature)
