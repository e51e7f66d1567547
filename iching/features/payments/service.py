"""
Payment server logic.

Coordinates:
- Intent creation from a validated request (no gateway call on invalid input)
- Read-only verification of an intent's status
- Webhook reconciliation with event-id idempotency
- The server-side entitlement ledger (one grant per succeeded intent)

All Stripe-specific code is in stripe_provider.py; everything here talks to the
PaymentGateway protocol so tests can pass a fake gateway.
"""
import hashlib
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, Optional

from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from iching.core.config import settings
from iching.core.database import (
    get_db_session,
    payment_orders,
    webhook_events,
    entitlement_grants,
)
from iching.core.errors import InternalFault, ValidationError
from iching.core.logging import log_event
from iching.core.metrics import payment_intents_total, payment_verifications_total, webhook_events_total
from iching.features.payments.provider import GatewayEvent, GatewayIntent, PaymentGateway
from iching.features.payments.stripe_provider import StripeGateway
from iching.features.payments.validators import (
    from_minor_units,
    to_minor_units,
    validate_payment_request,
)
from iching.models.payment import IntentStatus, VerifyPaymentResponse, WebhookAck


logger = logging.getLogger("iching")

EVENT_SUCCEEDED = "payment_intent.succeeded"
EVENT_FAILED = "payment_intent.payment_failed"
EVENT_REFUNDED = "charge.refunded"

# Errors that mean "the ledger is unavailable", as opposed to bad input
_LEDGER_ERRORS = (SQLAlchemyError, ValueError)


def get_gateway() -> PaymentGateway:
    """Build the process-wide gateway from settings."""
    return StripeGateway()


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Ledger helpers
# ---------------------------------------------------------------------------

def upsert_order(
    *,
    order_id: str,
    payment_intent_id: str,
    amount: Decimal,
    currency: str,
    status: str,
    description: Optional[str] = None,
) -> None:
    """Insert the order row, or refresh its status if a retry already created it."""
    with get_db_session() as session:
        existing = session.execute(
            select(payment_orders.c.id).where(
                payment_orders.c.payment_intent_id == payment_intent_id
            )
        ).fetchone()
        if existing:
            session.execute(
                update(payment_orders)
                .where(payment_orders.c.payment_intent_id == payment_intent_id)
                .values(status=status, updated_at=_now())
            )
            return
        session.execute(
            insert(payment_orders).values(
                order_id=order_id,
                payment_intent_id=payment_intent_id,
                amount=amount,
                currency=currency,
                description=description,
                status=status,
            )
        )


def update_order_status(payment_intent_id: str, status: str) -> bool:
    """Record the latest observed status. Returns False if the order is unknown."""
    with get_db_session() as session:
        result = session.execute(
            update(payment_orders)
            .where(payment_orders.c.payment_intent_id == payment_intent_id)
            .values(status=status, updated_at=_now())
        )
        return bool(result.rowcount)


def record_grant(
    *,
    payment_intent_id: str,
    order_id: Optional[str],
    amount: Optional[Decimal],
    currency: Optional[str],
    source: str,
    event_id: Optional[str] = None,
) -> bool:
    """
    Grant the paid entitlement for a succeeded intent (idempotent).

    Returns:
        True if this call created the grant, False if it already existed
    """
    try:
        with get_db_session() as session:
            existing = session.execute(
                select(entitlement_grants.c.id).where(
                    entitlement_grants.c.payment_intent_id == payment_intent_id
                )
            ).fetchone()
            if existing:
                return False
            session.execute(
                insert(entitlement_grants).values(
                    payment_intent_id=payment_intent_id,
                    order_id=order_id,
                    amount=amount,
                    currency=currency,
                    source=source,
                    event_id=event_id,
                )
            )
    except IntegrityError:
        # Another instance granted it between our select and insert
        return False

    log_event(
        "info",
        "entitlement.granted",
        order_id=order_id,
        payment_intent_id=payment_intent_id,
        extra={"source": source},
    )
    return True


# ---------------------------------------------------------------------------
# Intent Service
# ---------------------------------------------------------------------------

def create_payment_intent(
    gateway: PaymentGateway,
    payload: Dict[str, Any],
    *,
    allowed_currencies: Optional[Iterable[str]] = None,
    app_tag: Optional[str] = None,
) -> Dict[str, str]:
    """
    Create a gateway intent for a validated request.

    Returns:
        {"clientSecret": ..., "paymentIntentId": ...}

    Raises:
        ValidationError: invalid request (no gateway call is made)
        GatewayError: gateway failure, upstream message attached
    """
    try:
        request = validate_payment_request(
            payload, allowed_currencies or settings.allowed_currencies
        )
    except ValidationError as e:
        payment_intents_total.inc(labels={"outcome": "rejected"})
        log_event("warning", "payment_intent.rejected", error_code=e.code, extra={"reason": e.message})
        raise

    tag = app_tag or settings.PAYMENT_APP_TAG
    try:
        intent = gateway.create_intent(
            amount_minor=to_minor_units(request.amount, request.currency),
            currency=request.currency,
            description=request.description,
            metadata={"orderId": request.order_id, "app": tag},
            idempotency_key=f"create-intent:{request.order_id}",
        )
    except Exception:
        payment_intents_total.inc(labels={"outcome": "gateway_error"})
        raise

    try:
        upsert_order(
            order_id=request.order_id,
            payment_intent_id=intent.id,
            amount=request.amount,
            currency=request.currency,
            description=request.description,
            status=intent.status,
        )
    except _LEDGER_ERRORS as e:
        # The intent carries orderId in its metadata; webhooks can still attribute it
        log_event("warning", "payment_order.record_failed", order_id=request.order_id,
                  payment_intent_id=intent.id, extra={"error": e})

    payment_intents_total.inc(labels={"outcome": "created"})
    log_event("info", "payment_intent.created", order_id=request.order_id, payment_intent_id=intent.id,
              extra={"amount": request.amount, "currency": request.currency})
    return {"clientSecret": intent.client_secret or "", "paymentIntentId": intent.id}


# ---------------------------------------------------------------------------
# Verification Service
# ---------------------------------------------------------------------------

def verify_payment(
    gateway: PaymentGateway,
    payment_intent_id: Optional[str],
    *,
    app_tag: Optional[str] = None,
) -> VerifyPaymentResponse:
    """
    Report the current status of an intent.

    A pending or failed intent is a normal outcome ({success: false}), not an error.
    An intent created for another app is never reported as a success here,
    matching the webhook path which ignores it.

    Raises:
        ValidationError: missing payment intent id
        GatewayError: the gateway could not be queried
    """
    if not payment_intent_id or not str(payment_intent_id).strip():
        raise ValidationError("Payment Intent ID is required")

    intent: GatewayIntent = gateway.retrieve_intent(str(payment_intent_id).strip())
    payment_verifications_total.inc(labels={"status": intent.status})

    try:
        update_order_status(intent.id, intent.status)
    except _LEDGER_ERRORS as e:
        log_event("warning", "payment_order.status_update_failed", payment_intent_id=intent.id, extra={"error": e})

    if intent.status != IntentStatus.SUCCEEDED.value:
        log_event("info", "payment.not_succeeded", payment_intent_id=intent.id, extra={"status": intent.status})
        return VerifyPaymentResponse(success=False, status=intent.status)

    owner = intent.metadata.get("app")
    if owner and owner != (app_tag or settings.PAYMENT_APP_TAG):
        log_event("warning", "payment.foreign_app", payment_intent_id=intent.id, extra={"app": owner})
        return VerifyPaymentResponse(success=False, status=intent.status)

    amount = from_minor_units(intent.amount_minor, intent.currency)
    try:
        record_grant(
            payment_intent_id=intent.id,
            order_id=intent.metadata.get("orderId"),
            amount=amount,
            currency=intent.currency,
            source="verification",
        )
    except _LEDGER_ERRORS as e:
        # Gateway is authoritative; the succeeded webhook backfills the ledger
        log_event("warning", "entitlement.grant_deferred", payment_intent_id=intent.id, extra={"error": e})

    return VerifyPaymentResponse(
        success=True,
        status=intent.status,
        transaction_id=intent.id,
        amount=float(amount),
        currency=intent.currency,
    )


# ---------------------------------------------------------------------------
# Webhook Reconciler
# ---------------------------------------------------------------------------

def _record_event(event: GatewayEvent, payload_hash: str) -> str:
    """
    Durably record the event before applying it.

    Returns:
        "new", "retry" (recorded earlier but never finished) or "duplicate"
    """
    with get_db_session() as session:
        existing = session.execute(
            select(webhook_events.c.processed).where(
                webhook_events.c.event_id == event.id
            )
        ).fetchone()
        if existing is not None:
            return "duplicate" if existing[0] else "retry"

    try:
        with get_db_session() as session:
            session.execute(
                insert(webhook_events).values(
                    event_id=event.id,
                    event_type=event.type,
                    payload_hash=payload_hash,
                    processed=False,
                )
            )
    except IntegrityError:
        # Race: another instance recorded this delivery first
        return "duplicate"
    return "new"


def _mark_event_processed(event_id: str) -> None:
    with get_db_session() as session:
        session.execute(
            update(webhook_events)
            .where(webhook_events.c.event_id == event_id)
            .values(processed=True, processed_at=_now(), error=None)
        )


def _mark_event_failed(event_id: str, error: str) -> None:
    try:
        with get_db_session() as session:
            session.execute(
                update(webhook_events)
                .where(webhook_events.c.event_id == event_id)
                .values(error=error[:2000])
            )
    except _LEDGER_ERRORS:
        logger.exception("webhook.error_not_recorded", extra={"event_id": event_id})


def _handle_succeeded(event: GatewayEvent, app_tag: str) -> str:
    intent = event.payload
    intent_id = intent.get("id")
    metadata = event.metadata
    if not intent_id:
        raise ValueError("payment_intent.succeeded without intent id")
    if metadata.get("app") and metadata.get("app") != app_tag:
        log_event("info", "webhook.foreign_app", payment_intent_id=intent_id, event_type=event.type,
                  extra={"app": metadata.get("app")})
        return "ignored"

    order_id = metadata.get("orderId")
    currency = str(intent.get("currency") or "").lower() or None
    amount = from_minor_units(int(intent.get("amount") or 0), currency or "") if currency else None

    if order_id and currency and amount is not None:
        upsert_order(
            order_id=order_id,
            payment_intent_id=intent_id,
            amount=amount,
            currency=currency,
            description=intent.get("description"),
            status=IntentStatus.SUCCEEDED.value,
        )
    else:
        update_order_status(intent_id, IntentStatus.SUCCEEDED.value)

    granted = record_grant(
        payment_intent_id=intent_id,
        order_id=order_id,
        amount=amount,
        currency=currency,
        source="webhook",
        event_id=event.id,
    )
    if not granted:
        log_event("info", "entitlement.already_granted", order_id=order_id, payment_intent_id=intent_id)
    return "processed"


def _handle_failed(event: GatewayEvent, app_tag: str) -> str:
    intent = event.payload
    last_error = (intent.get("last_payment_error") or {}).get("message")
    if intent.get("id"):
        update_order_status(intent["id"], IntentStatus.PAYMENT_FAILED.value)
    log_event("warning", "payment.failed", order_id=event.metadata.get("orderId"),
              payment_intent_id=intent.get("id"), event_type=event.type, extra={"last_error": last_error})
    return "processed"


def _handle_refunded(event: GatewayEvent, app_tag: str) -> str:
    charge = event.payload
    intent_id = charge.get("payment_intent")
    if intent_id:
        update_order_status(intent_id, IntentStatus.REFUNDED.value)
    # Reversal of the grant is a policy decision; the refund is recorded only
    log_event("info", "payment.refunded", payment_intent_id=intent_id, event_type=event.type,
              extra={"charge_id": charge.get("id")})
    return "processed"


EVENT_HANDLERS: Dict[str, Callable[[GatewayEvent, str], str]] = {
    EVENT_SUCCEEDED: _handle_succeeded,
    EVENT_FAILED: _handle_failed,
    EVENT_REFUNDED: _handle_refunded,
}


def process_webhook_event(
    gateway: PaymentGateway,
    body: bytes,
    signature: Optional[str],
    *,
    app_tag: Optional[str] = None,
) -> WebhookAck:
    """
    Process a gateway webhook (idempotent on event id).

    1. Verify signature over the raw body
    2. Durably record the event (skip if already processed)
    3. Apply side effects by event type
    4. Mark as processed

    Raises:
        SignatureError: forged or corrupted payload (do not retry)
        InternalFault: the event could not be recorded or applied (retry)
    """
    event = gateway.construct_event(body, signature)
    payload_hash = hashlib.sha256(body).hexdigest()

    try:
        recorded = _record_event(event, payload_hash)
    except _LEDGER_ERRORS as e:
        webhook_events_total.inc(labels={"type": event.type, "outcome": "failed"})
        raise InternalFault(f"Webhook event {event.id} could not be recorded: {e}")

    if recorded == "duplicate":
        webhook_events_total.inc(labels={"type": event.type, "outcome": "duplicate"})
        log_event("info", "webhook.duplicate", event_type=event.type, extra={"event_id": event.id})
        return WebhookAck(event_id=event.id, duplicate=True)

    handler = EVENT_HANDLERS.get(event.type)
    try:
        if handler:
            outcome = handler(event, app_tag or settings.PAYMENT_APP_TAG)
        else:
            log_event("info", "webhook.unhandled_type", event_type=event.type, extra={"event_id": event.id})
            outcome = "ignored"
        _mark_event_processed(event.id)
    except Exception as e:
        _mark_event_failed(event.id, str(e))
        webhook_events_total.inc(labels={"type": event.type, "outcome": "failed"})
        raise InternalFault(f"Webhook event {event.id} failed: {e}") from e

    webhook_events_total.inc(labels={"type": event.type, "outcome": outcome})
    return WebhookAck(event_id=event.id)
