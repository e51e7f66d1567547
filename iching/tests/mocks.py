import asyncio
import json
from typing import Any, Dict, List, Optional

from iching.core.errors import GatewayError, SignatureError
from iching.features.payments.api_client import IntentHandle, VerificationResult
from iching.features.payments.provider import GatewayEvent, GatewayIntent
from iching.features.payments.wallet import Confirmed

VALID_SIGNATURE = "t=1,v1=fake"


class FakeGateway:
    """In-memory stand-in for Stripe. Honors idempotency keys like the real API."""

    def __init__(self):
        self.intents: Dict[str, GatewayIntent] = {}
        self.create_calls: List[Dict[str, Any]] = []
        self.create_error: Optional[Exception] = None
        self.retrieve_error: Optional[Exception] = None
        self._by_key: Dict[str, str] = {}

    def create_intent(self, *, amount_minor, currency, description, metadata, idempotency_key):
        self.create_calls.append({
            "amount_minor": amount_minor,
            "currency": currency,
            "description": description,
            "metadata": dict(metadata),
            "idempotency_key": idempotency_key,
        })
        if self.create_error:
            raise self.create_error
        if idempotency_key in self._by_key:
            return self.intents[self._by_key[idempotency_key]]
        intent_id = f"pi_test{len(self.intents) + 1}"
        intent = GatewayIntent(
            id=intent_id,
            client_secret=f"{intent_id}_secret_abc",
            amount_minor=amount_minor,
            currency=currency,
            status="requires_payment_method",
            metadata=dict(metadata),
        )
        self.intents[intent_id] = intent
        self._by_key[idempotency_key] = intent_id
        return intent

    def set_status(self, intent_id: str, status: str) -> None:
        old = self.intents[intent_id]
        self.intents[intent_id] = GatewayIntent(
            id=old.id,
            client_secret=old.client_secret,
            amount_minor=old.amount_minor,
            currency=old.currency,
            status=status,
            metadata=old.metadata,
        )

    def retrieve_intent(self, payment_intent_id):
        if self.retrieve_error:
            raise self.retrieve_error
        if payment_intent_id not in self.intents:
            raise GatewayError(f"No such payment_intent: '{payment_intent_id}'", upstream_status=404)
        return self.intents[payment_intent_id]

    def construct_event(self, body, signature):
        if signature != VALID_SIGNATURE:
            raise SignatureError("Invalid signature")
        event = json.loads(body)
        return GatewayEvent(id=event["id"], type=event["type"], payload=event["data"]["object"])


def event_body(event_id: str, event_type: str, obj: Dict[str, Any]) -> bytes:
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}}).encode()


def succeeded_intent(intent_id="pi_test1", order_id="iching_1_abc", amount=9000, currency="twd", app="iching-divination"):
    return {
        "id": intent_id,
        "object": "payment_intent",
        "amount": amount,
        "currency": currency,
        "status": "succeeded",
        "metadata": {"orderId": order_id, "app": app},
    }


class FakePaymentApi:
    """Scripted PaymentApiClient. Optional gates hold a call open until released."""

    def __init__(self, *, intent_error=None, verify_status="succeeded", verify_error=None):
        self.intent_error = intent_error
        self.verify_status = verify_status
        self.verify_error = verify_error
        self.intent_gate: Optional[asyncio.Event] = None
        self.verify_gate: Optional[asyncio.Event] = None
        self.requests = []
        self.verified = []

    async def create_intent(self, request):
        self.requests.append(request)
        if self.intent_gate is not None:
            await self.intent_gate.wait()
        if self.intent_error:
            raise self.intent_error
        n = len(self.requests)
        return IntentHandle(client_secret=f"pi_{n}_secret", payment_intent_id=f"pi_{n}")

    async def verify(self, payment_intent_id):
        self.verified.append(payment_intent_id)
        if self.verify_gate is not None:
            await self.verify_gate.wait()
        if self.verify_error:
            raise self.verify_error
        return VerificationResult(
            success=self.verify_status == "succeeded",
            status=self.verify_status,
            transaction_id=payment_intent_id if self.verify_status == "succeeded" else None,
        )


class ScriptedConfirmer:
    def __init__(self, result=None):
        self.result = result or Confirmed()
        self.calls = 0

    async def confirm(self, method, request, intent):
        self.calls += 1
        return self.result
