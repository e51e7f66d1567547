"""POST /create-payment-intent against a fake gateway and the SQLite ledger."""
from sqlalchemy import select

from iching.core.database import get_db_session, payment_orders
from iching.core.errors import GatewayError
from iching.core.metrics import payment_intents_total


def _body(**overrides):
    body = {"amount": 90, "currency": "twd", "description": "I Ching reading", "orderId": "iching_1_abc"}
    body.update(overrides)
    return body


def test_creates_intent_and_records_order(client, gateway):
    resp = client.post("/create-payment-intent", json=_body())

    assert resp.status_code == 200
    data = resp.json()
    assert data == {"clientSecret": "pi_test1_secret_abc", "paymentIntentId": "pi_test1"}

    call = gateway.create_calls[0]
    assert call["amount_minor"] == 9000
    assert call["currency"] == "twd"
    assert call["metadata"] == {"orderId": "iching_1_abc", "app": "iching-divination"}
    assert call["idempotency_key"] == "create-intent:iching_1_abc"

    with get_db_session() as session:
        order = session.execute(
            select(payment_orders).where(payment_orders.c.order_id == "iching_1_abc")
        ).fetchone()
    assert order is not None
    assert order.payment_intent_id == "pi_test1"
    assert order.status == "requires_payment_method"
    assert payment_intents_total.value({"outcome": "created"}) == 1


def test_retry_with_same_order_id_reuses_intent(client, gateway):
    first = client.post("/create-payment-intent", json=_body())
    second = client.post("/create-payment-intent", json=_body())

    assert first.json()["paymentIntentId"] == second.json()["paymentIntentId"]
    assert len(gateway.intents) == 1
    with get_db_session() as session:
        rows = session.execute(select(payment_orders)).fetchall()
    assert len(rows) == 1


def test_unsupported_currency_rejected_without_gateway_call(client, gateway):
    resp = client.post("/create-payment-intent", json=_body(currency="xxx"))

    assert resp.status_code == 400
    assert resp.json()["error"] == "validation_error"
    assert gateway.create_calls == []
    assert payment_intents_total.value({"outcome": "rejected"}) == 1


def test_non_positive_amount_rejected(client, gateway):
    resp = client.post("/create-payment-intent", json=_body(amount=0))
    assert resp.status_code == 400
    assert gateway.create_calls == []


def test_zero_decimal_currency_sent_in_whole_units(client, gateway):
    resp = client.post("/create-payment-intent", json=_body(amount=500, currency="JPY"))
    assert resp.status_code == 200
    assert gateway.create_calls[0]["amount_minor"] == 500
    assert gateway.create_calls[0]["currency"] == "jpy"


def test_gateway_failure_is_500_with_message(client, gateway):
    gateway.create_error = GatewayError("Stripe payment intent creation failed: card_declined")

    resp = client.post("/create-payment-intent", json=_body())

    assert resp.status_code == 500
    body = resp.json()
    assert body["error"] == "gateway_error"
    assert "card_declined" in body["message"]
    # server stays up
    assert client.get("/healthz").status_code == 200


def test_oversized_amount_is_400_not_500(client, gateway):
    resp = client.post("/create-payment-intent", json=_body(amount=1e30))

    assert resp.status_code == 400
    body = resp.json()
    assert body["error"] == "validation_error"
    assert body["message"] == "Amount is too large"
    assert gateway.create_calls == []
