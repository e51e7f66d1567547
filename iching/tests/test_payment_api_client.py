import json

import httpx
import pytest

from iching.core.errors import GatewayError, ValidationError
from iching.features.payments.api_client import PaymentApiClient
from iching.features.payments.validators import normalize_client_request


def _client(handler):
    return PaymentApiClient(base_url="https://pay.test", timeout=1, transport=httpx.MockTransport(handler))


def _request():
    return normalize_client_request(90, "twd", "reading", "iching_1_abc")


@pytest.mark.asyncio
async def test_create_intent_posts_normalized_body():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"clientSecret": "cs", "paymentIntentId": "pi_1"})

    handle = await _client(handler).create_intent(_request())

    assert handle.payment_intent_id == "pi_1"
    assert handle.client_secret == "cs"
    assert seen["path"] == "/create-payment-intent"
    assert seen["body"] == {"amount": 90.0, "currency": "twd", "description": "reading", "orderId": "iching_1_abc"}


@pytest.mark.asyncio
async def test_4xx_is_validation_error_with_server_message():
    def handler(request):
        return httpx.Response(400, json={"error": "validation_error", "message": "Unsupported currency: xxx"})

    with pytest.raises(ValidationError) as exc:
        await _client(handler).create_intent(_request())
    assert exc.value.message == "Unsupported currency: xxx"


@pytest.mark.asyncio
@pytest.mark.parametrize("response", [
    httpx.Response(500, json={"error": "gateway_error", "message": "stripe down"}),
    httpx.Response(200, text="not json"),
    httpx.Response(200, json={"clientSecret": "cs"}),
    httpx.Response(200, json=["unexpected"]),
])
async def test_server_and_shape_failures_are_gateway_errors(response):
    with pytest.raises(GatewayError):
        await _client(lambda request: response).create_intent(_request())


@pytest.mark.asyncio
async def test_transport_failure_is_gateway_error():
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    with pytest.raises(GatewayError):
        await _client(handler).create_intent(_request())


@pytest.mark.asyncio
async def test_verify_maps_fields():
    def handler(request):
        assert json.loads(request.content) == {"paymentIntentId": "pi_1"}
        return httpx.Response(200, json={
            "success": True, "status": "succeeded", "transactionId": "pi_1", "amount": 90.0, "currency": "twd",
        })

    result = await _client(handler).verify("pi_1")

    assert result.success is True
    assert result.transaction_id == "pi_1"
    assert result.amount == 90.0


@pytest.mark.asyncio
async def test_verify_failures_are_gateway_errors():
    for response in (httpx.Response(400, json={"message": "Payment Intent ID is required"}),
                     httpx.Response(500, json={"message": "boom"}),
                     httpx.Response(200, json={"status": "succeeded"})):
        with pytest.raises(GatewayError):
            await _client(lambda request, r=response: r).verify("pi_1")
