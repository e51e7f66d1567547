import json

import httpx
import pytest

from iching.core.errors import DivinationError
from iching.features.divination.client import (
    BALANCE_EXHAUSTED_MESSAGE,
    DEFAULT_ERROR_MESSAGE,
    DivinationClient,
    ZH_TW_INSTRUCTION,
)
from iching.models.divination import DivinationRequest

URL = "https://divination.test/api/divination"

READING = {
    "lowerTrigram": "震",
    "upperTrigram": "坎",
    "hexagramName": "水雷屯",
    "changingLine": 3,
    "explanation": {"plain": "起步艱難", "tips": ["耐心"]},
}


def _client(handler):
    return DivinationClient(url=URL, timeout=1, transport=httpx.MockTransport(handler))


def _request():
    return DivinationRequest(n1=1, n2=22, n3=333, question="  How will it go?  ")


@pytest.mark.asyncio
async def test_successful_reading():
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=READING)

    result = await _client(handler).divine(_request())

    assert result.hexagram_name == "水雷屯"
    assert result.changing_line == 3
    assert seen["body"]["n3"] == 333
    assert seen["body"]["question"] == f"{ZH_TW_INSTRUCTION}How will it go?"
    assert seen["body"]["language"] == "zh-TW"


@pytest.mark.asyncio
async def test_balance_exhausted_gets_friendly_message():
    def handler(request):
        return httpx.Response(402, json={"error": "DEEPSEEK_402", "message": "Insufficient Balance"})

    with pytest.raises(DivinationError) as exc:
        await _client(handler).divine(_request())
    assert exc.value.message == BALANCE_EXHAUSTED_MESSAGE


@pytest.mark.asyncio
async def test_upstream_message_is_used():
    def handler(request):
        return httpx.Response(500, json={"error": "INTERNAL", "message": "model overloaded"})

    with pytest.raises(DivinationError) as exc:
        await _client(handler).divine(_request())
    assert exc.value.message == "model overloaded"


@pytest.mark.asyncio
async def test_non_json_failure_and_network_error_use_default_message():
    def bad_gateway(request):
        return httpx.Response(502, text="<html>bad gateway</html>")

    def offline(request):
        raise httpx.ConnectError("offline", request=request)

    for handler in (bad_gateway, offline):
        with pytest.raises(DivinationError) as exc:
            await _client(handler).divine(_request())
        assert exc.value.message == DEFAULT_ERROR_MESSAGE


@pytest.mark.asyncio
async def test_incomplete_reading_is_an_error():
    def handler(request):
        return httpx.Response(200, json={"hexagramName": "x"})

    with pytest.raises(DivinationError):
        await _client(handler).divine(_request())


def test_request_validation():
    with pytest.raises(ValueError):
        DivinationRequest(n1=1000, n2=1, n3=1, question="long enough")
    with pytest.raises(ValueError):
        DivinationRequest(n1=1, n2=1, n3=1, question=" hi  ")
