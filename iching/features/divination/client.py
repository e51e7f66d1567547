"""
Client for the remote divination service.

The hexagram computation and its explanation happen remotely; this module only
shapes the request and turns failures into messages fit for the user.
"""
import logging
import time
from typing import Optional

import httpx
from pydantic import ValidationError as ModelValidationError

from iching.core.config import settings
from iching.core.errors import DivinationError
from iching.models.divination import DivinationRequest, DivinationResponse


logger = logging.getLogger("iching")

DEFAULT_ERROR_MESSAGE = "Service temporarily unavailable, please try again later"
BALANCE_EXHAUSTED_CODE = "DEEPSEEK_402"
BALANCE_EXHAUSTED_MESSAGE = "Service balance is exhausted. Please try again later or contact the developer"

# The service answers in the language the question asks for
ZH_TW_INSTRUCTION = "請務必使用繁體中文回答，不要使用英文。問題："


def _wire_body(request: DivinationRequest) -> dict:
    body = {
        "n1": request.n1,
        "n2": request.n2,
        "n3": request.n3,
        "question": request.question,
        "locale": request.locale,
    }
    if request.locale.lower().startswith("zh"):
        body["question"] = f"{ZH_TW_INSTRUCTION}{request.question}"
        body["language"] = "zh-TW"
        body["responseLanguage"] = "traditional-chinese"
    return body


def _failure_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return DEFAULT_ERROR_MESSAGE
    if not isinstance(data, dict):
        return DEFAULT_ERROR_MESSAGE
    if data.get("error") == BALANCE_EXHAUSTED_CODE:
        return BALANCE_EXHAUSTED_MESSAGE
    return str(data.get("message") or DEFAULT_ERROR_MESSAGE)


class DivinationClient:
    def __init__(
        self,
        url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url or settings.DIVINATION_API_URL
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECONDS
        self.transport = transport

    async def divine(self, request: DivinationRequest) -> DivinationResponse:
        """
        Request a reading.

        Raises:
            DivinationError: the service failed or answered with an unusable body
        """
        started = time.perf_counter()
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(self.url, json=_wire_body(request))
        except httpx.HTTPError as e:
            logger.warning("divination.unreachable", extra={"error": e.__class__.__name__})
            raise DivinationError(DEFAULT_ERROR_MESSAGE)

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        if response.status_code >= 300:
            message = _failure_message(response)
            logger.warning(
                "divination.failed",
                extra={"status": response.status_code, "elapsed_ms": elapsed_ms},
            )
            raise DivinationError(message)

        try:
            result = DivinationResponse.model_validate(response.json())
        except (ValueError, ModelValidationError):
            raise DivinationError(DEFAULT_ERROR_MESSAGE)

        logger.info(
            "divination.succeeded",
            extra={"hexagram": result.hexagram_name, "changing_line": result.changing_line, "elapsed_ms": elapsed_ms},
        )
        return result
