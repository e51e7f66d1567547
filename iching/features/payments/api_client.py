"""
HTTP client for the payment endpoints.

Maps transport outcomes onto the error taxonomy the orchestrator branches on:
4xx is the caller's fault (ValidationError, terminal), everything else that is
not a usable 2xx body is a GatewayError.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from iching.core.config import settings
from iching.core.errors import GatewayError, ValidationError
from iching.models.payment import PaymentRequest


logger = logging.getLogger("iching")


@dataclass(frozen=True)
class IntentHandle:
    client_secret: str
    payment_intent_id: str


@dataclass(frozen=True)
class VerificationResult:
    success: bool
    status: str
    transaction_id: Optional[str] = None
    amount: Optional[float] = None
    currency: Optional[str] = None


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or f"HTTP {response.status_code}")
    return f"HTTP {response.status_code}"


class PaymentApiClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.PAYMENT_API_URL).rstrip("/")
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECONDS
        self.transport = transport

    async def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self.transport
            ) as client:
                response = await client.post(path, json=body)
        except httpx.HTTPError as e:
            raise GatewayError(f"Payment service unreachable: {e.__class__.__name__}")

        if 400 <= response.status_code < 500:
            raise ValidationError(_error_message(response), status_code=response.status_code)
        if response.status_code >= 300:
            raise GatewayError(
                f"Payment service error: {_error_message(response)}",
                upstream_status=response.status_code,
            )
        try:
            data = response.json()
        except ValueError:
            raise GatewayError("Malformed response from payment service")
        if not isinstance(data, dict):
            raise GatewayError("Malformed response from payment service")
        return data

    async def create_intent(self, request: PaymentRequest) -> IntentHandle:
        data = await self._post("/create-payment-intent", request.to_wire())
        client_secret = data.get("clientSecret")
        intent_id = data.get("paymentIntentId")
        if not client_secret or not intent_id:
            logger.error("payment_intent.malformed_response", extra={"order_id": request.order_id})
            raise GatewayError("Malformed payment intent response")
        return IntentHandle(client_secret=str(client_secret), payment_intent_id=str(intent_id))

    async def verify(self, payment_intent_id: str) -> VerificationResult:
        try:
            data = await self._post("/verify-payment", {"paymentIntentId": payment_intent_id})
        except ValidationError as e:
            # Verification has no terminal 4xx of its own; treat as an unusable answer
            raise GatewayError(f"Verification rejected: {e.message}", upstream_status=e.status_code)
        if "success" not in data or "status" not in data:
            raise GatewayError("Malformed verification response")
        amount = data.get("amount")
        return VerificationResult(
            success=bool(data["success"]),
            status=str(data["status"]),
            transaction_id=data.get("transactionId"),
            amount=float(amount) if amount is not None else None,
            currency=data.get("currency"),
        )
