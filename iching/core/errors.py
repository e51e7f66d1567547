"""Error taxonomy and FastAPI handlers.

Every error body has the same shape: {"error": code, "message": text, "request_id": rid}.
"""

import logging
from typing import Optional
from uuid import uuid4

from starlette.exceptions import HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.requests import Request

from iching.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id


class ValidationError(AppError, ValueError):
    """Bad input shape or range. Client's fault, never retried automatically."""
    code = "validation_error"
    status_code = 400


class SignatureError(AppError):
    """Webhook payload failed signature verification. Rejected outright, never processed."""
    code = "invalid_signature"
    status_code = 400


class PaymentInProgressError(AppError):
    """A payment attempt is already in flight on this device."""
    code = "payment_in_progress"
    status_code = 409


class GatewayError(AppError):
    """Upstream payment gateway failure. Carries the upstream message for diagnosis."""
    code = "gateway_error"
    status_code = 500

    def __init__(self, message: str, *, upstream_status: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.upstream_status = upstream_status


class InternalFault(AppError):
    """Unexpected failure before an event was durably applied. Safe to retry."""
    code = "internal_error"
    status_code = 500


class DivinationError(AppError):
    """Divination service failure, with a message fit to show the user."""
    code = "divination_failed"
    status_code = 502


def _request_id_for(request: Request, preferred: Optional[str] = None) -> str:
    return preferred or getattr(request.state, "request_id", None) or get_request_id() or str(uuid4())


def _error_response(
    request: Request,
    *,
    status: int,
    code: str,
    message: str,
    event: str,
    request_id: Optional[str] = None,
    headers: Optional[dict] = None,
    exc_info: bool = False,
) -> JSONResponse:
    """Log once and render the common error body, echoing the request id header."""
    rid = _request_id_for(request, request_id)
    level = logging.ERROR if status >= 500 else logging.WARNING
    logging.getLogger("iching").log(
        level,
        event,
        exc_info=exc_info,
        extra={"request_id": rid, "error_code": code, "status": status, "path": request.url.path},
    )
    response = JSONResponse(
        status_code=status,
        content={"error": code, "message": message, "request_id": rid},
        headers=headers,
    )
    response.headers["x-request-id"] = rid
    return response


_HTTP_CODES = {404: "not_found", 405: "method_not_allowed"}


async def app_error_handler(request: Request, exc: AppError):
    return _error_response(
        request,
        status=exc.status_code,
        code=exc.code,
        message=exc.message,
        event="app.error",
        request_id=exc.request_id,
    )


async def http_error_handler(request: Request, exc: HTTPException):
    return _error_response(
        request,
        status=exc.status_code,
        code=_HTTP_CODES.get(exc.status_code, "http_error"),
        message=str(exc.detail) if exc.detail else "HTTP error",
        event="http.error",
        headers=getattr(exc, "headers", None),
    )


async def request_validation_handler(request: Request, exc: RequestValidationError):
    # Only the first problem is reported; the app shows one message at a time
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body") or "body"
    return _error_response(
        request,
        status=400,
        code=ValidationError.code,
        message=f"Invalid request body: {field} {first.get('msg', '')}".strip(),
        event="request.invalid",
    )


async def unhandled_exception_handler(request: Request, exc: Exception):
    return _error_response(
        request,
        status=500,
        code=InternalFault.code,
        message="Unexpected error",
        event="unhandled.exception",
        exc_info=True,
    )
