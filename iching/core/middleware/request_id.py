import logging
import re
import time
from typing import Optional
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from iching.core.logging import LOGGER_NAME, latency_bucket_ms, request_id_ctx_var

# Caller-supplied ids end up in logs and error bodies
_SAFE_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def _accept_incoming(value: Optional[str]) -> Optional[str]:
    if value and _SAFE_ID.match(value):
        return value
    return None


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Bind a request id for the duration of each request and echo it back.

    The app sends its own id with payment calls so client and server logs line
    up; anything missing or malformed is replaced with a fresh uuid4.
    """

    def __init__(self, app, header_name: str = "x-request-id"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request, call_next):
        rid = _accept_incoming(request.headers.get(self.header_name)) or str(uuid4())
        request.state.request_id = rid

        token = request_id_ctx_var.set(rid)
        started = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            request_id_ctx_var.reset(token)
        elapsed_ms = (time.perf_counter() - started) * 1000

        response.headers[self.header_name] = rid
        logging.getLogger(LOGGER_NAME).info(
            "request.complete",
            extra={
                "request_id": rid,
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_bucket": latency_bucket_ms(elapsed_ms),
            },
        )
        return response
