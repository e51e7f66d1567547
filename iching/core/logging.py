"""
Structured logging for the payment server and the client-side payment flow.

Records carry the request id bound by RequestIdMiddleware plus whichever
payment identifiers the caller knows (order, intent, webhook event). Stripe
credentials and intent client secrets are masked before a record is emitted,
whatever the formatter.
"""

import json
import logging
import os
import re
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Dict, Optional

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

LOGGER_NAME = "iching"

# Promoted from `extra` into formatted output, in this order
PAYMENT_FIELDS = (
    "order_id",
    "payment_intent_id",
    "event_id",
    "event_type",
    "error_code",
    "status",
    "method",
    "path",
    "latency_bucket",
)

_SECRET_PATTERNS = (
    re.compile(r"\b(sk|rk)_(live|test)_[A-Za-z0-9]+"),
    re.compile(r"\bwhsec_[A-Za-z0-9]+"),
    re.compile(r"\b(pi_[A-Za-z0-9]+)_secret_[A-Za-z0-9]+"),
)

_TRUNCATE_AT = 500

_LATENCY_BOUNDS = ((10, "<10ms"), (100, "10-100ms"), (500, "100-500ms"), (1000, "500-1000ms"))


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    rid = request_id_ctx_var.get()
    return default if rid is None else rid


def latency_bucket_ms(latency_ms: Optional[float]) -> str:
    """Coarse latency label so request logs stay low-cardinality."""
    if latency_ms is None:
        return "unknown"
    for bound, label in _LATENCY_BOUNDS:
        if latency_ms < bound:
            return label
    return ">=1000ms"


def redact(text: str) -> str:
    """Mask Stripe API keys, webhook secrets and PaymentIntent client secrets."""
    for pattern in _SECRET_PATTERNS:
        if pattern.groups == 1:
            text = pattern.sub(r"\1_secret_***", text)
        else:
            text = pattern.sub("***", text)
    return text


class PaymentContextFilter(logging.Filter):
    """Bind the current request id and scrub secrets from message and fields."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        if isinstance(record.msg, str):
            record.msg = redact(record.msg)
        for field, value in list(vars(record).items()):
            if field in PAYMENT_FIELDS or field == "reason" or field == "error":
                if isinstance(value, str):
                    setattr(record, field, redact(value))
        return True


def _timestamp(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z")


def _payment_fields(record: logging.LogRecord) -> Dict[str, object]:
    return {
        field: getattr(record, field)
        for field in PAYMENT_FIELDS
        if getattr(record, field, None) is not None
    }


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, object] = {
            "timestamp": _timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": redact(record.getMessage()),
            "request_id": getattr(record, "request_id", None),
        }
        payload.update(_payment_fields(record))
        return json.dumps(payload, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        parts = [_timestamp(record), record.levelname, f"[{LOGGER_NAME}]"]
        rid = getattr(record, "request_id", None)
        if rid:
            parts.append(f"[rid={rid}]")
        parts.append(redact(record.getMessage()))
        parts.extend(f"{k}={v}" for k, v in _payment_fields(record).items())
        return " ".join(parts)


def configure_logging(env: str = "development") -> None:
    """JSON lines in production, one readable line per record elsewhere."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if env.lower() == "production" else PrettyFormatter())
    handler.addFilter(PaymentContextFilter())

    logger.handlers = [handler]
    logger.propagate = True

    # uvicorn keeps its own handlers
    for name in ("uvicorn", "uvicorn.error"):
        logging.getLogger(name).propagate = False


def _clip(value) -> str:
    try:
        text = redact(str(value))
    except Exception:
        return "<unserializable>"
    if len(text) > _TRUNCATE_AT:
        return text[:_TRUNCATE_AT] + "...<truncated>"
    return text


def log_event(
    level: str,
    msg: str,
    *,
    request_id: Optional[str] = None,
    order_id: Optional[str] = None,
    payment_intent_id: Optional[str] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, object]] = None,
):
    """
    Emit one structured payment log line.

    Identifiers are passed through as-is; free-form `extra` values are
    stringified, redacted and clipped so a gateway error body or webhook
    payload cannot flood the log.
    """
    logger = logging.getLogger(LOGGER_NAME)
    if not logger.handlers:
        # Client-side callers may log before the server configures anything
        configure_logging(os.getenv("ENV", "development"))

    fields: Dict[str, object] = {
        "request_id": request_id or get_request_id(),
        "order_id": order_id,
        "payment_intent_id": payment_intent_id,
    }
    if event_type:
        fields["event_type"] = event_type
    if error_code:
        fields["error_code"] = error_code
    for key, value in (extra or {}).items():
        fields[key] = _clip(value)

    getattr(logger, level, logger.info)(msg, extra=fields)
