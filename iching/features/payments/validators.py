"""
Payment request validation and amount conversion.

The server is authoritative: anything that could become a malformed charge is
rejected here before a gateway call is made.
"""
import math
import secrets
import time
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Iterable, Optional

from iching.core.errors import ValidationError
from iching.models.payment import PaymentRequest

DESCRIPTION_MAX = 120
ORDER_ID_MAX = 100

# Currencies Stripe charges in whole units
ZERO_DECIMAL_CURRENCIES = frozenset({"jpy"})

_CENT = Decimal("0.01")

# Fits Numeric(12, 2) and Stripe's 99,999,999 minor-unit ceiling
MAX_AMOUNT = Decimal("999999.99")


def generate_order_id(now_ms: Optional[int] = None) -> str:
    """iching_<epoch ms>_<random>; unique per payment attempt."""
    ms = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"iching_{ms}_{secrets.token_hex(4)}"


def _parse_amount(raw: Any) -> Decimal:
    if raw is None or raw == "" or isinstance(raw, bool):
        raise ValidationError("Missing required parameters: amount")
    if isinstance(raw, float) and not math.isfinite(raw):
        raise ValidationError("Amount must be a finite number")
    try:
        amount = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError("Amount must be a number")
    if not amount.is_finite():
        raise ValidationError("Amount must be a finite number")
    if amount <= 0:
        raise ValidationError("Amount must be greater than zero")
    if amount > MAX_AMOUNT:
        raise ValidationError("Amount is too large")
    try:
        amount = amount.quantize(_CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise ValidationError("Amount must be a number")
    if amount <= 0:
        raise ValidationError("Amount must be greater than zero")
    return amount


def normalize_currency(raw: Any) -> str:
    return str(raw or "").strip().lower()


def validate_payment_request(payload: Dict[str, Any], allowed_currencies: Iterable[str]) -> PaymentRequest:
    """
    Validate and normalize a raw /create-payment-intent body.

    Raises:
        ValidationError: missing fields, non-finite or non-positive amount,
            currency outside the allow-list
    """
    missing = [
        name for name in ("amount", "currency", "orderId")
        if payload.get(name) in (None, "")
    ]
    if missing:
        raise ValidationError(f"Missing required parameters: {', '.join(missing)}")

    amount = _parse_amount(payload.get("amount"))

    currency = normalize_currency(payload.get("currency"))
    allowed = {c.lower() for c in allowed_currencies}
    if currency not in allowed:
        raise ValidationError(f"Unsupported currency: {currency or '<empty>'}")

    order_id = str(payload.get("orderId")).strip()
    if not order_id:
        raise ValidationError("Missing required parameters: orderId")
    if len(order_id) > ORDER_ID_MAX:
        raise ValidationError(f"orderId must be at most {ORDER_ID_MAX} characters")

    description = payload.get("description")
    description = str(description)[:DESCRIPTION_MAX] if description is not None else ""

    return PaymentRequest(
        amount=amount,
        currency=currency,
        description=description,
        order_id=order_id,
    )


def normalize_client_request(
    amount: Any,
    currency: str,
    description: str = "",
    order_id: Optional[str] = None,
) -> PaymentRequest:
    """
    Client-side normalization before calling the intent endpoint.

    Only shapes the request (rounding, lower-casing, truncation, order id);
    the allow-list decision stays with the server.
    """
    return PaymentRequest(
        amount=_parse_amount(amount),
        currency=normalize_currency(currency),
        description=(description or "")[:DESCRIPTION_MAX],
        order_id=order_id or generate_order_id(),
    )


def to_minor_units(amount: Decimal, currency: str) -> int:
    if currency.lower() in ZERO_DECIMAL_CURRENCIES:
        return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount_minor: int, currency: str) -> Decimal:
    if currency.lower() in ZERO_DECIMAL_CURRENCIES:
        return Decimal(amount_minor)
    return (Decimal(amount_minor) / 100).quantize(_CENT)
