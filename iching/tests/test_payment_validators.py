from decimal import Decimal

import pytest

from iching.core.errors import ValidationError
from iching.features.payments.validators import (
    from_minor_units,
    generate_order_id,
    normalize_client_request,
    to_minor_units,
    validate_payment_request,
)

ALLOWED = ["usd", "eur", "twd", "jpy", "hkd", "sgd"]


def test_valid_request_is_normalized():
    req = validate_payment_request(
        {"amount": "90.005", "currency": " TWD ", "description": "x" * 200, "orderId": "iching_1_a"},
        ALLOWED,
    )
    assert req.amount == Decimal("90.01")
    assert req.currency == "twd"
    assert len(req.description) == 120
    assert req.order_id == "iching_1_a"


@pytest.mark.parametrize("payload, fragment", [
    ({"currency": "usd", "orderId": "o"}, "amount"),
    ({"amount": 1, "orderId": "o"}, "currency"),
    ({"amount": 1, "currency": "usd"}, "orderId"),
    ({"amount": 1, "currency": "usd", "orderId": "   "}, "orderId"),
])
def test_missing_fields_rejected(payload, fragment):
    with pytest.raises(ValidationError) as exc:
        validate_payment_request(payload, ALLOWED)
    assert fragment in exc.value.message


@pytest.mark.parametrize("amount", [0, -1, "abc", "NaN", "Infinity", float("inf"), True, [1]])
def test_bad_amounts_rejected(amount):
    with pytest.raises(ValidationError):
        validate_payment_request({"amount": amount, "currency": "usd", "orderId": "o"}, ALLOWED)


def test_currency_outside_allow_list_rejected():
    with pytest.raises(ValidationError) as exc:
        validate_payment_request({"amount": 1, "currency": "XXX", "orderId": "o"}, ALLOWED)
    assert "xxx" in exc.value.message
    assert exc.value.status_code == 400


def test_minor_units_for_decimal_and_zero_decimal_currencies():
    assert to_minor_units(Decimal("90.00"), "twd") == 9000
    assert to_minor_units(Decimal("4.99"), "usd") == 499
    assert to_minor_units(Decimal("500"), "jpy") == 500
    assert from_minor_units(499, "usd") == Decimal("4.99")
    assert from_minor_units(500, "JPY") == Decimal("500")


def test_order_ids_are_unique_and_prefixed():
    ids = {generate_order_id(now_ms=1700000000000) for _ in range(50)}
    assert len(ids) == 50
    assert all(i.startswith("iching_1700000000000_") for i in ids)


def test_client_normalization_generates_order_id():
    req = normalize_client_request(90, "TWD", "reading")
    assert req.order_id.startswith("iching_")
    assert req.currency == "twd"
    assert req.to_wire() == {
        "amount": 90.0,
        "currency": "twd",
        "description": "reading",
        "orderId": req.order_id,
    }


@pytest.mark.parametrize("amount", ["1e27", 1e30, "1000000", "-1e30"])
def test_out_of_range_amounts_rejected_as_validation_errors(amount):
    with pytest.raises(ValidationError):
        validate_payment_request({"amount": amount, "currency": "usd", "orderId": "o"}, ALLOWED)
    with pytest.raises(ValidationError):
        normalize_client_request(amount, "usd")


def test_largest_allowed_amount_accepted():
    req = validate_payment_request({"amount": "999999.99", "currency": "usd", "orderId": "o"}, ALLOWED)
    assert to_minor_units(req.amount, "usd") == 99999999
