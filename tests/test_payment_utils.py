from decimal import Decimal

import pytest

from shared import payment_utils
from shared.payment_utils import (
    amounts_match, format_currency, is_valid_payment_message, retry_operation,
    to_major_units, to_minor_units, validate_callback_params, validate_payment_data
)


def test_minor_unit_conversion():
    assert to_minor_units(Decimal("3500.00")) == 350000
    assert to_minor_units("0.015") == 2
    assert to_minor_units(19.99) == 1999
    assert to_major_units(350050) == Decimal("3500.50")

def test_invalid_amount():
    with pytest.raises(ValueError):
        to_minor_units("three thousand")

def test_amounts_match_tolerance():
    assert amounts_match(Decimal("3500.00"), 3500.0)
    assert amounts_match(Decimal("3499.99"), 3500.0)
    assert not amounts_match(Decimal("3000.00"), 3500.0)
    assert not amounts_match(Decimal("3499.98"), 3500.0)

def test_format_currency():
    assert format_currency(3500) == "₦3,500.00"
    assert format_currency(None) == "₦0.00"

def test_validate_payment_data():
    valid = {"email": "ada@example.com", "amount": 3500.0, "orderId": "o1", "callback_url": "http://cb"}
    assert validate_payment_data(valid) == []

    errors = validate_payment_data({"email": "ada", "amount": 0.5, "orderId": "", "callback_url": None})
    assert errors == [
        "Valid email is required",
        "Amount must be at least ₦1",
        "Valid order ID is required",
        "Valid callback URL is required",
    ]
    assert "Valid amount is required (must be in Naira)" in validate_payment_data({**valid, "amount": True})

def test_validate_callback_params():
    assert validate_callback_params({"trxref": " ref_1 ", "status": "success"}) == ("ref_1", "success", [])
    assert validate_callback_params({"reference": "ref_1"}) == ("ref_1", None, [])

    _, _, errors = validate_callback_params({"reference": "ref_1", "status": "cancelled"})
    assert errors == ["Payment was cancelled by user"]
    _, _, errors = validate_callback_params({"status": "failed"})
    assert errors == ["No payment reference found in URL parameters", "Payment status: failed"]

def test_payment_message_filter():
    assert is_valid_payment_message({"type": "PAYMENT_SUCCESS", "reference": "r"})
    assert not is_valid_payment_message({"type": "PAYMENT_SUCCESS", "source": "react-devtools-content-script"})
    assert not is_valid_payment_message({"type": "RESIZE"})
    assert not is_valid_payment_message(["PAYMENT_SUCCESS"])


class Flaky:
    def __init__(self, failures, error=RuntimeError("boom")):
        self.failures = failures
        self.error = error
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


@pytest.fixture
def sleeps(monkeypatch):
    delays = []

    async def fake_sleep(delay):
        delays.append(delay)

    monkeypatch.setattr(payment_utils.asyncio, "sleep", fake_sleep)
    return delays


async def test_retry_backs_off_linearly(sleeps):
    operation = Flaky(failures=2)

    assert await retry_operation(operation, max_retries=3, delay=1.0) == "ok"
    assert operation.calls == 3
    assert sleeps == [1.0, 2.0]

async def test_retry_gives_up_after_max_attempts(sleeps):
    operation = Flaky(failures=5)

    with pytest.raises(RuntimeError):
        await retry_operation(operation, max_retries=3, delay=1.0)
    assert operation.calls == 3
    assert sleeps == [1.0, 2.0]

async def test_retry_stops_on_rejected_error(sleeps):
    operation = Flaky(failures=5, error=ValueError("bad request"))

    with pytest.raises(ValueError):
        await retry_operation(operation, should_retry=lambda exc: not isinstance(exc, ValueError))
    assert operation.calls == 1
    assert sleeps == []
