"""
Payment helpers shared by the API and the storefront client:
amount conversions, request/callback validation, message filtering
and the retry helper used around verification calls.
"""
import asyncio
import logging
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Awaitable, Callable, List, Mapping, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

TWOPLACES = Decimal("0.01")
MINOR_UNITS_PER_MAJOR = Decimal("100")

PAYMENT_MESSAGE_PREFIX = "PAYMENT_"

# postMessage sources that are never payment results
IGNORED_MESSAGE_SOURCES = {
    "react-devtools-bridge",
    "react-devtools-content-script",
    "react-devtools-detector",
    "react-devtools-inject-backend",
}


# --- Amounts ---
def to_decimal(value: Any) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError) as exc:
        raise ValueError(f"Invalid amount: {value!r}") from exc

def to_minor_units(amount: Any) -> int:
    """Major currency units (naira) to the provider's integer minor units (kobo)."""
    minor = (to_decimal(amount) * MINOR_UNITS_PER_MAJOR).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(minor)

def to_major_units(minor: Any) -> Decimal:
    return (to_decimal(int(minor)) / MINOR_UNITS_PER_MAJOR).quantize(TWOPLACES, rounding=ROUND_HALF_UP)

def amounts_match(paid: Any, expected: Any, tolerance: Decimal = TWOPLACES) -> bool:
    return abs(to_decimal(paid) - to_decimal(expected)) <= tolerance

def format_currency(amount: Any) -> str:
    try:
        value = to_decimal(amount or 0)
    except ValueError:
        value = Decimal(0)
    return f"₦{value.quantize(TWOPLACES, rounding=ROUND_HALF_UP):,}"


# --- Validation ---
def validate_payment_data(data: Mapping[str, Any]) -> List[str]:
    errors = []

    email = data.get("email")
    if not email or not isinstance(email, str) or "@" not in email:
        errors.append("Valid email is required")

    amount = data.get("amount")
    if isinstance(amount, bool) or not isinstance(amount, (int, float, Decimal)) or amount <= 0:
        errors.append("Valid amount is required (must be in Naira)")
    elif amount < 1:
        errors.append("Amount must be at least ₦1")

    order_id = data.get("orderId")
    if not order_id or not isinstance(order_id, str):
        errors.append("Valid order ID is required")

    callback_url = data.get("callback_url")
    if not callback_url or not isinstance(callback_url, str):
        errors.append("Valid callback URL is required")

    return errors

def validate_callback_params(params: Mapping[str, str]) -> Tuple[Optional[str], Optional[str], List[str]]:
    """Read the provider redirect query string. The provider sends `trxref` as an alias of `reference`."""
    reference = (params.get("reference") or params.get("trxref") or "").strip() or None
    status = params.get("status")
    errors = []

    if not reference:
        errors.append("No payment reference found in URL parameters")
    if status == "cancelled":
        errors.append("Payment was cancelled by user")
    elif status and status != "success":
        errors.append(f"Payment status: {status}")

    return reference, status, errors

def is_valid_payment_message(data: Any) -> bool:
    return (
        isinstance(data, Mapping)
        and data.get("source") not in IGNORED_MESSAGE_SOURCES
        and isinstance(data.get("type"), str)
        and data["type"].startswith(PAYMENT_MESSAGE_PREFIX)
    )


# --- Retry ---
async def retry_operation(
    operation: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    delay: float = 1.0,
    should_retry: Optional[Callable[[Exception], bool]] = None,
) -> T:
    """
    Run `operation` up to `max_retries` times, sleeping delay * attempt
    between tries (1s, 2s, ...). Errors rejected by `should_retry` are
    raised immediately.
    """
    last_error: Optional[Exception] = None

    for attempt in range(1, max_retries + 1):
        try:
            return await operation()
        except Exception as exc:
            last_error = exc
            if should_retry is not None and not should_retry(exc):
                raise
            if attempt < max_retries:
                logger.warning(f"Attempt {attempt} failed, retrying: {exc}", extra={"attempt": attempt})
                await asyncio.sleep(delay * attempt)

    raise last_error
