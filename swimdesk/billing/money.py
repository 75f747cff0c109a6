# swimdesk/billing/money.py - Integer-cent money helpers
"""
Money is carried everywhere as a plain ``int`` count of cents.

Decimal strings only appear at the UI boundary; ``parse_display`` and
``to_display`` are the only two places that convert.
"""
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Iterable

from swimdesk.billing.errors import BillingError, ErrorKind

CENTS_PER_UNIT = 100
_CENT = Decimal("0.01")


def ensure_cents(value, *, field: str = "amount") -> int:
    """Reject anything that is not an exact integer number of cents."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise BillingError(ErrorKind.INVALID_AMOUNT, f"{field} must be an integer number of cents")
    return value


def ensure_positive(value, *, field: str = "amount") -> int:
    cents = ensure_cents(value, field=field)
    if cents <= 0:
        raise BillingError(ErrorKind.INVALID_AMOUNT, f"{field} must be greater than zero")
    return cents


def add(a: int, b: int) -> int:
    return ensure_cents(a) + ensure_cents(b)


def subtract(a: int, b: int, *, floor_at_zero: bool = False) -> int:
    result = ensure_cents(a) - ensure_cents(b)
    if floor_at_zero and result < 0:
        return 0
    return result


def multiply(cents: int, quantity: int) -> int:
    """Price of ``quantity`` whole units."""
    ensure_cents(cents)
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise BillingError(ErrorKind.INVALID_AMOUNT, "quantity must be a whole number")
    return cents * quantity


def total(values: Iterable[int]) -> int:
    return sum((ensure_cents(v) for v in values), 0)


def to_display(cents: int) -> str:
    """Format cents as a two-decimal string, e.g. 1505 -> '15.05'."""
    ensure_cents(cents)
    sign = "-" if cents < 0 else ""
    whole, frac = divmod(abs(cents), CENTS_PER_UNIT)
    return f"{sign}{whole}.{frac:02d}"


def parse_display(text: str) -> int:
    """
    Parse a decimal display string into cents, rounding half-up to the
    nearest cent.

    Raises:
        BillingError(INVALID_AMOUNT): on empty or non-numeric input
    """
    if text is None:
        raise BillingError(ErrorKind.INVALID_AMOUNT, "Amount is required")
    cleaned = str(text).strip().replace(",", "")
    if cleaned.startswith("$"):
        cleaned = cleaned[1:]
    if not cleaned:
        raise BillingError(ErrorKind.INVALID_AMOUNT, "Amount is required")
    try:
        value = Decimal(cleaned)
    except InvalidOperation:
        raise BillingError(ErrorKind.INVALID_AMOUNT, f"'{text}' is not a valid amount")
    if not value.is_finite():
        raise BillingError(ErrorKind.INVALID_AMOUNT, f"'{text}' is not a valid amount")
    return int((value.quantize(_CENT, rounding=ROUND_HALF_UP) * CENTS_PER_UNIT).to_integral_value())
