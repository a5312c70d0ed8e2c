# backend/splitsettle/domain/money.py
from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

# 10 million in currency units
MAX_ABS_CENTS = 10_000_000_00

_ONE = Decimal("1")
_HUNDRED = Decimal(100)


class MoneyError(ValueError):
    """Raised when an amount cannot be converted to or from cents."""


def _check_int(value: object, what: str) -> int:
    if not isinstance(value, int) or isinstance(value, bool):
        raise MoneyError(f"{what} must be int cents")
    return value


def cents_to_str(cents: int, *, symbol: str = "$") -> str:
    """
    Display string for cents, e.g. 1234 -> "$12.34", -5 -> "-$0.05".
    """
    _check_int(cents, "cents")
    units, minor = divmod(abs(cents), 100)
    sign = "-" if cents < 0 else ""
    return f"{sign}{symbol}{units}.{minor:02d}"


def decimal_to_cents(
    value: str | int | Decimal,
    *,
    rounding=ROUND_HALF_UP,
    max_abs_cents: int = MAX_ABS_CENTS,
) -> int:
    """
    Amount in currency units -> cents, rounded explicitly.

      "12.34"  -> 1234
      "12.345" -> 1235 (half-up)

    Floats are refused; pass a string or Decimal.
    """
    if isinstance(value, float):
        raise MoneyError("floats are not accepted; pass a string or Decimal")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as e:
        raise MoneyError(f"invalid decimal value: {value}") from e
    if not amount.is_finite():
        raise MoneyError(f"invalid decimal value: {value}")

    cents = int((amount * _HUNDRED).quantize(_ONE, rounding=rounding))
    if abs(cents) > max_abs_cents:
        raise MoneyError("amount exceeds safety limit")
    return cents


def divide_cents(cents: int | Decimal, divisor: int | Decimal, *, rounding=ROUND_HALF_UP) -> int:
    """
    round(cents / divisor) to whole cents. Same as rounding amount / divisor
    to 2 decimals in currency units.
    """
    if not isinstance(cents, (int, Decimal)) or isinstance(cents, bool):
        raise MoneyError("cents must be an int or Decimal")
    if divisor == 0:
        raise MoneyError("division by zero")
    return int((Decimal(cents) / Decimal(divisor)).quantize(_ONE, rounding=rounding))


def safe_sum_cents(*values: int) -> int:
    """Sum int cents; anything else (floats included) is refused."""
    return sum(_check_int(v, "every value") for v in values)
