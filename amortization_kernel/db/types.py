"""
Module: amortization_kernel.db.types
Responsibility: Money constants and helpers every layer
    shares, so that precision and rounding are defined in one place.

Invariants enforced:
    - Amounts carry exactly MONEY_DECIMAL_PLACES places.
    - round_money() is the only sanctioned rounding function; it rounds
      half-up (0.005 -> 0.01).
    CRITICAL: No floats for money.  Floats are accepted at the boundary only
    through their shortest string form (see to_decimal()).
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any


MONEY_PRECISION = 19
MONEY_DECIMAL_PLACES = 2
DEFAULT_ROUNDING = ROUND_HALF_UP
ZERO = Decimal("0.00")
CENT = Decimal("0.01")
# Largest amount a Numeric(MONEY_PRECISION, MONEY_DECIMAL_PLACES) column holds.
MAX_MONEY = Decimal(10) ** (MONEY_PRECISION - MONEY_DECIMAL_PLACES) - CENT


def round_money(
    value: Decimal,
    decimal_places: int = MONEY_DECIMAL_PLACES,
    rounding: str = DEFAULT_ROUNDING,
) -> Decimal:
    """Round a monetary value to ``decimal_places`` using ``rounding``."""
    quantize_str = "0." + "0" * decimal_places
    return value.quantize(Decimal(quantize_str), rounding=rounding)


def to_decimal(value: Any) -> Decimal:
    """
    Convert an int, str, float or Decimal into a Decimal.

    Raises:
        ValueError: value is not numeric (bools included) or not finite.
    """
    if isinstance(value, bool):
        raise ValueError("booleans are not amounts")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, float):
        result = Decimal(repr(value))
    elif isinstance(value, (int, str)):
        try:
            result = Decimal(value)
        except InvalidOperation as exc:
            raise ValueError(f"not a number: {value!r}") from exc
    else:
        raise ValueError(f"unsupported amount type {type(value).__name__}")
    if not result.is_finite():
        raise ValueError(f"not a finite number: {value!r}")
    return result


def is_whole_cents(value: Decimal) -> bool:
    try:
        return value == value.quantize(CENT)
    except InvalidOperation:
        return False
