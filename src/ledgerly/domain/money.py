"""Money helpers for the folio ledger.

All monetary values are Decimal. Values are quantized to 2 places with
ROUND_HALF_UP when a transaction is created; sums of quantized values are
exact, so aggregation never depends on summation order.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

ZERO = Decimal("0.00")
CENT = Decimal("0.01")
HUNDRED = Decimal("100")

# Tolerances
BALANCE_EPSILON = Decimal("0.01")
SPLIT_EPSILON = Decimal("0.05")
INCLUSIVE_MATCH_EPSILON = Decimal("0.10")


def to_decimal(value: Any) -> Decimal:
    """Convert a number-ish value to Decimal without float artefacts.

    Floats go through ``str`` so ``0.1`` becomes ``Decimal("0.1")``.
    None becomes zero.

    Raises:
        ValueError: If the value cannot be interpreted as a number.
    """
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError("booleans are not monetary values")
    if isinstance(value, float):
        value = repr(value)
    try:
        result = Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise ValueError(f"Not a monetary value: {value!r}") from exc
    if not result.is_finite():
        raise ValueError(f"Not a finite monetary value: {value!r}")
    return result


def round2(value: Any) -> Decimal:
    """Round to 2 decimal places, half-up."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def clamp_non_negative(value: Any) -> Decimal:
    value = to_decimal(value)
    return value if value > 0 else Decimal("0")


def approx_equal(a: Any, b: Any, epsilon: Decimal = SPLIT_EPSILON) -> bool:
    """True when |a - b| <= epsilon."""
    return abs(to_decimal(a) - to_decimal(b)) <= epsilon


def money_sum(values) -> Decimal:
    total = ZERO
    for v in values:
        total += to_decimal(v)
    return total
