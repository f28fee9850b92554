"""
Decimal helpers for monetary amounts.

Amounts are plain Decimal values in the loan book's single currency with two
decimal places. NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Any

# High precision for intermediate results; rounding happens explicitly
getcontext().prec = 28

ZERO = Decimal("0.00")
CENT = Decimal("0.01")


def to_amount(value: Any) -> Decimal:
    """
    Convert a value to Decimal without rounding.

    Floats go through str() so 0.1 stays 0.1. Raises ValueError for
    anything that is not a finite number.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid amount: {value!r}")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value).strip())
        except (InvalidOperation, TypeError):
            raise ValueError(f"Invalid amount: {value!r}")
    if not result.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    return result


def round2(value: Decimal) -> Decimal:
    """Round to two decimal places, half-up"""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def non_negative(value: Decimal) -> Decimal:
    """Clamp to zero from below"""
    return value if value > 0 else ZERO
