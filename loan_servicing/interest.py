"""
Accrual Calculator

Simple interest owed since the last applied payment, computed on demand:

    interest = round2(principal * rate / 100 * days / 365)

Days are whole calendar days in the business timezone. Rounding happens
once, half-up, on the final figure.
"""

from datetime import date, datetime, tzinfo
from decimal import Decimal
from typing import Optional, Union

from .money import ZERO, to_amount, round2

DAYS_IN_YEAR = Decimal("365")

DateLike = Union[date, datetime]


def to_business_date(value: DateLike, tz: Optional[tzinfo] = None) -> date:
    """
    Reduce a date or datetime to a calendar date.

    Aware datetimes are first converted to ``tz`` so a payment at 23:30 UTC
    lands on the next day in Bangkok.
    """
    if isinstance(value, datetime):
        if tz is not None and value.tzinfo is not None:
            value = value.astimezone(tz)
        return value.date()
    return value


def days_elapsed(start: DateLike, end: DateLike, tz: Optional[tzinfo] = None) -> int:
    """Whole calendar days from start to end, never negative"""
    days = (to_business_date(end, tz) - to_business_date(start, tz)).days
    return max(days, 0)


def calculate_accrued_interest(
    principal: Decimal,
    annual_rate_pct: Decimal,
    last_event: DateLike,
    as_of: DateLike,
    tz: Optional[tzinfo] = None
) -> Decimal:
    """
    Interest accrued on ``principal`` between two dates.

    Args:
        principal: Outstanding principal balance
        annual_rate_pct: Annual rate in percent (15 means 15%)
        last_event: Last payment date, or contract start if never paid
        as_of: Date the payment is applied
        tz: Business timezone for datetime inputs

    Returns:
        Interest rounded to 2 places. Zero when no days elapsed or nothing
        is owed.
    """
    days = days_elapsed(last_event, as_of, tz)
    principal = to_amount(principal)
    if days == 0 or principal <= 0:
        return ZERO

    rate = to_amount(annual_rate_pct) / Decimal("100")
    return round2(principal * rate * Decimal(days) / DAYS_IN_YEAR)
