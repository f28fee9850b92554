"""
Tests for the accrual calculator and the loan status resolver
"""

import pytest
from decimal import Decimal
from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

from loan_servicing.interest import calculate_accrued_interest, days_elapsed, to_business_date
from loan_servicing.money import ZERO, round2, to_amount
from loan_servicing.status import LoanStatus, next_loan_status, resolve_loan_status


BANGKOK = ZoneInfo("Asia/Bangkok")


class TestAccruedInterest:
    """interest = round2(principal * rate / 100 * days / 365)"""

    def test_thirty_days_at_fifteen_percent(self):
        interest = calculate_accrued_interest(
            Decimal("10000.00"), Decimal("15"), date(2024, 1, 1), date(2024, 1, 31)
        )
        assert interest == Decimal("123.29")

    def test_zero_days_is_zero(self):
        assert calculate_accrued_interest(
            Decimal("10000.00"), Decimal("15"), date(2024, 1, 31), date(2024, 1, 31)
        ) == ZERO

    def test_payment_dated_before_last_event_is_zero(self):
        assert calculate_accrued_interest(
            Decimal("10000.00"), Decimal("15"), date(2024, 2, 1), date(2024, 1, 15)
        ) == ZERO

    def test_nothing_owed_is_zero(self):
        assert calculate_accrued_interest(ZERO, Decimal("15"), date(2024, 1, 1), date(2024, 3, 1)) == ZERO

    def test_doubling_principal_doubles_interest(self):
        base = calculate_accrued_interest(Decimal("36500.00"), Decimal("10"), date(2024, 1, 1), date(2024, 1, 11))
        doubled = calculate_accrued_interest(Decimal("73000.00"), Decimal("10"), date(2024, 1, 1), date(2024, 1, 11))

        assert base == Decimal("100.00")
        assert doubled == base * 2

    def test_doubling_rate_doubles_interest(self):
        base = calculate_accrued_interest(Decimal("36500.00"), Decimal("10"), date(2024, 1, 1), date(2024, 1, 11))
        doubled = calculate_accrued_interest(Decimal("36500.00"), Decimal("20"), date(2024, 1, 1), date(2024, 1, 11))

        assert doubled == base * 2

    def test_days_counted_in_business_timezone(self):
        # 23:30 UTC on the 30th is already the 31st in Bangkok
        paid_at = datetime(2024, 1, 30, 23, 30, tzinfo=timezone.utc)

        assert days_elapsed(date(2024, 1, 1), paid_at, BANGKOK) == 30
        assert calculate_accrued_interest(
            Decimal("10000.00"), Decimal("15"), date(2024, 1, 1), paid_at, BANGKOK
        ) == Decimal("123.29")


class TestBusinessDate:

    def test_aware_datetime_converted(self):
        assert to_business_date(datetime(2024, 1, 31, 18, 0, tzinfo=timezone.utc), BANGKOK) == date(2024, 2, 1)

    def test_date_passes_through(self):
        assert to_business_date(date(2024, 5, 5), BANGKOK) == date(2024, 5, 5)

    def test_naive_datetime_taken_as_is(self):
        assert to_business_date(datetime(2024, 1, 31, 23, 0), BANGKOK) == date(2024, 1, 31)


class TestMoney:

    def test_round_half_up(self):
        assert round2(Decimal("0.005")) == Decimal("0.01")
        assert round2(Decimal("123.2876")) == Decimal("123.29")

    def test_float_goes_through_str(self):
        assert to_amount(0.1) == Decimal("0.1")

    @pytest.mark.parametrize("value", [True, "abc", None, "NaN", "Infinity"])
    def test_invalid_amounts(self, value):
        with pytest.raises(ValueError):
            to_amount(value)


class TestStatusResolver:
    """Status after a payment"""

    def test_zero_balance_closes(self):
        assert next_loan_status(LoanStatus.ACTIVE, ZERO, ZERO) == LoanStatus.CLOSED
        assert next_loan_status(LoanStatus.OVERDUE, ZERO, Decimal("10.00")) == LoanStatus.CLOSED

    def test_negative_balance_closes(self):
        assert next_loan_status(LoanStatus.ACTIVE, Decimal("-1.00"), ZERO) == LoanStatus.CLOSED

    def test_overdue_cleared_becomes_active(self):
        assert next_loan_status(LoanStatus.OVERDUE, Decimal("500.00"), ZERO) == LoanStatus.ACTIVE

    def test_partial_payment_keeps_overdue(self):
        assert next_loan_status(LoanStatus.OVERDUE, Decimal("500.00"), Decimal("0.01")) == LoanStatus.OVERDUE

    def test_active_stays_active(self):
        assert next_loan_status(LoanStatus.ACTIVE, Decimal("500.00"), ZERO) == LoanStatus.ACTIVE

    def test_closed_never_reopens(self):
        assert next_loan_status(LoanStatus.CLOSED, Decimal("500.00"), Decimal("20.00")) == LoanStatus.CLOSED

    def test_unchanged_status_records_nothing(self):
        transition = resolve_loan_status(LoanStatus.ACTIVE, Decimal("500.00"), ZERO, datetime.now(timezone.utc))

        assert transition.status == LoanStatus.ACTIVE
        assert transition.previous_status is None
        assert transition.changed_at is None
        assert not transition.changed

    def test_change_records_previous_status(self):
        now = datetime(2024, 1, 31, 10, 0, tzinfo=timezone.utc)
        transition = resolve_loan_status(LoanStatus.ACTIVE, ZERO, ZERO, now)

        assert transition.status == LoanStatus.CLOSED
        assert transition.previous_status == LoanStatus.ACTIVE
        assert transition.changed_at == now
        assert transition.closed_loan
