"""
Test suite for the payment allocation engine

Payments must flow penalties -> interest -> principal, and the four parts of
an allocation must always add up to the payment exactly.
"""

import pytest
from decimal import Decimal

from loan_servicing.allocation import PaymentAllocation, allocate_payment
from loan_servicing.money import ZERO


class TestWaterfall:
    """Waterfall ordering"""

    def test_penalties_take_everything_first(self):
        allocation = allocate_payment(Decimal("100.00"), Decimal("150.00"), Decimal("20.00"), Decimal("1000.00"))

        assert allocation.to_penalties == Decimal("100.00")
        assert allocation.to_interest == ZERO
        assert allocation.to_principal == ZERO
        assert allocation.remaining == ZERO

    def test_interest_before_principal(self):
        allocation = allocate_payment(Decimal("200.00"), Decimal("50.00"), Decimal("30.00"), Decimal("1000.00"))

        assert allocation.to_penalties == Decimal("50.00")
        assert allocation.to_interest == Decimal("30.00")
        assert allocation.to_principal == Decimal("120.00")
        assert allocation.remaining == ZERO

    def test_overpayment_goes_to_remaining(self):
        allocation = allocate_payment(Decimal("600.00"), ZERO, ZERO, Decimal("500.00"))

        assert allocation.to_principal == Decimal("500.00")
        assert allocation.remaining == Decimal("100.00")
        assert allocation.applied == Decimal("500.00")

    def test_interest_and_principal_scenario(self):
        """1,000.00 against 123.29 interest on a 10,000.00 balance"""
        allocation = allocate_payment(Decimal("1000.00"), ZERO, Decimal("123.29"), Decimal("10000.00"))

        assert allocation.to_interest == Decimal("123.29")
        assert allocation.to_principal == Decimal("876.71")
        assert allocation.remaining == ZERO


class TestAllocationInvariants:
    """Properties that hold for every allocation"""

    @pytest.mark.parametrize("payment,penalties,interest,principal", [
        ("0.01", "0.00", "0.00", "0.00"),
        ("0.01", "5.00", "5.00", "5.00"),
        ("99.99", "33.33", "33.33", "33.33"),
        ("1000.00", "0.00", "123.29", "10000.00"),
        ("5000.00", "250.00", "75.10", "1200.00"),
        ("12.34", "0.00", "0.00", "0.00"),
    ])
    def test_parts_sum_to_payment_and_respect_debts(self, payment, penalties, interest, principal):
        allocation = allocate_payment(Decimal(payment), Decimal(penalties), Decimal(interest), Decimal(principal))

        assert allocation.total == Decimal(payment)
        assert allocation.to_penalties <= Decimal(penalties)
        assert allocation.to_interest <= Decimal(interest)
        assert allocation.to_principal <= Decimal(principal)
        for part in (allocation.to_penalties, allocation.to_interest,
                     allocation.to_principal, allocation.remaining):
            assert part >= 0

    def test_zero_payment(self):
        allocation = allocate_payment(ZERO, Decimal("10.00"), Decimal("10.00"), Decimal("10.00"))

        assert allocation == PaymentAllocation(ZERO, ZERO, ZERO, ZERO)

    def test_negative_debts_treated_as_nothing_owed(self):
        allocation = allocate_payment(Decimal("100.00"), Decimal("-5.00"), ZERO, Decimal("50.00"))

        assert allocation.to_penalties == ZERO
        assert allocation.to_principal == Decimal("50.00")
        assert allocation.remaining == Decimal("50.00")

    def test_negative_payment_rejected(self):
        with pytest.raises(ValueError):
            allocate_payment(Decimal("-1.00"), ZERO, ZERO, Decimal("100.00"))

    def test_non_numeric_payment_rejected(self):
        with pytest.raises(ValueError):
            allocate_payment("abc", ZERO, ZERO, Decimal("100.00"))

    def test_to_dict_keeps_exact_strings(self):
        allocation = allocate_payment(Decimal("200.00"), Decimal("50.00"), Decimal("30.00"), Decimal("1000.00"))

        assert allocation.to_dict() == {
            'to_penalties': "50.00",
            'to_interest': "30.00",
            'to_principal': "120.00",
            'remaining': "0.00",
        }
