"""
Payment Allocation Engine

Splits an incoming payment across a borrower's debt in strict waterfall
order: penalties, then interest, then principal. Whatever is left is an
overpayment.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict

from .money import ZERO, to_amount, non_negative


@dataclass(frozen=True)
class PaymentAllocation:
    """How one payment was applied"""
    to_penalties: Decimal
    to_interest: Decimal
    to_principal: Decimal
    remaining: Decimal

    @property
    def total(self) -> Decimal:
        return self.to_penalties + self.to_interest + self.to_principal + self.remaining

    @property
    def applied(self) -> Decimal:
        """Portion of the payment that reduced debt"""
        return self.to_penalties + self.to_interest + self.to_principal

    def to_dict(self) -> Dict[str, str]:
        return {
            'to_penalties': str(self.to_penalties),
            'to_interest': str(self.to_interest),
            'to_principal': str(self.to_principal),
            'remaining': str(self.remaining),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> 'PaymentAllocation':
        return cls(
            to_penalties=Decimal(data['to_penalties']),
            to_interest=Decimal(data['to_interest']),
            to_principal=Decimal(data['to_principal']),
            remaining=Decimal(data['remaining']),
        )


def allocate_payment(
    payment_amount: Decimal,
    penalties_owed: Decimal,
    interest_owed: Decimal,
    principal_owed: Decimal
) -> PaymentAllocation:
    """
    Allocate a payment across penalties, interest and principal.

    Each category receives at most what it is owed, in that order, and the
    four parts always add up to the payment exactly. Negative debts are
    treated as nothing owed.

    Args:
        payment_amount: Amount received (must not be negative)
        penalties_owed: Outstanding penalties
        interest_owed: Interest owed, including accrual up to the payment date
        principal_owed: Outstanding principal

    Returns:
        PaymentAllocation

    Raises:
        ValueError: If the payment is negative or not a number
    """
    payment = to_amount(payment_amount)
    if payment < 0:
        raise ValueError(f"Payment amount cannot be negative: {payment}")

    remaining = payment
    parts = []
    for owed in (penalties_owed, interest_owed, principal_owed):
        portion = min(remaining, non_negative(to_amount(owed)))
        parts.append(portion)
        remaining -= portion

    to_penalties, to_interest, to_principal = parts
    return PaymentAllocation(
        to_penalties=to_penalties if to_penalties else ZERO,
        to_interest=to_interest if to_interest else ZERO,
        to_principal=to_principal if to_principal else ZERO,
        remaining=remaining if remaining else ZERO,
    )
