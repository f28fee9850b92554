"""
Loan Status Resolver

Decides a loan's status after a payment has been applied:

- outstanding balance at or below zero closes the loan, whatever it was
- an Overdue loan whose overdue amount is cleared becomes Active
- anything else keeps its status

Nothing here reopens a Closed loan.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional


class LoanStatus(Enum):
    """Servicing status of a loan"""
    ACTIVE = "Active"
    OVERDUE = "Overdue"
    CLOSED = "Closed"


@dataclass(frozen=True)
class StatusTransition:
    """Outcome of status resolution, with the audit pair when it changed"""
    status: LoanStatus
    previous_status: Optional[LoanStatus] = None
    changed_at: Optional[datetime] = None

    @property
    def changed(self) -> bool:
        return self.previous_status is not None

    @property
    def closed_loan(self) -> bool:
        return self.changed and self.status == LoanStatus.CLOSED


def next_loan_status(
    current: LoanStatus,
    outstanding_balance: Decimal,
    overdue_amount: Decimal
) -> LoanStatus:
    """Pure transition rule"""
    if outstanding_balance <= 0:
        return LoanStatus.CLOSED
    if current == LoanStatus.OVERDUE and overdue_amount <= 0:
        return LoanStatus.ACTIVE
    return current


def resolve_loan_status(
    current: LoanStatus,
    outstanding_balance: Decimal,
    overdue_amount: Decimal,
    now: datetime
) -> StatusTransition:
    """Resolve the next status and record the previous one if it changed"""
    status = next_loan_status(current, outstanding_balance, overdue_amount)
    if status == current:
        return StatusTransition(status=status)
    return StatusTransition(status=status, previous_status=current, changed_at=now)
