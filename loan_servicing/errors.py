"""
Error taxonomy for the payment ledger and reconciliation engine.

ValidationError, NotFoundError and InvalidStatusError are caller-actionable.
DuplicateTransactionError is the storage-boundary signal for an already
applied reference ID; the ledger turns it into a normal duplicate result.
MatchingError sends a verified payment to the pending queue. Anything else
raised inside a ledger unit of work surfaces as ProcessingError.
"""

from typing import Any, Optional


class LoanServicingError(Exception):
    """Base exception for all loan servicing errors."""


class ValidationError(LoanServicingError):
    """Raised when a request is malformed. Nothing was written."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class DuplicateTransactionError(LoanServicingError):
    """Raised when a reference ID has already produced a transaction."""

    def __init__(self, reference_id: str, transaction_id: Optional[str] = None):
        super().__init__(f"Transaction with reference {reference_id} already exists")
        self.reference_id = reference_id
        self.transaction_id = transaction_id


class NotFoundError(LoanServicingError):
    """Raised when a referenced entity does not exist."""


class LoanNotFoundError(NotFoundError):
    """Raised when a loan is missing or soft-deleted."""

    def __init__(self, loan_id: str):
        super().__init__(f"Loan {loan_id} not found")
        self.loan_id = loan_id


class PendingPaymentNotFoundError(NotFoundError):
    """Raised when a pending payment does not exist."""

    def __init__(self, pending_payment_id: str):
        super().__init__(f"Pending payment {pending_payment_id} not found")
        self.pending_payment_id = pending_payment_id


class InvalidStatusError(LoanServicingError):
    """Raised when an entity is in the wrong status for the operation."""

    def __init__(self, message: str, current_status: Optional[str] = None):
        super().__init__(message)
        self.current_status = current_status


class MatchingError(LoanServicingError):
    """Raised when a verified payment cannot be attributed to exactly one loan."""

    def __init__(self, message: str, event: Any = None):
        super().__init__(message)
        self.event = event


class ProcessingError(LoanServicingError):
    """Wraps an unexpected failure inside a ledger unit of work."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class MessageDeliveryError(LoanServicingError):
    """Raised when the messaging channel rejects or fails a push."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
