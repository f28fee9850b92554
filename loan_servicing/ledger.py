"""
Transaction Ledger

The only writer of loan financial state. A payment request becomes exactly
one committed Transaction plus the matching Loan update, or nothing at all.

Flow for apply_payment():
    1. Validate the request without touching storage.
    2. Return the committed result if the reference ID was already applied.
    3. In one unit of work: lock the loan, re-check the reference, accrue
       interest, allocate, resolve the status, store transaction and loan.
    4. After commit, run post-commit hooks. Their failures are logged and
       counted on the result, never raised.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone, tzinfo
from decimal import Decimal
from typing import Callable, List, Optional
import sys
import uuid

from .allocation import PaymentAllocation, allocate_payment
from .audit import AuditTrail, AuditEventType
from .errors import (
    ValidationError, DuplicateTransactionError, NotFoundError, LoanNotFoundError,
    InvalidStatusError, ProcessingError
)
from .interest import calculate_accrued_interest, days_elapsed, to_business_date
from .loans import Loan, LoanRepository
from .logging_config import get_logger, log_action
from .money import ZERO, to_amount, round2
from .status import LoanStatus, resolve_loan_status
from .storage import StorageInterface
from .transactions import Transaction, TransactionRepository, TransactionType


@dataclass
class PaymentRequest:
    """Inbound payment, manual or webhook-sourced"""
    reference_id: str
    loan_id: str
    amount: Decimal
    payment_date: date
    payment_method: Optional[str] = None
    payment_source: Optional[str] = None
    notes: Optional[str] = None
    operator_id: Optional[str] = None


@dataclass(frozen=True)
class PaymentResult:
    """
    Outcome of applying a payment.

    A repeated reference ID returns the originally committed result with
    ``duplicate`` set; the two compare equal.
    """
    transaction_id: str
    reference_id: str
    loan_id: str
    allocation: PaymentAllocation
    balance_after: Decimal
    new_status: LoanStatus
    previous_status: Optional[LoanStatus] = None
    accrued_interest: Decimal = ZERO
    duplicate: bool = field(default=False, compare=False)
    side_effect_failures: int = field(default=0, compare=False)

    @property
    def loan_closed(self) -> bool:
        """True when this payment moved the loan into Closed"""
        return self.previous_status is not None and self.new_status == LoanStatus.CLOSED

    @classmethod
    def from_transaction(cls, transaction: Transaction, duplicate: bool = False) -> 'PaymentResult':
        return cls(
            transaction_id=transaction.id,
            reference_id=transaction.reference_id,
            loan_id=transaction.loan_id,
            allocation=transaction.allocation,
            balance_after=transaction.balance_after,
            new_status=transaction.loan_status_after,
            previous_status=transaction.previous_status,
            accrued_interest=transaction.accrued_interest,
            duplicate=duplicate
        )


@dataclass(frozen=True)
class LedgerCommit:
    """What post-commit hooks receive"""
    request: PaymentRequest
    transaction: Transaction
    loan: Loan
    result: PaymentResult

    @property
    def loan_closed(self) -> bool:
        return self.result.loan_closed


class PostCommitHook(ABC):
    """Best-effort side effect run after a ledger commit"""

    name = "hook"

    @abstractmethod
    def __call__(self, commit: LedgerCommit) -> None:
        pass


class AuditHook(PostCommitHook):
    """Writes ledger commits to the hash-chained audit trail"""

    name = "audit"

    def __init__(self, audit_trail: AuditTrail):
        self.audit_trail = audit_trail

    def __call__(self, commit: LedgerCommit) -> None:
        transaction = commit.transaction
        self.audit_trail.log_event(
            event_type=AuditEventType.PAYMENT_APPLIED,
            entity_type="loan",
            entity_id=transaction.loan_id,
            operator_id=transaction.processed_by,
            metadata={
                "transaction_id": transaction.id,
                "reference_id": transaction.reference_id,
                "amount": transaction.amount,
                "allocation": transaction.allocation.to_dict(),
                "balance_after": transaction.balance_after,
                "accrued_interest": transaction.accrued_interest
            }
        )
        if transaction.previous_status is not None:
            self.audit_trail.log_event(
                event_type=(
                    AuditEventType.LOAN_CLOSED if commit.loan_closed
                    else AuditEventType.LOAN_STATUS_CHANGED
                ),
                entity_type="loan",
                entity_id=transaction.loan_id,
                operator_id=transaction.processed_by,
                metadata={
                    "previous_status": transaction.previous_status,
                    "new_status": transaction.loan_status_after,
                    "transaction_id": transaction.id
                }
            )


ReceiptGenerator = Callable[[Transaction, Loan], Optional[str]]


class ReceiptHook(PostCommitHook):
    """Hands committed transactions to the receipt generator"""

    name = "receipt"

    def __init__(self, generator: ReceiptGenerator):
        self.generator = generator
        self.logger = get_logger("loan_servicing.receipts")

    def __call__(self, commit: LedgerCommit) -> None:
        path = self.generator(commit.transaction, commit.loan)
        if path:
            self.logger.info(f"Receipt for {commit.transaction.reference_id} stored at {path}")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TransactionLedger:
    """
    Idempotent, atomic payment writer
    """

    def __init__(
        self,
        storage: StorageInterface,
        loans: LoanRepository,
        transactions: TransactionRepository,
        hooks: Optional[List[PostCommitHook]] = None,
        tz: Optional[tzinfo] = None,
        clock: Callable[[], datetime] = _utc_now
    ):
        self.storage = storage
        self.loans = loans
        self.transactions = transactions
        self.hooks: List[PostCommitHook] = list(hooks or [])
        self.tz = tz
        self.clock = clock
        self.logger = get_logger("loan_servicing.ledger")

    def register_hook(self, hook: PostCommitHook) -> None:
        self.hooks.append(hook)

    def apply_payment(self, request: PaymentRequest) -> PaymentResult:
        """
        Apply a payment exactly once.

        Returns:
            PaymentResult; ``duplicate`` is set when the reference ID had
            already been applied.

        Raises:
            ValidationError: Malformed request, nothing written
            NotFoundError: Loan missing or soft-deleted
            InvalidStatusError: Loan is Closed
            ProcessingError: Anything else; the unit of work was rolled back
        """
        amount, payment_date = self._validate(request)

        existing = self.transactions.find_by_reference(request.reference_id)
        if existing is not None:
            return self._duplicate(existing, request)

        try:
            with self.storage.atomic():
                commit = self._apply_locked(request, amount, payment_date)
        except DuplicateTransactionError:
            # Lost the race to a concurrent delivery of the same reference
            existing = self.transactions.find_by_reference(request.reference_id)
            if existing is None:
                raise ProcessingError(
                    f"Reference {request.reference_id} is claimed but its transaction is missing"
                )
            return self._duplicate(existing, request)
        except (ValidationError, NotFoundError, InvalidStatusError):
            raise
        except Exception as e:
            log_action(
                self.logger, "error", f"Payment {request.reference_id} rolled back: {e}",
                operator_id=request.operator_id, action="apply_payment",
                resource=f"loan:{request.loan_id}", correlation_id=request.reference_id,
                exc_info=sys.exc_info()
            )
            raise ProcessingError(f"Failed to apply payment {request.reference_id}: {e}", cause=e) from e

        log_action(
            self.logger, "info",
            f"Applied payment {request.reference_id} of {amount} to loan {request.loan_id}",
            operator_id=request.operator_id, action="apply_payment",
            resource=f"loan:{request.loan_id}", correlation_id=request.reference_id,
            extra={
                "transaction_id": commit.transaction.id,
                "allocation": commit.result.allocation.to_dict(),
                "balance_after": str(commit.result.balance_after),
                "status": commit.result.new_status.value
            }
        )

        failures = self._run_hooks(commit)
        if failures:
            return replace(commit.result, side_effect_failures=failures)
        return commit.result

    def get_payment_history(self, loan_id: str, limit: int = 50, offset: int = 0) -> List[Transaction]:
        return self.transactions.payment_history(loan_id, limit=limit, offset=offset)

    def count_payments(self, loan_id: str) -> int:
        return self.transactions.count_payments(loan_id)

    def _validate(self, request: PaymentRequest):
        if not request.reference_id or not str(request.reference_id).strip():
            raise ValidationError("Reference ID is required", "reference_id")
        if not request.loan_id or not str(request.loan_id).strip():
            raise ValidationError("Loan ID is required", "loan_id")
        if request.payment_date is None:
            raise ValidationError("Payment date is required", "payment_date")
        if not isinstance(request.payment_date, date):
            raise ValidationError("Payment date must be a date", "payment_date")
        if request.amount is None:
            raise ValidationError("Amount is required", "amount")

        try:
            amount = to_amount(request.amount)
        except ValueError:
            raise ValidationError(f"Amount must be a number, got {request.amount!r}", "amount")
        if amount <= 0:
            raise ValidationError("Amount must be greater than zero", "amount")
        if round2(amount) != amount:
            raise ValidationError("Amount cannot have more than 2 decimal places", "amount")

        return round2(amount), to_business_date(request.payment_date, self.tz)

    def _apply_locked(self, request: PaymentRequest, amount: Decimal, payment_date: date) -> LedgerCommit:
        loan = self.loans.get_for_update(request.loan_id)
        if loan is None or loan.is_deleted:
            raise LoanNotFoundError(request.loan_id)

        # Re-checked under the loan lock; the fast path above ran unlocked
        existing = self.transactions.find_by_reference(request.reference_id)
        if existing is not None:
            raise DuplicateTransactionError(request.reference_id, existing.id)

        if loan.is_closed:
            raise InvalidStatusError(
                f"Loan {loan.id} is closed and cannot accept payments", loan.status.value
            )

        now = self.clock()
        since = loan.accrual_start_date
        days = days_elapsed(since, payment_date)
        accrued = calculate_accrued_interest(loan.outstanding_balance, loan.interest_rate, since, payment_date)
        interest_owed = loan.unpaid_interest + accrued

        allocation = allocate_payment(amount, loan.total_penalties, interest_owed, loan.outstanding_balance)

        new_balance = loan.outstanding_balance - allocation.to_principal
        new_penalties = loan.total_penalties - allocation.to_penalties
        new_unpaid_interest = interest_owed - allocation.to_interest
        transition = resolve_loan_status(loan.status, new_balance, new_penalties + new_unpaid_interest, now)

        loan.outstanding_balance = max(new_balance, ZERO)
        loan.total_penalties = new_penalties
        loan.unpaid_interest = new_unpaid_interest
        loan.principal_paid += allocation.to_principal
        loan.interest_paid += allocation.to_interest
        loan.penalties_paid += allocation.to_penalties
        if loan.last_payment_date is None or payment_date >= loan.last_payment_date:
            loan.last_payment_date = payment_date
            loan.last_payment_amount = amount
        if transition.changed:
            loan.previous_status = transition.previous_status
            loan.status_changed_at = transition.changed_at
            loan.status = transition.status
        if loan.status != LoanStatus.OVERDUE:
            loan.overdue_days = 0

        transaction = Transaction(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            reference_id=request.reference_id,
            loan_id=loan.id,
            client_id=loan.client_id,
            transaction_type=TransactionType.PAYMENT,
            payment_date=payment_date,
            amount=amount,
            to_penalties=allocation.to_penalties,
            to_interest=allocation.to_interest,
            to_principal=allocation.to_principal,
            overpayment=allocation.remaining,
            balance_after=loan.outstanding_balance,
            penalties_after=loan.total_penalties,
            unpaid_interest_after=loan.unpaid_interest,
            loan_status_after=loan.status,
            previous_status=transition.previous_status,
            payment_method=request.payment_method,
            payment_source=request.payment_source,
            notes=request.notes,
            processed_by=request.operator_id,
            accrued_interest=accrued,
            days_since_last_payment=days,
            interest_rate_applied=loan.interest_rate
        )

        self.transactions.record(transaction)
        self.loans.save(loan)

        return LedgerCommit(
            request=request,
            transaction=transaction,
            loan=loan,
            result=PaymentResult.from_transaction(transaction)
        )

    def _duplicate(self, existing: Transaction, request: PaymentRequest) -> PaymentResult:
        log_action(
            self.logger, "info", f"Payment {request.reference_id} already applied",
            operator_id=request.operator_id, action="payment_duplicate",
            resource=f"loan:{existing.loan_id}", correlation_id=request.reference_id,
            extra={"transaction_id": existing.id}
        )
        return PaymentResult.from_transaction(existing, duplicate=True)

    def _run_hooks(self, commit: LedgerCommit) -> int:
        failures = 0
        for hook in self.hooks:
            try:
                hook(commit)
            except Exception as e:
                failures += 1
                log_action(
                    self.logger, "error",
                    f"Post-commit hook {hook.name} failed for {commit.transaction.reference_id}: {e}",
                    action="post_commit_hook", resource=f"loan:{commit.loan.id}",
                    correlation_id=commit.transaction.reference_id,
                    exc_info=sys.exc_info()
                )
        return failures
