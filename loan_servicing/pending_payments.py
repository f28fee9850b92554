"""
Pending Payment Queue

Verified payments the matching service could not attribute wait here for an
operator. Lifecycle:

    Unmatched -> Matched -> Processed
    Unmatched | Matched -> Rejected

Processing re-submits the payment to the ledger under its original reference
ID, so a payment can never be applied twice through this path either.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple
import sys
import uuid

from .audit import AuditTrail, AuditEventType
from .errors import (
    ValidationError, InvalidStatusError, LoanNotFoundError, PendingPaymentNotFoundError
)
from .events import VerifiedPaymentReceived, WEBHOOK_PAYMENT_METHOD
from .ledger import PaymentRequest, PaymentResult, TransactionLedger
from .loans import LoanRepository
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord, DuplicateKeyError


class PendingPaymentStatus(Enum):
    """Reconciliation status of a pending payment"""
    UNMATCHED = "Unmatched"
    MATCHED = "Matched"
    PROCESSED = "Processed"
    REJECTED = "Rejected"


@dataclass
class PendingPayment(StorageRecord):
    """Verified payment awaiting manual reconciliation"""
    reference_id: str
    amount: Decimal
    paid_at: datetime
    sender_info: Dict[str, Any] = field(default_factory=dict)
    receiver_info: Dict[str, Any] = field(default_factory=dict)
    bank_info: Dict[str, Any] = field(default_factory=dict)
    status: PendingPaymentStatus = PendingPaymentStatus.UNMATCHED
    matched_loan_id: Optional[str] = None
    matched_by: Optional[str] = None
    matched_at: Optional[datetime] = None
    processed_transaction_id: Optional[str] = None
    processed_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    admin_notes: Optional[str] = None


class PendingPaymentRepository:
    """
    Storage for pending payments, unique by reference ID
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.pending_table = "pending_payments"
        self.references_table = "pending_payment_refs"

    def add(self, pending: PendingPayment) -> None:
        """
        Raises:
            DuplicateKeyError: If a pending payment with the reference exists
        """
        with self.storage.atomic():
            self.storage.insert(self.references_table, pending.reference_id, {'pending_payment_id': pending.id})
            self.storage.insert(self.pending_table, pending.id, self._pending_to_dict(pending))

    def save(self, pending: PendingPayment) -> None:
        pending.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.pending_table, pending.id, self._pending_to_dict(pending))

    def get(self, pending_id: str) -> Optional[PendingPayment]:
        data = self.storage.load(self.pending_table, pending_id)
        if data:
            return self._pending_from_dict(data)
        return None

    def get_for_update(self, pending_id: str) -> Optional[PendingPayment]:
        data = self.storage.load_for_update(self.pending_table, pending_id)
        if data:
            return self._pending_from_dict(data)
        return None

    def find_by_reference(self, reference_id: str) -> Optional[PendingPayment]:
        index = self.storage.load(self.references_table, reference_id)
        if not index:
            return None
        return self.get(index['pending_payment_id'])

    def list_payments(self, status: Optional[PendingPaymentStatus] = None) -> List[PendingPayment]:
        """Pending payments, newest first"""
        if status is None:
            records = self.storage.load_all(self.pending_table)
        else:
            records = self.storage.find(self.pending_table, {'status': status.value})
        payments = [self._pending_from_dict(data) for data in records]
        payments.sort(key=lambda p: p.created_at, reverse=True)
        return payments

    def _pending_to_dict(self, pending: PendingPayment) -> Dict:
        return pending.to_dict()

    def _pending_from_dict(self, data: Dict) -> PendingPayment:
        data = dict(data)
        data['amount'] = Decimal(data['amount'])
        data['status'] = PendingPaymentStatus(data['status'])
        for field_name in ('paid_at', 'matched_at', 'processed_at', 'rejected_at'):
            if data.get(field_name):
                data[field_name] = datetime.fromisoformat(data[field_name])
        return PendingPayment.from_dict(data)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PendingPaymentQueue:
    """
    Operator workflow over pending payments
    """

    def __init__(
        self,
        storage: StorageInterface,
        repository: PendingPaymentRepository,
        loans: LoanRepository,
        ledger: TransactionLedger,
        audit_trail: Optional[AuditTrail] = None,
        clock: Callable[[], datetime] = _utc_now
    ):
        self.storage = storage
        self.repository = repository
        self.loans = loans
        self.ledger = ledger
        self.audit_trail = audit_trail
        self.clock = clock
        self.logger = get_logger("loan_servicing.pending_payments")

    def record_unmatched(
        self,
        event: VerifiedPaymentReceived,
        admin_notes: Optional[str] = None
    ) -> Tuple[PendingPayment, bool]:
        """
        Queue a verified payment for manual matching.

        Returns:
            (pending payment, created). A repeat of the same reference returns
            the existing entry with created=False.
        """
        now = self.clock()
        pending = PendingPayment(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            reference_id=event.reference_id,
            amount=event.amount,
            paid_at=event.paid_at,
            sender_info=event.sender.to_dict(),
            receiver_info=event.receiver.to_dict(),
            bank_info=event.bank_info,
            admin_notes=admin_notes
        )
        try:
            self.repository.add(pending)
        except DuplicateKeyError:
            existing = self.repository.find_by_reference(event.reference_id)
            if existing is not None:
                self.logger.info(f"Pending payment for {event.reference_id} already queued as {existing.id}")
                return existing, False
            raise

        log_action(
            self.logger, "warning",
            f"ADMIN ALERT: Unmatched payment {event.reference_id} of {event.amount} requires manual review",
            action="queue_pending_payment", resource=f"pending_payment:{pending.id}",
            correlation_id=event.reference_id,
            extra={"sender": event.sender.display_name, "amount": str(event.amount)}
        )
        self._audit(AuditEventType.PENDING_PAYMENT_QUEUED, pending, None, {
            "reference_id": pending.reference_id,
            "amount": pending.amount
        })
        return pending, True

    def get(self, pending_id: str) -> PendingPayment:
        pending = self.repository.get(pending_id)
        if pending is None:
            raise PendingPaymentNotFoundError(pending_id)
        return pending

    def list_pending(self, include_all: bool = False) -> List[PendingPayment]:
        """Unmatched payments by default, every payment with include_all"""
        if include_all:
            return self.repository.list_payments()
        return self.repository.list_payments(PendingPaymentStatus.UNMATCHED)

    def match(
        self,
        pending_id: str,
        loan_id: str,
        operator_id: str,
        notes: Optional[str] = None
    ) -> PendingPayment:
        """
        Attribute an unmatched payment to a loan.

        Raises:
            PendingPaymentNotFoundError, LoanNotFoundError
            InvalidStatusError: Payment is not Unmatched, or the loan is Closed
        """
        with self.storage.atomic():
            pending = self._load_locked(pending_id)
            if pending.status != PendingPaymentStatus.UNMATCHED:
                raise InvalidStatusError(
                    f"Pending payment {pending_id} is {pending.status.value}, only Unmatched payments can be matched",
                    pending.status.value
                )
            loan = self.loans.get(loan_id)
            if loan is None:
                raise LoanNotFoundError(loan_id)
            if loan.is_closed:
                raise InvalidStatusError(f"Loan {loan_id} is closed", loan.status.value)

            pending.status = PendingPaymentStatus.MATCHED
            pending.matched_loan_id = loan.id
            pending.matched_by = operator_id
            pending.matched_at = self.clock()
            if notes:
                pending.admin_notes = notes
            self.repository.save(pending)

        log_action(
            self.logger, "info", f"Pending payment {pending_id} matched to loan {loan_id}",
            operator_id=operator_id, action="match_pending_payment",
            resource=f"pending_payment:{pending_id}", correlation_id=pending.reference_id
        )
        self._audit(AuditEventType.PENDING_PAYMENT_MATCHED, pending, operator_id, {"loan_id": loan_id})
        return pending

    def process(self, pending_id: str, operator_id: str) -> Tuple[PendingPayment, PaymentResult]:
        """
        Apply a matched payment through the ledger and mark it Processed.

        Ledger errors propagate and leave the payment Matched.

        Raises:
            PendingPaymentNotFoundError
            InvalidStatusError: Payment is not Matched
        """
        pending = self.get(pending_id)
        if pending.status != PendingPaymentStatus.MATCHED or not pending.matched_loan_id:
            raise InvalidStatusError(
                f"Pending payment {pending_id} is {pending.status.value}, only Matched payments can be processed",
                pending.status.value
            )

        result = self.ledger.apply_payment(PaymentRequest(
            reference_id=pending.reference_id,
            loan_id=pending.matched_loan_id,
            amount=pending.amount,
            payment_date=pending.paid_at,
            payment_method=WEBHOOK_PAYMENT_METHOD,
            payment_source=pending.bank_info.get('sendingBank'),
            notes=f"Processed from pending payment {pending.id}",
            operator_id=operator_id
        ))

        with self.storage.atomic():
            pending = self._load_locked(pending_id)
            if pending.status not in (PendingPaymentStatus.MATCHED, PendingPaymentStatus.PROCESSED):
                # The ledger already holds the payment; the queue must reflect it
                self.logger.warning(
                    f"Pending payment {pending_id} moved to {pending.status.value} while being processed"
                )
            pending.status = PendingPaymentStatus.PROCESSED
            pending.processed_transaction_id = result.transaction_id
            pending.processed_at = pending.processed_at or self.clock()
            self.repository.save(pending)

        log_action(
            self.logger, "info",
            f"Pending payment {pending_id} processed as transaction {result.transaction_id}",
            operator_id=operator_id, action="process_pending_payment",
            resource=f"pending_payment:{pending_id}", correlation_id=pending.reference_id,
            extra={"duplicate": result.duplicate}
        )
        self._audit(AuditEventType.PENDING_PAYMENT_PROCESSED, pending, operator_id, {
            "transaction_id": result.transaction_id,
            "loan_id": result.loan_id
        })
        return pending, result

    def reject(self, pending_id: str, reason: str, operator_id: Optional[str] = None) -> PendingPayment:
        """
        Discard a pending payment.

        Raises:
            ValidationError: Reason missing
            PendingPaymentNotFoundError
            InvalidStatusError: Payment already Processed or Rejected
        """
        if not reason or not reason.strip():
            raise ValidationError("A reason is required to reject a payment", "reason")

        with self.storage.atomic():
            pending = self._load_locked(pending_id)
            if pending.status in (PendingPaymentStatus.PROCESSED, PendingPaymentStatus.REJECTED):
                raise InvalidStatusError(
                    f"Pending payment {pending_id} is {pending.status.value} and cannot be rejected",
                    pending.status.value
                )
            pending.status = PendingPaymentStatus.REJECTED
            pending.admin_notes = reason.strip()
            pending.rejected_at = self.clock()
            pending.rejected_by = operator_id
            self.repository.save(pending)

        log_action(
            self.logger, "info", f"Pending payment {pending_id} rejected: {reason.strip()}",
            operator_id=operator_id, action="reject_pending_payment",
            resource=f"pending_payment:{pending_id}", correlation_id=pending.reference_id
        )
        self._audit(AuditEventType.PENDING_PAYMENT_REJECTED, pending, operator_id, {"reason": pending.admin_notes})
        return pending

    def _load_locked(self, pending_id: str) -> PendingPayment:
        pending = self.repository.get_for_update(pending_id)
        if pending is None:
            raise PendingPaymentNotFoundError(pending_id)
        return pending

    def _audit(self, event_type: AuditEventType, pending: PendingPayment,
               operator_id: Optional[str], metadata: Dict[str, Any]) -> None:
        if self.audit_trail is None:
            return
        try:
            self.audit_trail.log_event(
                event_type=event_type,
                entity_type="pending_payment",
                entity_id=pending.id,
                metadata=metadata,
                operator_id=operator_id
            )
        except Exception as e:
            log_action(
                self.logger, "error", f"Audit write failed for pending payment {pending.id}: {e}",
                action="audit", resource=f"pending_payment:{pending.id}",
                exc_info=sys.exc_info()
            )
