"""
Payment Event Router

Single entry point for every inbound payment event. Dispatch is on the
concrete event type; each branch hands the event to the ledger, the matching
service or the pending payment queue.

Verified bank transfers are always acknowledged: whatever happens, routing
returns an outcome instead of raising. A payment that cannot be attributed
to a loan ends up in the pending queue; a matched payment the ledger refuses
is reported as an error and left for redelivery.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional
import sys

from .errors import (
    MatchingError, NotFoundError, InvalidStatusError, ProcessingError, ValidationError
)
from .events import (
    ManualPaymentSubmitted, VerifiedPaymentReceived, PendingPaymentMatched,
    PendingPaymentProcessed, PendingPaymentRejected, PaymentEvent,
    generate_manual_reference, WEBHOOK_PAYMENT_METHOD
)
from .ledger import PaymentRequest, PaymentResult, TransactionLedger
from .logging_config import get_logger, log_action
from .matching import PaymentMatchingService
from .pending_payments import PendingPayment, PendingPaymentQueue
from .transactions import TransactionRepository

STATUS_PROCESSED = "processed"
STATUS_DUPLICATE = "duplicate"
STATUS_PENDING = "pending"
STATUS_MATCHED = "matched"
STATUS_REJECTED = "rejected"
STATUS_INVALID = "invalid"
STATUS_ERROR = "error"


@dataclass
class RoutingOutcome:
    """What happened to an inbound event"""
    status: str
    message: str
    reference_id: Optional[str] = None
    loan_id: Optional[str] = None
    transaction_id: Optional[str] = None
    pending_payment_id: Optional[str] = None
    result: Optional[PaymentResult] = None
    pending_payment: Optional[PendingPayment] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status,
            'message': self.message,
            'reference_id': self.reference_id,
            'loan_id': self.loan_id,
            'transaction_id': self.transaction_id,
            'pending_payment_id': self.pending_payment_id
        }


def _payment_outcome(result: PaymentResult, message: str) -> RoutingOutcome:
    return RoutingOutcome(
        status=STATUS_DUPLICATE if result.duplicate else STATUS_PROCESSED,
        message="Payment already processed" if result.duplicate else message,
        reference_id=result.reference_id,
        loan_id=result.loan_id,
        transaction_id=result.transaction_id,
        result=result
    )


def _pending_outcome(pending: PendingPayment, message: str) -> RoutingOutcome:
    return RoutingOutcome(
        status=STATUS_PENDING,
        message=message,
        reference_id=pending.reference_id,
        loan_id=pending.matched_loan_id,
        transaction_id=pending.processed_transaction_id,
        pending_payment_id=pending.id,
        pending_payment=pending
    )


class PaymentEventRouter:
    """
    Routes payment events to the component that owns them
    """

    def __init__(
        self,
        ledger: TransactionLedger,
        transactions: TransactionRepository,
        matching: PaymentMatchingService,
        queue: PendingPaymentQueue
    ):
        self.ledger = ledger
        self.transactions = transactions
        self.matching = matching
        self.queue = queue
        self.logger = get_logger("loan_servicing.reconciliation")

    def route(self, event: PaymentEvent) -> RoutingOutcome:
        """
        Dispatch an event.

        Manual payments and admin actions raise the ledger's and queue's
        typed errors. Verified payments never raise.

        Raises:
            TypeError: Not a payment event
        """
        if isinstance(event, VerifiedPaymentReceived):
            return self._verified_payment(event)
        elif isinstance(event, ManualPaymentSubmitted):
            return self._manual_payment(event)
        elif isinstance(event, PendingPaymentMatched):
            pending = self.queue.match(event.pending_payment_id, event.loan_id, event.operator_id, event.notes)
            return RoutingOutcome(
                status=STATUS_MATCHED,
                message=f"Pending payment matched to loan {pending.matched_loan_id}",
                reference_id=pending.reference_id,
                loan_id=pending.matched_loan_id,
                pending_payment_id=pending.id,
                pending_payment=pending
            )
        elif isinstance(event, PendingPaymentProcessed):
            pending, result = self.queue.process(event.pending_payment_id, event.operator_id)
            outcome = _payment_outcome(result, "Pending payment processed")
            outcome.pending_payment_id = pending.id
            outcome.pending_payment = pending
            return outcome
        elif isinstance(event, PendingPaymentRejected):
            pending = self.queue.reject(event.pending_payment_id, event.reason, event.operator_id)
            return RoutingOutcome(
                status=STATUS_REJECTED,
                message="Pending payment rejected",
                reference_id=pending.reference_id,
                pending_payment_id=pending.id,
                pending_payment=pending
            )
        raise TypeError(f"Unsupported payment event: {type(event).__name__}")

    def _manual_payment(self, event: ManualPaymentSubmitted) -> RoutingOutcome:
        result = self.ledger.apply_payment(PaymentRequest(
            reference_id=event.reference_id or generate_manual_reference(),
            loan_id=event.loan_id,
            amount=event.amount,
            payment_date=event.payment_date,
            payment_method=event.payment_method,
            payment_source="manual",
            notes=event.notes,
            operator_id=event.operator_id
        ))
        return _payment_outcome(result, "Payment processed")

    def _verified_payment(self, event: VerifiedPaymentReceived) -> RoutingOutcome:
        try:
            return self._reconcile(event)
        except Exception as e:
            log_action(
                self.logger, "error", f"Verified payment {event.reference_id} could not be reconciled: {e}",
                action="reconcile_payment", correlation_id=event.reference_id,
                exc_info=sys.exc_info()
            )
            return RoutingOutcome(
                status=STATUS_ERROR,
                message="Payment received but could not be recorded",
                reference_id=event.reference_id
            )

    def _reconcile(self, event: VerifiedPaymentReceived) -> RoutingOutcome:
        existing = self.transactions.find_by_reference(event.reference_id)
        if existing is not None:
            self.logger.info(f"Verified payment {event.reference_id} already applied as {existing.id}")
            return _payment_outcome(PaymentResult.from_transaction(existing, duplicate=True), "")

        queued = self.queue.repository.find_by_reference(event.reference_id)
        if queued is not None:
            self.logger.info(f"Verified payment {event.reference_id} already queued as {queued.id}")
            return _pending_outcome(queued, "Payment already queued for manual review")

        try:
            loan = self.matching.find_loan(event)
        except MatchingError as e:
            log_action(
                self.logger, "warning", f"Payment {event.reference_id} not matched: {e}",
                action="match_payment", correlation_id=event.reference_id,
                extra={"sender": event.sender.display_name}
            )
            pending, _ = self.queue.record_unmatched(event, str(e))
            return _pending_outcome(pending, "Payment received, awaiting manual matching")

        try:
            result = self.ledger.apply_payment(PaymentRequest(
                reference_id=event.reference_id,
                loan_id=loan.id,
                amount=event.amount,
                payment_date=event.paid_at,
                payment_method=WEBHOOK_PAYMENT_METHOD,
                payment_source=event.sending_bank,
                notes=f"Auto-matched via slip verification ({event.sender.display_name})"
            ))
        except (ValidationError, NotFoundError, InvalidStatusError, ProcessingError) as e:
            # Matched slips are never queued; a redelivery goes through the ledger again
            log_action(
                self.logger, "error", f"Payment {event.reference_id} matched to loan {loan.id} but not applied: {e}",
                action="apply_payment", resource=f"loan:{loan.id}", correlation_id=event.reference_id
            )
            return RoutingOutcome(
                status=STATUS_ERROR,
                message=f"Payment matched but could not be applied: {e}",
                reference_id=event.reference_id,
                loan_id=loan.id
            )

        return _payment_outcome(result, "Payment processed")
