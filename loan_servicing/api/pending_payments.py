"""
Pending payment endpoints for operators
"""

from typing import Optional

from fastapi import APIRouter, Depends

from ..errors import LoanServicingError
from ..events import PendingPaymentMatched, PendingPaymentProcessed, PendingPaymentRejected
from ..system import LoanServicingSystem
from .dependencies import get_operator_id, get_system, require_operator_id, to_http_error
from .schemas import (
    MatchPendingPaymentRequest, RejectPendingPaymentRequest,
    payment_result_to_dict, pending_payment_to_dict
)


router = APIRouter()


@router.get("")
def list_pending_payments(
    include_all: bool = False,
    system: LoanServicingSystem = Depends(get_system)
):
    """Unmatched payments, or every pending payment with include_all"""
    payments = system.queue.list_pending(include_all=include_all)
    return {
        "count": len(payments),
        "pending_payments": [pending_payment_to_dict(pending) for pending in payments]
    }


@router.get("/{pending_id}")
def get_pending_payment(
    pending_id: str,
    system: LoanServicingSystem = Depends(get_system)
):
    try:
        return pending_payment_to_dict(system.queue.get(pending_id))
    except LoanServicingError as e:
        raise to_http_error(e)


@router.post("/{pending_id}/match")
def match_pending_payment(
    pending_id: str,
    request: MatchPendingPaymentRequest,
    system: LoanServicingSystem = Depends(get_system),
    operator_id: str = Depends(require_operator_id)
):
    """Attribute an unmatched payment to a loan"""
    try:
        outcome = system.router.route(PendingPaymentMatched(
            pending_payment_id=pending_id,
            loan_id=request.loan_id,
            operator_id=operator_id,
            notes=request.notes
        ))
    except LoanServicingError as e:
        raise to_http_error(e)

    return {
        "status": outcome.status,
        "message": outcome.message,
        "pending_payment": pending_payment_to_dict(outcome.pending_payment)
    }


@router.post("/{pending_id}/process")
def process_pending_payment(
    pending_id: str,
    system: LoanServicingSystem = Depends(get_system),
    operator_id: str = Depends(require_operator_id)
):
    """Apply a matched payment through the ledger"""
    try:
        outcome = system.router.route(PendingPaymentProcessed(
            pending_payment_id=pending_id,
            operator_id=operator_id
        ))
    except LoanServicingError as e:
        raise to_http_error(e)

    return {
        "status": outcome.status,
        "message": outcome.message,
        "payment": payment_result_to_dict(outcome.result),
        "pending_payment": pending_payment_to_dict(outcome.pending_payment)
    }


@router.post("/{pending_id}/reject")
def reject_pending_payment(
    pending_id: str,
    request: RejectPendingPaymentRequest,
    system: LoanServicingSystem = Depends(get_system),
    operator_id: Optional[str] = Depends(get_operator_id)
):
    """Discard a pending payment"""
    try:
        outcome = system.router.route(PendingPaymentRejected(
            pending_payment_id=pending_id,
            reason=request.reason,
            operator_id=operator_id
        ))
    except LoanServicingError as e:
        raise to_http_error(e)

    return {
        "status": outcome.status,
        "message": outcome.message,
        "pending_payment": pending_payment_to_dict(outcome.pending_payment)
    }
