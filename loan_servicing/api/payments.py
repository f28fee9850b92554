"""
Payment endpoints: verification webhook, manual payments, payment history
"""

from typing import Optional
import sys

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool

from ..errors import LoanServicingError, ValidationError
from ..events import ManualPaymentSubmitted, VerifiedPaymentReceived
from ..logging_config import get_logger, log_action
from ..reconciliation import STATUS_ERROR, STATUS_INVALID
from ..system import LoanServicingSystem
from .dependencies import get_operator_id, get_system, to_http_error
from .schemas import ManualPaymentRequest, payment_result_to_dict, transaction_to_dict


router = APIRouter()
logger = get_logger("loan_servicing.api")


@router.post("/webhooks/payment-verification")
async def payment_verification_webhook(
    request: Request,
    system: LoanServicingSystem = Depends(get_system)
):
    """
    Receive a verified bank transfer.

    Always answers 200 so the verification service does not retry; the body
    says whether the payment was processed, queued or rejected as invalid.
    """
    try:
        payload = await request.json()
    except ValueError:
        payload = None

    try:
        event = VerifiedPaymentReceived.from_payload(payload, system.tz)
        outcome = await run_in_threadpool(system.router.route, event)
    except ValidationError as e:
        log_action(
            logger, "warning", f"Invalid payment verification payload: {e}",
            action="payment_webhook", extra={"field": e.field}
        )
        return {"status": STATUS_INVALID, "message": str(e)}
    except Exception as e:
        log_action(
            logger, "error", f"Payment verification webhook failed: {e}",
            action="payment_webhook", exc_info=sys.exc_info()
        )
        return {"status": STATUS_ERROR, "message": "Payment received but could not be recorded"}

    return outcome.to_dict()


@router.post("/payments/manual")
def submit_manual_payment(
    request: ManualPaymentRequest,
    system: LoanServicingSystem = Depends(get_system),
    operator_id: Optional[str] = Depends(get_operator_id)
):
    """Record a payment received outside the bank-transfer flow"""
    try:
        event = ManualPaymentSubmitted(
            loan_id=request.loan_id,
            amount=request.amount,
            payment_date=request.payment_date,
            payment_method=request.payment_method,
            operator_id=operator_id,
            notes=request.notes,
            reference_id=request.reference_id
        )
        outcome = system.router.route(event)
    except LoanServicingError as e:
        raise to_http_error(e)

    return {
        "status": outcome.status,
        "message": outcome.message,
        "payment": payment_result_to_dict(outcome.result)
    }


@router.get("/loans/{loan_id}/payments")
def get_payment_history(
    loan_id: str,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    system: LoanServicingSystem = Depends(get_system)
):
    """Payments applied to a loan, newest first"""
    if system.loans.get(loan_id) is None:
        raise HTTPException(status_code=404, detail="Loan not found")

    payments = system.ledger.get_payment_history(loan_id, limit=limit, offset=offset)
    return {
        "loan_id": loan_id,
        "total": system.ledger.count_payments(loan_id),
        "limit": limit,
        "offset": offset,
        "payments": [transaction_to_dict(transaction) for transaction in payments]
    }
