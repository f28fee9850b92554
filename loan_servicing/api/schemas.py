"""
Pydantic schemas for API requests, plus response serializers
"""

from decimal import Decimal
from datetime import date
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from ..ledger import PaymentResult
from ..pending_payments import PendingPayment
from ..transactions import Transaction


class ManualPaymentRequest(BaseModel):
    loan_id: str
    amount: Decimal = Field(..., description="Payment amount, at most 2 decimal places")
    payment_date: date
    payment_method: str = Field("Cash", description="Cash, Check or Bank Transfer")
    notes: Optional[str] = None
    reference_id: Optional[str] = Field(None, description="Generated as MANUAL-... when omitted")


class MatchPendingPaymentRequest(BaseModel):
    loan_id: str
    notes: Optional[str] = None


class RejectPendingPaymentRequest(BaseModel):
    reason: str


def money(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


def payment_result_to_dict(result: PaymentResult) -> Dict[str, Any]:
    return {
        "transaction_id": result.transaction_id,
        "reference_id": result.reference_id,
        "loan_id": result.loan_id,
        "allocation": {
            "to_penalties": money(result.allocation.to_penalties),
            "to_interest": money(result.allocation.to_interest),
            "to_principal": money(result.allocation.to_principal),
            "remaining": money(result.allocation.remaining)
        },
        "balance_after": money(result.balance_after),
        "new_status": result.new_status.value,
        "previous_status": result.previous_status.value if result.previous_status else None,
        "accrued_interest": money(result.accrued_interest),
        "duplicate": result.duplicate,
        "side_effect_failures": result.side_effect_failures
    }


def transaction_to_dict(transaction: Transaction) -> Dict[str, Any]:
    return {
        "id": transaction.id,
        "reference_id": transaction.reference_id,
        "loan_id": transaction.loan_id,
        "transaction_type": transaction.transaction_type.value,
        "payment_date": transaction.payment_date.isoformat(),
        "amount": money(transaction.amount),
        "to_penalties": money(transaction.to_penalties),
        "to_interest": money(transaction.to_interest),
        "to_principal": money(transaction.to_principal),
        "overpayment": money(transaction.overpayment),
        "balance_after": money(transaction.balance_after),
        "loan_status_after": transaction.loan_status_after.value,
        "payment_method": transaction.payment_method,
        "payment_source": transaction.payment_source,
        "notes": transaction.notes,
        "processed_by": transaction.processed_by,
        "created_at": transaction.created_at.isoformat()
    }


def pending_payment_to_dict(pending: PendingPayment) -> Dict[str, Any]:
    return {
        "id": pending.id,
        "reference_id": pending.reference_id,
        "amount": money(pending.amount),
        "paid_at": pending.paid_at.isoformat(),
        "sender_info": pending.sender_info,
        "receiver_info": pending.receiver_info,
        "bank_info": pending.bank_info,
        "status": pending.status.value,
        "matched_loan_id": pending.matched_loan_id,
        "matched_by": pending.matched_by,
        "matched_at": pending.matched_at.isoformat() if pending.matched_at else None,
        "processed_transaction_id": pending.processed_transaction_id,
        "processed_at": pending.processed_at.isoformat() if pending.processed_at else None,
        "rejected_at": pending.rejected_at.isoformat() if pending.rejected_at else None,
        "rejected_by": pending.rejected_by,
        "admin_notes": pending.admin_notes,
        "created_at": pending.created_at.isoformat()
    }
