"""
Inbound Payment Events

The closed set of events the reconciliation engine accepts. Each event is a
plain immutable dataclass; PaymentEventRouter dispatches on the concrete type.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, tzinfo
from decimal import Decimal
from typing import Any, Dict, Optional, Union
import random
import string
import time

from .errors import ValidationError
from .money import to_amount

MANUAL_PAYMENT_METHODS = ("Cash", "Check", "Bank Transfer")
WEBHOOK_PAYMENT_METHOD = "Bank Transfer"


def generate_manual_reference(now_ms: Optional[int] = None) -> str:
    """Reference ID for an operator-entered payment: MANUAL-<epoch ms>-<6 chars>"""
    timestamp = now_ms if now_ms is not None else int(time.time() * 1000)
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=6))
    return f"MANUAL-{timestamp}-{suffix}"


@dataclass(frozen=True)
class ManualPaymentSubmitted:
    """An operator recorded a payment received outside the bank-transfer flow"""
    loan_id: str
    amount: Decimal
    payment_date: date
    payment_method: str
    operator_id: Optional[str] = None
    notes: Optional[str] = None
    reference_id: Optional[str] = None  # Generated when omitted

    def __post_init__(self):
        if self.payment_method not in MANUAL_PAYMENT_METHODS:
            raise ValidationError(
                f"Payment method must be one of {', '.join(MANUAL_PAYMENT_METHODS)}",
                "payment_method"
            )


@dataclass(frozen=True)
class PartyInfo:
    """Sender or receiver as reported by the verification service"""
    display_name: str = ""
    name: Optional[str] = None
    account_number: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'displayName': self.display_name,
            'name': self.name,
            'account': {'value': self.account_number} if self.account_number else None
        }

    @classmethod
    def from_payload(cls, data: Optional[Dict[str, Any]], field_name: str = "sender") -> 'PartyInfo':
        """
        Raises:
            ValidationError: If the party is present but not an object
        """
        data = data or {}
        if not isinstance(data, dict):
            raise ValidationError(f"{field_name} must be an object", field_name)
        account = data.get('account') or {}
        return cls(
            display_name=data.get('displayName') or "",
            name=data.get('name'),
            account_number=account.get('value') if isinstance(account, dict) else None
        )


def parse_slip_datetime(date_str: str, time_str: Optional[str], tz: Optional[tzinfo]) -> datetime:
    """
    Parse a slip date (DD/MM/YYYY) and time (HH:MM:SS) in the business timezone

    Raises:
        ValidationError: If either part is malformed
    """
    try:
        day, month, year = (int(part) for part in date_str.split('/'))
        hours, minutes, seconds = 0, 0, 0
        if time_str:
            parts = [int(part) for part in time_str.split(':')]
            hours, minutes = parts[0], parts[1]
            seconds = parts[2] if len(parts) > 2 else 0
        return datetime(year, month, day, hours, minutes, seconds, tzinfo=tz)
    except (ValueError, AttributeError, IndexError):
        raise ValidationError(f"Invalid slip date/time: {date_str!r} {time_str!r}", "transDate")


@dataclass(frozen=True)
class VerifiedPaymentReceived:
    """A bank transfer confirmed by the slip verification service"""
    reference_id: str
    amount: Decimal
    paid_at: datetime
    sender: PartyInfo = field(default_factory=PartyInfo)
    receiver: PartyInfo = field(default_factory=PartyInfo)
    sending_bank: Optional[str] = None
    receiving_bank: Optional[str] = None
    line_user_id: Optional[str] = None  # Set when the slip arrived through chat

    @property
    def bank_info(self) -> Dict[str, Optional[str]]:
        return {'sendingBank': self.sending_bank, 'receivingBank': self.receiving_bank}

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], tz: Optional[tzinfo] = None,
                     line_user_id: Optional[str] = None) -> 'VerifiedPaymentReceived':
        """
        Build an event from a webhook body.

        The body may wrap the slip in a ``data`` field. The slip must carry a
        reference, a positive amount and ``success: true``.

        Raises:
            ValidationError: If the payload is not a usable verified payment
        """
        if not isinstance(payload, dict):
            raise ValidationError("Webhook payload must be an object")
        data = payload.get('data') if isinstance(payload.get('data'), dict) else payload

        reference_id = data.get('transRef')
        if not reference_id:
            raise ValidationError("Missing transRef", "transRef")
        if data.get('success') is not True:
            raise ValidationError("Slip verification did not succeed", "success")
        try:
            amount = to_amount(data.get('amount'))
        except ValueError:
            raise ValidationError(f"Invalid amount: {data.get('amount')!r}", "amount")
        if amount <= 0:
            raise ValidationError("Amount must be greater than zero", "amount")
        if not data.get('transDate'):
            raise ValidationError("Missing transDate", "transDate")

        return cls(
            reference_id=str(reference_id),
            amount=amount,
            paid_at=parse_slip_datetime(data['transDate'], data.get('transTime'), tz),
            sender=PartyInfo.from_payload(data.get('sender'), 'sender'),
            receiver=PartyInfo.from_payload(data.get('receiver'), 'receiver'),
            sending_bank=data.get('sendingBank'),
            receiving_bank=data.get('receivingBank'),
            line_user_id=line_user_id or data.get('lineUserId')
        )


@dataclass(frozen=True)
class PendingPaymentMatched:
    """An operator attributed a pending payment to a loan"""
    pending_payment_id: str
    loan_id: str
    operator_id: str
    notes: Optional[str] = None


@dataclass(frozen=True)
class PendingPaymentProcessed:
    """An operator pushed a matched pending payment through the ledger"""
    pending_payment_id: str
    operator_id: str


@dataclass(frozen=True)
class PendingPaymentRejected:
    """An operator discarded a pending payment"""
    pending_payment_id: str
    reason: str
    operator_id: Optional[str] = None


PaymentEvent = Union[
    ManualPaymentSubmitted,
    VerifiedPaymentReceived,
    PendingPaymentMatched,
    PendingPaymentProcessed,
    PendingPaymentRejected,
]
