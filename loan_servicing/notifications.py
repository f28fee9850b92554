"""
Notification Module

Messaging channel clients, reminder templates, the notification history
used for duplicate prevention, and the post-commit hooks that tell a
borrower their payment arrived or their loan is paid off.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

import requests

from .clients import ChannelIdentityLookup
from .errors import MessageDeliveryError
from .ledger import LedgerCommit, PostCommitHook
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord, DuplicateKeyError

MAX_MESSAGES_PER_PUSH = 5


class NotificationType(Enum):
    """Reminder milestones"""
    BILLING = "billing"        # N days before the due date
    WARNING = "warning"        # A few days before the due date
    DUE_DATE = "due_date"      # On the due date
    OVERDUE = "overdue"        # At set days past due


class NotificationSendStatus(Enum):
    """Delivery status of a history row"""
    SENDING = "sending"        # Claimed, dispatch in progress
    SENT = "sent"
    FAILED = "failed"


@dataclass
class NotificationHistory(StorageRecord):
    """
    One reminder per (loan, type, billing period).

    The record id is derived from that triple, so the store itself refuses a
    second row for the same milestone.
    """
    loan_id: str
    client_id: str
    notification_type: NotificationType
    billing_period: str
    line_user_id: str
    send_status: NotificationSendStatus = NotificationSendStatus.SENDING
    overdue_days: Optional[int] = None
    message_data: Dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None
    sent_at: Optional[datetime] = None


def history_key(loan_id: str, notification_type: NotificationType, billing_period: str) -> str:
    return f"{loan_id}:{notification_type.value}:{billing_period}"


class NotificationHistoryRepository:
    """
    Insert-once index of dispatched reminders
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.history_table = "notification_history"

    def claim(
        self,
        loan_id: str,
        client_id: str,
        notification_type: NotificationType,
        billing_period: str,
        line_user_id: str,
        overdue_days: Optional[int] = None
    ) -> Optional[NotificationHistory]:
        """
        Reserve the (loan, type, period) slot before dispatching.

        Returns:
            The new history row, or None if the slot was already taken
        """
        now = datetime.now(timezone.utc)
        history = NotificationHistory(
            id=history_key(loan_id, notification_type, billing_period),
            created_at=now,
            updated_at=now,
            loan_id=loan_id,
            client_id=client_id,
            notification_type=notification_type,
            billing_period=billing_period,
            line_user_id=line_user_id,
            overdue_days=overdue_days
        )
        try:
            self.storage.insert(self.history_table, history.id, history.to_dict())
        except DuplicateKeyError:
            return None
        return history

    def finalize(
        self,
        history: NotificationHistory,
        status: NotificationSendStatus,
        message_data: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None
    ) -> NotificationHistory:
        now = datetime.now(timezone.utc)
        history.send_status = status
        history.message_data = message_data or history.message_data
        history.error_message = error_message
        history.sent_at = now
        history.updated_at = now
        self.storage.save(self.history_table, history.id, history.to_dict())
        return history

    def get(self, loan_id: str, notification_type: NotificationType,
            billing_period: str) -> Optional[NotificationHistory]:
        data = self.storage.load(self.history_table, history_key(loan_id, notification_type, billing_period))
        if data:
            return self._history_from_dict(data)
        return None

    def list_for_loan(self, loan_id: str) -> List[NotificationHistory]:
        records = self.storage.find(self.history_table, {'loan_id': loan_id})
        history = [self._history_from_dict(data) for data in records]
        history.sort(key=lambda h: h.created_at)
        return history

    def _history_from_dict(self, data: Dict) -> NotificationHistory:
        data = dict(data)
        data['notification_type'] = NotificationType(data['notification_type'])
        data['send_status'] = NotificationSendStatus(data['send_status'])
        if data.get('sent_at'):
            data['sent_at'] = datetime.fromisoformat(data['sent_at'])
        return NotificationHistory.from_dict(data)


class MessagingClient(ABC):
    """Pushes messages to a messaging channel identity"""

    @abstractmethod
    def push_message(self, recipient: str, messages: List[Dict[str, Any]]) -> None:
        """
        Raises:
            MessageDeliveryError: If the channel did not accept the push
        """
        pass


class LineMessagingClient(MessagingClient):
    """LINE Messaging API push client"""

    def __init__(self, api_url: str, channel_token: str, timeout: float = 10.0):
        self.api_url = api_url.rstrip('/')
        self.channel_token = channel_token
        self.timeout = timeout

    def push_message(self, recipient: str, messages: List[Dict[str, Any]]) -> None:
        if not messages:
            raise ValueError("At least one message is required")
        if len(messages) > MAX_MESSAGES_PER_PUSH:
            raise ValueError(f"At most {MAX_MESSAGES_PER_PUSH} messages can be pushed at once")

        try:
            response = requests.post(
                f"{self.api_url}/message/push",
                json={"to": recipient, "messages": messages},
                timeout=self.timeout,
                headers={
                    "Content-Type": "application/json",
                    "Authorization": f"Bearer {self.channel_token}"
                }
            )
        except requests.RequestException as e:
            raise MessageDeliveryError(f"Push to {recipient} failed: {e}")

        if response.status_code != 200:
            raise MessageDeliveryError(
                f"Push to {recipient} rejected with {response.status_code}: {response.text}",
                status_code=response.status_code
            )


class LogMessagingClient(MessagingClient):
    """Logs messages instead of sending them, for development"""

    def __init__(self):
        self.logger = get_logger("loan_servicing.messaging")

    def push_message(self, recipient: str, messages: List[Dict[str, Any]]) -> None:
        for message in messages:
            self.logger.info(f"Message to {recipient}: {message.get('text', '')[:200]}")


@dataclass(frozen=True)
class MessageTemplate:
    """Plain text message filled with str.format placeholders"""
    name: str
    body_template: str

    def render(self, data: Dict[str, Any]) -> List[Dict[str, Any]]:
        return [{"type": "text", "text": self.body_template.format(**data)}]


DEFAULT_TEMPLATES: Dict[str, MessageTemplate] = {
    NotificationType.BILLING.value: MessageTemplate(
        name="Billing reminder",
        body_template=(
            "Your {month} installment for contract {contract_number} is {amount}, "
            "due on {due_date}.\nPay here: {payment_link}"
        )
    ),
    NotificationType.WARNING.value: MessageTemplate(
        name="Due date warning",
        body_template=(
            "Reminder: {days_remaining} days left to pay {amount} for contract "
            "{contract_number} (due {due_date}).\nPay here: {payment_link}"
        )
    ),
    NotificationType.DUE_DATE.value: MessageTemplate(
        name="Due today",
        body_template=(
            "Your installment of {amount} for contract {contract_number} is due today.\n"
            "Pay here: {payment_link}"
        )
    ),
    NotificationType.OVERDUE.value: MessageTemplate(
        name="Overdue notice",
        body_template=(
            "Contract {contract_number} is {days_overdue} days overdue. Amount due: {amount}, "
            "penalties: {penalty_amount}.\nPlease pay as soon as possible: {payment_link}"
        )
    ),
    "payment_confirmation": MessageTemplate(
        name="Payment received",
        body_template=(
            "We received your payment of {amount} for contract {contract_number} on {payment_date}.\n"
            "Principal: {to_principal}, interest: {to_interest}, penalties: {to_penalties}.\n"
            "Remaining balance: {balance_after}. Reference: {reference_id}"
        )
    ),
    "loan_closed": MessageTemplate(
        name="Loan paid off",
        body_template=(
            "Congratulations! Contract {contract_number} is fully paid and now closed. "
            "Thank you for your payments."
        )
    ),
}


def format_amount(value: Decimal) -> str:
    return f"{value:,.2f}"


class _BorrowerMessageHook(PostCommitHook):
    """Shared plumbing for hooks that message the borrower"""

    template_name = ""

    def __init__(
        self,
        messaging: MessagingClient,
        identities: ChannelIdentityLookup,
        templates: Optional[Dict[str, MessageTemplate]] = None
    ):
        self.messaging = messaging
        self.identities = identities
        self.templates = templates or DEFAULT_TEMPLATES
        self.logger = get_logger("loan_servicing.notifications")

    def should_send(self, commit: LedgerCommit) -> bool:
        return True

    def message_data(self, commit: LedgerCommit) -> Dict[str, Any]:
        raise NotImplementedError

    def __call__(self, commit: LedgerCommit) -> None:
        if not self.should_send(commit):
            return
        recipient = self.identities.find_channel_identity(commit.loan.client_id)
        if not recipient:
            self.logger.info(
                f"No channel identity for client {commit.loan.client_id}, skipping {self.name}"
            )
            return
        messages = self.templates[self.template_name].render(self.message_data(commit))
        self.messaging.push_message(recipient, messages)
        log_action(
            self.logger, "info", f"Sent {self.name} for {commit.transaction.reference_id}",
            action=self.name, resource=f"loan:{commit.loan.id}",
            correlation_id=commit.transaction.reference_id
        )


class PaymentConfirmationHook(_BorrowerMessageHook):
    """Tells the borrower how their payment was applied"""

    name = "payment_confirmation"
    template_name = "payment_confirmation"

    def message_data(self, commit: LedgerCommit) -> Dict[str, Any]:
        transaction = commit.transaction
        return {
            "amount": format_amount(transaction.amount),
            "contract_number": commit.loan.contract_number,
            "payment_date": transaction.payment_date.isoformat(),
            "to_principal": format_amount(transaction.to_principal),
            "to_interest": format_amount(transaction.to_interest),
            "to_penalties": format_amount(transaction.to_penalties),
            "balance_after": format_amount(transaction.balance_after),
            "reference_id": transaction.reference_id,
        }


class LoanClosedHook(_BorrowerMessageHook):
    """Congratulates the borrower when a payment closes the loan"""

    name = "loan_closed"
    template_name = "loan_closed"

    def should_send(self, commit: LedgerCommit) -> bool:
        return commit.loan_closed

    def message_data(self, commit: LedgerCommit) -> Dict[str, Any]:
        return {"contract_number": commit.loan.contract_number}
