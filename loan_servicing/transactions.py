"""
Transaction Module

Immutable ledger transactions. Each payment reference ID produces at most
one transaction; the reference index is a separate table keyed by the
reference ID, so the store itself rejects a second claim.
"""

from decimal import Decimal
from datetime import datetime, date
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

from .allocation import PaymentAllocation
from .errors import DuplicateTransactionError
from .status import LoanStatus
from .storage import StorageInterface, StorageRecord, DuplicateKeyError
from .logging_config import get_logger


class TransactionType(Enum):
    """Types of ledger transactions"""
    PAYMENT = "Payment"
    DISBURSEMENT = "Disbursement"
    FEE = "Fee"
    ADJUSTMENT = "Adjustment"


@dataclass
class Transaction(StorageRecord):
    """One applied payment, with balances as they stood right after it"""
    reference_id: str
    loan_id: str
    client_id: str
    transaction_type: TransactionType
    payment_date: date
    amount: Decimal

    # Allocation
    to_penalties: Decimal
    to_interest: Decimal
    to_principal: Decimal
    overpayment: Decimal

    # Snapshot after this transaction
    balance_after: Decimal
    penalties_after: Decimal
    unpaid_interest_after: Decimal
    loan_status_after: LoanStatus
    previous_status: Optional[LoanStatus] = None

    payment_method: Optional[str] = None
    payment_source: Optional[str] = None
    notes: Optional[str] = None
    processed_by: Optional[str] = None

    # Accrual audit
    accrued_interest: Decimal = Decimal("0.00")
    days_since_last_payment: int = 0
    interest_rate_applied: Decimal = Decimal("0.00")

    def __post_init__(self):
        if self.amount <= 0:
            raise ValueError("Transaction amount must be positive")
        if self.allocation.total != self.amount:
            raise ValueError(
                f"Allocation {self.allocation.total} does not equal amount {self.amount}"
            )

    @property
    def allocation(self) -> PaymentAllocation:
        return PaymentAllocation(
            to_penalties=self.to_penalties,
            to_interest=self.to_interest,
            to_principal=self.to_principal,
            remaining=self.overpayment
        )


class TransactionRepository:
    """
    Append-only store of ledger transactions
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.transactions_table = "transactions"
        self.references_table = "transaction_refs"
        self.logger = get_logger("loan_servicing.transactions")

    def record(self, transaction: Transaction) -> None:
        """
        Claim the reference ID and store the transaction.

        Raises:
            DuplicateTransactionError: If the reference ID was already claimed
        """
        try:
            self.storage.insert(
                self.references_table,
                transaction.reference_id,
                {'transaction_id': transaction.id, 'loan_id': transaction.loan_id}
            )
        except DuplicateKeyError:
            # The unit of work is already doomed; the caller looks up the winner after rollback
            raise DuplicateTransactionError(transaction.reference_id)
        self.storage.insert(self.transactions_table, transaction.id, self._transaction_to_dict(transaction))

    def get(self, transaction_id: str) -> Optional[Transaction]:
        data = self.storage.load(self.transactions_table, transaction_id)
        if data:
            return self._transaction_from_dict(data)
        return None

    def find_by_reference(self, reference_id: str) -> Optional[Transaction]:
        index = self.storage.load(self.references_table, reference_id)
        if not index:
            return None
        transaction = self.get(index['transaction_id'])
        if transaction is None:
            self.logger.error(
                f"Reference {reference_id} points at missing transaction {index['transaction_id']}"
            )
        return transaction

    def payment_history(self, loan_id: str, limit: int = 50, offset: int = 0) -> List[Transaction]:
        """Transactions of a loan, latest payment date first"""
        transactions = [
            self._transaction_from_dict(data)
            for data in self.storage.find(self.transactions_table, {'loan_id': loan_id})
        ]
        transactions.sort(key=lambda t: (t.payment_date, t.created_at), reverse=True)
        return transactions[offset:offset + limit]

    def count_payments(self, loan_id: str) -> int:
        return len(self.storage.find(self.transactions_table, {'loan_id': loan_id}))

    def _transaction_to_dict(self, transaction: Transaction) -> Dict:
        return transaction.to_dict()

    def _transaction_from_dict(self, data: Dict) -> Transaction:
        data = dict(data)
        for field in ('amount', 'to_penalties', 'to_interest', 'to_principal', 'overpayment',
                      'balance_after', 'penalties_after', 'unpaid_interest_after',
                      'accrued_interest', 'interest_rate_applied'):
            data[field] = Decimal(data[field])
        data['transaction_type'] = TransactionType(data['transaction_type'])
        data['payment_date'] = date.fromisoformat(data['payment_date'])
        data['loan_status_after'] = LoanStatus(data['loan_status_after'])
        if data.get('previous_status'):
            data['previous_status'] = LoanStatus(data['previous_status'])
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        return Transaction(**data)
