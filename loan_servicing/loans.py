"""
Loan Module

Loan aggregate and its repository. The ledger is the only writer of a
loan's financial fields; everything else reads.
"""

from decimal import Decimal
from datetime import datetime, timezone, timedelta, date
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional
import calendar
import uuid

from .money import ZERO, to_amount
from .status import LoanStatus
from .storage import StorageInterface, StorageRecord, DuplicateKeyError
from .errors import ValidationError


@dataclass
class Loan(StorageRecord):
    """Loan under servicing"""
    contract_number: str
    client_id: str
    principal_amount: Decimal           # Original principal
    interest_rate: Decimal              # Annual rate in percent
    term_months: int
    contract_start_date: date
    due_day: int                        # Day of month installments fall due
    outstanding_balance: Decimal        # Principal still owed
    installment_amount: Decimal = ZERO
    approved_amount: Optional[Decimal] = None
    status: LoanStatus = LoanStatus.ACTIVE

    # Paid-to-date totals
    principal_paid: Decimal = ZERO
    interest_paid: Decimal = ZERO
    penalties_paid: Decimal = ZERO

    # Outstanding non-principal debt
    total_penalties: Decimal = ZERO
    unpaid_interest: Decimal = ZERO     # Accrued but not yet covered by a payment
    overdue_days: int = 0

    last_payment_date: Optional[date] = None
    last_payment_amount: Optional[Decimal] = None

    # Status audit
    previous_status: Optional[LoanStatus] = None
    status_changed_at: Optional[datetime] = None

    deleted_at: Optional[datetime] = None

    def __post_init__(self):
        if not 1 <= self.due_day <= 31:
            raise ValidationError(f"Due day must be between 1 and 31, got {self.due_day}", "due_day")
        if self.outstanding_balance < 0:
            raise ValidationError("Outstanding balance cannot be negative", "outstanding_balance")

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def is_closed(self) -> bool:
        return self.status == LoanStatus.CLOSED

    @property
    def is_open(self) -> bool:
        """Eligible for payments and reminders"""
        return not self.is_deleted and not self.is_closed

    @property
    def accrual_start_date(self) -> date:
        """Date interest has been settled up to"""
        return self.last_payment_date or self.contract_start_date

    @property
    def overdue_amount(self) -> Decimal:
        """Penalties plus interest that fell due and was not paid"""
        return self.total_penalties + self.unpaid_interest

    def due_date_in(self, year: int, month: int) -> date:
        """Installment due date for a month, clamped to the month's last day"""
        last_day = calendar.monthrange(year, month)[1]
        return date(year, month, min(self.due_day, last_day))


class LoanRepository:
    """
    Persistence and selection queries for loans
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.loans_table = "loans"
        self.contract_index_table = "loan_contract_numbers"

    def create_loan(
        self,
        contract_number: str,
        client_id: str,
        principal_amount: Decimal,
        interest_rate: Decimal,
        term_months: int,
        contract_start_date: date,
        due_day: int,
        installment_amount: Optional[Decimal] = None,
        loan_id: Optional[str] = None,
        status: LoanStatus = LoanStatus.ACTIVE
    ) -> Loan:
        """
        Register a disbursed loan for servicing

        Raises:
            ValidationError: If the contract number is already taken
        """
        now = datetime.now(timezone.utc)
        principal = to_amount(principal_amount)
        loan = Loan(
            id=loan_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            contract_number=contract_number.strip().upper(),
            client_id=client_id,
            principal_amount=principal,
            approved_amount=principal,
            interest_rate=to_amount(interest_rate),
            term_months=term_months,
            contract_start_date=contract_start_date,
            due_day=due_day,
            outstanding_balance=principal,
            installment_amount=to_amount(installment_amount) if installment_amount is not None else ZERO,
            status=status
        )
        self.add(loan)
        return loan

    def add(self, loan: Loan) -> None:
        """Insert a new loan; contract numbers are unique"""
        with self.storage.atomic():
            try:
                self.storage.insert(self.contract_index_table, loan.contract_number, {'loan_id': loan.id})
            except DuplicateKeyError:
                raise ValidationError(
                    f"Contract number {loan.contract_number} already exists", "contract_number"
                )
            self.storage.insert(self.loans_table, loan.id, self._loan_to_dict(loan))

    def save(self, loan: Loan) -> None:
        loan.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.loans_table, loan.id, self._loan_to_dict(loan))

    def get(self, loan_id: str, include_deleted: bool = False) -> Optional[Loan]:
        data = self.storage.load(self.loans_table, loan_id)
        if not data:
            return None
        loan = self._loan_from_dict(data)
        if loan.is_deleted and not include_deleted:
            return None
        return loan

    def get_for_update(self, loan_id: str) -> Optional[Loan]:
        """Load a loan and lock it until the surrounding unit of work ends"""
        data = self.storage.load_for_update(self.loans_table, loan_id)
        if not data:
            return None
        return self._loan_from_dict(data)

    def soft_delete(self, loan_id: str) -> bool:
        loan = self.get(loan_id)
        if not loan:
            return False
        loan.deleted_at = datetime.now(timezone.utc)
        self.save(loan)
        return True

    def find_by_contract_number(self, contract_number: str) -> Optional[Loan]:
        """Open loan with this contract number, if any"""
        index = self.storage.load(self.contract_index_table, contract_number.strip().upper())
        if not index:
            return None
        loan = self.get(index['loan_id'])
        if loan and loan.is_open:
            return loan
        return None

    def find_open_by_client(self, client_id: str) -> List[Loan]:
        """Open loans of a client, newest first"""
        loans = [
            self._loan_from_dict(data)
            for data in self.storage.find(self.loans_table, {'client_id': client_id})
        ]
        loans = [loan for loan in loans if loan.is_open]
        loans.sort(key=lambda loan: loan.created_at, reverse=True)
        return loans

    def list_open_loans(self) -> List[Loan]:
        """Loans still under servicing (not closed, not deleted)"""
        loans = [self._loan_from_dict(data) for data in self.storage.load_all(self.loans_table)]
        return [loan for loan in loans if loan.is_open]

    def find_due_in(
        self,
        today: date,
        days_ahead: int,
        statuses: Iterable[LoanStatus] = (LoanStatus.ACTIVE, LoanStatus.OVERDUE),
        require_balance: bool = False
    ) -> List[Loan]:
        """
        Loans whose installment falls due exactly ``days_ahead`` days after today

        Args:
            today: Current business date
            days_ahead: Lead time; 0 selects loans due today
            statuses: Statuses to include
            require_balance: Only loans with an outstanding balance
        """
        target = today + timedelta(days=days_ahead)
        statuses = set(statuses)
        selected = []
        for loan in self.list_open_loans():
            if loan.status not in statuses:
                continue
            if require_balance and loan.outstanding_balance <= 0:
                continue
            if loan.due_date_in(target.year, target.month) == target:
                selected.append(loan)
        return selected

    def find_overdue(self, overdue_days: Iterable[int]) -> List[Loan]:
        """Overdue loans sitting at one of the given overdue-day counts"""
        wanted = set(overdue_days)
        return [
            loan for loan in self.list_open_loans()
            if loan.status == LoanStatus.OVERDUE and loan.overdue_days in wanted
        ]

    def _loan_to_dict(self, loan: Loan) -> Dict:
        """Convert loan to dictionary"""
        return loan.to_dict()

    def _loan_from_dict(self, data: Dict) -> Loan:
        """Convert dictionary to loan"""

        def get_date(field: str) -> Optional[date]:
            if data.get(field):
                return date.fromisoformat(data[field])
            return None

        def get_datetime(field: str) -> Optional[datetime]:
            if data.get(field):
                return datetime.fromisoformat(data[field])
            return None

        def get_decimal(field: str) -> Optional[Decimal]:
            if data.get(field) is not None:
                return Decimal(data[field])
            return None

        previous_status = data.get('previous_status')

        return Loan(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            contract_number=data['contract_number'],
            client_id=data['client_id'],
            principal_amount=Decimal(data['principal_amount']),
            interest_rate=Decimal(data['interest_rate']),
            term_months=data['term_months'],
            contract_start_date=date.fromisoformat(data['contract_start_date']),
            due_day=data['due_day'],
            outstanding_balance=Decimal(data['outstanding_balance']),
            installment_amount=Decimal(data.get('installment_amount', '0.00')),
            approved_amount=get_decimal('approved_amount'),
            status=LoanStatus(data['status']),
            principal_paid=Decimal(data.get('principal_paid', '0.00')),
            interest_paid=Decimal(data.get('interest_paid', '0.00')),
            penalties_paid=Decimal(data.get('penalties_paid', '0.00')),
            total_penalties=Decimal(data.get('total_penalties', '0.00')),
            unpaid_interest=Decimal(data.get('unpaid_interest', '0.00')),
            overdue_days=data.get('overdue_days', 0),
            last_payment_date=get_date('last_payment_date'),
            last_payment_amount=get_decimal('last_payment_amount'),
            previous_status=LoanStatus(previous_status) if previous_status else None,
            status_changed_at=get_datetime('status_changed_at'),
            deleted_at=get_datetime('deleted_at')
        )
