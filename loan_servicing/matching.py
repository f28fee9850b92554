"""
Payment Matching Service

Attributes a verified bank transfer to exactly one open loan. Strategies run
in order and the first confident hit wins:

1. Contract number written in the sender's display name
2. Messaging channel identity of the client who sent the slip
3. Sender bank account, only when it leads to a single open loan

Anything else raises MatchingError and the payment goes to the pending queue.
"""

import re
from typing import Optional

from .clients import ClientRepository
from .errors import MatchingError
from .events import VerifiedPaymentReceived
from .loans import Loan, LoanRepository
from .logging_config import get_logger, log_action

CONTRACT_PATTERNS = (
    re.compile(r"(?:contract|สัญญา)[\s:：เลขที่]*([A-Z0-9-]+)", re.IGNORECASE),
    re.compile(r"#([A-Z0-9-]+)", re.IGNORECASE),
    re.compile(r"\b([A-Z0-9]{5,})\b", re.IGNORECASE),
)


def extract_contract_number(text: Optional[str]) -> Optional[str]:
    """
    Pull a contract number out of free text.

    Recognizes "Contract: ABC123", "สัญญาเลขที่ ABC123", "#ABC123" and, failing
    those, any standalone alphanumeric token of five or more characters.
    """
    if not text:
        return None
    for pattern in CONTRACT_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(1).upper()
    return None


class PaymentMatchingService:
    """
    Finds the loan a verified payment is meant for
    """

    def __init__(self, loans: LoanRepository, clients: ClientRepository):
        self.loans = loans
        self.clients = clients
        self.logger = get_logger("loan_servicing.matching")

    def find_loan(self, event: VerifiedPaymentReceived) -> Loan:
        """
        Raises:
            MatchingError: No loan, or more than one candidate
        """
        loan = self._by_contract_number(event)
        strategy = "contract_number"
        if loan is None:
            loan = self._by_line_user(event)
            strategy = "line_user_id"
        if loan is None:
            loan = self._by_bank_account(event)
            strategy = "bank_account"

        if loan is None:
            raise MatchingError(
                "Unable to match payment to any loan contract. Manual matching required.",
                event
            )

        log_action(
            self.logger, "info", f"Payment {event.reference_id} matched to loan {loan.id}",
            action="match_payment", resource=f"loan:{loan.id}",
            correlation_id=event.reference_id,
            extra={"strategy": strategy, "contract_number": loan.contract_number}
        )
        return loan

    def _by_contract_number(self, event: VerifiedPaymentReceived) -> Optional[Loan]:
        contract_number = extract_contract_number(event.sender.display_name)
        if not contract_number:
            return None
        return self.loans.find_by_contract_number(contract_number)

    def _by_line_user(self, event: VerifiedPaymentReceived) -> Optional[Loan]:
        if not event.line_user_id:
            return None
        client = self.clients.find_by_line_user_id(event.line_user_id)
        if client is None:
            return None
        loans = self.loans.find_open_by_client(client.id)
        return loans[0] if loans else None

    def _by_bank_account(self, event: VerifiedPaymentReceived) -> Optional[Loan]:
        account = event.sender.account_number
        if not account:
            return None
        candidates = []
        for client in self.clients.find_by_bank_account(account):
            candidates.extend(self.loans.find_open_by_client(client.id))
        if len(candidates) > 1:
            raise MatchingError(
                f"Multiple active loans found for bank account {account}. Manual matching required.",
                event
            )
        return candidates[0] if candidates else None
