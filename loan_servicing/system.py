"""
Composition root: builds every component from configuration and owns the
background scheduler handles.
"""

from typing import Optional
from zoneinfo import ZoneInfo

from .audit import AuditTrail
from .clients import ClientRepository
from .config import LoanServicingConfig, get_config
from .ledger import AuditHook, ReceiptGenerator, ReceiptHook, TransactionLedger
from .loans import LoanRepository
from .logging_config import get_logger
from .matching import PaymentMatchingService
from .notifications import (
    LineMessagingClient, LogMessagingClient, LoanClosedHook, MessagingClient,
    NotificationHistoryRepository, PaymentConfirmationHook
)
from .pending_payments import PendingPaymentQueue, PendingPaymentRepository
from .reconciliation import PaymentEventRouter
from .scheduler import (
    JOB_BILLING, JOB_DUE_DATE, JOB_OVERDUE, JOB_WARNING,
    NotificationJobRunner, NotificationScheduler, SchedulerState, parse_job_time
)
from .storage import StorageInterface, create_storage
from .transactions import TransactionRepository


class LoanServicingSystem:
    """Loan servicing backend with all components initialized"""

    def __init__(
        self,
        config: Optional[LoanServicingConfig] = None,
        storage: Optional[StorageInterface] = None,
        messaging: Optional[MessagingClient] = None,
        receipt_generator: Optional[ReceiptGenerator] = None
    ):
        self.config = config or get_config()
        self.logger = get_logger("loan_servicing.system")
        self.tz = ZoneInfo(self.config.timezone)

        # Storage and repositories
        self.storage = storage or create_storage(self.config.database_url)
        self.loans = LoanRepository(self.storage)
        self.clients = ClientRepository(self.storage)
        self.transactions = TransactionRepository(self.storage)
        self.pending_payments = PendingPaymentRepository(self.storage)
        self.notification_history = NotificationHistoryRepository(self.storage)
        self.audit_trail = AuditTrail(self.storage) if self.config.enable_audit_logging else None

        self.messaging = messaging or self._create_messaging_client()

        # Ledger and its post-commit hooks
        self.ledger = TransactionLedger(self.storage, self.loans, self.transactions, tz=self.tz)
        if self.audit_trail is not None:
            self.ledger.register_hook(AuditHook(self.audit_trail))
        if receipt_generator is not None:
            self.ledger.register_hook(ReceiptHook(receipt_generator))
        self.ledger.register_hook(PaymentConfirmationHook(self.messaging, self.clients))
        self.ledger.register_hook(LoanClosedHook(self.messaging, self.clients))

        # Reconciliation
        self.matching = PaymentMatchingService(self.loans, self.clients)
        self.queue = PendingPaymentQueue(
            self.storage, self.pending_payments, self.loans, self.ledger, self.audit_trail
        )
        self.router = PaymentEventRouter(self.ledger, self.transactions, self.matching, self.queue)

        # Notifications
        self.scheduler = NotificationScheduler(
            self.loans,
            self.notification_history,
            self.clients,
            self.messaging,
            billing_days_before_due=self.config.billing_days_before_due,
            warning_days_before_due=self.config.warning_days_before_due,
            overdue_notification_days=self.config.overdue_notification_days,
            payment_link_base_url=self.config.payment_link_base_url,
            tz=self.tz
        )
        self.job_runner = NotificationJobRunner(
            self.scheduler,
            {
                JOB_BILLING: parse_job_time(self.config.billing_job_time),
                JOB_WARNING: parse_job_time(self.config.warning_job_time),
                JOB_DUE_DATE: parse_job_time(self.config.due_date_job_time),
                JOB_OVERDUE: parse_job_time(self.config.overdue_job_time),
            },
            tz=self.tz
        )
        self.scheduler_state = SchedulerState()

    def _create_messaging_client(self) -> MessagingClient:
        """LINE client when a channel token is configured, log output otherwise"""
        if not self.config.messaging_channel_token:
            self.logger.info("No messaging channel token configured, messages will only be logged")
            return LogMessagingClient()
        return LineMessagingClient(
            api_url=self.config.messaging_api_url,
            channel_token=self.config.messaging_channel_token,
            timeout=self.config.messaging_timeout
        )

    def start_scheduler(self) -> None:
        self.job_runner.start(self.scheduler_state)

    def stop_scheduler(self) -> None:
        self.job_runner.stop(self.scheduler_state)

    def close(self) -> None:
        self.stop_scheduler()
        self.storage.close()
