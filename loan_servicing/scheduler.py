"""
Notification Scheduler

Daily reminder jobs for loan installments. Each job selects its loans, then
for every loan claims a (loan, notification type, billing period) history
key before dispatching. A key that is already taken means the reminder went
out earlier, so a re-run or a concurrent run of the same job cannot send it
twice.

Jobs:
    billing   - due date N days ahead (default 15)
    warning   - due date M days ahead (default 3), balance outstanding
    due_date  - due today, balance outstanding
    overdue   - Overdue loans at the configured overdue-day counts
"""

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional
import sys
import threading

from .clients import ChannelIdentityLookup
from .interest import to_business_date
from .loans import Loan, LoanRepository
from .logging_config import get_logger, log_action
from .notifications import (
    DEFAULT_TEMPLATES, MessageTemplate, MessagingClient, NotificationHistory,
    NotificationHistoryRepository, NotificationSendStatus, NotificationType, format_amount
)

JOB_BILLING = "billing"
JOB_WARNING = "warning"
JOB_DUE_DATE = "due_date"
JOB_OVERDUE = "overdue"
JOB_NAMES = (JOB_BILLING, JOB_WARNING, JOB_DUE_DATE, JOB_OVERDUE)


@dataclass
class NotificationJobResult:
    """Summary of one job run"""
    job_name: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    processed: int = 0
    sent: int = 0
    failed: int = 0
    duplicates: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)

    def record_failure(self, loan_id: str, error: str) -> None:
        self.failed += 1
        self.errors.append({'loan_id': loan_id, 'error': error})

    def to_dict(self) -> Dict[str, Any]:
        return {
            'job_name': self.job_name,
            'started_at': self.started_at.isoformat(),
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'processed': self.processed,
            'sent': self.sent,
            'failed': self.failed,
            'duplicates': self.duplicates,
            'errors': list(self.errors)
        }


def billing_period_key(notification_type: NotificationType, on: date) -> str:
    """YYYY-MM for reminders, YYYY-MM-DD for overdue escalations"""
    if notification_type == NotificationType.OVERDUE:
        return on.isoformat()
    return on.strftime("%Y-%m")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class NotificationScheduler:
    """
    Runs the reminder jobs with duplicate prevention
    """

    def __init__(
        self,
        loans: LoanRepository,
        history: NotificationHistoryRepository,
        identities: ChannelIdentityLookup,
        messaging: MessagingClient,
        billing_days_before_due: int = 15,
        warning_days_before_due: int = 3,
        overdue_notification_days: Iterable[int] = (1, 3, 7),
        payment_link_base_url: str = "http://localhost:3000",
        tz: Optional[tzinfo] = None,
        clock: Callable[[], datetime] = _utc_now,
        templates: Optional[Dict[str, MessageTemplate]] = None
    ):
        self.loans = loans
        self.history = history
        self.identities = identities
        self.messaging = messaging
        self.billing_days_before_due = billing_days_before_due
        self.warning_days_before_due = warning_days_before_due
        self.overdue_notification_days = tuple(overdue_notification_days)
        self.payment_link_base_url = payment_link_base_url.rstrip('/')
        self.tz = tz
        self.clock = clock
        self.templates = templates or DEFAULT_TEMPLATES
        self.logger = get_logger("loan_servicing.scheduler")

    def today(self) -> date:
        return to_business_date(self.clock(), self.tz)

    def payment_link(self, loan: Loan) -> str:
        return f"{self.payment_link_base_url}/loans/{loan.id}/pay"

    def run_billing_reminders(self, today: Optional[date] = None) -> NotificationJobResult:
        today = today or self.today()
        result = self._start(JOB_BILLING)
        for loan in self.loans.find_due_in(today, self.billing_days_before_due):
            due_date = self._next_due_date(loan, today, self.billing_days_before_due)
            self._notify(result, loan, NotificationType.BILLING, billing_period_key(NotificationType.BILLING, due_date), {
                'month': due_date.strftime("%B %Y"),
                'amount': format_amount(self._amount_due(loan)),
                'due_date': due_date.isoformat(),
                'contract_number': loan.contract_number,
                'payment_link': self.payment_link(loan)
            })
        return self._finish(result)

    def run_due_warnings(self, today: Optional[date] = None) -> NotificationJobResult:
        today = today or self.today()
        result = self._start(JOB_WARNING)
        for loan in self.loans.find_due_in(today, self.warning_days_before_due, require_balance=True):
            due_date = self._next_due_date(loan, today, self.warning_days_before_due)
            self._notify(result, loan, NotificationType.WARNING, billing_period_key(NotificationType.WARNING, due_date), {
                'days_remaining': self.warning_days_before_due,
                'amount': format_amount(self._amount_due(loan)),
                'due_date': due_date.isoformat(),
                'contract_number': loan.contract_number,
                'payment_link': self.payment_link(loan)
            })
        return self._finish(result)

    def run_due_date_reminders(self, today: Optional[date] = None) -> NotificationJobResult:
        today = today or self.today()
        result = self._start(JOB_DUE_DATE)
        for loan in self.loans.find_due_in(today, 0, require_balance=True):
            self._notify(result, loan, NotificationType.DUE_DATE, billing_period_key(NotificationType.DUE_DATE, today), {
                'amount': format_amount(self._amount_due(loan)),
                'contract_number': loan.contract_number,
                'payment_link': self.payment_link(loan)
            })
        return self._finish(result)

    def run_overdue_notices(self, today: Optional[date] = None) -> NotificationJobResult:
        today = today or self.today()
        result = self._start(JOB_OVERDUE)
        for loan in self.loans.find_overdue(self.overdue_notification_days):
            self._notify(
                result, loan, NotificationType.OVERDUE, billing_period_key(NotificationType.OVERDUE, today),
                {
                    'days_overdue': loan.overdue_days,
                    'amount': format_amount(self._amount_due(loan) + loan.overdue_amount),
                    'contract_number': loan.contract_number,
                    'penalty_amount': format_amount(loan.total_penalties),
                    'payment_link': self.payment_link(loan)
                },
                overdue_days=loan.overdue_days
            )
        return self._finish(result)

    def run_job(self, job_name: str, today: Optional[date] = None) -> NotificationJobResult:
        """
        Raises:
            ValueError: Unknown job name
        """
        jobs = {
            JOB_BILLING: self.run_billing_reminders,
            JOB_WARNING: self.run_due_warnings,
            JOB_DUE_DATE: self.run_due_date_reminders,
            JOB_OVERDUE: self.run_overdue_notices,
        }
        if job_name not in jobs:
            raise ValueError(f"Unknown notification job {job_name!r}, expected one of {', '.join(JOB_NAMES)}")
        return jobs[job_name](today)

    def run_all(self, today: Optional[date] = None) -> Dict[str, NotificationJobResult]:
        today = today or self.today()
        return {job_name: self.run_job(job_name, today) for job_name in JOB_NAMES}

    def _notify(
        self,
        result: NotificationJobResult,
        loan: Loan,
        notification_type: NotificationType,
        billing_period: str,
        message_data: Dict[str, Any],
        overdue_days: Optional[int] = None
    ) -> None:
        result.processed += 1
        try:
            recipient = self.identities.find_channel_identity(loan.client_id)
            if not recipient:
                result.record_failure(loan.id, "Client has no messaging channel identity")
                self.logger.info(f"Skipping {notification_type.value} for loan {loan.id}: no channel identity")
                return

            history = self.history.claim(
                loan.id, loan.client_id, notification_type, billing_period, recipient, overdue_days
            )
            if history is None:
                result.duplicates += 1
                result.record_failure(
                    loan.id, f"Duplicate notification prevented ({notification_type.value} {billing_period})"
                )
                self.logger.info(
                    f"Duplicate {notification_type.value} notification prevented for loan {loan.id} ({billing_period})"
                )
                return

            self._dispatch(result, loan, history, recipient, message_data)
        except Exception as e:
            result.record_failure(loan.id, str(e))
            log_action(
                self.logger, "error", f"{notification_type.value} notification failed for loan {loan.id}: {e}",
                action=f"notify_{notification_type.value}", resource=f"loan:{loan.id}",
                exc_info=sys.exc_info()
            )

    def _dispatch(self, result: NotificationJobResult, loan: Loan, history: NotificationHistory,
                  recipient: str, message_data: Dict[str, Any]) -> None:
        notification_type = history.notification_type
        try:
            messages = self.templates[notification_type.value].render(message_data)
            self.messaging.push_message(recipient, messages)
        except Exception as e:
            self.history.finalize(history, NotificationSendStatus.FAILED, message_data, str(e))
            result.record_failure(loan.id, str(e))
            log_action(
                self.logger, "warning",
                f"{notification_type.value} notification for loan {loan.id} was not delivered: {e}",
                action=f"notify_{notification_type.value}", resource=f"loan:{loan.id}",
                extra={"billing_period": history.billing_period}
            )
            return

        self.history.finalize(history, NotificationSendStatus.SENT, message_data)
        result.sent += 1
        log_action(
            self.logger, "info", f"Sent {notification_type.value} notification for loan {loan.id}",
            action=f"notify_{notification_type.value}", resource=f"loan:{loan.id}",
            extra={"billing_period": history.billing_period}
        )

    def _next_due_date(self, loan: Loan, today: date, days_ahead: int) -> date:
        target = today + timedelta(days=days_ahead)
        return loan.due_date_in(target.year, target.month)

    def _amount_due(self, loan: Loan) -> Decimal:
        if loan.installment_amount > 0:
            return min(loan.installment_amount, loan.outstanding_balance + loan.overdue_amount)
        return loan.outstanding_balance

    def _start(self, job_name: str) -> NotificationJobResult:
        self.logger.info(f"Starting {job_name} notification job")
        return NotificationJobResult(job_name=job_name, started_at=self.clock())

    def _finish(self, result: NotificationJobResult) -> NotificationJobResult:
        result.finished_at = self.clock()
        log_action(
            self.logger, "info",
            f"{result.job_name} job finished: {result.sent} sent, {result.failed} failed, "
            f"{result.duplicates} duplicates of {result.processed}",
            action=f"job_{result.job_name}", extra=result.to_dict()
        )
        return result


def parse_job_time(value: str) -> time:
    """'HH:MM' to a time of day"""
    hours, minutes = (int(part) for part in value.split(':'))
    return time(hours, minutes)


@dataclass
class SchedulerState:
    """Background job handles, owned by the composition root"""
    stop_event: threading.Event = field(default_factory=threading.Event)
    thread: Optional[threading.Thread] = None
    last_run_dates: Dict[str, date] = field(default_factory=dict)
    last_results: Dict[str, NotificationJobResult] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock)

    @property
    def running(self) -> bool:
        return self.thread is not None and self.thread.is_alive()


class NotificationJobRunner:
    """
    Fires each job once per business day at or after its configured time.

    A job whose time already passed when the runner starts runs on the first
    tick, so a restart during the day does not skip it.
    """

    def __init__(
        self,
        scheduler: NotificationScheduler,
        job_times: Dict[str, time],
        tz: Optional[tzinfo] = None,
        clock: Callable[[], datetime] = _utc_now,
        poll_interval: float = 30.0
    ):
        unknown = set(job_times) - set(JOB_NAMES)
        if unknown:
            raise ValueError(f"Unknown notification jobs: {', '.join(sorted(unknown))}")
        self.scheduler = scheduler
        self.job_times = dict(job_times)
        self.tz = tz
        self.clock = clock
        self.poll_interval = poll_interval
        self.logger = get_logger("loan_servicing.scheduler")

    def due_jobs(self, state: SchedulerState, now: datetime) -> List[str]:
        local_now = now.astimezone(self.tz) if self.tz is not None and now.tzinfo is not None else now
        today = local_now.date()
        return [
            job_name for job_name in JOB_NAMES
            if job_name in self.job_times
            and local_now.time() >= self.job_times[job_name]
            and state.last_run_dates.get(job_name) != today
        ]

    def run_due_jobs(self, state: SchedulerState, now: Optional[datetime] = None) -> Dict[str, NotificationJobResult]:
        now = now or self.clock()
        today = to_business_date(now, self.tz)
        results = {}
        with state.lock:
            due = self.due_jobs(state, now)
            for job_name in due:
                state.last_run_dates[job_name] = today
        for job_name in due:
            try:
                result = self.scheduler.run_job(job_name, today)
            except Exception as e:
                log_action(
                    self.logger, "error", f"Scheduled {job_name} job crashed: {e}",
                    action=f"job_{job_name}", exc_info=sys.exc_info()
                )
                continue
            state.last_results[job_name] = result
            results[job_name] = result
        return results

    def start(self, state: SchedulerState) -> None:
        if state.running:
            return
        state.stop_event.clear()

        def run_loop():
            while not state.stop_event.is_set():
                self.run_due_jobs(state)
                state.stop_event.wait(self.poll_interval)

        state.thread = threading.Thread(target=run_loop, name="notification-scheduler")
        state.thread.daemon = True
        state.thread.start()
        self.logger.info("Notification scheduler started")

    def stop(self, state: SchedulerState, timeout: float = 5.0) -> None:
        state.stop_event.set()
        if state.thread is not None:
            state.thread.join(timeout=timeout)
            state.thread = None
        self.logger.info("Notification scheduler stopped")
