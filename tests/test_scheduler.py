"""
Tests for the notification scheduler and its background runner

Duplicate prevention: one reminder per (loan, type, billing period), no
matter how often or how concurrently a job runs.
"""

import pytest
import threading
from decimal import Decimal
from datetime import date, datetime, time, timezone
from unittest.mock import MagicMock
from zoneinfo import ZoneInfo

from loan_servicing.clients import ClientRepository
from loan_servicing.errors import MessageDeliveryError
from loan_servicing.loans import LoanRepository
from loan_servicing.money import ZERO
from loan_servicing.notifications import (
    MessagingClient, NotificationHistoryRepository, NotificationSendStatus, NotificationType
)
from loan_servicing.scheduler import (
    JOB_BILLING, JOB_NAMES, JOB_OVERDUE, NotificationJobResult, NotificationJobRunner,
    NotificationScheduler, SchedulerState, billing_period_key, parse_job_time
)
from loan_servicing.status import LoanStatus
from loan_servicing.storage import InMemoryStorage


BANGKOK = ZoneInfo("Asia/Bangkok")
TODAY = date(2024, 3, 1)


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def loans(storage):
    return LoanRepository(storage)


@pytest.fixture
def clients(storage):
    return ClientRepository(storage)


@pytest.fixture
def history(storage):
    return NotificationHistoryRepository(storage)


@pytest.fixture
def messaging():
    return MagicMock(spec=MessagingClient)


@pytest.fixture
def scheduler(loans, history, clients, messaging):
    return NotificationScheduler(
        loans, history, clients, messaging,
        payment_link_base_url="https://pay.example.com/",
        tz=BANGKOK,
        clock=lambda: datetime(2024, 3, 1, 2, 0, tzinfo=timezone.utc)
    )


@pytest.fixture
def borrower(clients):
    return clients.create_client("Somchai Jaidee", line_user_id="U123")


def create_loan(loans, client_id, contract_number, due_day, status=LoanStatus.ACTIVE,
                overdue_days=0, installment="1000.00"):
    loan = loans.create_loan(
        contract_number=contract_number,
        client_id=client_id,
        principal_amount=Decimal("10000.00"),
        interest_rate=Decimal("15"),
        term_months=12,
        contract_start_date=date(2024, 1, 1),
        due_day=due_day,
        installment_amount=Decimal(installment),
        status=status
    )
    if overdue_days:
        loan.overdue_days = overdue_days
        loans.save(loan)
    return loan


class TestBillingPeriodKey:

    def test_reminders_use_month(self):
        assert billing_period_key(NotificationType.BILLING, date(2024, 3, 16)) == "2024-03"
        assert billing_period_key(NotificationType.DUE_DATE, date(2024, 3, 1)) == "2024-03"

    def test_overdue_uses_day(self):
        assert billing_period_key(NotificationType.OVERDUE, date(2024, 3, 1)) == "2024-03-01"

    def test_parse_job_time(self):
        assert parse_job_time("09:05") == time(9, 5)


class TestBillingReminders:

    def test_sends_for_loans_due_in_fifteen_days(self, scheduler, loans, history, messaging, borrower):
        due = create_loan(loans, borrower.id, "LN-DUE", due_day=16)
        create_loan(loans, borrower.id, "LN-LATER", due_day=20)

        result = scheduler.run_billing_reminders(TODAY)

        assert result.processed == 1
        assert result.sent == 1
        assert result.failed == 0
        recipient, messages = messaging.push_message.call_args[0]
        assert recipient == "U123"
        text = messages[0]["text"]
        assert "March 2024" in text
        assert "1,000.00" in text
        assert f"https://pay.example.com/loans/{due.id}/pay" in text

        row = history.get(due.id, NotificationType.BILLING, "2024-03")
        assert row.send_status == NotificationSendStatus.SENT
        assert row.line_user_id == "U123"
        assert row.message_data["due_date"] == "2024-03-16"

    def test_rerun_sends_nothing(self, scheduler, loans, messaging, borrower):
        create_loan(loans, borrower.id, "LN-DUE", due_day=16)
        scheduler.run_billing_reminders(TODAY)

        result = scheduler.run_billing_reminders(TODAY)

        assert result.sent == 0
        assert result.duplicates == 1
        assert result.failed == 1
        assert "Duplicate notification prevented" in result.errors[0]['error']
        messaging.push_message.assert_called_once()

    def test_due_day_clamped_to_month_end(self, scheduler, loans, messaging, borrower):
        create_loan(loans, borrower.id, "LN-EOM", due_day=31)

        # 2024-02-14 + 15 days = 2024-02-29, the last day of February
        result = scheduler.run_billing_reminders(date(2024, 2, 14))

        assert result.sent == 1

    def test_closed_loans_skipped(self, scheduler, loans, messaging, borrower):
        create_loan(loans, borrower.id, "LN-CLOSED", due_day=16, status=LoanStatus.CLOSED)

        result = scheduler.run_billing_reminders(TODAY)

        assert result.processed == 0
        messaging.push_message.assert_not_called()

    def test_installment_capped_at_what_is_owed(self, scheduler, loans, history, borrower):
        loan = create_loan(loans, borrower.id, "LN-SMALL", due_day=16)
        loan.outstanding_balance = Decimal("250.00")
        loans.save(loan)

        scheduler.run_billing_reminders(TODAY)

        assert history.get(loan.id, NotificationType.BILLING, "2024-03").message_data["amount"] == "250.00"


class TestOtherJobs:

    def test_due_warning(self, scheduler, loans, history, borrower):
        loan = create_loan(loans, borrower.id, "LN-WARN", due_day=4)

        result = scheduler.run_due_warnings(TODAY)

        assert result.sent == 1
        row = history.get(loan.id, NotificationType.WARNING, "2024-03")
        assert row.message_data["days_remaining"] == 3

    def test_due_warning_needs_outstanding_balance(self, scheduler, loans, borrower):
        loan = create_loan(loans, borrower.id, "LN-PAID", due_day=4)
        loan.outstanding_balance = ZERO
        loans.save(loan)

        assert scheduler.run_due_warnings(TODAY).processed == 0

    def test_due_date_reminder(self, scheduler, loans, history, borrower):
        loan = create_loan(loans, borrower.id, "LN-TODAY", due_day=1)

        result = scheduler.run_due_date_reminders(TODAY)

        assert result.sent == 1
        assert history.get(loan.id, NotificationType.DUE_DATE, "2024-03") is not None

    def test_overdue_notice_at_configured_days(self, scheduler, loans, history, messaging, borrower):
        loan = create_loan(loans, borrower.id, "LN-LATE", due_day=27, status=LoanStatus.OVERDUE, overdue_days=3)
        create_loan(loans, borrower.id, "LN-LATE-2", due_day=27, status=LoanStatus.OVERDUE, overdue_days=2)

        result = scheduler.run_overdue_notices(TODAY)

        assert result.processed == 1
        assert result.sent == 1
        row = history.get(loan.id, NotificationType.OVERDUE, "2024-03-01")
        assert row.overdue_days == 3
        assert "3 days overdue" in messaging.push_message.call_args[0][1][0]["text"]

    def test_overdue_escalation_on_a_later_day(self, scheduler, loans, borrower):
        loan = create_loan(loans, borrower.id, "LN-LATE", due_day=27, status=LoanStatus.OVERDUE, overdue_days=3)
        scheduler.run_overdue_notices(TODAY)
        loan = loans.get(loan.id)
        loan.overdue_days = 7
        loans.save(loan)

        result = scheduler.run_overdue_notices(date(2024, 3, 5))

        assert result.sent == 1

    def test_today_comes_from_business_timezone(self, loans, history, clients, messaging):
        scheduler = NotificationScheduler(
            loans, history, clients, messaging, tz=BANGKOK,
            clock=lambda: datetime(2024, 2, 29, 18, 0, tzinfo=timezone.utc)
        )

        assert scheduler.today() == date(2024, 3, 1)

    def test_run_job_by_name(self, scheduler, loans, borrower):
        create_loan(loans, borrower.id, "LN-DUE", due_day=16)

        assert scheduler.run_job(JOB_BILLING, TODAY).sent == 1

    def test_unknown_job(self, scheduler):
        with pytest.raises(ValueError):
            scheduler.run_job("weekly_digest", TODAY)

    def test_run_all(self, scheduler):
        results = scheduler.run_all(TODAY)

        assert set(results) == set(JOB_NAMES)
        assert all(r.finished_at is not None for r in results.values())


class TestFailures:

    def test_missing_identity_counts_as_failure(self, scheduler, loans, clients, history, messaging):
        client = clients.create_client("No Chat")
        loan = create_loan(loans, client.id, "LN-DUE", due_day=16)

        result = scheduler.run_billing_reminders(TODAY)

        assert result.failed == 1
        assert result.sent == 0
        assert history.get(loan.id, NotificationType.BILLING, "2024-03") is None
        messaging.push_message.assert_not_called()

    def test_push_failure_recorded_and_not_retried(self, scheduler, loans, history, messaging, borrower):
        loan = create_loan(loans, borrower.id, "LN-DUE", due_day=16)
        messaging.push_message.side_effect = MessageDeliveryError("rejected", status_code=400)

        first = scheduler.run_billing_reminders(TODAY)
        second = scheduler.run_billing_reminders(TODAY)

        assert first.failed == 1
        assert first.sent == 0
        row = history.get(loan.id, NotificationType.BILLING, "2024-03")
        assert row.send_status == NotificationSendStatus.FAILED
        assert row.error_message == "rejected"
        assert second.duplicates == 1
        assert messaging.push_message.call_count == 1

    def test_one_failure_does_not_stop_the_job(self, scheduler, loans, messaging, borrower):
        create_loan(loans, borrower.id, "LN-A", due_day=16)
        create_loan(loans, borrower.id, "LN-B", due_day=16)
        messaging.push_message.side_effect = [MessageDeliveryError("rejected"), None]

        result = scheduler.run_billing_reminders(TODAY)

        assert result.processed == 2
        assert result.sent == 1
        assert result.failed == 1

    def test_concurrent_runs_send_once(self, scheduler, loans, messaging, borrower):
        create_loan(loans, borrower.id, "LN-DUE", due_day=16)
        barrier = threading.Barrier(5)
        results = []

        def run():
            barrier.wait(5)
            results.append(scheduler.run_billing_reminders(TODAY))

        threads = [threading.Thread(target=run) for _ in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(10)

        assert sum(r.sent for r in results) == 1
        assert sum(r.duplicates for r in results) == 4
        messaging.push_message.assert_called_once()


class TestJobRunner:

    @pytest.fixture
    def job_scheduler(self):
        job_scheduler = MagicMock(spec=NotificationScheduler)
        job_scheduler.run_job.side_effect = lambda name, today: NotificationJobResult(
            job_name=name, started_at=datetime.now(timezone.utc)
        )
        return job_scheduler

    @pytest.fixture
    def runner(self, job_scheduler):
        return NotificationJobRunner(
            job_scheduler, {JOB_BILLING: time(9, 0), JOB_OVERDUE: time(10, 0)}, tz=BANGKOK
        )

    def test_unknown_job_rejected(self, job_scheduler):
        with pytest.raises(ValueError):
            NotificationJobRunner(job_scheduler, {"weekly_digest": time(9, 0)})

    def test_due_jobs_by_time_of_day(self, runner):
        state = SchedulerState()

        assert runner.due_jobs(state, datetime(2024, 3, 1, 8, 59, tzinfo=BANGKOK)) == []
        assert runner.due_jobs(state, datetime(2024, 3, 1, 9, 30, tzinfo=BANGKOK)) == [JOB_BILLING]
        # 03:30 UTC is 10:30 in Bangkok
        assert runner.due_jobs(state, datetime(2024, 3, 1, 3, 30, tzinfo=timezone.utc)) == [
            JOB_BILLING, JOB_OVERDUE
        ]

    def test_each_job_runs_once_per_day(self, runner, job_scheduler):
        state = SchedulerState()

        runner.run_due_jobs(state, datetime(2024, 3, 1, 9, 30, tzinfo=BANGKOK))
        runner.run_due_jobs(state, datetime(2024, 3, 1, 9, 45, tzinfo=BANGKOK))
        runner.run_due_jobs(state, datetime(2024, 3, 2, 9, 5, tzinfo=BANGKOK))

        assert [c.args for c in job_scheduler.run_job.call_args_list] == [
            (JOB_BILLING, date(2024, 3, 1)),
            (JOB_BILLING, date(2024, 3, 2)),
        ]
        assert state.last_results[JOB_BILLING].job_name == JOB_BILLING

    def test_late_start_catches_up(self, runner, job_scheduler):
        state = SchedulerState()

        results = runner.run_due_jobs(state, datetime(2024, 3, 1, 23, 0, tzinfo=BANGKOK))

        assert set(results) == {JOB_BILLING, JOB_OVERDUE}

    def test_crashed_job_is_not_retried_same_day(self, runner, job_scheduler):
        job_scheduler.run_job.side_effect = RuntimeError("storage offline")
        state = SchedulerState()

        assert runner.run_due_jobs(state, datetime(2024, 3, 1, 9, 30, tzinfo=BANGKOK)) == {}
        runner.run_due_jobs(state, datetime(2024, 3, 1, 9, 45, tzinfo=BANGKOK))

        assert job_scheduler.run_job.call_count == 1
        assert state.last_run_dates[JOB_BILLING] == date(2024, 3, 1)

    def test_background_thread_start_and_stop(self, job_scheduler):
        ran = threading.Event()

        def run_job(name, today):
            ran.set()
            return NotificationJobResult(job_name=name, started_at=datetime.now(timezone.utc))

        job_scheduler.run_job.side_effect = run_job
        runner = NotificationJobRunner(
            job_scheduler, {JOB_BILLING: time(9, 0)}, tz=BANGKOK,
            clock=lambda: datetime(2024, 3, 1, 9, 30, tzinfo=BANGKOK),
            poll_interval=0.01
        )
        state = SchedulerState()

        runner.start(state)
        assert ran.wait(5)
        assert state.running
        runner.stop(state)

        assert not state.running
        job_scheduler.run_job.assert_called_once()
