"""
Loan Status Sweep Module

Batch checks run by the scheduler: promoting past-due loans to Overdue,
reminding about loans due soon, and a monthly portfolio digest. Each loan is
processed independently; a failure on one loan is logged and counted and the
batch carries on.
"""

from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import List, Optional

from .storage import StorageInterface
from .audit import AuditTrail, AuditEventType
from .loans import Loan, LoanManager, LoanStatus
from .notifications import NotificationEvent, MessageType, MessagePriority
from .logging_config import get_logger


@dataclass
class SweepResult:
    """Outcome of one sweep run"""
    checked: int = 0
    transitioned: int = 0
    skipped: int = 0       # Loans whose version moved under the sweep
    failed: int = 0
    events: List[NotificationEvent] = field(default_factory=list)

    def to_dict(self):
        return {
            'checked': self.checked,
            'transitioned': self.transitioned,
            'skipped': self.skipped,
            'failed': self.failed,
            'events': len(self.events),
        }


def _today(today: Optional[date]) -> date:
    return today or datetime.now(timezone.utc).date()


class LoanStatusSweep:
    """Scheduled loan status checks"""

    def __init__(
        self,
        storage: StorageInterface,
        loan_manager: LoanManager,
        audit_trail: AuditTrail,
        due_soon_window_days: int = 7
    ):
        self.storage = storage
        self.loan_manager = loan_manager
        self.audit_trail = audit_trail
        self.due_soon_window_days = due_soon_window_days
        self.reminder_table = "reminder_log"
        self.logger = get_logger("loan_ledger.sweep")

    def run_overdue_sweep(self, today: Optional[date] = None) -> SweepResult:
        """
        Promote unsettled loans past their due date to Overdue.

        Only loans still Active or NotPaid are candidates, so a loan already
        Overdue is never transitioned or announced twice. The write is
        conditional on the version read; if a payment landed in between, the
        loan is left for the next run.
        """
        today = _today(today)
        result = SweepResult()

        for loan in self.loan_manager.get_unsettled_loans():
            result.checked += 1
            try:
                if not loan.is_overdue(today):
                    continue

                expected_version = loan.version
                previous = loan.status
                loan.status = LoanStatus.OVERDUE
                loan.updated_by = "system"
                if not self.loan_manager.save_loan_if_unchanged(loan, expected_version):
                    result.skipped += 1
                    self.logger.info(f"Loan {loan.id} changed during overdue sweep, skipping")
                    continue

                result.transitioned += 1
                self.audit_trail.log_event(
                    event_type=AuditEventType.LOAN_STATUS_CHANGED,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata={"from": previous.value, "to": LoanStatus.OVERDUE.value, "cause": "overdue_sweep"},
                    user_id="system"
                )
                result.events.append(self._overdue_event(loan, today))
            except Exception as e:
                result.failed += 1
                self.logger.error(f"Failed to process loan {loan.id} in overdue sweep: {e}", exc_info=True)

        self.logger.info(
            f"Overdue sweep for {today}: {result.checked} checked, "
            f"{result.transitioned} overdue, {result.failed} failed"
        )
        return result

    def run_due_soon_check(self, today: Optional[date] = None) -> SweepResult:
        """
        Remind about unsettled loans due within the window (inclusive).

        At most one reminder per loan per day: each reminder is logged in the
        reminder table under "<loan id>:<date>" and repeated runs that day skip it.
        """
        today = _today(today)
        result = SweepResult()

        for loan in self.loan_manager.get_due_soon_loans(today, self.due_soon_window_days):
            result.checked += 1
            try:
                reminder_id = f"{loan.id}:{today.isoformat()}"
                if self.storage.exists(self.reminder_table, reminder_id):
                    result.skipped += 1
                    continue

                self.storage.save(self.reminder_table, reminder_id, {
                    'id': reminder_id,
                    'loan_id': loan.id,
                    'reminder_date': today.isoformat(),
                    'remaining_balance': str(loan.remaining_balance.amount),
                    'created_at': datetime.now(timezone.utc).isoformat(),
                })
                result.events.append(self._reminder_event(loan, today))
            except Exception as e:
                result.failed += 1
                self.logger.error(f"Failed to process loan {loan.id} in due-soon check: {e}", exc_info=True)

        self.logger.info(
            f"Due-soon check for {today}: {len(result.events)} reminders, "
            f"{result.skipped} already sent today"
        )
        return result

    def run_monthly_summary(self, today: Optional[date] = None) -> SweepResult:
        """Portfolio digest grouped by loan status"""
        today = _today(today)
        stats = self.loan_manager.loan_statistics()
        result = SweepResult(checked=sum(s['count'] for s in stats.values()))

        lines = [
            f"{status}: {s['count']} loans, K{s['total_amount']} lent, K{s['total_remaining']} outstanding"
            for status, s in sorted(stats.items())
        ]
        result.events.append(NotificationEvent(
            message_type=MessageType.SYSTEM_ALERT,
            title="Monthly Loan Summary",
            message="Monthly summary generated. " + ("; ".join(lines) if lines else "No loans on record."),
            priority=MessagePriority.LOW,
            metadata={'period': today.strftime('%Y-%m'), 'stats': stats},
        ))

        self.logger.info(f"Monthly summary for {today:%Y-%m} covering {result.checked} loans")
        return result

    def _overdue_event(self, loan: Loan, today: date) -> NotificationEvent:
        return NotificationEvent(
            message_type=MessageType.OVERDUE,
            title="Loan Overdue",
            message=(
                f"Loan for {loan.customer_name} (NRC: {loan.customer_nrc}) is overdue. "
                f"Amount due: {loan.remaining_balance.to_display()}"
            ),
            priority=MessagePriority.HIGH,
            customer_id=loan.customer_id,
            loan_id=loan.id,
            action_required=True,
            metadata={
                'due_date': loan.due_date.isoformat(),
                'days_overdue': loan.days_overdue(today),
                'remaining_balance': str(loan.remaining_balance.amount),
            },
        )

    def _reminder_event(self, loan: Loan, today: date) -> NotificationEvent:
        return NotificationEvent(
            message_type=MessageType.PAYMENT_REMINDER,
            title="Payment Reminder",
            message=(
                f"Payment for {loan.customer_name} (NRC: {loan.customer_nrc}) is due soon. "
                f"Amount: {loan.remaining_balance.to_display()}"
            ),
            priority=MessagePriority.MEDIUM,
            customer_id=loan.customer_id,
            loan_id=loan.id,
            metadata={
                'due_date': loan.due_date.isoformat(),
                'days_until_due': (loan.due_date.date() - today).days,
                'remaining_balance': str(loan.remaining_balance.amount),
            },
        )
