"""
Ledger system wiring and authentication dependencies
"""

from decimal import Decimal
from typing import Callable, List, Optional

import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ..storage import StorageInterface, create_storage
from ..audit import AuditTrail
from ..currency import Currency
from ..customers import CustomerManager
from ..loans import LoanManager, Caller, UserRole
from ..payments import PaymentProcessor
from ..sweep import LoanStatusSweep, SweepResult
from ..notifications import (
    NotificationEvent, NotificationPort, StorageNotificationPort, LogNotificationPort,
    WebhookNotificationPort, CompositeNotificationPort, dispatch_events
)
from ..scheduler import JobScheduler, JobSchedule
from ..config import LedgerConfig, get_config
from ..errors import PermissionDeniedError
from ..logging_config import get_logger


logger = get_logger("loan_ledger.api")


class LedgerSystem:
    """Loan ledger with all components initialized"""

    def __init__(self, storage: Optional[StorageInterface] = None, config: Optional[LedgerConfig] = None):
        self.config = config or get_config()

        # Initialize storage
        self.storage = storage or create_storage(self.config.storage_backend, self.config.database_path)

        # Initialize core components
        self.audit_trail = AuditTrail(self.storage)
        self.customer_manager = CustomerManager(self.storage, self.audit_trail)
        self.loan_manager = LoanManager(
            self.storage, self.customer_manager, self.audit_trail,
            currency=Currency.from_code(self.config.currency),
            default_interest_rate=Decimal(self.config.default_interest_rate),
            max_interest_rate=Decimal(self.config.max_interest_rate),
            max_write_retries=self.config.max_write_retries
        )
        self.payment_processor = PaymentProcessor(self.storage, self.loan_manager, self.audit_trail)
        self.sweep = LoanStatusSweep(
            self.storage, self.loan_manager, self.audit_trail,
            due_soon_window_days=self.config.due_soon_window_days
        )

        # Notifications land in the messages table, the log and optionally a webhook
        self.message_store = StorageNotificationPort(self.storage)
        ports: List[NotificationPort] = [self.message_store, LogNotificationPort()]
        if self.config.notification_webhook_url:
            ports.append(WebhookNotificationPort(
                self.config.notification_webhook_url,
                timeout=self.config.notification_webhook_timeout
            ))
        self.notifier = CompositeNotificationPort(ports)

        self.scheduler = JobScheduler(poll_seconds=self.config.scheduler_poll_seconds)
        self._register_jobs()

    def _register_jobs(self) -> None:
        cfg = self.config
        self.scheduler.register(
            "overdue_sweep",
            JobSchedule.daily(cfg.overdue_check_hour, cfg.overdue_check_minute),
            self._job(self.sweep.run_overdue_sweep),
            description="Mark past-due loans as Overdue"
        )
        self.scheduler.register(
            "due_soon_reminders",
            JobSchedule.weekly(cfg.reminder_weekday, cfg.reminder_hour, cfg.reminder_minute),
            self._job(self.sweep.run_due_soon_check),
            description="Remind about loans due within the reminder window"
        )
        self.scheduler.register(
            "monthly_summary",
            JobSchedule.monthly(cfg.summary_day, cfg.summary_hour, cfg.summary_minute),
            self._job(self.sweep.run_monthly_summary),
            description="Portfolio digest by loan status"
        )

    def _job(self, check: Callable[[], SweepResult]) -> Callable[[], SweepResult]:
        def run() -> SweepResult:
            result = check()
            self.dispatch(result.events)
            return result
        return run

    def dispatch(self, events: List[NotificationEvent]) -> int:
        """Hand events to the notification port; failures are logged only"""
        return dispatch_events(self.notifier, events, logger)

    def close(self) -> None:
        self.scheduler.stop()
        self.storage.close()


# Global ledger system instance, created on first use
_ledger_system: Optional[LedgerSystem] = None


def get_ledger_system() -> LedgerSystem:
    global _ledger_system
    if _ledger_system is None:
        _ledger_system = LedgerSystem()
    return _ledger_system


def set_ledger_system(system: Optional[LedgerSystem]) -> None:
    """Replace the global instance (None forces re-creation on next use)"""
    global _ledger_system
    _ledger_system = system


# JWT Security
security = HTTPBearer(auto_error=False)


def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)) -> Caller:
    """Dependency that validates the bearer JWT and returns the caller"""
    cfg = get_config()
    if not cfg.auth_enabled:
        return Caller(user_id="system", role=UserRole.ADMIN)

    if not credentials:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        payload = jwt.decode(credentials.credentials, cfg.jwt_secret, algorithms=[cfg.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")
    try:
        role = UserRole(payload.get("role", UserRole.SUBADMIN.value))
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid token role")

    limit = payload.get("max_loan_amount") or cfg.subadmin_max_loan_amount
    return Caller(
        user_id=str(user_id),
        role=role,
        max_loan_amount=Decimal(str(limit)) if limit else None
    )


def require_admin(caller: Caller = Depends(get_current_user)) -> Caller:
    if caller.role != UserRole.ADMIN:
        raise PermissionDeniedError("Admin access required")
    return caller
