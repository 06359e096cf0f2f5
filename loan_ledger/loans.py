"""
Loan Module

Loan records and their lifecycle outside of payments: origination (including
reloans), approval, rejection, cancellation and lookups. Every loan write goes
through a version-checked compare-and-swap so that payment recording, reversal
and the status sweep never overwrite each other's balance or status.
"""

from decimal import Decimal
from datetime import datetime, timezone, date, timedelta
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Any, Union
from enum import Enum
import uuid

from .currency import Money, Currency, to_decimal
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .customers import CustomerManager
from .calculator import LoanPeriod, LoanType, calculate_loan, DEFAULT_INTEREST_RATE
from .errors import InvalidInputError, NotFoundError, ConflictError, PermissionDeniedError
from .logging_config import get_logger, log_action


class LoanStatus(Enum):
    """Loan repayment status"""
    NOT_PAID = "Not Paid"      # No payment observed yet
    ACTIVE = "Active"          # At least one payment, balance outstanding
    COMPLETED = "Completed"    # Balance fully repaid
    OVERDUE = "Overdue"        # Past due date with balance outstanding
    DEFAULTED = "Defaulted"
    CANCELLED = "Cancelled"


UNSETTLED_STATUSES = (LoanStatus.ACTIVE, LoanStatus.NOT_PAID)


class ApprovalStatus(Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"


class UserRole(Enum):
    ADMIN = "admin"
    SUBADMIN = "subadmin"


@dataclass(frozen=True)
class Caller:
    """The authenticated user performing an operation"""
    user_id: str
    role: UserRole = UserRole.ADMIN
    max_loan_amount: Optional[Decimal] = None


@dataclass
class Loan(StorageRecord):
    """Loan with its running balance"""
    customer_id: str
    customer_name: str           # Snapshot at origination, not authoritative
    customer_nrc: str            # Snapshot at origination, not authoritative
    loan_amount: Money
    loan_period: LoanPeriod
    loan_type: LoanType
    interest_rate: Decimal
    total_amount: Money
    monthly_payment: Money
    remaining_balance: Money
    due_date: datetime
    end_date: datetime
    start_date: Optional[datetime] = None
    status: LoanStatus = LoanStatus.NOT_PAID
    last_payment_date: Optional[datetime] = None

    # Reloan chaining
    is_reloan: bool = False
    parent_loan_id: Optional[str] = None

    # Approval
    approval_status: ApprovalStatus = ApprovalStatus.APPROVED
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None

    # Payment tracking
    total_paid: Money = None
    payment_count: int = 0

    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    purpose: Optional[str] = None
    collateral: Optional[str] = None
    notes: Optional[str] = None

    # Bumped on every write; compare-and-swap key
    version: int = 1

    def __post_init__(self):
        if self.total_paid is None:
            self.total_paid = Money.zero(self.loan_amount.currency)
        if self.start_date is None:
            self.start_date = self.created_at

    @property
    def currency(self) -> Currency:
        return self.loan_amount.currency

    @property
    def months(self) -> int:
        return self.loan_period.months

    def is_overdue(self, today: Optional[date] = None) -> bool:
        """Past the due date (date-only) with a balance outstanding"""
        today = today or datetime.now(timezone.utc).date()
        return today > self.due_date.date() and self.remaining_balance.is_positive()

    def days_overdue(self, today: Optional[date] = None) -> int:
        if self.status != LoanStatus.OVERDUE:
            return 0
        today = today or datetime.now(timezone.utc).date()
        return max(0, (today - self.due_date.date()).days)

    @property
    def completion_percentage(self) -> int:
        if self.total_amount.is_zero():
            return 0
        paid = self.total_amount.amount - self.remaining_balance.amount
        return int((paid / self.total_amount.amount * 100).quantize(Decimal('1')))

    def to_dict(self) -> Dict[str, Any]:
        def iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        result = self.base_dict()
        result.update({
            'customer_id': self.customer_id,
            'customer_name': self.customer_name,
            'customer_nrc': self.customer_nrc,
            'currency': self.currency.code,
            'loan_amount': str(self.loan_amount.amount),
            'loan_period': self.loan_period.value,
            'loan_type': self.loan_type.value,
            'interest_rate': str(self.interest_rate),
            'total_amount': str(self.total_amount.amount),
            'monthly_payment': str(self.monthly_payment.amount),
            'remaining_balance': str(self.remaining_balance.amount),
            'due_date': iso(self.due_date),
            'end_date': iso(self.end_date),
            'start_date': iso(self.start_date),
            'status': self.status.value,
            'last_payment_date': iso(self.last_payment_date),
            'is_reloan': self.is_reloan,
            'parent_loan_id': self.parent_loan_id,
            'approval_status': self.approval_status.value,
            'approved_by': self.approved_by,
            'approved_at': iso(self.approved_at),
            'rejection_reason': self.rejection_reason,
            'total_paid': str(self.total_paid.amount),
            'payment_count': self.payment_count,
            'created_by': self.created_by,
            'updated_by': self.updated_by,
            'purpose': self.purpose,
            'collateral': self.collateral,
            'notes': self.notes,
            'version': self.version,
        })
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        currency = Currency.from_code(data['currency'])

        def money(key: str) -> Money:
            return Money(Decimal(data[key]), currency)

        def when(key: str) -> Optional[datetime]:
            return datetime.fromisoformat(data[key]) if data.get(key) else None

        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            customer_id=data['customer_id'],
            customer_name=data['customer_name'],
            customer_nrc=data['customer_nrc'],
            loan_amount=money('loan_amount'),
            loan_period=LoanPeriod(data['loan_period']),
            loan_type=LoanType(data['loan_type']),
            interest_rate=Decimal(data['interest_rate']),
            total_amount=money('total_amount'),
            monthly_payment=money('monthly_payment'),
            remaining_balance=money('remaining_balance'),
            due_date=when('due_date'),
            end_date=when('end_date'),
            start_date=when('start_date'),
            status=LoanStatus(data['status']),
            last_payment_date=when('last_payment_date'),
            is_reloan=data.get('is_reloan', False),
            parent_loan_id=data.get('parent_loan_id'),
            approval_status=ApprovalStatus(data.get('approval_status', ApprovalStatus.APPROVED.value)),
            approved_by=data.get('approved_by'),
            approved_at=when('approved_at'),
            rejection_reason=data.get('rejection_reason'),
            total_paid=money('total_paid'),
            payment_count=data.get('payment_count', 0),
            created_by=data.get('created_by'),
            updated_by=data.get('updated_by'),
            purpose=data.get('purpose'),
            collateral=data.get('collateral'),
            notes=data.get('notes'),
            version=data.get('version', 1),
        )

    def summary(self, today: Optional[date] = None) -> Dict[str, Any]:
        return {
            'id': self.id,
            'customer_name': self.customer_name,
            'customer_nrc': self.customer_nrc,
            'loan_amount': str(self.loan_amount.amount),
            'remaining_balance': str(self.remaining_balance.amount),
            'status': self.status.value,
            'due_date': self.due_date.isoformat(),
            'completion_percentage': self.completion_percentage,
            'is_overdue': self.is_overdue(today),
            'days_overdue': self.days_overdue(today),
        }


def _coerce_enum(enum_cls, value, label: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise InvalidInputError(f"Invalid {label} {value!r}; expected one of: {allowed}")


class LoanManager:
    """
    Manages loan origination and non-payment lifecycle actions
    """

    def __init__(
        self,
        storage: StorageInterface,
        customer_manager: CustomerManager,
        audit_trail: AuditTrail,
        currency: Currency = Currency.ZMW,
        default_interest_rate: Decimal = DEFAULT_INTEREST_RATE,
        max_interest_rate: Decimal = Decimal('50'),
        max_write_retries: int = 3
    ):
        self.storage = storage
        self.customer_manager = customer_manager
        self.audit_trail = audit_trail
        self.currency = currency
        self.default_interest_rate = default_interest_rate
        self.max_interest_rate = max_interest_rate
        self.max_write_retries = max_write_retries

        self.loans_table = "loans"
        self.payments_table = "payments"
        self.logger = get_logger("loan_ledger.loans")

    def create_loan(
        self,
        customer_id: str,
        loan_amount: Union[Decimal, str, int, None],
        loan_period: Union[LoanPeriod, str, None],
        loan_type: Union[LoanType, str, None],
        interest_rate: Optional[Union[Decimal, str, int]] = None,
        caller: Optional[Caller] = None,
        is_reloan: bool = False,
        parent_loan_id: Optional[str] = None,
        purpose: Optional[str] = None,
        collateral: Optional[str] = None,
        notes: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Loan:
        """
        Originate a new loan in NotPaid status

        Args:
            customer_id: Borrower
            loan_amount: Principal
            loan_period: Period label such as "3 Months"
            loan_type: Product type such as "Personal"
            interest_rate: Percent per month of the period, defaults to configuration
            caller: User creating the loan; subadmins are capped
            now: Origination instant (defaults to current UTC time)

        Returns:
            Created Loan
        """
        if not customer_id or not loan_amount or not loan_period or not loan_type:
            raise InvalidInputError("Customer ID, loan amount, period, and type are required")

        period = _coerce_enum(LoanPeriod, loan_period, "loan period")
        product = _coerce_enum(LoanType, loan_type, "loan type")
        try:
            principal = Money(to_decimal(loan_amount), self.currency)
            rate = self.default_interest_rate if interest_rate is None else to_decimal(interest_rate)
        except ArithmeticError:
            raise InvalidInputError("Loan amount and interest rate must be numeric")

        if not principal.is_positive():
            raise InvalidInputError("Loan amount must be greater than zero")
        if rate < 0 or rate > self.max_interest_rate:
            raise InvalidInputError(f"Interest rate must be between 0 and {self.max_interest_rate}")

        customer = self.customer_manager.require_customer(customer_id)
        self._check_role_limit(caller, principal)

        now = now or datetime.now(timezone.utc)
        figures = calculate_loan(principal, period, rate, now=now)

        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            customer_id=customer.id,
            customer_name=customer.full_name,
            customer_nrc=customer.nrc_number,
            loan_amount=principal,
            loan_period=period,
            loan_type=product,
            interest_rate=rate,
            total_amount=figures.total_amount,
            monthly_payment=figures.monthly_payment,
            remaining_balance=figures.remaining_balance,
            due_date=figures.due_date,
            end_date=figures.end_date,
            start_date=now,
            is_reloan=is_reloan,
            parent_loan_id=parent_loan_id,
            created_by=caller.user_id if caller else None,
            purpose=purpose,
            collateral=collateral,
            notes=notes,
        )
        self.storage.save(self.loans_table, loan.id, loan.to_dict())

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_CREATED,
            entity_type="loan",
            entity_id=loan.id,
            metadata={
                "customer_id": customer.id,
                "loan_amount": principal.to_string(),
                "loan_period": period.value,
                "interest_rate": str(rate),
                "total_amount": loan.total_amount.to_string(),
                "is_reloan": is_reloan,
                "parent_loan_id": parent_loan_id,
            },
            user_id=loan.created_by
        )
        log_action(
            self.logger, "info", f"Loan {loan.id} created for customer {customer.id}",
            user_id=loan.created_by, action="create_loan", resource=f"loan:{loan.id}"
        )
        return loan

    def create_reloan(
        self,
        parent_loan_id: str,
        loan_amount: Union[Decimal, str, int, None],
        loan_period: Union[LoanPeriod, str, None],
        loan_type: Union[LoanType, str, None],
        interest_rate: Optional[Union[Decimal, str, int]] = None,
        caller: Optional[Caller] = None,
        now: Optional[datetime] = None
    ) -> Loan:
        """Issue a new loan to the borrower of a completed loan"""
        parent = self.require_loan(parent_loan_id)
        if parent.status != LoanStatus.COMPLETED:
            raise ConflictError("Can only create reloan for completed loans")

        return self.create_loan(
            customer_id=parent.customer_id,
            loan_amount=loan_amount,
            loan_period=loan_period,
            loan_type=loan_type,
            interest_rate=interest_rate,
            caller=caller,
            is_reloan=True,
            parent_loan_id=parent.id,
            now=now
        )

    def approve_loan(self, loan_id: str, approved_by: Optional[str] = None) -> Loan:
        def approve(loan: Loan) -> None:
            loan.approval_status = ApprovalStatus.APPROVED
            loan.approved_by = approved_by
            loan.approved_at = datetime.now(timezone.utc)
            loan.rejection_reason = None

        loan = self.update_loan(loan_id, approve, updated_by=approved_by)
        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_APPROVED,
            entity_type="loan",
            entity_id=loan.id,
            metadata={},
            user_id=approved_by
        )
        return loan

    def reject_loan(self, loan_id: str, reason: Optional[str], rejected_by: Optional[str] = None) -> Loan:
        if not reason or not reason.strip():
            raise InvalidInputError("Rejection reason is required")

        def reject(loan: Loan) -> None:
            loan.approval_status = ApprovalStatus.REJECTED
            loan.rejection_reason = reason.strip()
            loan.approved_by = rejected_by
            loan.approved_at = datetime.now(timezone.utc)

        loan = self.update_loan(loan_id, reject, updated_by=rejected_by)
        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_REJECTED,
            entity_type="loan",
            entity_id=loan.id,
            metadata={"reason": loan.rejection_reason},
            user_id=rejected_by
        )
        return loan

    def cancel_loan(self, loan_id: str, cancelled_by: Optional[str] = None) -> Loan:
        def cancel(loan: Loan) -> None:
            if loan.status == LoanStatus.COMPLETED:
                raise ConflictError("Cannot cancel completed loan")
            loan.status = LoanStatus.CANCELLED

        loan = self.update_loan(loan_id, cancel, updated_by=cancelled_by)
        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_CANCELLED,
            entity_type="loan",
            entity_id=loan.id,
            metadata={},
            user_id=cancelled_by
        )
        return loan

    def update_loan(
        self,
        loan_id: str,
        mutate: Callable[[Loan], None],
        updated_by: Optional[str] = None
    ) -> Loan:
        """
        Read-modify-write a loan with optimistic concurrency.

        `mutate` is applied to a fresh copy on every attempt and may raise to
        abort. The write only lands if nobody else wrote the loan in between;
        otherwise the loan is reloaded and `mutate` re-applied.

        Raises:
            NotFoundError: loan does not exist
            ConflictError: still losing the race after max_write_retries attempts
        """
        for attempt in range(1, self.max_write_retries + 1):
            loan = self.require_loan(loan_id)
            expected_version = loan.version
            mutate(loan)
            if updated_by:
                loan.updated_by = updated_by
            if self.save_loan_if_unchanged(loan, expected_version):
                return loan
            self.logger.warning(
                f"Concurrent update on loan {loan_id} (attempt {attempt}/{self.max_write_retries})"
            )
        raise ConflictError(f"Loan {loan_id} was modified concurrently, please retry")

    def save_loan_if_unchanged(self, loan: Loan, expected_version: int) -> bool:
        """Persist `loan` only if the stored copy is still at expected_version"""
        loan.version = expected_version + 1
        loan.updated_at = datetime.now(timezone.utc)
        written = self.storage.compare_and_swap(
            self.loans_table, loan.id, {"version": expected_version}, loan.to_dict()
        )
        if not written:
            loan.version = expected_version
        return written

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        """Get loan by ID"""
        data = self.storage.load(self.loans_table, loan_id)
        return Loan.from_dict(data) if data else None

    def require_loan(self, loan_id: str) -> Loan:
        loan = self.get_loan(loan_id)
        if not loan:
            raise NotFoundError(f"Loan {loan_id} not found")
        return loan

    def list_loans(
        self,
        status: Optional[LoanStatus] = None,
        customer_id: Optional[str] = None,
        search: Optional[str] = None
    ) -> List[Loan]:
        """Loans newest first, optionally filtered"""
        filters: Dict[str, Any] = {}
        if status:
            filters['status'] = status.value
        if customer_id:
            filters['customer_id'] = customer_id
        loans = [Loan.from_dict(d) for d in self.storage.find(self.loans_table, filters)]
        if search:
            needle = search.lower()
            loans = [
                loan for loan in loans
                if needle in loan.customer_name.lower() or needle in loan.customer_nrc.lower()
            ]
        loans.sort(key=lambda loan: loan.created_at, reverse=True)
        return loans

    def get_unsettled_loans(self) -> List[Loan]:
        """Active or NotPaid loans with a balance outstanding"""
        loans = []
        for status in UNSETTLED_STATUSES:
            loans.extend(
                Loan.from_dict(d)
                for d in self.storage.find(self.loans_table, {'status': status.value})
            )
        return [loan for loan in loans if loan.remaining_balance.is_positive()]

    def get_overdue_loans(self) -> List[Loan]:
        loans = self.list_loans(status=LoanStatus.OVERDUE)
        loans.sort(key=lambda loan: loan.due_date)
        return loans

    def get_due_soon_loans(self, today: Optional[date] = None, window_days: int = 7) -> List[Loan]:
        """Unsettled loans due between today and today + window_days inclusive"""
        today = today or datetime.now(timezone.utc).date()
        horizon = today + timedelta(days=window_days)
        loans = [
            loan for loan in self.get_unsettled_loans()
            if today <= loan.due_date.date() <= horizon
        ]
        loans.sort(key=lambda loan: loan.due_date)
        return loans

    def get_loan_summary(self, loan_id: str, today: Optional[date] = None) -> Dict[str, Any]:
        """Loan progress together with its completed-payment totals"""
        loan = self.require_loan(loan_id)
        completed = self.storage.find(self.payments_table, {
            'loan_id': loan.id,
            'status': 'Completed',
        })
        paid = sum((Decimal(p['payment_amount']) for p in completed), Decimal('0'))

        summary = loan.summary(today)
        summary.update({
            'total_amount': str(loan.total_amount.amount),
            'monthly_payment': str(loan.monthly_payment.amount),
            'total_paid': str(loan.total_paid.amount),
            'completed_payments': len(completed),
            'completed_payments_total': str(Money(paid, loan.currency).amount),
            'last_payment_date': loan.last_payment_date.isoformat() if loan.last_payment_date else None,
        })
        return summary

    def loan_statistics(self) -> Dict[str, Dict[str, str]]:
        """Per-status count, principal and remaining totals"""
        stats: Dict[str, Dict[str, Any]] = {}
        for loan in (Loan.from_dict(d) for d in self.storage.load_all(self.loans_table)):
            bucket = stats.setdefault(loan.status.value, {
                'count': 0,
                'total_amount': Decimal('0'),
                'total_remaining': Decimal('0'),
            })
            bucket['count'] += 1
            bucket['total_amount'] += loan.loan_amount.amount
            bucket['total_remaining'] += loan.remaining_balance.amount

        return {
            status: {
                'count': bucket['count'],
                'total_amount': str(bucket['total_amount']),
                'total_remaining': str(bucket['total_remaining']),
            }
            for status, bucket in stats.items()
        }

    def _check_role_limit(self, caller: Optional[Caller], principal: Money) -> None:
        if not caller or caller.role != UserRole.SUBADMIN or caller.max_loan_amount is None:
            return
        if principal.amount > caller.max_loan_amount:
            raise PermissionDeniedError(
                f"Loan amount exceeds your limit of {caller.max_loan_amount}"
            )
