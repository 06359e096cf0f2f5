"""
Payment Processing Module

Records repayments against a loan's running balance, and reverses, confirms
or fails them afterwards. Loan writes go through LoanManager.update_loan so a
payment racing another payment (or the status sweep) is re-applied to the
fresh balance instead of overwriting it. Payment status changes are claimed
with a conditional write so the same payment cannot be reversed twice.

Reversing or failing a payment puts its amount back on the balance. The loan
returns to Not Paid or Active only from Active or Completed. An Overdue loan
stays Overdue until it is paid off, and Cancelled or Defaulted loans keep
their terminal status.

Amounts must already be in whole minor units of the loan currency; finer
amounts are rejected rather than rounded.

Notification I/O is not performed here: results carry the NotificationEvents
the caller should dispatch.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Union
from enum import Enum
import uuid

from .currency import Money, Currency, to_decimal
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .loans import Loan, LoanManager, LoanStatus
from .notifications import NotificationEvent, MessageType, MessagePriority
from .errors import InvalidInputError, InvalidAmountError, NotFoundError, ConflictError
from .logging_config import get_logger, log_action


class PaymentStatus(Enum):
    COMPLETED = "Completed"
    PENDING = "Pending"      # Awaiting confirmation from the provider
    FAILED = "Failed"
    REVERSED = "Reversed"


class PaymentMethod(Enum):
    CASH = "Cash"
    MOBILE_MONEY = "Mobile Money"
    BANK_TRANSFER = "Bank Transfer"
    ACCOUNT_TRANSFER = "Account Transfer"
    CHEQUE = "Cheque"
    ONLINE = "Online"


# Methods settled asynchronously by an external provider
ASYNC_METHODS = (PaymentMethod.MOBILE_MONEY, PaymentMethod.BANK_TRANSFER)

# Loan statuses that no longer accept repayments
CLOSED_LOAN_STATUSES = (LoanStatus.CANCELLED, LoanStatus.DEFAULTED)

# Optional payment fields accepted through record_payment metadata
METADATA_FIELDS = ('notes', 'reference', 'mobile_money_details', 'bank_details')


@dataclass
class Payment(StorageRecord):
    """A repayment entry in the loan ledger"""
    loan_id: str
    customer_id: str
    customer_name: str           # Snapshot at payment time, not authoritative
    payment_amount: Money
    balance_before: Money
    balance_after: Money
    payment_method: PaymentMethod
    receipt_number: str
    payment_date: datetime
    status: PaymentStatus = PaymentStatus.COMPLETED
    notes: Optional[str] = None
    reference: Optional[str] = None
    mobile_money_details: Optional[Dict[str, Any]] = None
    bank_details: Optional[Dict[str, Any]] = None
    recorded_by: Optional[str] = None
    is_partial_payment: bool = True
    payment_sequence: int = 1

    # Reversal audit
    reversal_reason: Optional[str] = None
    reversed_by: Optional[str] = None
    reversed_at: Optional[datetime] = None

    # Async settlement
    confirmed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None

    def __post_init__(self):
        if not self.payment_amount.is_positive():
            raise InvalidInputError("Payment amount must be greater than zero")
        if self.balance_after != self.balance_before - self.payment_amount:
            raise ValueError("Payment balance snapshot does not reconcile")

    @property
    def currency(self) -> Currency:
        return self.payment_amount.currency

    def to_dict(self) -> Dict[str, Any]:
        def iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        result = self.base_dict()
        result.update({
            'loan_id': self.loan_id,
            'customer_id': self.customer_id,
            'customer_name': self.customer_name,
            'currency': self.currency.code,
            'payment_amount': str(self.payment_amount.amount),
            'balance_before': str(self.balance_before.amount),
            'balance_after': str(self.balance_after.amount),
            'payment_method': self.payment_method.value,
            'receipt_number': self.receipt_number,
            'payment_date': iso(self.payment_date),
            'status': self.status.value,
            'notes': self.notes,
            'reference': self.reference,
            'mobile_money_details': self.mobile_money_details,
            'bank_details': self.bank_details,
            'recorded_by': self.recorded_by,
            'is_partial_payment': self.is_partial_payment,
            'payment_sequence': self.payment_sequence,
            'reversal_reason': self.reversal_reason,
            'reversed_by': self.reversed_by,
            'reversed_at': iso(self.reversed_at),
            'confirmed_at': iso(self.confirmed_at),
            'failure_reason': self.failure_reason,
        })
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Payment':
        currency = Currency.from_code(data['currency'])

        def when(key: str) -> Optional[datetime]:
            return datetime.fromisoformat(data[key]) if data.get(key) else None

        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            customer_id=data['customer_id'],
            customer_name=data['customer_name'],
            payment_amount=Money(Decimal(data['payment_amount']), currency),
            balance_before=Money(Decimal(data['balance_before']), currency),
            balance_after=Money(Decimal(data['balance_after']), currency),
            payment_method=PaymentMethod(data['payment_method']),
            receipt_number=data['receipt_number'],
            payment_date=when('payment_date'),
            status=PaymentStatus(data['status']),
            notes=data.get('notes'),
            reference=data.get('reference'),
            mobile_money_details=data.get('mobile_money_details'),
            bank_details=data.get('bank_details'),
            recorded_by=data.get('recorded_by'),
            is_partial_payment=data.get('is_partial_payment', True),
            payment_sequence=data.get('payment_sequence', 1),
            reversal_reason=data.get('reversal_reason'),
            reversed_by=data.get('reversed_by'),
            reversed_at=when('reversed_at'),
            confirmed_at=when('confirmed_at'),
            failure_reason=data.get('failure_reason'),
        )


@dataclass
class PaymentResult:
    """Outcome of recording a payment"""
    payment: Payment
    loan: Loan
    events: List[NotificationEvent] = field(default_factory=list)

    @property
    def loan_status(self) -> LoanStatus:
        return self.loan.status

    @property
    def new_balance(self) -> Money:
        return self.loan.remaining_balance


@dataclass
class ReversalResult:
    """Outcome of reversing or failing a payment"""
    payment: Payment
    loan: Loan

    @property
    def loan_status(self) -> LoanStatus:
        return self.loan.status


def generate_receipt_number(now: Optional[datetime] = None) -> str:
    """RCP-YYYYMMDD-<last six digits of the epoch milliseconds>"""
    now = now or datetime.now(timezone.utc)
    millis = int(now.timestamp() * 1000)
    return f"RCP-{now:%Y%m%d}-{millis % 1_000_000:06d}"


def _coerce_method(method: Union[PaymentMethod, str, None]) -> PaymentMethod:
    if method is None:
        return PaymentMethod.CASH
    if isinstance(method, PaymentMethod):
        return method
    try:
        return PaymentMethod(method)
    except ValueError:
        allowed = ", ".join(m.value for m in PaymentMethod)
        raise InvalidInputError(f"Invalid payment method {method!r}; expected one of: {allowed}")


class PaymentProcessor:
    """
    Records payments and keeps each loan's running balance and status in step
    with its payment history.
    """

    def __init__(
        self,
        storage: StorageInterface,
        loan_manager: LoanManager,
        audit_trail: AuditTrail
    ):
        self.storage = storage
        self.loan_manager = loan_manager
        self.audit_trail = audit_trail
        self.table_name = "payments"
        self.logger = get_logger("loan_ledger.payments")

    def record_payment(
        self,
        loan_id: str,
        amount: Union[Decimal, str, int, None],
        method: Union[PaymentMethod, str, None] = PaymentMethod.CASH,
        metadata: Optional[Dict[str, Any]] = None,
        recorded_by: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> PaymentResult:
        """
        Record a repayment and apply it to the loan balance

        Args:
            loan_id: Loan being repaid
            amount: Amount paid, > 0 and not above the remaining balance
            method: Payment method; Mobile Money and Bank Transfer start Pending
            metadata: Optional notes, reference, mobile_money_details, bank_details
            recorded_by: User recording the payment
            now: Payment instant (defaults to current UTC time)

        Returns:
            PaymentResult with the payment, the updated loan and any events

        Raises:
            InvalidInputError: missing loan id, non-positive or malformed amount
            NotFoundError: loan does not exist
            InvalidAmountError: amount exceeds the remaining balance
            ConflictError: loan closed, or concurrent updates kept winning
        """
        if not loan_id or amount is None or amount == "":
            raise InvalidInputError("Loan ID and payment amount are required")
        try:
            value = to_decimal(amount)
            precision = self.loan_manager.currency.precision
            if not value.is_finite() or value != value.quantize(Decimal(1).scaleb(-precision)):
                raise InvalidInputError(
                    f"Payment amount must be a number with at most {precision} decimal places"
                )
        except ArithmeticError:
            raise InvalidInputError(f"Invalid payment amount: {amount!r}")
        if value <= 0:
            raise InvalidInputError("Payment amount must be greater than zero")

        payment_method = _coerce_method(method)
        extras = {key: (metadata or {}).get(key) for key in METADATA_FIELDS}
        now = now or datetime.now(timezone.utc)

        # Filled in by apply() on the attempt that wins
        snapshot: Dict[str, Any] = {}

        def apply(loan: Loan) -> None:
            if loan.status in CLOSED_LOAN_STATUSES:
                raise ConflictError(f"Cannot record payment on a {loan.status.value} loan")
            paid = Money(value, loan.currency)
            if paid > loan.remaining_balance:
                raise InvalidAmountError("Payment amount cannot exceed remaining balance")

            snapshot['previous_status'] = loan.status
            snapshot['balance_before'] = loan.remaining_balance
            snapshot['amount'] = paid

            loan.remaining_balance = loan.remaining_balance - paid
            loan.total_paid = loan.total_paid + paid
            loan.payment_count += 1
            loan.last_payment_date = now

            if loan.status == LoanStatus.NOT_PAID:
                loan.status = LoanStatus.ACTIVE
            if loan.remaining_balance.is_zero():
                loan.status = LoanStatus.COMPLETED

        with self.storage.atomic():
            loan = self.loan_manager.update_loan(loan_id, apply, updated_by=recorded_by)

            payment = Payment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                customer_id=loan.customer_id,
                customer_name=loan.customer_name,
                payment_amount=snapshot['amount'],
                balance_before=snapshot['balance_before'],
                balance_after=loan.remaining_balance,
                payment_method=payment_method,
                receipt_number=self._unique_receipt_number(now),
                payment_date=now,
                status=PaymentStatus.PENDING if payment_method in ASYNC_METHODS else PaymentStatus.COMPLETED,
                recorded_by=recorded_by,
                is_partial_payment=loan.remaining_balance.is_positive(),
                payment_sequence=loan.payment_count,
                **extras
            )
            self.storage.save(self.table_name, payment.id, payment.to_dict())

        self.audit_trail.log_event(
            event_type=AuditEventType.PAYMENT_RECORDED,
            entity_type="payment",
            entity_id=payment.id,
            metadata={
                "loan_id": loan.id,
                "amount": payment.payment_amount.to_string(),
                "method": payment_method.value,
                "status": payment.status.value,
                "balance_before": str(payment.balance_before.amount),
                "balance_after": str(payment.balance_after.amount),
                "receipt_number": payment.receipt_number,
            },
            user_id=recorded_by
        )
        self._log_status_change(loan, snapshot['previous_status'], recorded_by, "payment_recorded")

        events = []
        if loan.status == LoanStatus.COMPLETED:
            events.append(NotificationEvent(
                message_type=MessageType.LOAN_COMPLETED,
                title="Loan Completed",
                message=f"Loan for {loan.customer_name} has been fully paid",
                priority=MessagePriority.LOW,
                customer_id=loan.customer_id,
                loan_id=loan.id,
                metadata={
                    "payment_id": payment.id,
                    "receipt_number": payment.receipt_number,
                    "total_paid": str(loan.total_paid.amount),
                },
            ))

        log_action(
            self.logger, "info",
            f"Payment {payment.receipt_number} of {payment.payment_amount.to_string()} "
            f"recorded on loan {loan.id}, balance {loan.remaining_balance.to_string()}",
            user_id=recorded_by, action="record_payment", resource=f"loan:{loan.id}"
        )
        return PaymentResult(payment=payment, loan=loan, events=events)

    def reverse_payment(
        self,
        payment_id: str,
        reason: Optional[str],
        reversed_by: Optional[str] = None
    ) -> ReversalResult:
        """
        Reverse a payment in full and restore its amount to the loan balance

        Raises:
            InvalidInputError: reason missing
            NotFoundError: payment does not exist
            ConflictError: payment already Reversed or Failed
        """
        if not reason or not reason.strip():
            raise InvalidInputError("Reversal reason is required")

        payment = self.require_payment(payment_id)
        if payment.status == PaymentStatus.REVERSED:
            raise ConflictError("Payment already reversed")
        if payment.status == PaymentStatus.FAILED:
            raise ConflictError("Cannot reverse a failed payment")

        now = datetime.now(timezone.utc)
        payment.reversal_reason = reason.strip()
        payment.reversed_by = reversed_by
        payment.reversed_at = now

        loan = self._settle_against_loan(payment, PaymentStatus.REVERSED, reversed_by, now)

        self.audit_trail.log_event(
            event_type=AuditEventType.PAYMENT_REVERSED,
            entity_type="payment",
            entity_id=payment.id,
            metadata={
                "loan_id": loan.id,
                "amount": payment.payment_amount.to_string(),
                "reason": payment.reversal_reason,
                "restored_balance": str(loan.remaining_balance.amount),
            },
            user_id=reversed_by
        )
        log_action(
            self.logger, "info",
            f"Payment {payment.receipt_number} reversed, loan {loan.id} balance "
            f"{loan.remaining_balance.to_string()}",
            user_id=reversed_by, action="reverse_payment", resource=f"payment:{payment.id}"
        )
        return ReversalResult(payment=payment, loan=loan)

    def confirm_payment(self, payment_id: str, confirmed_by: Optional[str] = None) -> Payment:
        """Pending -> Completed once the provider settles"""
        payment = self.require_payment(payment_id)
        if payment.status != PaymentStatus.PENDING:
            raise ConflictError(f"Only pending payments can be confirmed (status: {payment.status.value})")

        now = datetime.now(timezone.utc)
        payment.status = PaymentStatus.COMPLETED
        payment.confirmed_at = now
        payment.updated_at = now
        if not self.storage.compare_and_swap(
            self.table_name, payment.id, {'status': PaymentStatus.PENDING.value}, payment.to_dict()
        ):
            raise ConflictError(f"Payment {payment.id} was modified concurrently")

        self.audit_trail.log_event(
            event_type=AuditEventType.PAYMENT_CONFIRMED,
            entity_type="payment",
            entity_id=payment.id,
            metadata={"loan_id": payment.loan_id},
            user_id=confirmed_by
        )
        self.logger.info(f"Payment {payment.receipt_number} confirmed")
        return payment

    def fail_payment(
        self,
        payment_id: str,
        reason: Optional[str],
        failed_by: Optional[str] = None
    ) -> ReversalResult:
        """Pending -> Failed; the amount goes back on the loan balance"""
        if not reason or not reason.strip():
            raise InvalidInputError("Failure reason is required")

        payment = self.require_payment(payment_id)
        if payment.status != PaymentStatus.PENDING:
            raise ConflictError(f"Only pending payments can be failed (status: {payment.status.value})")

        now = datetime.now(timezone.utc)
        payment.failure_reason = reason.strip()
        loan = self._settle_against_loan(payment, PaymentStatus.FAILED, failed_by, now)

        self.audit_trail.log_event(
            event_type=AuditEventType.PAYMENT_FAILED,
            entity_type="payment",
            entity_id=payment.id,
            metadata={
                "loan_id": loan.id,
                "reason": payment.failure_reason,
                "restored_balance": str(loan.remaining_balance.amount),
            },
            user_id=failed_by
        )
        self.logger.warning(f"Payment {payment.receipt_number} failed: {payment.failure_reason}")
        return ReversalResult(payment=payment, loan=loan)

    def _settle_against_loan(
        self,
        payment: Payment,
        new_status: PaymentStatus,
        user_id: Optional[str],
        now: datetime
    ) -> Loan:
        """
        Move the payment to new_status and return its amount to the loan.

        The payment transition is claimed first with a conditional write on its
        current status, so two concurrent reversals cannot both restore the
        balance. If the loan update then fails the claim is put back.
        """
        original = payment.to_dict()
        previous_status: Dict[str, LoanStatus] = {}

        def restore(loan: Loan) -> None:
            previous_status['status'] = loan.status
            restored = loan.remaining_balance + payment.payment_amount
            loan.remaining_balance = min(loan.total_amount, restored)

            total_paid = loan.total_paid - payment.payment_amount
            loan.total_paid = total_paid if not total_paid.is_negative() else Money.zero(loan.currency)
            loan.payment_count = max(0, loan.payment_count - 1)

            # Overdue is left to the sweep; closed loans stay closed
            if loan.status in CLOSED_LOAN_STATUSES or loan.status == LoanStatus.OVERDUE:
                return
            if loan.remaining_balance == loan.total_amount:
                loan.status = LoanStatus.NOT_PAID
            elif loan.remaining_balance.is_positive():
                loan.status = LoanStatus.ACTIVE

        payment.status = new_status
        payment.updated_at = now

        with self.storage.atomic():
            if not self.storage.compare_and_swap(
                self.table_name, payment.id, {'status': original['status']}, payment.to_dict()
            ):
                raise ConflictError(f"Payment {payment.id} was modified concurrently")
            try:
                loan = self.loan_manager.update_loan(payment.loan_id, restore, updated_by=user_id)
            except Exception:
                self.storage.save(self.table_name, payment.id, original)
                raise

        self._log_status_change(loan, previous_status['status'], user_id, f"payment_{new_status.value.lower()}")
        return loan

    def _log_status_change(
        self,
        loan: Loan,
        previous: LoanStatus,
        user_id: Optional[str],
        cause: str
    ) -> None:
        if loan.status == previous:
            return
        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_STATUS_CHANGED,
            entity_type="loan",
            entity_id=loan.id,
            metadata={"from": previous.value, "to": loan.status.value, "cause": cause},
            user_id=user_id
        )

    def _unique_receipt_number(self, now: datetime) -> str:
        candidate = generate_receipt_number(now)
        while self.storage.find(self.table_name, {'receipt_number': candidate}):
            prefix, suffix = candidate.rsplit('-', 1)
            candidate = f"{prefix}-{(int(suffix) + 1) % 1_000_000:06d}"
        return candidate

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        data = self.storage.load(self.table_name, payment_id)
        return Payment.from_dict(data) if data else None

    def require_payment(self, payment_id: str) -> Payment:
        payment = self.get_payment(payment_id)
        if not payment:
            raise NotFoundError(f"Payment {payment_id} not found")
        return payment

    def list_payments(
        self,
        status: Optional[PaymentStatus] = None,
        method: Optional[PaymentMethod] = None,
        loan_id: Optional[str] = None
    ) -> List[Payment]:
        """Payments newest first, optionally filtered"""
        filters: Dict[str, Any] = {}
        if status:
            filters['status'] = status.value
        if method:
            filters['payment_method'] = method.value
        if loan_id:
            filters['loan_id'] = loan_id
        payments = [Payment.from_dict(d) for d in self.storage.find(self.table_name, filters)]
        payments.sort(key=lambda p: p.payment_date, reverse=True)
        return payments

    def get_loan_payments(self, loan_id: str) -> List[Payment]:
        self.loan_manager.require_loan(loan_id)
        return self.list_payments(loan_id=loan_id)

    def payment_statistics(self, today: Optional[date] = None) -> Dict[str, Any]:
        """Counts and totals by status and method, plus today's completed takings"""
        today = today or datetime.now(timezone.utc).date()
        payments = [Payment.from_dict(d) for d in self.storage.load_all(self.table_name)]

        by_status: Dict[str, Dict[str, Any]] = {}
        by_method: Dict[str, Dict[str, Any]] = {}
        today_count = 0
        today_total = Decimal('0')

        for payment in payments:
            amount = payment.payment_amount.amount
            for bucket, key in ((by_status, payment.status.value), (by_method, payment.payment_method.value)):
                entry = bucket.setdefault(key, {'count': 0, 'total_amount': Decimal('0')})
                entry['count'] += 1
                entry['total_amount'] += amount
            if payment.status == PaymentStatus.COMPLETED and payment.payment_date.date() == today:
                today_count += 1
                today_total += amount

        def render(bucket: Dict[str, Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
            return {
                key: {'count': entry['count'], 'total_amount': str(entry['total_amount'])}
                for key, entry in bucket.items()
            }

        return {
            'total_payments': len(payments),
            'by_status': render(by_status),
            'by_method': render(by_method),
            'today': {'count': today_count, 'total_amount': str(today_total)},
        }

    def build_receipt(self, payment_id: str) -> Dict[str, Any]:
        """Receipt fields for display or printing"""
        payment = self.require_payment(payment_id)
        loan = self.loan_manager.get_loan(payment.loan_id)
        return {
            'receipt_number': payment.receipt_number,
            'payment_date': payment.payment_date.isoformat(),
            'customer_name': payment.customer_name,
            'customer_nrc': loan.customer_nrc if loan else None,
            'loan_id': payment.loan_id,
            'payment_method': payment.payment_method.value,
            'status': payment.status.value,
            'amount': payment.payment_amount.to_display(),
            'balance_before': payment.balance_before.to_display(),
            'balance_after': payment.balance_after.to_display(),
            'reference': payment.reference,
            'recorded_by': payment.recorded_by,
        }
