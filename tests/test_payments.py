"""
Test suite for payment processing

Tests balance mutation and status transitions on payment, reversal,
confirmation and failure, and the invariants the ledger must hold across
sequences of those operations.
"""

import pytest
import threading
from decimal import Decimal
from datetime import datetime, timezone, date
from unittest.mock import patch

from loan_ledger.currency import Money, Currency
from loan_ledger.storage import InMemoryStorage, SQLiteStorage
from loan_ledger.audit import AuditTrail, AuditEventType
from loan_ledger.customers import CustomerManager
from loan_ledger.loans import LoanManager, Loan, LoanStatus
from loan_ledger.payments import (
    PaymentProcessor, Payment, PaymentStatus, PaymentMethod, generate_receipt_number
)
from loan_ledger.notifications import MessageType, MessagePriority
from loan_ledger.errors import (
    InvalidInputError, InvalidAmountError, NotFoundError, ConflictError
)


def zmw(amount: str) -> Money:
    return Money(Decimal(amount), Currency.ZMW)


class PaymentTestBase:

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.customer_manager = CustomerManager(self.storage, self.audit_trail)
        self.loan_manager = LoanManager(self.storage, self.customer_manager, self.audit_trail)
        self.processor = PaymentProcessor(self.storage, self.loan_manager, self.audit_trail)

        self.customer = self.customer_manager.create_customer(
            full_name="Chanda Mulenga",
            nrc_number="222222/11/1",
            phone_number="+260966000111"
        )
        # 1000 over 3 months at 10% -> total 1300
        self.loan = self.loan_manager.create_loan(
            customer_id=self.customer.id,
            loan_amount="1000",
            loan_period="3 Months",
            loan_type="Personal"
        )

    def reload(self) -> Loan:
        return self.loan_manager.get_loan(self.loan.id)


class TestRecordPayment(PaymentTestBase):
    """Test recording payments"""

    def test_partial_payment_activates_loan(self):
        result = self.processor.record_payment(self.loan.id, Decimal('500'))

        assert result.new_balance == zmw('800')
        assert result.loan_status == LoanStatus.ACTIVE
        assert result.events == []

        loan = self.reload()
        assert loan.remaining_balance == zmw('800')
        assert loan.total_paid == zmw('500')
        assert loan.payment_count == 1
        assert loan.last_payment_date is not None
        assert loan.status == LoanStatus.ACTIVE

    def test_payment_snapshot(self):
        result = self.processor.record_payment(self.loan.id, "500", recorded_by="clerk")
        payment = result.payment

        assert payment.balance_before == zmw('1300')
        assert payment.balance_after == zmw('800')
        assert payment.payment_amount == zmw('500')
        assert payment.status == PaymentStatus.COMPLETED
        assert payment.payment_method == PaymentMethod.CASH
        assert payment.customer_id == self.customer.id
        assert payment.customer_name == "Chanda Mulenga"
        assert payment.recorded_by == "clerk"
        assert payment.is_partial_payment
        assert payment.payment_sequence == 1
        assert self.processor.get_payment(payment.id).balance_after == zmw('800')

    def test_full_payment_completes_loan_with_one_event(self):
        result = self.processor.record_payment(self.loan.id, Decimal('1300'))

        assert result.new_balance.is_zero()
        assert result.loan_status == LoanStatus.COMPLETED
        assert len(result.events) == 1

        event = result.events[0]
        assert event.message_type == MessageType.LOAN_COMPLETED
        assert event.priority == MessagePriority.LOW
        assert event.loan_id == self.loan.id
        assert event.message == "Loan for Chanda Mulenga has been fully paid"
        assert not result.payment.is_partial_payment

    def test_completion_event_only_on_final_payment(self):
        first = self.processor.record_payment(self.loan.id, "1000")
        second = self.processor.record_payment(self.loan.id, "300")

        assert first.events == []
        assert len(second.events) == 1
        assert self.reload().status == LoanStatus.COMPLETED

    def test_overpayment_rejected_balance_unchanged(self):
        with pytest.raises(InvalidAmountError, match="cannot exceed remaining balance"):
            self.processor.record_payment(self.loan.id, Decimal('1300.01'))

        loan = self.reload()
        assert loan.remaining_balance == zmw('1300')
        assert loan.status == LoanStatus.NOT_PAID
        assert self.processor.list_payments() == []

    @pytest.mark.parametrize("amount", [Decimal('0'), Decimal('-5'), "-0.01"])
    def test_non_positive_amount_rejected(self, amount):
        with pytest.raises(InvalidInputError):
            self.processor.record_payment(self.loan.id, amount)

    def test_missing_fields_rejected(self):
        with pytest.raises(InvalidInputError):
            self.processor.record_payment("", "100")
        with pytest.raises(InvalidInputError):
            self.processor.record_payment(self.loan.id, None)

    def test_malformed_amount_rejected(self):
        with pytest.raises(InvalidInputError):
            self.processor.record_payment(self.loan.id, "ten")

    def test_unknown_loan(self):
        with pytest.raises(NotFoundError):
            self.processor.record_payment("missing", "100")

    def test_unknown_method(self):
        with pytest.raises(InvalidInputError):
            self.processor.record_payment(self.loan.id, "100", method="Barter")

    @pytest.mark.parametrize("method", [PaymentMethod.MOBILE_MONEY, PaymentMethod.BANK_TRANSFER])
    def test_async_methods_start_pending(self, method):
        result = self.processor.record_payment(self.loan.id, "100", method=method)
        assert result.payment.status == PaymentStatus.PENDING
        assert result.new_balance == zmw('1200')

    def test_method_by_label_and_metadata(self):
        result = self.processor.record_payment(
            self.loan.id, "100", method="Mobile Money",
            metadata={'reference': "MM123", 'mobile_money_details': {'provider': "Airtel"}}
        )
        assert result.payment.payment_method == PaymentMethod.MOBILE_MONEY
        assert result.payment.reference == "MM123"
        assert result.payment.mobile_money_details == {'provider': "Airtel"}

    def test_cancelled_loan_rejects_payment(self):
        self.loan_manager.cancel_loan(self.loan.id)
        with pytest.raises(ConflictError):
            self.processor.record_payment(self.loan.id, "100")

    def test_overdue_loan_accepts_payment_and_stays_overdue(self):
        def mark_overdue(l: Loan) -> None:
            l.status = LoanStatus.OVERDUE
        self.loan_manager.update_loan(self.loan.id, mark_overdue)

        result = self.processor.record_payment(self.loan.id, "100")
        assert result.loan_status == LoanStatus.OVERDUE

        result = self.processor.record_payment(self.loan.id, "1200")
        assert result.loan_status == LoanStatus.COMPLETED

    def test_completed_loan_rejects_further_payment(self):
        self.processor.record_payment(self.loan.id, "1300")
        with pytest.raises(InvalidAmountError):
            self.processor.record_payment(self.loan.id, "0.01")

    def test_audit_events(self):
        result = self.processor.record_payment(self.loan.id, "1300")

        payment_events = self.audit_trail.get_events_for_entity("payment", result.payment.id)
        assert [e.event_type for e in payment_events] == [AuditEventType.PAYMENT_RECORDED]

        loan_events = self.audit_trail.get_events_for_entity("loan", self.loan.id)
        assert loan_events[-1].event_type == AuditEventType.LOAN_STATUS_CHANGED
        assert loan_events[-1].metadata["to"] == "Completed"


class TestReversal(PaymentTestBase):
    """Test payment reversal"""

    def test_reverse_restores_balance_and_status(self):
        before = self.reload()
        payment = self.processor.record_payment(self.loan.id, "500").payment

        result = self.processor.reverse_payment(payment.id, "Entered twice", reversed_by="boss")

        loan = self.reload()
        assert loan.remaining_balance == before.remaining_balance
        assert loan.status == before.status == LoanStatus.NOT_PAID
        assert loan.total_paid.is_zero()
        assert loan.payment_count == 0
        assert result.loan_status == LoanStatus.NOT_PAID

        reversed_payment = self.processor.get_payment(payment.id)
        assert reversed_payment.status == PaymentStatus.REVERSED
        assert reversed_payment.reversal_reason == "Entered twice"
        assert reversed_payment.reversed_by == "boss"
        assert reversed_payment.reversed_at is not None

    def test_reverse_completing_payment_reactivates(self):
        self.processor.record_payment(self.loan.id, "300")
        payment = self.processor.record_payment(self.loan.id, "1000").payment
        assert self.reload().status == LoanStatus.COMPLETED

        result = self.processor.reverse_payment(payment.id, "Cheque bounced")

        assert result.loan.remaining_balance == zmw('1000')
        assert result.loan_status == LoanStatus.ACTIVE

    def test_reverse_keeps_overdue_status(self):
        payment = self.processor.record_payment(self.loan.id, "300").payment

        def mark_overdue(l: Loan) -> None:
            l.status = LoanStatus.OVERDUE
        self.loan_manager.update_loan(self.loan.id, mark_overdue)

        result = self.processor.reverse_payment(payment.id, "Wrong loan")
        assert result.loan_status == LoanStatus.OVERDUE
        assert result.loan.remaining_balance == zmw('1300')

    def test_reason_required(self):
        payment = self.processor.record_payment(self.loan.id, "500").payment
        with pytest.raises(InvalidInputError):
            self.processor.reverse_payment(payment.id, "   ")
        assert self.processor.get_payment(payment.id).status == PaymentStatus.COMPLETED

    def test_double_reversal_rejected(self):
        payment = self.processor.record_payment(self.loan.id, "500").payment
        self.processor.reverse_payment(payment.id, "Error")

        with pytest.raises(ConflictError):
            self.processor.reverse_payment(payment.id, "Error again")
        assert self.reload().remaining_balance == zmw('1300')

    def test_unknown_payment(self):
        with pytest.raises(NotFoundError):
            self.processor.reverse_payment("missing", "Error")

    def test_balance_never_exceeds_total(self):
        """A reversal cannot push the balance above the loan total"""
        payment = self.processor.record_payment(self.loan.id, "500").payment

        # Balance restored out of band, as if by a manual correction
        def restore(l: Loan) -> None:
            l.remaining_balance = l.total_amount
        self.loan_manager.update_loan(self.loan.id, restore)

        result = self.processor.reverse_payment(payment.id, "Duplicate")
        assert result.loan.remaining_balance == zmw('1300')

    def test_concurrent_reversals_restore_once(self):
        payment = self.processor.record_payment(self.loan.id, "500").payment
        outcomes = []

        def reverse():
            try:
                self.processor.reverse_payment(payment.id, "Race")
                outcomes.append("ok")
            except ConflictError:
                outcomes.append("conflict")

        threads = [threading.Thread(target=reverse) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("ok") == 1
        assert self.reload().remaining_balance == zmw('1300')


class TestPendingSettlement(PaymentTestBase):
    """Test confirm and fail for asynchronous methods"""

    def record_pending(self, amount="400") -> Payment:
        return self.processor.record_payment(
            self.loan.id, amount, method=PaymentMethod.MOBILE_MONEY
        ).payment

    def test_confirm_pending(self):
        payment = self.record_pending()
        confirmed = self.processor.confirm_payment(payment.id)

        assert confirmed.status == PaymentStatus.COMPLETED
        assert confirmed.confirmed_at is not None
        assert self.reload().remaining_balance == zmw('900')

    def test_confirm_requires_pending(self):
        payment = self.processor.record_payment(self.loan.id, "100").payment
        with pytest.raises(ConflictError):
            self.processor.confirm_payment(payment.id)

    def test_fail_pending_restores_balance(self):
        payment = self.record_pending()
        result = self.processor.fail_payment(payment.id, "Provider declined")

        assert result.payment.status == PaymentStatus.FAILED
        assert result.payment.failure_reason == "Provider declined"
        assert result.loan.remaining_balance == zmw('1300')
        assert result.loan_status == LoanStatus.NOT_PAID

    def test_failed_payment_cannot_be_reversed_or_confirmed(self):
        payment = self.record_pending()
        self.processor.fail_payment(payment.id, "Declined")

        with pytest.raises(ConflictError):
            self.processor.reverse_payment(payment.id, "Error")
        with pytest.raises(ConflictError):
            self.processor.confirm_payment(payment.id)

    def test_pending_payment_can_be_reversed(self):
        payment = self.record_pending()
        result = self.processor.reverse_payment(payment.id, "Customer dispute")
        assert result.loan.remaining_balance == zmw('1300')


class TestLedgerInvariants(PaymentTestBase):
    """Balance stays within [0, total] and reconciles with the payment log"""

    def assert_invariants(self):
        loan = self.reload()
        assert Decimal('0') <= loan.remaining_balance.amount <= loan.total_amount.amount
        assert (loan.status == LoanStatus.COMPLETED) == loan.remaining_balance.is_zero()

        live = [
            p for p in self.processor.get_loan_payments(loan.id)
            if p.status in (PaymentStatus.COMPLETED, PaymentStatus.PENDING)
        ]
        paid = sum((p.payment_amount.amount for p in live), Decimal('0'))
        assert loan.remaining_balance.amount == loan.total_amount.amount - paid
        assert loan.total_paid.amount == paid
        assert loan.payment_count == len(live)

    def test_sequence_of_payments_and_reversals(self):
        operations = [
            ("pay", "250.50"), ("pay", "100"), ("reverse", 0), ("pay", "949.50"),
            ("reverse", 1), ("pay", "0.01"), ("pay", "350.49"), ("reverse", 3),
        ]
        payments = []
        for action, value in operations:
            if action == "pay":
                payments.append(self.processor.record_payment(self.loan.id, value).payment)
            else:
                self.processor.reverse_payment(payments[value].id, "Correction")
            self.assert_invariants()

    def test_overpayment_never_changes_state(self):
        self.processor.record_payment(self.loan.id, "800")
        remaining = self.reload().remaining_balance

        with pytest.raises(InvalidAmountError):
            self.processor.record_payment(self.loan.id, str(remaining.amount + Decimal('0.01')))
        assert self.reload().remaining_balance == remaining
        self.assert_invariants()

    def test_concurrent_payments_do_not_lose_updates(self):
        processor = PaymentProcessor(
            self.storage,
            LoanManager(self.storage, self.customer_manager, self.audit_trail, max_write_retries=50),
            self.audit_trail
        )
        errors = []

        def pay():
            try:
                processor.record_payment(self.loan.id, "100")
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=pay) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert self.reload().remaining_balance == zmw('500')
        self.assert_invariants()


class TestPaymentQueries(PaymentTestBase):
    """Test receipts, listings and statistics"""

    def test_receipt_number_format(self):
        now = datetime(2024, 3, 5, 10, 0, 0, 123000, tzinfo=timezone.utc)
        number = generate_receipt_number(now)
        millis = int(now.timestamp() * 1000)
        assert number == f"RCP-20240305-{millis % 1_000_000:06d}"

    def test_receipt_numbers_unique_at_same_instant(self):
        now = datetime(2024, 3, 5, 10, 0, tzinfo=timezone.utc)
        first = self.processor.record_payment(self.loan.id, "100", now=now).payment
        second = self.processor.record_payment(self.loan.id, "100", now=now).payment
        assert first.receipt_number != second.receipt_number
        assert second.receipt_number.startswith("RCP-20240305-")

    def test_list_filters(self):
        self.processor.record_payment(self.loan.id, "100")
        self.processor.record_payment(self.loan.id, "100", method=PaymentMethod.BANK_TRANSFER)

        assert len(self.processor.list_payments()) == 2
        assert len(self.processor.list_payments(status=PaymentStatus.PENDING)) == 1
        assert len(self.processor.list_payments(method=PaymentMethod.CASH)) == 1

    def test_get_loan_payments_unknown_loan(self):
        with pytest.raises(NotFoundError):
            self.processor.get_loan_payments("missing")

    def test_statistics(self):
        today = datetime.now(timezone.utc).date()
        self.processor.record_payment(self.loan.id, "100")
        self.processor.record_payment(self.loan.id, "200", method=PaymentMethod.MOBILE_MONEY)

        stats = self.processor.payment_statistics(today)
        assert stats['total_payments'] == 2
        assert stats['by_status']['Completed'] == {'count': 1, 'total_amount': '100.00'}
        assert stats['by_status']['Pending'] == {'count': 1, 'total_amount': '200.00'}
        assert stats['by_method']['Mobile Money']['count'] == 1
        assert stats['today'] == {'count': 1, 'total_amount': '100.00'}

    def test_build_receipt(self):
        payment = self.processor.record_payment(self.loan.id, "500").payment
        receipt = self.processor.build_receipt(payment.id)

        assert receipt['receipt_number'] == payment.receipt_number
        assert receipt['customer_nrc'] == "222222/11/1"
        assert receipt['amount'] == "K500.00"
        assert receipt['balance_after'] == "K800.00"

    def test_loan_summary_counts_completed_payments(self):
        self.processor.record_payment(self.loan.id, "300")
        self.processor.record_payment(self.loan.id, "200", method=PaymentMethod.MOBILE_MONEY)

        summary = self.loan_manager.get_loan_summary(self.loan.id)
        assert summary['completed_payments'] == 1
        assert summary['completed_payments_total'] == '300.00'
        assert summary['remaining_balance'] == '800.00'


@pytest.fixture(params=["memory", "sqlite"])
def storage(request):
    """Atomicity checks run against both backends"""
    backend = InMemoryStorage() if request.param == "memory" else SQLiteStorage(":memory:")
    yield backend
    backend.close()


class TestPaymentAtomicity:
    """A payment either lands together with its loan update or not at all"""

    def build(self, storage):
        audit_trail = AuditTrail(storage)
        customer_manager = CustomerManager(storage, audit_trail)
        loan_manager = LoanManager(storage, customer_manager, audit_trail)
        processor = PaymentProcessor(storage, loan_manager, audit_trail)
        customer = customer_manager.create_customer(
            full_name="Natasha Zulu",
            nrc_number="444444/10/1",
            phone_number="+260977000333"
        )
        loan = loan_manager.create_loan(
            customer_id=customer.id,
            loan_amount="1000",
            loan_period="3 Months",
            loan_type="Personal"
        )
        return processor, loan_manager, loan

    def assert_untouched(self, loan_manager, loan):
        stored = loan_manager.get_loan(loan.id)
        assert stored.status == LoanStatus.NOT_PAID
        assert stored.remaining_balance == zmw('1300')
        assert stored.total_paid.is_zero()
        assert stored.payment_count == 0
        assert stored.version == loan.version

    def test_sub_cent_amount_rejected_before_loan_write(self, storage):
        processor, loan_manager, loan = self.build(storage)

        with pytest.raises(InvalidInputError):
            processor.record_payment(loan.id, "0.004")

        self.assert_untouched(loan_manager, loan)
        assert processor.list_payments() == []

    def test_amount_finer_than_cents_rejected(self, storage):
        processor, loan_manager, loan = self.build(storage)

        with pytest.raises(InvalidInputError, match="decimal places"):
            processor.record_payment(loan.id, "433.335")
        self.assert_untouched(loan_manager, loan)

        result = processor.record_payment(loan.id, "433.30")
        assert result.payment.payment_amount == zmw('433.30')

    def test_failure_after_loan_write_rolls_back(self, storage):
        processor, loan_manager, loan = self.build(storage)
        original = processor._unique_receipt_number

        def receipt_then_fail(now):
            original(now)
            raise RuntimeError("receipt printer offline")

        with patch.object(processor, '_unique_receipt_number', side_effect=receipt_then_fail):
            with pytest.raises(RuntimeError):
                processor.record_payment(loan.id, "500")

        self.assert_untouched(loan_manager, loan)

        # The payments table first touched inside the failed transaction is usable
        result = processor.record_payment(loan.id, "500")
        assert result.new_balance == zmw('800')
        assert len(processor.get_loan_payments(loan.id)) == 1

    def test_failed_reversal_restores_payment(self, storage):
        processor, loan_manager, loan = self.build(storage)
        payment = processor.record_payment(loan.id, "500").payment

        with patch.object(loan_manager, 'update_loan', side_effect=RuntimeError("disk full")):
            with pytest.raises(RuntimeError):
                processor.reverse_payment(payment.id, "Duplicate entry")

        assert processor.get_payment(payment.id).status == PaymentStatus.COMPLETED
        assert loan_manager.get_loan(loan.id).remaining_balance == zmw('800')
