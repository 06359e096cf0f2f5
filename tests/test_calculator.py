"""
Test suite for the loan calculator

Flat-rate figures: interest = principal * rate * months / 100.
"""

import pytest
from decimal import Decimal
from datetime import datetime, timezone, timedelta

from loan_ledger.currency import Money, Currency
from loan_ledger.calculator import (
    calculate_loan, parse_period, LoanPeriod, LoanType, INTEREST_RATES
)
from loan_ledger.errors import InvalidInputError


NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class TestCalculateLoan:
    """Test loan figure computation"""

    def test_three_month_loan_at_ten_percent(self):
        """1000 over 3 months at 10% -> 300 interest, 1300 total, 433.33 monthly"""
        result = calculate_loan(Decimal('1000'), "3 Months", Decimal('10'), now=NOW)

        assert result.interest == Money(Decimal('300'), Currency.ZMW)
        assert result.total_amount == Money(Decimal('1300'), Currency.ZMW)
        assert result.monthly_payment == Money(Decimal('433.33'), Currency.ZMW)
        assert result.remaining_balance == result.total_amount
        assert result.months == 3

    def test_rate_is_charged_per_month_of_period(self):
        one = calculate_loan(Decimal('1000'), LoanPeriod.ONE_MONTH, Decimal('10'), now=NOW)
        twelve = calculate_loan(Decimal('1000'), LoanPeriod.TWELVE_MONTHS, Decimal('10'), now=NOW)

        assert one.interest.amount == Decimal('100.00')
        assert twelve.interest.amount == Decimal('1200.00')
        assert twelve.total_amount.amount == Decimal('2200.00')

    def test_default_rate_is_ten_percent(self):
        result = calculate_loan(Decimal('500'), "2 Months", now=NOW)
        assert result.interest_rate == Decimal('10')
        assert result.total_amount.amount == Decimal('600.00')

    def test_monthly_payment_rounds_half_up(self):
        """1000 at 10.5% over 6 months -> 1630 / 6 = 271.666.. -> 271.67"""
        result = calculate_loan(Decimal('1000'), 6, Decimal('10.5'), now=NOW)
        assert result.total_amount.amount == Decimal('1630.00')
        assert result.monthly_payment.amount == Decimal('271.67')

    def test_half_cent_rounds_up(self):
        """0.05 over 2 months at 0% -> 0.025 monthly -> 0.03"""
        result = calculate_loan(Decimal('0.05'), 2, Decimal('0'), now=NOW)
        assert result.monthly_payment.amount == Decimal('0.03')

    def test_zero_rate(self):
        result = calculate_loan(Decimal('1200'), "12 Months", Decimal('0'), now=NOW)
        assert result.interest.is_zero()
        assert result.monthly_payment.amount == Decimal('100.00')

    def test_due_and_end_dates(self):
        result = calculate_loan(Decimal('1000'), "3 Months", now=NOW)
        assert result.due_date == NOW + timedelta(days=30)
        assert result.end_date == NOW + timedelta(days=90)

    def test_accepts_money_principal(self):
        result = calculate_loan(Money(Decimal('100'), Currency.USD), 1, Decimal('5'), now=NOW)
        assert result.total_amount == Money(Decimal('105'), Currency.USD)

    def test_string_inputs(self):
        result = calculate_loan("1000", "3 Months", "10", now=NOW)
        assert result.total_amount.amount == Decimal('1300.00')

    @pytest.mark.parametrize("principal", [Decimal('0'), Decimal('-1')])
    def test_non_positive_principal_rejected(self, principal):
        with pytest.raises(InvalidInputError):
            calculate_loan(principal, 3, now=NOW)

    def test_zero_months_rejected(self):
        with pytest.raises(InvalidInputError):
            calculate_loan(Decimal('1000'), 0, now=NOW)

    def test_negative_rate_rejected(self):
        with pytest.raises(InvalidInputError):
            calculate_loan(Decimal('1000'), 3, Decimal('-1'), now=NOW)

    def test_malformed_principal_rejected(self):
        with pytest.raises(InvalidInputError):
            calculate_loan("lots", 3, now=NOW)

    def test_to_dict_uses_strings(self):
        data = calculate_loan(Decimal('1000'), "3 Months", now=NOW).to_dict()
        assert data['total_amount'] == '1300.00'
        assert data['monthly_payment'] == '433.33'
        assert data['months'] == 3


class TestPeriods:
    """Test period parsing and rate table"""

    @pytest.mark.parametrize("label,months", [
        ("1 Month", 1), ("2 Months", 2), ("3 Months", 3), ("6 Months", 6), ("12 Months", 12)
    ])
    def test_parse_period_labels(self, label, months):
        assert parse_period(label) == months
        assert LoanPeriod(label).months == months

    def test_parse_period_rejects_garbage(self):
        with pytest.raises(InvalidInputError):
            parse_period("soon")

    def test_interest_rate_table(self):
        assert INTEREST_RATES[LoanType.PERSONAL] == Decimal('10')
        assert INTEREST_RATES[LoanType.BUSINESS] == Decimal('12')
        assert INTEREST_RATES[LoanType.EMERGENCY] == Decimal('8')
        assert INTEREST_RATES[LoanType.EDUCATION] == Decimal('6')
        assert INTEREST_RATES[LoanType.MEDICAL] == Decimal('7')
