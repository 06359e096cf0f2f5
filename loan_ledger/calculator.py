"""
Loan Calculator Module

Flat-rate, non-compounding loan figures. The stated rate is charged once per
month of the period (interest = principal * rate * months / 100), so a 10% rate
over three months costs 30% of the principal. Existing loan figures depend on
this formula; keep it as is.
"""

from decimal import Decimal
from datetime import datetime, timezone, timedelta
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Union

from .currency import Money, Currency, to_decimal
from .errors import InvalidInputError


DAYS_PER_MONTH = 30
FIRST_DUE_DAYS = 30
DEFAULT_INTEREST_RATE = Decimal('10')


class LoanPeriod(Enum):
    """Fixed loan periods offered"""
    ONE_MONTH = "1 Month"
    TWO_MONTHS = "2 Months"
    THREE_MONTHS = "3 Months"
    SIX_MONTHS = "6 Months"
    TWELVE_MONTHS = "12 Months"

    @property
    def months(self) -> int:
        return parse_period(self.value)


class LoanType(Enum):
    """Loan product types"""
    PERSONAL = "Personal"
    BUSINESS = "Business"
    EMERGENCY = "Emergency"
    EDUCATION = "Education"
    MEDICAL = "Medical"


# Advertised rate per loan type, in percent
INTEREST_RATES: Dict[LoanType, Decimal] = {
    LoanType.PERSONAL: Decimal('10'),
    LoanType.BUSINESS: Decimal('12'),
    LoanType.EMERGENCY: Decimal('8'),
    LoanType.EDUCATION: Decimal('6'),
    LoanType.MEDICAL: Decimal('7'),
}


def parse_period(period: Union[str, LoanPeriod, int]) -> int:
    """Number of months in a period label such as '3 Months'"""
    if isinstance(period, LoanPeriod):
        period = period.value
    if isinstance(period, int):
        return period
    try:
        return int(str(period).strip().split(' ')[0])
    except (ValueError, IndexError):
        raise InvalidInputError(f"Invalid loan period: {period!r}")


@dataclass(frozen=True)
class LoanCalculation:
    """Figures derived from principal, period and rate"""
    principal: Money
    months: int
    interest_rate: Decimal
    interest: Money
    total_amount: Money
    monthly_payment: Money
    remaining_balance: Money
    due_date: datetime
    end_date: datetime

    def to_dict(self) -> Dict[str, str]:
        return {
            'principal': str(self.principal.amount),
            'months': self.months,
            'interest_rate': str(self.interest_rate),
            'interest': str(self.interest.amount),
            'total_amount': str(self.total_amount.amount),
            'monthly_payment': str(self.monthly_payment.amount),
            'remaining_balance': str(self.remaining_balance.amount),
            'due_date': self.due_date.isoformat(),
            'end_date': self.end_date.isoformat(),
        }


def calculate_loan(
    principal: Union[Money, Decimal, str, int],
    period: Union[str, LoanPeriod, int],
    interest_rate: Optional[Union[Decimal, str, int]] = None,
    currency: Currency = Currency.ZMW,
    now: Optional[datetime] = None
) -> LoanCalculation:
    """
    Compute total, monthly installment and dates for a loan.

    Args:
        principal: Amount lent, > 0
        period: Period label, LoanPeriod or month count, > 0
        interest_rate: Percent charged per month of the period (default 10)
        currency: Currency when principal is not already Money
        now: Reference instant for due/end dates (defaults to current UTC time)

    Returns:
        LoanCalculation

    Raises:
        InvalidInputError: principal or months not positive, rate negative
    """
    if isinstance(principal, Money):
        currency = principal.currency
        amount = principal.amount
    else:
        try:
            amount = to_decimal(principal)
        except ArithmeticError:
            raise InvalidInputError(f"Invalid principal: {principal!r}")

    months = parse_period(period)
    rate = DEFAULT_INTEREST_RATE if interest_rate is None else to_decimal(interest_rate)

    if amount <= 0:
        raise InvalidInputError("Principal must be greater than zero")
    if months <= 0:
        raise InvalidInputError("Loan period must be at least one month")
    if rate < 0:
        raise InvalidInputError("Interest rate cannot be negative")

    interest = amount * rate * months / Decimal('100')
    total = amount + interest

    now = now or datetime.now(timezone.utc)
    total_amount = Money(total, currency)

    return LoanCalculation(
        principal=Money(amount, currency),
        months=months,
        interest_rate=rate,
        interest=Money(interest, currency),
        total_amount=total_amount,
        monthly_payment=Money(total / months, currency),
        remaining_balance=total_amount,
        due_date=now + timedelta(days=FIRST_DUE_DAYS),
        end_date=now + timedelta(days=months * DAYS_PER_MONTH),
    )
