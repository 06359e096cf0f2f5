"""
Pydantic schemas for API requests and response helpers

Request bodies accept the camelCase field names used by the dashboard client
as well as their snake_case equivalents. Amounts are Decimals on the way in
and strings on the way out.
"""

from decimal import Decimal
from datetime import date
from typing import Dict, Optional, Any
from pydantic import BaseModel, Field

from ..loans import Loan
from ..payments import Payment


class LedgerRequest(BaseModel):
    class Config:
        populate_by_name = True


# Customer schemas
class CreateCustomerRequest(LedgerRequest):
    full_name: Optional[str] = Field(None, alias="fullName")
    nrc_number: Optional[str] = Field(None, alias="nrcNumber")
    phone_number: Optional[str] = Field(None, alias="phoneNumber")
    email: Optional[str] = None
    address: str = ""
    city: str = ""
    employment_status: str = Field("Employed", alias="employmentStatus")
    company_name: Optional[str] = Field(None, alias="companyName")
    job_title: Optional[str] = Field(None, alias="jobTitle")
    monthly_income: Optional[Decimal] = Field(None, alias="monthlyIncome")


# Loan schemas
class CreateLoanRequest(LedgerRequest):
    customer_id: Optional[str] = Field(None, alias="customerId")
    loan_amount: Optional[Decimal] = Field(None, alias="loanAmount")
    loan_period: Optional[str] = Field(None, alias="loanPeriod")
    loan_type: Optional[str] = Field(None, alias="loanType")
    interest_rate: Optional[Decimal] = Field(None, alias="interestRate")
    purpose: Optional[str] = None
    collateral: Optional[str] = None
    notes: Optional[str] = None


class ReloanRequest(LedgerRequest):
    loan_amount: Optional[Decimal] = Field(None, alias="loanAmount")
    loan_period: Optional[str] = Field(None, alias="loanPeriod")
    loan_type: Optional[str] = Field(None, alias="loanType")
    interest_rate: Optional[Decimal] = Field(None, alias="interestRate")


class CalculateLoanRequest(LedgerRequest):
    loan_amount: Optional[Decimal] = Field(None, alias="loanAmount")
    loan_period: Optional[str] = Field(None, alias="loanPeriod")
    interest_rate: Optional[Decimal] = Field(None, alias="interestRate")


class RejectLoanRequest(LedgerRequest):
    rejection_reason: Optional[str] = Field(None, alias="rejectionReason")


# Payment schemas
class RecordPaymentRequest(LedgerRequest):
    loan_id: Optional[str] = Field(None, alias="loanId")
    payment_amount: Optional[Decimal] = Field(None, alias="paymentAmount")
    payment_method: Optional[str] = Field(None, alias="paymentMethod")
    notes: Optional[str] = None
    reference: Optional[str] = None
    mobile_money_details: Optional[Dict[str, Any]] = Field(None, alias="mobileMoneyDetails")
    bank_details: Optional[Dict[str, Any]] = Field(None, alias="bankDetails")

    def metadata(self) -> Dict[str, Any]:
        return {
            'notes': self.notes,
            'reference': self.reference,
            'mobile_money_details': self.mobile_money_details,
            'bank_details': self.bank_details,
        }


class ReversePaymentRequest(LedgerRequest):
    reversal_reason: Optional[str] = Field(None, alias="reversalReason")


class FailPaymentRequest(LedgerRequest):
    failure_reason: Optional[str] = Field(None, alias="failureReason")


def loan_response(loan: Loan, today: Optional[date] = None) -> Dict[str, Any]:
    """Stored loan fields plus derived progress fields"""
    data = loan.to_dict()
    data.update({
        'completion_percentage': loan.completion_percentage,
        'is_overdue': loan.is_overdue(today),
        'days_overdue': loan.days_overdue(today),
    })
    return data


def payment_response(payment: Payment) -> Dict[str, Any]:
    return payment.to_dict()
