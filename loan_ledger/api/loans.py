"""
Loan endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, Query, status

from .auth import LedgerSystem, get_ledger_system, get_current_user
from .schemas import (
    CreateLoanRequest, ReloanRequest, CalculateLoanRequest, RejectLoanRequest,
    loan_response, payment_response
)
from ..calculator import calculate_loan, INTEREST_RATES
from ..loans import Caller, Loan, LoanStatus
from ..notifications import NotificationEvent, MessageType, MessagePriority
from ..errors import InvalidInputError


router = APIRouter()


def _parse_status(value: Optional[str]) -> Optional[LoanStatus]:
    if not value:
        return None
    try:
        return LoanStatus(value)
    except ValueError:
        raise InvalidInputError(f"Invalid loan status: {value}")


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_loan(
    request: CreateLoanRequest,
    system: LedgerSystem = Depends(get_ledger_system),
    caller: Caller = Depends(get_current_user)
):
    """Originate a new loan"""
    loan = system.loan_manager.create_loan(
        customer_id=request.customer_id,
        loan_amount=request.loan_amount,
        loan_period=request.loan_period,
        loan_type=request.loan_type,
        interest_rate=request.interest_rate,
        caller=caller,
        purpose=request.purpose,
        collateral=request.collateral,
        notes=request.notes
    )
    return {"loan": loan_response(loan), "message": "Loan created successfully"}


@router.get("")
async def list_loans(
    status_filter: Optional[str] = Query(None, alias="status"),
    customer_id: Optional[str] = None,
    search: Optional[str] = None,
    system: LedgerSystem = Depends(get_ledger_system),
    caller: Caller = Depends(get_current_user)
):
    loans = system.loan_manager.list_loans(
        status=_parse_status(status_filter), customer_id=customer_id, search=search
    )
    return {"loans": [loan_response(loan) for loan in loans], "count": len(loans)}


@router.get("/overdue")
async def get_overdue_loans(
    system: LedgerSystem = Depends(get_ledger_system),
    caller: Caller = Depends(get_current_user)
):
    loans = system.loan_manager.get_overdue_loans()
    return {"loans": [loan_response(loan) for loan in loans], "count": len(loans)}


@router.get("/due-soon")
async def get_due_soon_loans(
    system: LedgerSystem = Depends(get_ledger_system),
    caller: Caller = Depends(get_current_user)
):
    """Unsettled loans due within the reminder window"""
    loans = system.loan_manager.get_due_soon_loans(window_days=system.config.due_soon_window_days)
    return {"loans": [loan_response(loan) for loan in loans], "count": len(loans)}


@router.get("/stats")
async def get_loan_statistics(
    system: LedgerSystem = Depends(get_ledger_system),
    caller: Caller = Depends(get_current_user)
):
    return {"by_status": system.loan_manager.loan_statistics()}


@router.post("/calculate")
async def calculate(
    request: CalculateLoanRequest,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Preview loan figures without creating a loan"""
    if request.loan_amount is None or not request.loan_period:
        raise InvalidInputError("Loan amount and period are required")
    rate = request.interest_rate
    if rate is None:
        rate = system.loan_manager.default_interest_rate
    figures = calculate_loan(
        request.loan_amount, request.loan_period, rate,
        currency=system.loan_manager.currency
    )
    return figures.to_dict()


@router.get("/interest-rates")
async def get_interest_rates():
    return {
        "interest_rates": {loan_type.value: str(rate) for loan_type, rate in INTEREST_RATES.items()}
    }


@router.get("/{loan_id}")
async def get_loan(
    loan_id: str,
    system: LedgerSystem = Depends(get_ledger_system),
    caller: Caller = Depends(get_current_user)
):
    """Get loan details"""
    loan = system.loan_manager.require_loan(loan_id)
    return {"loan": loan_response(loan)}


@router.get("/{loan_id}/summary")
async def get_loan_summary(
    loan_id: str,
    system: LedgerSystem = Depends(get_ledger_system),
    caller: Caller = Depends(get_current_user)
):
    return {"summary": system.loan_manager.get_loan_summary(loan_id)}


@router.get("/{loan_id}/payments")
async def get_loan_payments(
    loan_id: str,
    system: LedgerSystem = Depends(get_ledger_system),
    caller: Caller = Depends(get_current_user)
):
    payments = system.payment_processor.get_loan_payments(loan_id)
    return {"payments": [payment_response(p) for p in payments], "count": len(payments)}


@router.post("/{loan_id}/reloan", status_code=status.HTTP_201_CREATED)
async def create_reloan(
    loan_id: str,
    request: ReloanRequest,
    system: LedgerSystem = Depends(get_ledger_system),
    caller: Caller = Depends(get_current_user)
):
    """Issue a new loan to the borrower of a completed loan"""
    loan = system.loan_manager.create_reloan(
        parent_loan_id=loan_id,
        loan_amount=request.loan_amount,
        loan_period=request.loan_period,
        loan_type=request.loan_type,
        interest_rate=request.interest_rate,
        caller=caller
    )
    return {"loan": loan_response(loan), "message": "Reloan created successfully"}


def _decision_event(loan: Loan, message_type: MessageType, title: str, message: str) -> NotificationEvent:
    return NotificationEvent(
        message_type=message_type,
        title=title,
        message=message,
        priority=MessagePriority.MEDIUM,
        customer_id=loan.customer_id,
        loan_id=loan.id,
    )


@router.put("/{loan_id}/approve")
async def approve_loan(
    loan_id: str,
    system: LedgerSystem = Depends(get_ledger_system),
    caller: Caller = Depends(get_current_user)
):
    loan = system.loan_manager.approve_loan(loan_id, approved_by=caller.user_id)
    system.dispatch([_decision_event(
        loan, MessageType.LOAN_APPROVED, "Loan Approved",
        f"Loan for {loan.customer_name} has been approved"
    )])
    return {"loan": loan_response(loan), "message": "Loan approved"}


@router.put("/{loan_id}/reject")
async def reject_loan(
    loan_id: str,
    request: RejectLoanRequest,
    system: LedgerSystem = Depends(get_ledger_system),
    caller: Caller = Depends(get_current_user)
):
    loan = system.loan_manager.reject_loan(loan_id, request.rejection_reason, rejected_by=caller.user_id)
    system.dispatch([_decision_event(
        loan, MessageType.LOAN_REJECTED, "Loan Rejected",
        f"Loan for {loan.customer_name} has been rejected: {loan.rejection_reason}"
    )])
    return {"loan": loan_response(loan), "message": "Loan rejected"}


@router.put("/{loan_id}/cancel")
async def cancel_loan(
    loan_id: str,
    system: LedgerSystem = Depends(get_ledger_system),
    caller: Caller = Depends(get_current_user)
):
    loan = system.loan_manager.cancel_loan(loan_id, cancelled_by=caller.user_id)
    return {"loan": loan_response(loan), "message": "Loan cancelled"}
