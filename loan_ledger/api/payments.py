"""
Payment endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, Query, status

from .auth import LedgerSystem, get_ledger_system, get_current_user
from .schemas import RecordPaymentRequest, ReversePaymentRequest, FailPaymentRequest, payment_response
from ..loans import Caller
from ..payments import PaymentStatus, PaymentMethod
from ..errors import InvalidInputError


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def record_payment(
    request: RecordPaymentRequest,
    system: LedgerSystem = Depends(get_ledger_system),
    caller: Caller = Depends(get_current_user)
):
    """Record a repayment against a loan"""
    result = system.payment_processor.record_payment(
        loan_id=request.loan_id,
        amount=request.payment_amount,
        method=request.payment_method,
        metadata=request.metadata(),
        recorded_by=caller.user_id
    )
    system.dispatch(result.events)

    return {
        "payment": payment_response(result.payment),
        "loan_status": result.loan_status.value,
        "remaining_balance": str(result.new_balance.amount),
        "message": "Payment recorded successfully"
    }


@router.get("")
async def list_payments(
    status_filter: Optional[str] = Query(None, alias="status"),
    method: Optional[str] = None,
    system: LedgerSystem = Depends(get_ledger_system),
    caller: Caller = Depends(get_current_user)
):
    try:
        payment_status = PaymentStatus(status_filter) if status_filter else None
        payment_method = PaymentMethod(method) if method else None
    except ValueError as e:
        raise InvalidInputError(str(e))

    payments = system.payment_processor.list_payments(status=payment_status, method=payment_method)
    return {"payments": [payment_response(p) for p in payments], "count": len(payments)}


@router.get("/stats")
async def get_payment_statistics(
    system: LedgerSystem = Depends(get_ledger_system),
    caller: Caller = Depends(get_current_user)
):
    return system.payment_processor.payment_statistics()


@router.get("/{payment_id}")
async def get_payment(
    payment_id: str,
    system: LedgerSystem = Depends(get_ledger_system),
    caller: Caller = Depends(get_current_user)
):
    payment = system.payment_processor.require_payment(payment_id)
    return {"payment": payment_response(payment)}


@router.get("/{payment_id}/receipt")
async def get_receipt(
    payment_id: str,
    system: LedgerSystem = Depends(get_ledger_system),
    caller: Caller = Depends(get_current_user)
):
    return {"receipt": system.payment_processor.build_receipt(payment_id)}


@router.put("/{payment_id}/reverse")
async def reverse_payment(
    payment_id: str,
    request: ReversePaymentRequest,
    system: LedgerSystem = Depends(get_ledger_system),
    caller: Caller = Depends(get_current_user)
):
    """Reverse a payment and restore the loan balance"""
    result = system.payment_processor.reverse_payment(
        payment_id, request.reversal_reason, reversed_by=caller.user_id
    )
    return {
        "payment": payment_response(result.payment),
        "loan_status": result.loan_status.value,
        "remaining_balance": str(result.loan.remaining_balance.amount),
        "message": "Payment reversed successfully"
    }


@router.put("/{payment_id}/confirm")
async def confirm_payment(
    payment_id: str,
    system: LedgerSystem = Depends(get_ledger_system),
    caller: Caller = Depends(get_current_user)
):
    payment = system.payment_processor.confirm_payment(payment_id, confirmed_by=caller.user_id)
    return {"payment": payment_response(payment), "message": "Payment confirmed"}


@router.put("/{payment_id}/fail")
async def fail_payment(
    payment_id: str,
    request: FailPaymentRequest,
    system: LedgerSystem = Depends(get_ledger_system),
    caller: Caller = Depends(get_current_user)
):
    result = system.payment_processor.fail_payment(
        payment_id, request.failure_reason, failed_by=caller.user_id
    )
    return {
        "payment": payment_response(result.payment),
        "loan_status": result.loan_status.value,
        "remaining_balance": str(result.loan.remaining_balance.amount),
        "message": "Payment marked as failed"
    }
