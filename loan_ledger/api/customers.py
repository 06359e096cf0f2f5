"""
Customer endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, status

from .auth import LedgerSystem, get_ledger_system, get_current_user
from .schemas import CreateCustomerRequest, loan_response
from ..customers import EmploymentStatus
from ..loans import Caller
from ..errors import InvalidInputError


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_customer(
    request: CreateCustomerRequest,
    system: LedgerSystem = Depends(get_ledger_system),
    caller: Caller = Depends(get_current_user)
):
    """Register a borrower"""
    try:
        employment_status = EmploymentStatus(request.employment_status)
    except ValueError:
        raise InvalidInputError(f"Invalid employment status: {request.employment_status}")

    customer = system.customer_manager.create_customer(
        full_name=request.full_name,
        nrc_number=request.nrc_number,
        phone_number=request.phone_number,
        address=request.address,
        city=request.city,
        email=request.email,
        employment_status=employment_status,
        company_name=request.company_name,
        job_title=request.job_title,
        monthly_income=request.monthly_income,
        created_by=caller.user_id
    )
    return {"customer": customer.to_dict(), "message": "Customer created successfully"}


@router.get("")
async def list_customers(
    search: Optional[str] = None,
    system: LedgerSystem = Depends(get_ledger_system),
    caller: Caller = Depends(get_current_user)
):
    customers = system.customer_manager.list_customers(search=search)
    return {"customers": [c.to_dict() for c in customers], "count": len(customers)}


@router.get("/{customer_id}")
async def get_customer(
    customer_id: str,
    system: LedgerSystem = Depends(get_ledger_system),
    caller: Caller = Depends(get_current_user)
):
    """Customer profile with their loans"""
    customer = system.customer_manager.require_customer(customer_id)
    loans = system.loan_manager.list_loans(customer_id=customer.id)
    return {
        "customer": customer.to_dict(),
        "loans": [loan_response(loan) for loan in loans],
    }
