"""
Customer Management Module

Borrower identity and employment profile. Loans and payments reference
customers by id and keep a name/NRC snapshot taken at transaction time.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid
import re

from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .errors import InvalidInputError, NotFoundError, ConflictError
from .logging_config import get_logger


EMAIL_PATTERN = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')


class EmploymentStatus(Enum):
    EMPLOYED = "Employed"
    SELF_EMPLOYED = "Self-employed"
    UNEMPLOYED = "Unemployed"
    RETIRED = "Retired"
    STUDENT = "Student"


@dataclass
class Customer(StorageRecord):
    """Borrower profile"""
    full_name: str
    nrc_number: str
    phone_number: str
    address: str = ""
    city: str = ""
    email: Optional[str] = None
    employment_status: EmploymentStatus = EmploymentStatus.EMPLOYED
    company_name: Optional[str] = None
    job_title: Optional[str] = None
    monthly_income: Optional[Decimal] = None

    def __post_init__(self):
        self.full_name = (self.full_name or "").strip()
        self.nrc_number = (self.nrc_number or "").strip().upper()
        self.phone_number = (self.phone_number or "").strip()

        if not self.full_name:
            raise InvalidInputError("Full name is required")
        if not self.nrc_number:
            raise InvalidInputError("NRC number is required")
        if not self.phone_number:
            raise InvalidInputError("Phone number is required")
        if self.email:
            self.email = self.email.strip().lower()
            if not EMAIL_PATTERN.match(self.email):
                raise InvalidInputError(f"Invalid email: {self.email}")
        if self.monthly_income is not None and self.monthly_income < 0:
            raise InvalidInputError("Monthly income cannot be negative")

    def to_dict(self) -> Dict[str, Any]:
        result = self.base_dict()
        result.update({
            'full_name': self.full_name,
            'nrc_number': self.nrc_number,
            'phone_number': self.phone_number,
            'address': self.address,
            'city': self.city,
            'email': self.email,
            'employment_status': self.employment_status.value,
            'company_name': self.company_name,
            'job_title': self.job_title,
            'monthly_income': str(self.monthly_income) if self.monthly_income is not None else None,
        })
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Customer':
        income = data.get('monthly_income')
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            full_name=data['full_name'],
            nrc_number=data['nrc_number'],
            phone_number=data['phone_number'],
            address=data.get('address', ""),
            city=data.get('city', ""),
            email=data.get('email'),
            employment_status=EmploymentStatus(data.get('employment_status', EmploymentStatus.EMPLOYED.value)),
            company_name=data.get('company_name'),
            job_title=data.get('job_title'),
            monthly_income=Decimal(income) if income is not None else None,
        )


class CustomerManager:
    """Creates and looks up borrower records"""

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = "customers"
        self.logger = get_logger("loan_ledger.customers")

    def create_customer(
        self,
        full_name: str,
        nrc_number: str,
        phone_number: str,
        address: str = "",
        city: str = "",
        email: Optional[str] = None,
        employment_status: EmploymentStatus = EmploymentStatus.EMPLOYED,
        company_name: Optional[str] = None,
        job_title: Optional[str] = None,
        monthly_income: Optional[Decimal] = None,
        created_by: Optional[str] = None
    ) -> Customer:
        """Register a borrower; NRC numbers are unique"""
        now = datetime.now(timezone.utc)
        customer = Customer(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            full_name=full_name,
            nrc_number=nrc_number,
            phone_number=phone_number,
            address=address,
            city=city,
            email=email,
            employment_status=employment_status,
            company_name=company_name,
            job_title=job_title,
            monthly_income=monthly_income,
        )

        if self.get_customer_by_nrc(customer.nrc_number):
            raise ConflictError(f"Customer with NRC {customer.nrc_number} already exists")

        self.storage.save(self.table_name, customer.id, customer.to_dict())

        self.audit_trail.log_event(
            event_type=AuditEventType.CUSTOMER_CREATED,
            entity_type="customer",
            entity_id=customer.id,
            metadata={"nrc_number": customer.nrc_number},
            user_id=created_by
        )
        self.logger.info(f"Customer {customer.id} created")
        return customer

    def get_customer(self, customer_id: str) -> Optional[Customer]:
        data = self.storage.load(self.table_name, customer_id)
        return Customer.from_dict(data) if data else None

    def require_customer(self, customer_id: str) -> Customer:
        customer = self.get_customer(customer_id)
        if not customer:
            raise NotFoundError(f"Customer {customer_id} not found")
        return customer

    def get_customer_by_nrc(self, nrc_number: str) -> Optional[Customer]:
        found = self.storage.find(self.table_name, {"nrc_number": nrc_number.strip().upper()})
        return Customer.from_dict(found[0]) if found else None

    def list_customers(self, search: Optional[str] = None) -> List[Customer]:
        customers = [Customer.from_dict(data) for data in self.storage.load_all(self.table_name)]
        if search:
            needle = search.lower()
            customers = [
                c for c in customers
                if needle in c.full_name.lower() or needle in c.nrc_number.lower()
            ]
        customers.sort(key=lambda c: c.created_at, reverse=True)
        return customers
