"""
Loan Repository Module

Persistence contract required by the loan service, and its implementation on
top of the generic record store in `storage`. The service never talks to a
storage backend directly.
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional

from .exceptions import LoanNotFoundError, ConcurrentModificationError
from .loans import Loan, LoanPayment, LoanStatus, PaymentType
from .storage import StorageInterface, StorageRecord


@dataclass
class Customer(StorageRecord):
    """Customer known to the system; loans are grouped by its id"""
    name: Optional[str] = None

    @property
    def customer_id(self) -> str:
        return self.id

    @classmethod
    def register(cls, customer_id: str, name: Optional[str] = None) -> 'Customer':
        now = datetime.now(timezone.utc)
        return cls(id=customer_id, created_at=now, updated_at=now, name=name)


class LoanRepository(ABC):
    """Storage operations the loan service depends on"""

    @abstractmethod
    def insert_loan(self, loan: Loan) -> None:
        """Persist a new loan"""
        pass

    @abstractmethod
    def get_loan(self, loan_id: str) -> Loan:
        """Load a loan, raising LoanNotFoundError if absent"""
        pass

    @abstractmethod
    def update_loan(self, loan: Loan, expected_version: int) -> None:
        """
        Store a loan's new state if the stored version is still `expected_version`

        Raises:
            LoanNotFoundError: If the loan does not exist
            ConcurrentModificationError: If another write got there first
        """
        pass

    @abstractmethod
    def insert_payment(self, payment: LoanPayment) -> None:
        """Persist a new payment"""
        pass

    @abstractmethod
    def list_payments_by_loan(self, loan_id: str) -> List[LoanPayment]:
        """Payments for a loan, oldest first"""
        pass

    @abstractmethod
    def list_loans_by_customer(self, customer_id: str) -> List[Loan]:
        """All loans of a customer (empty if none)"""
        pass

    @abstractmethod
    def insert_customer(self, customer: Customer) -> None:
        """Persist a new customer"""
        pass

    @abstractmethod
    def get_customer(self, customer_id: str) -> Optional[Customer]:
        """Load a customer, or None"""
        pass

    @contextmanager
    def atomic(self):
        """Group writes so they are stored together or not at all"""
        yield


class StorageLoanRepository(LoanRepository):
    """LoanRepository backed by a StorageInterface"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage

        self.loans_table = "loans"
        self.payments_table = "loan_payments"
        self.customers_table = "customers"

    @contextmanager
    def atomic(self):
        with self.storage.atomic():
            yield

    def insert_loan(self, loan: Loan) -> None:
        self.storage.save(self.loans_table, loan.id, self._loan_to_dict(loan))

    def get_loan(self, loan_id: str) -> Loan:
        loan_dict = self.storage.load(self.loans_table, loan_id)
        if not loan_dict:
            raise LoanNotFoundError(loan_id)
        return self._loan_from_dict(loan_dict)

    def update_loan(self, loan: Loan, expected_version: int) -> None:
        swapped = self.storage.compare_and_swap(
            self.loans_table, loan.id, "version", expected_version, self._loan_to_dict(loan)
        )
        if not swapped:
            if not self.storage.exists(self.loans_table, loan.id):
                raise LoanNotFoundError(loan.id)
            raise ConcurrentModificationError(loan.id, expected_version)

    def insert_payment(self, payment: LoanPayment) -> None:
        self.storage.save(self.payments_table, payment.id, self._payment_to_dict(payment))

    def list_payments_by_loan(self, loan_id: str) -> List[LoanPayment]:
        payments_data = self.storage.find(self.payments_table, {"loan_id": loan_id})
        payments = [self._payment_from_dict(data) for data in payments_data]

        # Stable sort keeps insertion order for identical timestamps
        payments.sort(key=lambda p: p.created_at)
        return payments

    def list_loans_by_customer(self, customer_id: str) -> List[Loan]:
        loans_data = self.storage.find(self.loans_table, {"customer_id": customer_id})
        return [self._loan_from_dict(data) for data in loans_data]

    def insert_customer(self, customer: Customer) -> None:
        self.storage.save(self.customers_table, customer.id, customer.to_dict())

    def get_customer(self, customer_id: str) -> Optional[Customer]:
        data = self.storage.load(self.customers_table, customer_id)
        if not data:
            return None
        return Customer(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            name=data.get('name')
        )

    def _loan_to_dict(self, loan: Loan) -> Dict:
        """Convert loan to dictionary"""
        return loan.to_dict()

    def _loan_from_dict(self, data: Dict) -> Loan:
        """Convert dictionary to loan"""
        return Loan(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            customer_id=data['customer_id'],
            principal=Decimal(data['principal']),
            period_years=int(data['period_years']),
            annual_rate_percent=Decimal(data['annual_rate_percent']),
            total_interest=Decimal(data['total_interest']),
            total_amount=Decimal(data['total_amount']),
            total_emis=int(data['total_emis']),
            monthly_emi=Decimal(data['monthly_emi']),
            amount_paid=Decimal(data['amount_paid']),
            balance_amount=Decimal(data['balance_amount']),
            emis_paid=int(data['emis_paid']),
            emis_remaining=int(data['emis_remaining']),
            status=LoanStatus(data['status']),
            version=int(data.get('version', 0))
        )

    def _payment_to_dict(self, payment: LoanPayment) -> Dict:
        """Convert payment to dictionary"""
        return payment.to_dict()

    def _payment_from_dict(self, data: Dict) -> LoanPayment:
        """Convert dictionary to payment"""
        return LoanPayment(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            amount=Decimal(data['amount']),
            payment_type=PaymentType(data['payment_type']),
            balance_before=Decimal(data['balance_before']),
            balance_after=Decimal(data['balance_after']),
            emis_remaining_before=int(data['emis_remaining_before']),
            emis_remaining_after=int(data['emis_remaining_after'])
        )
