"""
Loan Service Module

Orchestrates the accounting engine and the repository: loan creation, payment
recording with optimistic concurrency, ledgers and customer account overviews.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, List, Optional, Union

from .amounts import ZERO
from .exceptions import (
    InvalidInputError, CustomerNotFoundError, ConcurrentModificationError
)
from .loans import (
    MAX_PERIOD_YEARS, Loan, LoanPayment, LoanStatus, PaymentType, ScheduleEntry,
    compute_loan_terms, apply_payment, build_emi_schedule
)
from .logging_config import get_logger, log_action
from .repository import LoanRepository, Customer


@dataclass(frozen=True)
class PaymentReceipt:
    """What the caller gets back after a payment is recorded"""
    payment: LoanPayment
    loan: Loan

    @property
    def payment_id(self) -> str:
        return self.payment.id

    @property
    def balance_after(self) -> Decimal:
        return self.loan.balance_amount

    @property
    def emis_remaining(self) -> int:
        return self.loan.emis_remaining

    @property
    def status(self) -> LoanStatus:
        return self.loan.status

    @property
    def message(self) -> str:
        if self.loan.status == LoanStatus.CLOSED:
            return "Loan fully paid and closed"
        return "Payment processed successfully"


@dataclass
class LoanLedger:
    """Chronological payments of a loan plus its current state"""
    loan: Loan
    payments: List[LoanPayment]

    @property
    def total_paid(self) -> Decimal:
        return sum((p.amount for p in self.payments), ZERO)

    @property
    def balance_amount(self) -> Decimal:
        return self.loan.balance_amount

    @property
    def payment_count(self) -> int:
        return len(self.payments)


@dataclass
class LoanOverview:
    """One loan line of an account overview"""
    loan: Loan
    total_paid: Decimal
    payment_count: int


@dataclass
class AccountOverview:
    """All loans of a customer with aggregate totals"""
    customer_id: str
    loans: List[LoanOverview] = field(default_factory=list)

    @property
    def total_loans(self) -> int:
        return len(self.loans)

    @property
    def total_principal(self) -> Decimal:
        return sum((item.loan.principal for item in self.loans), ZERO)

    @property
    def total_amount(self) -> Decimal:
        return sum((item.loan.total_amount for item in self.loans), ZERO)

    @property
    def total_paid(self) -> Decimal:
        return sum((item.total_paid for item in self.loans), ZERO)

    @property
    def total_balance(self) -> Decimal:
        return sum((item.loan.balance_amount for item in self.loans), ZERO)

    @property
    def active_loans(self) -> int:
        return sum(1 for item in self.loans if item.loan.status == LoanStatus.ACTIVE)

    @property
    def closed_loans(self) -> int:
        return sum(1 for item in self.loans if item.loan.status == LoanStatus.CLOSED)


class LoanService:
    """
    Entry point for every lending operation

    The accounting engine does the math; this class reads state, persists the
    engine's results and keeps concurrent payments on one loan consistent.
    """

    def __init__(
        self,
        repository: LoanRepository,
        max_payment_retries: int = 10,
        require_registered_customers: bool = False,
        max_period_years: int = MAX_PERIOD_YEARS
    ):
        if max_payment_retries < 0:
            raise ValueError("max_payment_retries must not be negative")
        if max_period_years < 1:
            raise ValueError("max_period_years must be at least 1")

        self.repository = repository
        self.max_payment_retries = max_payment_retries
        self.require_registered_customers = require_registered_customers
        self.max_period_years = max_period_years
        self.logger = get_logger("lending.service")

    def register_customer(self, customer_id: str, name: Optional[str] = None) -> Customer:
        """
        Register a customer (idempotent)

        Args:
            customer_id: Opaque customer identifier
            name: Optional display name

        Returns:
            The stored Customer
        """
        customer_id = self._check_customer_id(customer_id)

        existing = self.repository.get_customer(customer_id)
        if existing:
            return existing

        customer = Customer.register(customer_id, name)
        self.repository.insert_customer(customer)

        log_action(
            self.logger, "info", "Customer registered",
            action="register_customer", resource=customer_id
        )
        return customer

    def create_loan(
        self,
        customer_id: str,
        principal: Any,
        period_years: Any,
        annual_rate_percent: Any
    ) -> Loan:
        """
        Lend money to a customer

        Args:
            customer_id: Borrower
            principal: Amount lent
            period_years: Loan period in years
            annual_rate_percent: Simple interest rate per year, in percent

        Returns:
            Created Loan
        """
        customer_id = self._check_customer_id(customer_id)
        terms = compute_loan_terms(
            principal, period_years, annual_rate_percent, max_period_years=self.max_period_years
        )

        loan = Loan.open(customer_id, terms)

        with self.repository.atomic():
            if self.repository.get_customer(customer_id) is None:
                if self.require_registered_customers:
                    raise CustomerNotFoundError(customer_id)
                self.repository.insert_customer(Customer.register(customer_id))
            self.repository.insert_loan(loan)

        log_action(
            self.logger, "info", "Loan created",
            action="create_loan", resource=loan.id,
            extra={
                "customer_id": customer_id,
                "principal": str(terms.principal),
                "period_years": terms.period_years,
                "annual_rate_percent": str(terms.annual_rate_percent),
                "total_amount": str(terms.total_amount),
                "monthly_emi": str(terms.monthly_emi),
                "total_emis": terms.total_emis
            }
        )
        return loan

    def record_payment(
        self,
        loan_id: str,
        amount: Any,
        payment_type: Union[PaymentType, str] = PaymentType.EMI
    ) -> PaymentReceipt:
        """
        Record a payment against a loan

        The loan update is a compare-and-swap on the loan version, stored in
        the same atomic unit as the payment. When another payment lands first
        the loan is re-read and the payment recomputed.

        Args:
            loan_id: Loan being paid
            amount: Payment amount
            payment_type: EMI or LUMP_SUM

        Returns:
            PaymentReceipt
        """
        for attempt in range(self.max_payment_retries + 1):
            loan = self.repository.get_loan(loan_id)
            result = apply_payment(loan, amount, payment_type)

            try:
                with self.repository.atomic():
                    self.repository.update_loan(result.loan, expected_version=loan.version)
                    self.repository.insert_payment(result.payment)
            except ConcurrentModificationError:
                log_action(
                    self.logger, "debug", "Loan changed during payment, retrying",
                    action="record_payment", resource=loan_id,
                    extra={"attempt": attempt + 1, "version": loan.version}
                )
                continue

            receipt = PaymentReceipt(payment=result.payment, loan=result.loan)
            log_action(
                self.logger, "info", receipt.message,
                action="record_payment", resource=loan_id,
                extra={
                    "payment_id": result.payment.id,
                    "payment_type": result.payment.payment_type.value,
                    "amount": str(result.payment.amount),
                    "balance_before": str(result.payment.balance_before),
                    "balance_after": str(result.payment.balance_after),
                    "emis_remaining": result.loan.emis_remaining,
                    "status": result.loan.status.value
                }
            )
            return receipt

        log_action(
            self.logger, "warning", "Payment abandoned after repeated conflicts",
            action="record_payment", resource=loan_id,
            extra={"attempts": self.max_payment_retries + 1}
        )
        raise ConcurrentModificationError(loan_id, loan.version)

    def get_loan(self, loan_id: str) -> Loan:
        """Get loan by ID"""
        return self.repository.get_loan(loan_id)

    def get_schedule(self, loan_id: str) -> List[ScheduleEntry]:
        """Get the nominal EMI plan of a loan"""
        loan = self.repository.get_loan(loan_id)
        return build_emi_schedule(loan.terms)

    def get_ledger(self, loan_id: str) -> LoanLedger:
        """Get a loan with its payments, oldest first"""
        loan = self.repository.get_loan(loan_id)
        payments = self.repository.list_payments_by_loan(loan_id)
        return LoanLedger(loan=loan, payments=payments)

    def get_account_overview(self, customer_id: str) -> AccountOverview:
        """
        Get all loans of a customer, newest first, with totals

        A known customer without loans gets an empty overview; an unknown
        customer raises CustomerNotFoundError.
        """
        customer_id = self._check_customer_id(customer_id)
        if self.repository.get_customer(customer_id) is None:
            raise CustomerNotFoundError(customer_id)

        loans = self.repository.list_loans_by_customer(customer_id)
        # Reverse first so loans created in the same instant stay newest first
        loans = sorted(reversed(loans), key=lambda loan: loan.created_at, reverse=True)

        overview = AccountOverview(customer_id=customer_id)
        for loan in loans:
            payments = self.repository.list_payments_by_loan(loan.id)
            overview.loans.append(LoanOverview(
                loan=loan,
                total_paid=sum((p.amount for p in payments), ZERO),
                payment_count=len(payments)
            ))

        return overview

    def _check_customer_id(self, customer_id: Any) -> str:
        if not isinstance(customer_id, str) or not customer_id.strip():
            raise InvalidInputError("customer_id is required", {"field": "customer_id"})
        return customer_id.strip()
