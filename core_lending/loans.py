"""
Loan Module

Loan accounting engine: simple-interest loan terms, EMI schedule generation,
and payment application with EMI tracking and loan status transitions.

Everything in this module is pure. Functions take loan values and return new
values; persistence is left to the service layer.
"""

from decimal import Decimal, ROUND_FLOOR
from datetime import datetime, timezone
from dataclasses import dataclass, replace
from typing import Any, List, Optional, Union
from enum import Enum
import uuid

from .amounts import ZERO, CENT, HUNDRED, MONTHS_PER_YEAR, to_decimal, round2
from .exceptions import InvalidInputError, LoanClosedError, PaymentExceedsBalanceError
from .storage import StorageRecord


# Caps the EMI schedule at 1200 installments
MAX_PERIOD_YEARS = 100


class LoanStatus(Enum):
    """Loan lifecycle states"""
    ACTIVE = "ACTIVE"      # Loan has an outstanding balance
    CLOSED = "CLOSED"      # Loan fully paid


class PaymentType(Enum):
    """Kinds of payment a borrower can make"""
    EMI = "EMI"              # One scheduled installment
    LUMP_SUM = "LUMP_SUM"    # Arbitrary amount, converted to whole EMIs

    @classmethod
    def parse(cls, value: Union['PaymentType', str]) -> 'PaymentType':
        """Accept an enum member or its (case-insensitive) string value"""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().upper())
            except ValueError:
                pass
        raise InvalidInputError(
            f"Invalid payment type {value!r}. Must be EMI or LUMP_SUM",
            {"field": "type", "value": str(value)}
        )


@dataclass(frozen=True)
class LoanTerms:
    """Loan terms derived once at creation"""
    principal: Decimal
    period_years: int
    annual_rate_percent: Decimal
    total_interest: Decimal
    total_amount: Decimal
    total_emis: int
    monthly_emi: Decimal


@dataclass(frozen=True)
class ScheduleEntry:
    """Single installment in the nominal EMI plan"""
    installment_number: int
    emi_amount: Decimal
    balance_after: Decimal

    def __post_init__(self):
        if self.balance_after < ZERO:
            raise ValueError(f"Installment {self.installment_number} leaves a negative balance")


@dataclass
class Loan(StorageRecord):
    """Loan with its immutable terms and running repayment state"""
    customer_id: str
    principal: Decimal
    period_years: int
    annual_rate_percent: Decimal
    total_interest: Decimal
    total_amount: Decimal
    total_emis: int
    monthly_emi: Decimal
    amount_paid: Decimal = ZERO
    balance_amount: Decimal = None
    emis_paid: int = 0
    emis_remaining: int = None
    status: LoanStatus = LoanStatus.ACTIVE
    version: int = 0

    def __post_init__(self):
        # A fresh loan owes the full amount over the full term
        if self.balance_amount is None:
            self.balance_amount = self.total_amount
        if self.emis_remaining is None:
            self.emis_remaining = self.total_emis

    @property
    def loan_id(self) -> str:
        return self.id

    @property
    def is_active(self) -> bool:
        """Check if loan accepts payments"""
        return self.status == LoanStatus.ACTIVE

    @property
    def terms(self) -> LoanTerms:
        return LoanTerms(
            principal=self.principal,
            period_years=self.period_years,
            annual_rate_percent=self.annual_rate_percent,
            total_interest=self.total_interest,
            total_amount=self.total_amount,
            total_emis=self.total_emis,
            monthly_emi=self.monthly_emi
        )

    @classmethod
    def open(cls, customer_id: str, terms: LoanTerms, loan_id: Optional[str] = None,
             now: Optional[datetime] = None) -> 'Loan':
        """Create a new active loan from computed terms"""
        now = now or datetime.now(timezone.utc)
        return cls(
            id=loan_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            customer_id=customer_id,
            principal=terms.principal,
            period_years=terms.period_years,
            annual_rate_percent=terms.annual_rate_percent,
            total_interest=terms.total_interest,
            total_amount=terms.total_amount,
            total_emis=terms.total_emis,
            monthly_emi=terms.monthly_emi
        )


@dataclass
class LoanPayment(StorageRecord):
    """Immutable record of one payment with before/after snapshots"""
    loan_id: str
    amount: Decimal
    payment_type: PaymentType
    balance_before: Decimal
    balance_after: Decimal
    emis_remaining_before: int
    emis_remaining_after: int

    @property
    def transaction_id(self) -> str:
        return self.id

    @property
    def timestamp(self) -> datetime:
        return self.created_at


@dataclass(frozen=True)
class PaymentResult:
    """Outcome of applying a payment: the loan's new state and the payment record"""
    loan: Loan
    payment: LoanPayment

    @property
    def closed_loan(self) -> bool:
        return self.loan.status == LoanStatus.CLOSED


def _to_period(value: Any) -> int:
    """Validate a loan period in whole years"""
    if isinstance(value, bool):
        raise InvalidInputError("period_years must be a positive integer", {"field": "period_years"})
    if isinstance(value, int):
        return value

    period = to_decimal(value, "period_years")
    if period != period.to_integral_value():
        raise InvalidInputError(
            "period_years must be a whole number of years",
            {"field": "period_years", "value": str(value)}
        )
    return int(period)


def compute_loan_terms(
    principal: Any,
    period_years: Any,
    annual_rate_percent: Any,
    max_period_years: int = MAX_PERIOD_YEARS
) -> LoanTerms:
    """
    Compute simple-interest loan terms

    I = P * N * R / 100, A = P + I, EMI = A / (N * 12) rounded half up to cents.

    Args:
        principal: Amount lent, must be positive
        period_years: Loan period in whole years, must be positive
        annual_rate_percent: Yearly interest rate in percent, must not be negative
        max_period_years: Longest loan period accepted

    Returns:
        LoanTerms

    Raises:
        InvalidInputError: If any argument is out of range
    """
    principal = to_decimal(principal, "principal")
    period = _to_period(period_years)
    rate = to_decimal(annual_rate_percent, "annual_rate_percent")

    if principal <= ZERO:
        raise InvalidInputError("principal must be positive", {"field": "principal"})
    if period <= 0:
        raise InvalidInputError("period_years must be positive", {"field": "period_years"})
    if period > max_period_years:
        raise InvalidInputError(
            f"period_years must not exceed {max_period_years}",
            {"field": "period_years", "max": max_period_years}
        )
    if rate < ZERO:
        raise InvalidInputError(
            "annual_rate_percent must not be negative", {"field": "annual_rate_percent"}
        )

    total_interest = principal * Decimal(period) * rate / HUNDRED
    total_amount = principal + total_interest
    total_emis = period * MONTHS_PER_YEAR
    monthly_emi = round2(total_amount / Decimal(total_emis))

    return LoanTerms(
        principal=principal,
        period_years=period,
        annual_rate_percent=rate,
        total_interest=total_interest,
        total_amount=total_amount,
        total_emis=total_emis,
        monthly_emi=monthly_emi
    )


def build_emi_schedule(terms: LoanTerms) -> List[ScheduleEntry]:
    """
    Generate the nominal EMI plan for loan terms

    Every installment is the rounded monthly EMI except the last one, which
    pays exactly what is left so the plan ends at a zero balance.
    """
    schedule = []
    remaining = terms.total_amount

    for number in range(1, terms.total_emis + 1):
        if number == terms.total_emis:
            emi = remaining
        else:
            emi = min(terms.monthly_emi, remaining)

        remaining = remaining - emi
        schedule.append(ScheduleEntry(
            installment_number=number,
            emi_amount=emi,
            balance_after=remaining
        ))

    return schedule


def _emis_covered(amount: Decimal, monthly_emi: Decimal) -> int:
    """Whole EMIs a lump sum is worth"""
    if monthly_emi <= ZERO:
        return 0
    return int((amount / monthly_emi).to_integral_value(rounding=ROUND_FLOOR))


def apply_payment(
    loan: Loan,
    amount: Any,
    payment_type: Union[PaymentType, str],
    now: Optional[datetime] = None
) -> PaymentResult:
    """
    Apply a payment to a loan

    EMI payments reduce the remaining EMIs by exactly one whatever the amount;
    lump sums reduce them by floor(amount / monthly_emi).

    Amounts are checked against the balance to the cent: a payment is only
    rejected if it rounds above the rounded balance, and a payment that leaves
    less than one cent outstanding closes the loan at a balance of exactly zero.

    Args:
        loan: Current loan state (not modified)
        amount: Payment amount, 0 < amount <= balance (to the cent)
        payment_type: EMI or LUMP_SUM
        now: Payment timestamp (defaults to current UTC time)

    Returns:
        PaymentResult with the updated loan and the new payment record

    Raises:
        LoanClosedError: If the loan is not active
        InvalidInputError: If the type is unknown or the amount is not positive
        PaymentExceedsBalanceError: If the amount rounds above the current balance
    """
    if not loan.is_active:
        raise LoanClosedError(loan.id)

    payment_type = PaymentType.parse(payment_type)
    amount = to_decimal(amount, "amount")

    if amount <= ZERO:
        raise InvalidInputError("Payment amount must be positive", {"field": "amount"})
    if round2(amount) > round2(loan.balance_amount):
        raise PaymentExceedsBalanceError(amount, loan.balance_amount, loan.id)

    now = now or datetime.now(timezone.utc)
    balance_before = loan.balance_amount
    emis_before = loan.emis_remaining

    if payment_type == PaymentType.LUMP_SUM:
        emis_after = max(0, emis_before - _emis_covered(amount, loan.monthly_emi))
    else:
        emis_after = max(0, emis_before - 1)

    balance_after = balance_before - amount
    amount_paid = loan.amount_paid + amount
    if balance_after < CENT:
        balance_after = ZERO
        amount_paid = loan.total_amount
        emis_after = 0
        status = LoanStatus.CLOSED
    else:
        status = LoanStatus.ACTIVE

    payment = LoanPayment(
        id=str(uuid.uuid4()),
        created_at=now,
        updated_at=now,
        loan_id=loan.id,
        amount=amount,
        payment_type=payment_type,
        balance_before=balance_before,
        balance_after=balance_after,
        emis_remaining_before=emis_before,
        emis_remaining_after=emis_after
    )

    updated_loan = replace(
        loan,
        updated_at=now,
        amount_paid=amount_paid,
        balance_amount=balance_after,
        emis_paid=loan.total_emis - emis_after,
        emis_remaining=emis_after,
        status=status,
        version=loan.version + 1
    )

    return PaymentResult(loan=updated_loan, payment=payment)
