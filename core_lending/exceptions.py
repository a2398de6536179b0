"""Error taxonomy for the lending core."""

from decimal import Decimal
from typing import Any, Dict, Optional


class LendingError(Exception):
    """Base exception for all lending errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        return self.message


class InvalidInputError(LendingError, ValueError):
    """Raised for malformed or out-of-range arguments."""


class NotFoundError(LendingError):
    """Raised when a referenced entity does not exist."""


class LoanNotFoundError(NotFoundError):
    """Raised when a loan cannot be found."""

    def __init__(self, loan_id: str):
        super().__init__(f"Loan {loan_id} not found", {"loan_id": loan_id})
        self.loan_id = loan_id


class CustomerNotFoundError(NotFoundError):
    """Raised when a customer cannot be found."""

    def __init__(self, customer_id: str):
        super().__init__(f"Customer {customer_id} not found", {"customer_id": customer_id})
        self.customer_id = customer_id


class LoanClosedError(LendingError):
    """Raised when a payment is attempted on a loan that is not active."""

    def __init__(self, loan_id: str):
        super().__init__(f"Loan {loan_id} is already closed", {"loan_id": loan_id})
        self.loan_id = loan_id


class PaymentExceedsBalanceError(LendingError):
    """Raised when a payment is larger than the outstanding balance."""

    def __init__(self, amount: Decimal, balance: Decimal, loan_id: Optional[str] = None):
        details = {
            'amount': str(amount),
            'balance_amount': str(balance)
        }
        if loan_id:
            details['loan_id'] = loan_id

        super().__init__(
            f"Payment amount ({amount}) exceeds balance amount ({balance})", details
        )
        self.amount = amount
        self.balance = balance


class ConcurrentModificationError(LendingError):
    """Raised when a stored record changed between read and write."""

    def __init__(self, loan_id: str, expected_version: int):
        super().__init__(
            f"Loan {loan_id} was modified concurrently (expected version {expected_version})",
            {"loan_id": loan_id, "expected_version": expected_version}
        )
        self.loan_id = loan_id
        self.expected_version = expected_version


class StorageUnavailableError(LendingError):
    """Raised when the storage backend fails."""
