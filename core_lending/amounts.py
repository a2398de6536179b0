"""
Monetary Amount Helpers

Decimal conversion and rounding for loan arithmetic. NEVER uses float for
monetary values: floats are converted through their string representation.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Any

from .exceptions import InvalidInputError

# High precision for intermediate results; amounts are only rounded where stated
getcontext().prec = 28

ZERO = Decimal('0')
CENT = Decimal('0.01')
HUNDRED = Decimal('100')
MONTHS_PER_YEAR = 12


def to_decimal(value: Any, field_name: str = "amount") -> Decimal:
    """
    Convert a user-supplied value to Decimal

    Args:
        value: int, float, str or Decimal
        field_name: Name used in the error message

    Returns:
        Finite Decimal value

    Raises:
        InvalidInputError: If the value is not a finite number
    """
    if isinstance(value, bool):
        raise InvalidInputError(f"{field_name} must be a number", {"field": field_name})

    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value).strip())
        except (InvalidOperation, ValueError, TypeError):
            raise InvalidInputError(
                f"{field_name} must be a number", {"field": field_name, "value": str(value)}
            )

    if not result.is_finite():
        raise InvalidInputError(f"{field_name} must be finite", {"field": field_name})

    return result


def round2(amount: Decimal) -> Decimal:
    """Round to 2 decimal places, half up"""
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def format_amount(amount: Decimal) -> str:
    """Render an amount as a plain decimal string (no exponent)"""
    return format(amount, 'f')
