"""
Pydantic schemas for API requests
"""

from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, Field


class RegisterCustomerRequest(BaseModel):
    customer_id: str = Field(..., min_length=1)
    name: Optional[str] = None


class CreateLoanRequest(BaseModel):
    customer_id: str = Field(..., min_length=1)
    principal: Decimal = Field(..., gt=0, description="Loan amount")
    period_years: int = Field(..., gt=0, description="Loan period in whole years")
    annual_rate_percent: Decimal = Field(..., ge=0, description="Simple interest rate per year, in percent")


class PaymentRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    type: str = Field("EMI", description="Payment type (EMI or LUMP_SUM)")
