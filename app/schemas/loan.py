"""
Pydantic schemas for Loan endpoints.

Amounts in integer cents; interest_rate is an annual percentage.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field


class LoanApplicationRequest(BaseModel):
    """Request body for POST /loans."""
    loan_type: Literal["personal", "mortgage", "auto", "business", "student"]
    principal_cents: int = Field(
        ge=1_000_000, le=5_000_000_000, description="$10,000 to $50,000,000"
    )
    term_months: int = Field(ge=6, le=360)
    monthly_income_cents: int = Field(gt=0)
    purpose: str = Field(min_length=10, max_length=500)


class LoanResponse(BaseModel):
    """Public representation of a loan."""
    id: uuid.UUID
    owner_id: uuid.UUID
    loan_type: str
    principal_cents: int
    interest_rate: Decimal
    term_months: int
    monthly_payment_cents: int
    outstanding_balance_cents: int
    status: str
    purpose: str | None
    disbursement_account_id: uuid.UUID | None
    approved_at: datetime | None
    disbursed_at: datetime | None
    created_at: datetime

    model_config = {"from_attributes": True}


class LoanPaymentRequest(BaseModel):
    """Request body for POST /loans/{id}/payment."""
    account_id: uuid.UUID
    amount_cents: int = Field(gt=0, description="Amount in cents (must be positive)")


class LoanPaymentResponse(BaseModel):
    loan_id: uuid.UUID
    amount_cents: int
    remaining_balance_cents: int
    loan_status: str
    transaction_id: uuid.UUID
    reference: str


class LoanDisbursementRequest(BaseModel):
    """Request body for POST /admin/loans/{id}/disburse."""
    account_id: uuid.UUID
