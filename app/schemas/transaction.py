"""
Pydantic schemas for Transaction and Transfer endpoints.

All monetary amounts are in integer cents (e.g., $10.50 = 1050).
"""

import uuid
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, model_validator


class TransactionCreateRequest(BaseModel):
    """Request body for POST /accounts/{id}/transactions."""
    type: Literal["deposit", "withdrawal"]
    amount_cents: int = Field(gt=0, description="Amount in cents (must be positive)")
    description: str | None = Field(None, max_length=255)


class TransactionResponse(BaseModel):
    """Public representation of a transaction."""
    id: uuid.UUID
    type: str
    amount_cents: int
    currency: str
    from_account_id: uuid.UUID | None
    to_account_id: uuid.UUID | None
    status: str
    reference: str
    external_reference: str | None
    description: str | None
    fee_cents: int
    loan_id: uuid.UUID | None
    reversal_of_id: uuid.UUID | None
    processed_at: datetime | None
    created_at: datetime

    model_config = {"from_attributes": True}


class TransferRequest(BaseModel):
    """
    Request body for POST /transfers.

    The destination is either an account at this bank (to_account_id or
    to_account_number) or, when to_bank_code names another bank, an
    external account number.
    """
    from_account_id: uuid.UUID
    to_account_id: uuid.UUID | None = None
    to_account_number: str | None = Field(None, pattern=r"^\d{10}$")
    to_bank_code: str | None = Field(None, pattern=r"^\d{3}$")
    amount_cents: int = Field(gt=0, description="Amount in cents (must be positive)")
    currency: str = Field(default="USD", pattern=r"^[A-Z]{3}$")
    description: str | None = Field(None, max_length=255)

    @model_validator(mode="after")
    def destination_required(self):
        """Exactly one way of naming the destination."""
        if self.to_account_id is None and self.to_account_number is None:
            raise ValueError("to_account_id or to_account_number is required")
        if self.to_account_id is not None and self.to_account_number is not None:
            raise ValueError("Give either to_account_id or to_account_number, not both")
        if self.to_account_id == self.from_account_id:
            raise ValueError("Cannot transfer to the same account")
        return self


class TransferData(BaseModel):
    """The `data` member of a transfer response."""
    transaction_id: uuid.UUID
    reference: str
    status: str
    amount_cents: int
    fee_cents: int
    currency: str
    from_account_id: uuid.UUID | None
    to_account_id: uuid.UUID | None
    destination_account_number: str | None
    destination_bank_code: str | None
    external_reference: str | None
    processed_at: datetime | None
    created_at: datetime

    @classmethod
    def from_transaction(cls, txn) -> "TransferData":
        return cls(
            transaction_id=txn.id,
            reference=txn.reference,
            status=txn.status,
            amount_cents=txn.amount_cents,
            fee_cents=txn.fee_cents,
            currency=txn.currency,
            from_account_id=txn.from_account_id,
            to_account_id=txn.to_account_id,
            destination_account_number=txn.destination_account_number,
            destination_bank_code=txn.destination_bank_code,
            external_reference=txn.external_reference,
            processed_at=txn.processed_at,
            created_at=txn.created_at,
        )


class TransferResponse(BaseModel):
    """Success envelope for transfer endpoints."""
    success: bool = True
    data: TransferData


class SupportedBankResponse(BaseModel):
    code: str
    name: str
    country: str


class VerifyDestinationRequest(BaseModel):
    """Request body for POST /transfers/banks/verify."""
    account_number: str = Field(pattern=r"^\d{10}$")
    bank_code: str = Field(pattern=r"^\d{3}$")


class VerifyDestinationResponse(BaseModel):
    account_number: str
    bank_code: str
    account_name: str
    bank_name: str
