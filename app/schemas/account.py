"""
Pydantic schemas for Account endpoints.

These schemas define the API contract for account opening, retrieval,
balance checking and status changes. All monetary amounts are expressed
in integer cents.
"""

import uuid
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class AccountCreateRequest(BaseModel):
    """Request body for POST /accounts."""
    account_type: Literal["checking", "savings"] = Field(
        default="checking",
        description="Type of bank account to open",
    )
    currency: str = Field(
        default="USD",
        pattern=r"^[A-Z]{3}$",
        description="ISO 4217 currency code, fixed for the life of the account",
    )


class AccountResponse(BaseModel):
    """Public representation of a bank account."""
    id: uuid.UUID
    owner_id: uuid.UUID
    account_type: str
    account_number: str
    balance_cents: int
    available_balance_cents: int
    currency: str
    status: str
    created_at: datetime

    model_config = {"from_attributes": True}


class BalanceResponse(BaseModel):
    """
    Balance check response — includes both cached and computed values.

    `held_cents` is the part of the ledger balance that isn't available
    (settlement fees held for external transfers in flight). `match` is
    whether the cached balance agrees with the balance replayed from
    transaction history; a mismatch indicates a data integrity issue.
    """
    account_id: uuid.UUID
    balance_cents: int
    available_balance_cents: int
    held_cents: int
    computed_balance_cents: int
    match: bool
    currency: str


class AccountStatusUpdateRequest(BaseModel):
    """Request body for POST /admin/accounts/{id}/status."""
    status: Literal["active", "inactive", "suspended"]
