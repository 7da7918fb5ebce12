"""
Account model — a bank account owned by a user of the identity service.

Each account has:
  - A unique account number (randomly generated 10-digit string)
  - A type: "checking" or "savings"
  - A ledger balance and an available balance, both in integer cents
  - A currency code (USD by default, ISO 4217), immutable after opening
  - A status: active, inactive, suspended or closed

Balance vs. available balance:
  `balance_cents` is the ledger balance — the sum of everything posted.
  `available_balance_cents` is what can still be spent; it is lower than the
  ledger balance while a settlement fee is on hold for an outbound external
  transfer. Both columns are only ever changed by the ledger store's
  apply_delta() inside a locked atomic unit.

  CHECK constraints at the database level enforce
  0 <= available_balance_cents <= balance_cents. This is the final safety
  net behind the application-level checks.

Why integer cents?
  Floating-point numbers introduce rounding errors in financial calculations
  (0.1 + 0.2 != 0.3 in IEEE 754). Integer cents are exact fixed-point:
    - All arithmetic is exact
    - $10.99 is stored as 1099 — no ambiguity
    - Clients divide by 100 for display

Accounts are never deleted; they are transitioned to "closed".
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import String, Integer, DateTime, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class AccountStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"
    CLOSED = "closed"


class Account(Base):
    __tablename__ = "accounts"

    __table_args__ = (
        CheckConstraint(
            "balance_cents >= 0",
            name="ck_accounts_non_negative_balance",
        ),
        CheckConstraint(
            "available_balance_cents >= 0",
            name="ck_accounts_non_negative_available",
        ),
        CheckConstraint(
            "available_balance_cents <= balance_cents",
            name="ck_accounts_available_within_balance",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    # User id from the identity service (sub claim of the bearer token)
    owner_id: Mapped[uuid.UUID] = mapped_column(
        nullable=False,
        index=True,
    )

    # "checking" or "savings"
    account_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="checking",
    )

    account_number: Mapped[str] = mapped_column(
        String(20),
        unique=True,
        nullable=False,
    )

    balance_cents: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )

    available_balance_cents: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )

    # ISO 4217 currency code
    currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
        default="USD",
    )

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=AccountStatus.ACTIVE.value,
    )

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE.value
