"""
Transaction model — records every financial event in the system.

Every movement of money creates a Transaction record:

  - A deposit: to_account_id set, from_account_id NULL
  - A withdrawal: from_account_id set, to_account_id NULL
  - An internal transfer: both set, one row for the whole movement
  - An external transfer: from_account_id set, destination details in
    destination_account_number / destination_bank_code
  - A loan payment: from_account_id set, loan_id set
  - A fee: from_account_id set (settlement fee of an external transfer)

Key fields:
  - type: transfer, deposit, withdrawal, loan_payment or fee
  - status: pending, processing, completed, failed, cancelled or reversed
  - reference: globally unique, handed back to the client
  - external_reference: identifier assigned by the settlement gateway
  - reversal_of_id: set on a compensating transaction, pointing at the
    transaction whose effect it neutralizes

Status lifecycle:
    pending ──► processing ──► completed ──► reversed
       │             └──────► failed
       └──────────────────────► completed

  Status is the only column that changes after insert. Once completed,
  failed or reversed the row is history; corrections are new rows.

Posting rule (how history reproduces balances):
  The debit on from_account_id is posted when the row enters processing or
  completed and stays posted if it later fails or is reversed. The credit on
  to_account_id is posted only on completion. Failed earmarks and reversed
  transfers are neutralized by a separate completed compensating row, so
  the balance always equals the sum of posted effects.

Why amount_cents is always positive:
  The direction is given by from/to, never by a sign.
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import String, Integer, DateTime, ForeignKey, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class TransactionType(str, enum.Enum):
    TRANSFER = "transfer"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    LOAN_PAYMENT = "loan_payment"
    FEE = "fee"


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REVERSED = "reversed"


# Statuses in which the debit leg is part of the account's history
DEBIT_POSTED_STATUSES = (
    TransactionStatus.PROCESSING.value,
    TransactionStatus.COMPLETED.value,
    TransactionStatus.FAILED.value,
    TransactionStatus.REVERSED.value,
)

# Statuses in which the credit leg is part of the account's history
CREDIT_POSTED_STATUSES = (
    TransactionStatus.COMPLETED.value,
    TransactionStatus.REVERSED.value,
)

FINAL_STATUSES = (
    TransactionStatus.COMPLETED.value,
    TransactionStatus.FAILED.value,
    TransactionStatus.CANCELLED.value,
    TransactionStatus.REVERSED.value,
)


class Transaction(Base):
    __tablename__ = "transactions"

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_transactions_positive_amount"),
        CheckConstraint("fee_cents >= 0", name="ck_transactions_non_negative_fee"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        index=True,
    )

    amount_cents: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
    )

    from_account_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("accounts.id"),
        nullable=True,
        index=True,
    )

    to_account_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("accounts.id"),
        nullable=True,
        index=True,
    )

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=TransactionStatus.PENDING.value,
        index=True,
    )

    reference: Mapped[str] = mapped_column(
        String(40),
        unique=True,
        nullable=False,
    )

    external_reference: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
    )

    description: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )

    # Settlement fee quoted and held for an external transfer
    fee_cents: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )

    # External transfer destination (NULL for everything else)
    destination_account_number: Mapped[str | None] = mapped_column(
        String(20),
        nullable=True,
    )
    destination_bank_code: Mapped[str | None] = mapped_column(
        String(10),
        nullable=True,
    )

    loan_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("loans.id"),
        nullable=True,
        index=True,
    )

    # Compensating transactions point at what they compensate
    reversal_of_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("transactions.id"),
        nullable=True,
        index=True,
    )

    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    @property
    def is_external(self) -> bool:
        return self.destination_bank_code is not None
