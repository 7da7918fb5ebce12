"""
Loan model — a credit facility owned by a user.

Lifecycle:
    pending ──► approved ──► active ──► paid_off
                               └──────► defaulted

  - pending: application submitted by the borrower
  - approved: accepted by an operator, not yet funded
  - active: principal disbursed into a borrower account; payments accepted
  - paid_off: outstanding balance reached exactly zero
  - defaulted: written off by an operator

outstanding_balance_cents only ever decreases through completed
loan_payment transactions, and a CHECK constraint keeps it non-negative.
"""

import enum
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import String, Integer, DateTime, ForeignKey, Numeric, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class LoanStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    ACTIVE = "active"
    PAID_OFF = "paid_off"
    DEFAULTED = "defaulted"


class LoanType(str, enum.Enum):
    PERSONAL = "personal"
    MORTGAGE = "mortgage"
    AUTO = "auto"
    BUSINESS = "business"
    STUDENT = "student"


class Loan(Base):
    __tablename__ = "loans"

    __table_args__ = (
        CheckConstraint("principal_cents > 0", name="ck_loans_positive_principal"),
        CheckConstraint(
            "outstanding_balance_cents >= 0",
            name="ck_loans_non_negative_outstanding",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    owner_id: Mapped[uuid.UUID] = mapped_column(
        nullable=False,
        index=True,
    )

    loan_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )

    principal_cents: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    # Annual rate in percent, e.g. 18.00
    interest_rate: Mapped[Decimal] = mapped_column(
        Numeric(5, 2),
        nullable=False,
    )

    term_months: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    monthly_payment_cents: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    outstanding_balance_cents: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=LoanStatus.PENDING.value,
        index=True,
    )

    purpose: Mapped[str | None] = mapped_column(
        String(500),
        nullable=True,
    )

    # Account that received the principal on disbursement
    disbursement_account_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("accounts.id"),
        nullable=True,
    )

    approved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    disbursed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

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
