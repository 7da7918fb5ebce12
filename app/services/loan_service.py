"""
Loan service — applications, lifecycle and payments.

Payments:
  apply_payment() runs in one ledger atomic unit: lock the paying account,
  lock the loan, debit the account, record a completed loan_payment
  transaction and reduce the outstanding balance. The loan is paid_off
  exactly when the outstanding balance reaches zero. A payment larger than
  the outstanding balance is rejected, nothing is mutated.

Lifecycle (admin operations except the application itself):
  apply_for_loan -> pending
  approve_loan   -> approved
  disburse_loan  -> active, principal credited to a borrower account
  mark_defaulted -> defaulted

Lock order is the same as everywhere else in the ledger: accounts first,
then the loan.

Interest rates by loan type (annual, percent):
  personal 18, mortgage 12, auto 15, business 20, student 10
"""

import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.exceptions import (
    AccountInactiveError,
    InsufficientFundsError,
    LoanNotActiveError,
    LoanNotFoundError,
    UnauthorizedAccessError,
    ValidationError,
)
from app.models.loan import Loan, LoanStatus, LoanType
from app.models.transaction import Transaction, TransactionStatus, TransactionType
from app.services.ledger_store import atomic, generate_reference, run_with_retry
from app.services.notification_service import emit_transaction_event

logger = logging.getLogger(__name__)

INTEREST_RATES = {
    LoanType.PERSONAL.value: Decimal("18"),
    LoanType.MORTGAGE.value: Decimal("12"),
    LoanType.AUTO.value: Decimal("15"),
    LoanType.BUSINESS.value: Decimal("20"),
    LoanType.STUDENT.value: Decimal("10"),
}
DEFAULT_INTEREST_RATE = Decimal("15")

# Monthly payment may not exceed this share of monthly income
AFFORDABILITY_RATIO = Decimal("0.4")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def calculate_monthly_payment_cents(
    principal_cents: int,
    annual_rate_percent: Decimal,
    term_months: int,
) -> int:
    """
    Standard amortized payment, rounded half-up to the cent.

        payment = P * r * (1 + r)^n / ((1 + r)^n - 1),   r = rate / 100 / 12

    A zero rate divides the principal evenly.
    """
    principal = Decimal(principal_cents)
    if annual_rate_percent == 0:
        payment = principal / term_months
    else:
        r = annual_rate_percent / Decimal(100) / Decimal(12)
        growth = (1 + r) ** term_months
        payment = principal * r * growth / (growth - 1)
    return int(payment.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


async def apply_for_loan(
    db: AsyncSession,
    owner_id: uuid.UUID,
    loan_type: str,
    principal_cents: int,
    term_months: int,
    monthly_income_cents: int,
    purpose: str | None = None,
) -> Loan:
    """
    Submit a loan application.

    Raises:
        ValidationError: A pending application already exists
            (loan_application_pending), or the payment exceeds 40% of
            monthly income (loan_unaffordable).
    """
    existing = await db.execute(
        select(Loan.id).where(
            Loan.owner_id == owner_id,
            Loan.status == LoanStatus.PENDING.value,
        )
    )
    if existing.first() is not None:
        raise ValidationError(
            "You already have a pending loan application", "loan_application_pending"
        )

    interest_rate = INTEREST_RATES.get(loan_type, DEFAULT_INTEREST_RATE)
    monthly_payment_cents = calculate_monthly_payment_cents(
        principal_cents, interest_rate, term_months
    )
    if monthly_payment_cents > Decimal(monthly_income_cents) * AFFORDABILITY_RATIO:
        raise ValidationError("Loan amount exceeds affordability criteria", "loan_unaffordable")

    loan = Loan(
        owner_id=owner_id,
        loan_type=loan_type,
        principal_cents=principal_cents,
        interest_rate=interest_rate,
        term_months=term_months,
        monthly_payment_cents=monthly_payment_cents,
        outstanding_balance_cents=principal_cents,
        status=LoanStatus.PENDING.value,
        purpose=purpose,
    )
    db.add(loan)
    await db.flush()
    logger.info(
        "Loan application submitted",
        extra={"loan_id": str(loan.id), "loan_type": loan_type, "principal_cents": principal_cents},
    )
    return loan


async def get_loans(db: AsyncSession, owner_id: uuid.UUID) -> list[Loan]:
    result = await db.execute(
        select(Loan).where(Loan.owner_id == owner_id).order_by(Loan.created_at.desc())
    )
    return list(result.scalars().all())


async def get_loan(db: AsyncSession, loan_id: uuid.UUID, owner_id: uuid.UUID) -> Loan:
    """Get one of the requester's loans. Other users' loans look nonexistent."""
    loan = await db.get(Loan, loan_id)
    if loan is None or loan.owner_id != owner_id:
        raise LoanNotFoundError(loan_id)
    return loan


async def apply_payment(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    loan_id: uuid.UUID,
    account_id: uuid.UUID,
    amount_cents: int,
    owner_id: uuid.UUID,
) -> dict:
    """
    Pay down a loan from one of the borrower's accounts.

    Returns:
        Dict with loan_id, amount_cents, remaining_balance_cents,
        loan_status, transaction_id and reference.

    Raises:
        LoanNotFoundError: Unknown loan, or not the requester's.
        LoanNotActiveError: Loan is not active (including paid off).
        AccountNotFoundError / AccountInactiveError: Bad paying account.
        UnauthorizedAccessError: Paying account belongs to someone else.
        InsufficientFundsError: Account can't cover the payment.
        ValidationError: Non-positive amount, or overpayment (loan_overpayment).
    """
    if amount_cents <= 0:
        raise ValidationError("Amount must be a positive number of cents", "invalid_amount")

    async def operation() -> tuple[dict, Transaction]:
        async with atomic(session_factory) as ledger:
            peek = await ledger.session.execute(select(Loan.owner_id).where(Loan.id == loan_id))
            loan_owner = peek.scalar_one_or_none()
            if loan_owner is None or loan_owner != owner_id:
                raise LoanNotFoundError(loan_id)

            accounts = await ledger.lock_accounts([account_id])
            account = accounts[account_id]
            loan = await ledger.lock_loan(loan_id)

            if loan.status != LoanStatus.ACTIVE.value:
                raise LoanNotActiveError(loan_id, loan.status)
            if account.owner_id != owner_id:
                raise UnauthorizedAccessError("You do not have access to this account")
            if not account.is_active:
                raise AccountInactiveError(account.id, account.status)
            if amount_cents > loan.outstanding_balance_cents:
                raise ValidationError(
                    f"Payment of {amount_cents} cents exceeds outstanding balance of "
                    f"{loan.outstanding_balance_cents} cents",
                    "loan_overpayment",
                )
            if account.available_balance_cents < amount_cents:
                raise InsufficientFundsError(
                    account_id=account.id,
                    requested_cents=amount_cents,
                    available_cents=account.available_balance_cents,
                )

            txn = Transaction(
                type=TransactionType.LOAN_PAYMENT.value,
                status=TransactionStatus.COMPLETED.value,
                amount_cents=amount_cents,
                currency=account.currency,
                from_account_id=account.id,
                loan_id=loan.id,
                reference=generate_reference("LOAN"),
                description=f"Loan payment for {loan.loan_type} loan",
                processed_at=_utcnow(),
            )
            await ledger.record_transaction(txn)
            await ledger.apply_delta(account.id, -amount_cents, -amount_cents)

            loan.outstanding_balance_cents -= amount_cents
            if loan.outstanding_balance_cents == 0:
                loan.status = LoanStatus.PAID_OFF.value
            await ledger.session.flush()

            return {
                "loan_id": loan.id,
                "amount_cents": amount_cents,
                "remaining_balance_cents": loan.outstanding_balance_cents,
                "loan_status": loan.status,
                "transaction_id": txn.id,
                "reference": txn.reference,
            }, txn

    outcome, txn = await run_with_retry(operation, description="loan payment")
    logger.info(
        "Loan payment applied",
        extra={
            "loan_id": str(loan_id),
            "amount_cents": amount_cents,
            "remaining_balance_cents": outcome["remaining_balance_cents"],
        },
    )
    emit_transaction_event(txn, owner_id)
    return outcome


# ---------------------------------------------------------------------------
# Admin lifecycle
# ---------------------------------------------------------------------------

async def approve_loan(
    session_factory: async_sessionmaker[AsyncSession],
    loan_id: uuid.UUID,
) -> Loan:
    """[ADMIN ONLY] pending -> approved."""
    async with atomic(session_factory) as ledger:
        loan = await ledger.lock_loan(loan_id)
        if loan.status != LoanStatus.PENDING.value:
            raise LoanNotActiveError(loan_id, loan.status)
        loan.status = LoanStatus.APPROVED.value
        loan.approved_at = _utcnow()
        await ledger.session.flush()
    logger.info("Loan approved", extra={"loan_id": str(loan_id)})
    return loan


async def disburse_loan(
    session_factory: async_sessionmaker[AsyncSession],
    loan_id: uuid.UUID,
    account_id: uuid.UUID,
) -> Loan:
    """
    [ADMIN ONLY] approved -> active, crediting the principal as a deposit.

    The receiving account must be an active account of the borrower.
    """

    async def operation() -> tuple[Loan, Transaction]:
        async with atomic(session_factory) as ledger:
            accounts = await ledger.lock_accounts([account_id])
            account = accounts[account_id]
            loan = await ledger.lock_loan(loan_id)

            if loan.status != LoanStatus.APPROVED.value:
                raise LoanNotActiveError(loan_id, loan.status)
            if account.owner_id != loan.owner_id:
                raise ValidationError(
                    "Disbursement account must belong to the borrower", "invalid_disbursement_account"
                )
            if not account.is_active:
                raise AccountInactiveError(account.id, account.status)

            now = _utcnow()
            txn = Transaction(
                type=TransactionType.DEPOSIT.value,
                status=TransactionStatus.COMPLETED.value,
                amount_cents=loan.principal_cents,
                currency=account.currency,
                to_account_id=account.id,
                loan_id=loan.id,
                reference=generate_reference("LOAN"),
                description=f"Disbursement of {loan.loan_type} loan",
                processed_at=now,
            )
            await ledger.record_transaction(txn)
            await ledger.apply_delta(account.id, loan.principal_cents, loan.principal_cents)

            loan.status = LoanStatus.ACTIVE.value
            loan.disbursement_account_id = account.id
            loan.disbursed_at = now
            await ledger.session.flush()
            return loan, txn

    loan, txn = await run_with_retry(operation, description="loan disbursement")
    logger.info(
        "Loan disbursed",
        extra={"loan_id": str(loan_id), "account_id": str(account_id), "amount_cents": txn.amount_cents},
    )
    emit_transaction_event(txn, loan.owner_id)
    return loan


async def mark_defaulted(
    session_factory: async_sessionmaker[AsyncSession],
    loan_id: uuid.UUID,
) -> Loan:
    """[ADMIN ONLY] active -> defaulted."""
    async with atomic(session_factory) as ledger:
        loan = await ledger.lock_loan(loan_id)
        if loan.status != LoanStatus.ACTIVE.value:
            raise LoanNotActiveError(loan_id, loan.status)
        loan.status = LoanStatus.DEFAULTED.value
        await ledger.session.flush()
    logger.warning("Loan marked defaulted", extra={"loan_id": str(loan_id)})
    return loan
