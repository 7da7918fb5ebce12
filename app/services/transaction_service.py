"""
Transaction service — deposits, withdrawals and transaction history.

Deposits and withdrawals are single-account postings. Like every other
balance change they run inside one ledger atomic unit: lock the account,
validate, apply the delta, record the completed transaction. If any step
fails, the whole unit rolls back.

History queries are plain reads on the request-scoped session, scoped to
the owner through account_service.get_account().

Admin read-only functions:
  Functions prefixed with `admin_` read transactions without ownership
  scoping. These are called from admin-only endpoints.
"""

import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.exceptions import (
    AccountInactiveError,
    InsufficientFundsError,
    TransactionNotFoundError,
    UnauthorizedAccessError,
    ValidationError,
)
from app.models.transaction import Transaction, TransactionStatus, TransactionType
from app.services.account_service import get_account
from app.services.ledger_store import atomic, generate_reference, run_with_retry
from app.services.notification_service import emit_transaction_event

logger = logging.getLogger(__name__)

_POSTING_TYPES = (TransactionType.DEPOSIT.value, TransactionType.WITHDRAWAL.value)


async def create_transaction(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    account_id: uuid.UUID,
    owner_id: uuid.UUID,
    txn_type: str,
    amount_cents: int,
    description: str | None = None,
) -> Transaction:
    """
    Post a deposit or withdrawal to one account.

    Deposits add to both the ledger and the available balance. Withdrawals
    need enough *available* funds, so money held for a pending external
    transfer can't be withdrawn.

    Args:
        session_factory: Opens the atomic unit.
        account_id: The account to credit/debit.
        owner_id: The authenticated requester (must own the account).
        txn_type: "deposit" or "withdrawal".
        amount_cents: Positive integer amount in cents.
        description: Optional memo.

    Returns:
        The completed Transaction.

    Raises:
        AccountNotFoundError: If the account doesn't exist.
        UnauthorizedAccessError: If the account belongs to someone else.
        AccountInactiveError: If the account isn't active.
        InsufficientFundsError: If a withdrawal exceeds available funds.
    """
    if txn_type not in _POSTING_TYPES:
        raise ValidationError(f"Unsupported transaction type {txn_type!r}")
    if amount_cents <= 0:
        raise ValidationError("Amount must be a positive number of cents", "invalid_amount")

    async def operation() -> Transaction:
        async with atomic(session_factory) as ledger:
            accounts = await ledger.lock_accounts([account_id])
            account = accounts[account_id]

            if account.owner_id != owner_id:
                raise UnauthorizedAccessError("You do not have access to this account")
            if not account.is_active:
                raise AccountInactiveError(account.id, account.status)

            txn = Transaction(
                type=txn_type,
                status=TransactionStatus.COMPLETED.value,
                amount_cents=amount_cents,
                currency=account.currency,
                reference=generate_reference(),
                description=description,
                processed_at=datetime.now(timezone.utc),
            )

            if txn_type == TransactionType.WITHDRAWAL.value:
                if account.available_balance_cents < amount_cents:
                    raise InsufficientFundsError(
                        account_id=account.id,
                        requested_cents=amount_cents,
                        available_cents=account.available_balance_cents,
                    )
                txn.from_account_id = account.id
                await ledger.apply_delta(account.id, -amount_cents, -amount_cents)
            else:
                txn.to_account_id = account.id
                await ledger.apply_delta(account.id, amount_cents, amount_cents)

            await ledger.record_transaction(txn)
            return txn

    txn = await run_with_retry(operation, description=txn_type)
    logger.info(
        "Posting completed",
        extra={"reference": txn.reference, "type": txn_type, "amount_cents": amount_cents},
    )
    emit_transaction_event(txn, owner_id)
    return txn


async def get_transactions(
    db: AsyncSession,
    account_id: uuid.UUID,
    owner_id: uuid.UUID,
    status_filter: str | None = None,
    type_filter: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Transaction]:
    """
    List transactions for an account, with optional filters.

    Only returns transactions where the account is either the source
    (from_account_id) or destination (to_account_id).

    Returns:
        List of Transaction instances, newest first.
    """
    await get_account(db, account_id, owner_id)

    query = (
        select(Transaction)
        .where(
            (Transaction.from_account_id == account_id)
            | (Transaction.to_account_id == account_id)
        )
        .order_by(Transaction.created_at.desc())
        .limit(limit)
        .offset(offset)
    )

    if status_filter:
        query = query.where(Transaction.status == status_filter)
    if type_filter:
        query = query.where(Transaction.type == type_filter)

    result = await db.execute(query)
    return list(result.scalars().all())


async def get_transaction(
    db: AsyncSession,
    account_id: uuid.UUID,
    transaction_id: uuid.UUID,
    owner_id: uuid.UUID,
) -> Transaction:
    """
    Get a single transaction by ID, verifying account ownership.

    Raises:
        AccountNotFoundError: If the account doesn't exist.
        UnauthorizedAccessError: If the account belongs to someone else.
        TransactionNotFoundError: If the transaction doesn't exist or
            doesn't involve this account.
    """
    await get_account(db, account_id, owner_id)

    result = await db.execute(
        select(Transaction)
        .where(Transaction.id == transaction_id)
        .where(
            (Transaction.from_account_id == account_id)
            | (Transaction.to_account_id == account_id)
        )
    )
    txn = result.scalar_one_or_none()

    if txn is None:
        raise TransactionNotFoundError(transaction_id)

    return txn


# ---------------------------------------------------------------------------
# Admin read-only functions
# ---------------------------------------------------------------------------

async def admin_get_transaction_by_reference(
    db: AsyncSession,
    reference: str,
) -> Transaction:
    """[ADMIN ONLY] Get any transaction by reference without ownership check."""
    result = await db.execute(select(Transaction).where(Transaction.reference == reference))
    txn = result.scalar_one_or_none()
    if txn is None:
        raise TransactionNotFoundError(reference)
    return txn
