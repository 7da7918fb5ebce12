"""
Account service — business logic for bank account operations.

This module handles:
  - Account opening (with unique account number generation)
  - Account retrieval (single or list, scoped to the owner)
  - Balance verification (cached vs. computed from transaction history)
  - Closing accounts and admin status changes

Ownership enforcement:
  All query functions accept an `owner_id` parameter. This is always the
  authenticated requester's id, set by the dependency layer. There is no
  way for a regular member to query another user's accounts through this
  service — the scoping happens here, not in the router.

Admin access:
  Admin-specific functions (prefixed with `admin_`) do NOT scope by
  owner_id. The router layer enforces that only admins can call them.
"""

import logging
import random
import string
import uuid

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.exceptions import AccountNotFoundError, UnauthorizedAccessError, ValidationError
from app.models.account import Account, AccountStatus
from app.models.transaction import (
    CREDIT_POSTED_STATUSES,
    DEBIT_POSTED_STATUSES,
    Transaction,
)
from app.services.ledger_store import atomic

logger = logging.getLogger(__name__)

# Admin status transitions; closing goes through close_account()
_ADMIN_TRANSITIONS = {
    AccountStatus.ACTIVE.value: {AccountStatus.SUSPENDED.value, AccountStatus.INACTIVE.value},
    AccountStatus.SUSPENDED.value: {AccountStatus.ACTIVE.value, AccountStatus.INACTIVE.value},
    AccountStatus.INACTIVE.value: {AccountStatus.ACTIVE.value},
}


def _generate_account_number() -> str:
    """
    Generate a random 10-digit account number.

    In a real bank, this would follow a specific format (routing number,
    check digit, etc.). A random 10-digit string avoids sequential guessing.
    """
    return "".join(random.choices(string.digits, k=10))


async def create_account(
    db: AsyncSession,
    owner_id: uuid.UUID,
    account_type: str = "checking",
    currency: str = "USD",
) -> Account:
    """
    Open a new bank account with a zero balance.

    Args:
        db: Database session.
        owner_id: The owner's user id.
        account_type: "checking" or "savings".
        currency: ISO 4217 code, fixed for the life of the account.

    Returns:
        The newly created Account instance.
    """
    # Generate a unique account number (retry if collision, extremely unlikely)
    for _ in range(10):
        account_number = _generate_account_number()
        existing = await db.execute(
            select(Account).where(Account.account_number == account_number)
        )
        if existing.scalar_one_or_none() is None:
            break
    else:
        raise RuntimeError("Failed to generate a unique account number")

    account = Account(
        owner_id=owner_id,
        account_type=account_type,
        account_number=account_number,
        currency=currency,
        balance_cents=0,
        available_balance_cents=0,
        status=AccountStatus.ACTIVE.value,
    )
    db.add(account)
    await db.flush()
    logger.info(
        "Account opened",
        extra={"account_id": str(account.id), "account_type": account_type, "currency": currency},
    )
    return account


async def get_accounts(db: AsyncSession, owner_id: uuid.UUID) -> list[Account]:
    """List all accounts belonging to one owner."""
    result = await db.execute(
        select(Account).where(Account.owner_id == owner_id).order_by(Account.created_at)
    )
    return list(result.scalars().all())


async def get_account(
    db: AsyncSession,
    account_id: uuid.UUID,
    owner_id: uuid.UUID,
) -> Account:
    """
    Get a single account, verifying ownership.

    Raises:
        AccountNotFoundError: If the account doesn't exist.
        UnauthorizedAccessError: If the account belongs to someone else.
    """
    result = await db.execute(select(Account).where(Account.id == account_id))
    account = result.scalar_one_or_none()

    if account is None:
        raise AccountNotFoundError(account_id)

    if account.owner_id != owner_id:
        raise UnauthorizedAccessError("You do not have access to this account")

    return account


async def get_balance(
    db: AsyncSession,
    account_id: uuid.UUID,
    owner_id: uuid.UUID,
) -> dict:
    """
    Get the account balance — both cached and computed from transactions.

    A mismatch between the two signals a data integrity issue.

    Returns:
        Dict with balance_cents, available_balance_cents,
        computed_balance_cents, match and currency.
    """
    account = await get_account(db, account_id, owner_id)
    return await _balance_report(db, account)


async def _balance_report(db: AsyncSession, account: Account) -> dict:
    computed_balance_cents = await compute_balance_from_transactions(db, account.id)
    return {
        "account_id": account.id,
        "balance_cents": account.balance_cents,
        "available_balance_cents": account.available_balance_cents,
        "held_cents": account.balance_cents - account.available_balance_cents,
        "computed_balance_cents": computed_balance_cents,
        "match": account.balance_cents == computed_balance_cents,
        "currency": account.currency,
    }


async def compute_balance_from_transactions(
    db: AsyncSession,
    account_id: uuid.UUID,
) -> int:
    """
    Replay the posting rule over the account's history.

    Credits count once completed (or later reversed); debits count from
    processing onwards, including failed and reversed rows whose effect
    was undone by a separate compensating row.
    """
    credit_result = await db.execute(
        select(func.coalesce(func.sum(Transaction.amount_cents), 0))
        .where(Transaction.to_account_id == account_id)
        .where(Transaction.status.in_(CREDIT_POSTED_STATUSES))
    )
    total_credits = credit_result.scalar()

    debit_result = await db.execute(
        select(func.coalesce(func.sum(Transaction.amount_cents), 0))
        .where(Transaction.from_account_id == account_id)
        .where(Transaction.status.in_(DEBIT_POSTED_STATUSES))
    )
    total_debits = debit_result.scalar()

    return total_credits - total_debits


async def close_account(
    session_factory: async_sessionmaker[AsyncSession],
    account_id: uuid.UUID,
    owner_id: uuid.UUID,
) -> Account:
    """
    Close an account. Only zero-balance accounts with nothing on hold close.

    Raises:
        AccountNotFoundError, UnauthorizedAccessError,
        ValidationError (account_not_empty / account_closed)
    """
    async with atomic(session_factory) as ledger:
        accounts = await ledger.lock_accounts([account_id])
        account = accounts[account_id]
        if account.owner_id != owner_id:
            raise UnauthorizedAccessError("You do not have access to this account")
        if account.status == AccountStatus.CLOSED.value:
            raise ValidationError("Account is already closed", "account_closed")
        if account.balance_cents != 0 or account.available_balance_cents != 0:
            raise ValidationError(
                "Only accounts with a zero balance can be closed", "account_not_empty"
            )
        account.status = AccountStatus.CLOSED.value
        await ledger.session.flush()
    logger.info("Account closed", extra={"account_id": str(account_id)})
    return account


# ---------------------------------------------------------------------------
# Admin functions
# ---------------------------------------------------------------------------

async def admin_get_account(
    db: AsyncSession,
    account_id: uuid.UUID,
) -> Account:
    """
    [ADMIN ONLY] Get any account by ID without ownership check.

    Raises:
        AccountNotFoundError: If the account doesn't exist.
    """
    result = await db.execute(select(Account).where(Account.id == account_id))
    account = result.scalar_one_or_none()

    if account is None:
        raise AccountNotFoundError(account_id)

    return account


async def admin_get_balance(db: AsyncSession, account_id: uuid.UUID) -> dict:
    """[ADMIN ONLY] Get any account's balance without ownership check."""
    account = await admin_get_account(db, account_id)
    return await _balance_report(db, account)


async def admin_set_status(
    session_factory: async_sessionmaker[AsyncSession],
    account_id: uuid.UUID,
    new_status: str,
) -> Account:
    """
    [ADMIN ONLY] Suspend, deactivate or reactivate an account.

    Closed accounts stay closed.

    Raises:
        AccountNotFoundError, ValidationError (invalid_status_transition)
    """
    async with atomic(session_factory) as ledger:
        accounts = await ledger.lock_accounts([account_id])
        account = accounts[account_id]
        allowed = _ADMIN_TRANSITIONS.get(account.status, set())
        if new_status not in allowed:
            raise ValidationError(
                f"Cannot change account status from {account.status} to {new_status}",
                "invalid_status_transition",
            )
        old_status = account.status
        account.status = new_status
        await ledger.session.flush()
    logger.info(
        "Account status changed",
        extra={"account_id": str(account_id), "from_status": old_status, "to_status": new_status},
    )
    return account
