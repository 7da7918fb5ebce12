"""
Ledger store — the only code path that mutates balances.

THIS IS THE MOST CRITICAL FILE IN THE PROJECT. Every debit and credit in the
system, whether it comes from a transfer, a loan payment, a settlement
finalization or a deposit, goes through the atomic unit defined here:

    async with atomic(session_factory) as ledger:
        accounts = await ledger.lock_accounts([source_id, dest_id])
        await ledger.apply_delta(source_id, -amount, -amount)
        await ledger.apply_delta(dest_id, amount, amount)
        await ledger.record_transaction(txn)

Atomicity:
  One atomic unit is one database transaction. Leaving the `async with`
  block normally commits; any exception rolls back everything done inside
  it, so a debit without its matching credit is never visible.

Deadlock prevention:
  lock_accounts() always acquires locks in ascending account id order,
  regardless of which account is the source and which the destination.
  Two concurrent transfers A->B and B->A therefore both lock min(A, B)
  first, and one simply waits for the other instead of each holding one
  lock and waiting forever for the second.

Two layers of locking:
  1. An in-process asyncio.Lock per account. On SQLite (development and
     tests) `SELECT ... FOR UPDATE` is a no-op, and the pysqlite driver runs
     SELECTs outside the write transaction, so without this a concurrent
     read-modify-write would lose updates.
  2. `SELECT ... FOR UPDATE` row locks, which serialize writers across
     processes on PostgreSQL.
  Both are held until the unit commits or rolls back.

Retries:
  Lock waits are bounded (LEDGER_LOCK_TIMEOUT_SECONDS). A timed-out lock
  wait or a database-level lock/serialization error aborts the unit, and
  run_with_retry() re-runs the whole operation with exponential backoff.
  When the retry budget is spent the caller gets ConcurrencyConflictError,
  which is safe to retry because nothing was committed.
  InsufficientFundsError and other business errors are never retried.
"""

import asyncio
import logging
import uuid
import weakref
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Hashable, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.exceptions import (
    AccountNotFoundError,
    ConcurrencyConflictError,
    InsufficientFundsError,
    LoanNotFoundError,
    TransactionNotFoundError,
)
from app.models.account import Account
from app.models.loan import Loan
from app.models.transaction import Transaction

logger = logging.getLogger(__name__)

T = TypeVar("T")

# PostgreSQL SQLSTATEs that mean "someone else holds it, try again"
_RETRYABLE_SQLSTATES = {"40001", "40P01", "55P03"}


class LockRegistry:
    """
    Hands out one asyncio.Lock per key, created on demand.

    Locks live in a WeakValueDictionary: once no unit holds or waits on a
    key's lock, it is garbage collected, so the registry doesn't grow with
    the number of accounts ever touched.
    """

    def __init__(self) -> None:
        self._locks: "weakref.WeakValueDictionary[Hashable, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def get(self, key: Hashable) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def acquire(self, key: Hashable, timeout: float) -> asyncio.Lock:
        """
        Acquire the lock for `key`, raising ConcurrencyConflictError on timeout.

        The acquire runs as its own task behind a shield. When the wait times
        out or is cancelled, that task is cancelled and awaited; if the lock
        was granted in the meantime it is released again, so a lost race
        never leaves the lock held by nobody.
        """
        lock = self.get(key)
        acquiring = asyncio.ensure_future(lock.acquire())
        try:
            await asyncio.wait_for(asyncio.shield(acquiring), timeout=timeout)
        except asyncio.TimeoutError as exc:
            await self._abandon(lock, acquiring)
            raise ConcurrencyConflictError(
                f"Timed out after {timeout}s waiting for lock on {key}"
            ) from exc
        except asyncio.CancelledError:
            await self._abandon(lock, acquiring)
            raise
        return lock

    @staticmethod
    async def _abandon(lock: asyncio.Lock, acquiring: "asyncio.Future[bool]") -> None:
        acquiring.cancel()
        await asyncio.wait({acquiring})
        if not acquiring.cancelled():
            lock.release()


account_locks = LockRegistry()


def generate_reference(prefix: str = "TXN") -> str:
    """Globally unique, human-readable transaction reference."""
    return f"{prefix}{uuid.uuid4().hex[:20].upper()}"


class LedgerStore:
    """
    Row-locked read-modify-write primitives bound to one atomic unit.

    Don't construct directly; use `atomic(session_factory)`.
    """

    def __init__(self, session: AsyncSession, lock_timeout: float | None = None):
        self.session = session
        self.lock_timeout = lock_timeout or settings.LEDGER_LOCK_TIMEOUT_SECONDS
        self._held_locks: list[asyncio.Lock] = []
        self._locked_accounts: dict[uuid.UUID, Account] = {}

    # -- locking ---------------------------------------------------------

    async def lock_accounts(self, account_ids) -> dict[uuid.UUID, Account]:
        """
        Lock every given account, in ascending id order, and return them.

        Call once per unit with every account the operation will touch;
        locking more accounts later could break the global order.

        Raises:
            AccountNotFoundError: If any id doesn't exist (the unit then
                rolls back and the locks already taken are released).
            ConcurrencyConflictError: If a lock wait timed out.
        """
        ordered = sorted(set(account_ids))
        for account_id in ordered:
            if account_id in self._locked_accounts:
                continue
            lock = await account_locks.acquire(account_id, self.lock_timeout)
            self._held_locks.append(lock)

            result = await self.session.execute(
                select(Account)
                .where(Account.id == account_id)
                .with_for_update()  # No-op on SQLite, row lock on PostgreSQL
                .execution_options(populate_existing=True)
            )
            account = result.scalar_one_or_none()
            if account is None:
                raise AccountNotFoundError(account_id)
            self._locked_accounts[account_id] = account

        return {account_id: self._locked_accounts[account_id] for account_id in ordered}

    async def find_account_id_by_number(self, account_number: str) -> uuid.UUID:
        """Resolve an account number to an id (no lock taken)."""
        result = await self.session.execute(
            select(Account.id).where(Account.account_number == account_number)
        )
        account_id = result.scalar_one_or_none()
        if account_id is None:
            raise AccountNotFoundError(account_number)
        return account_id

    async def lock_transaction(self, reference: str) -> Transaction:
        """Re-read a transaction with a row lock; lock its accounts first."""
        result = await self.session.execute(
            select(Transaction)
            .where(Transaction.reference == reference)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        txn = result.scalar_one_or_none()
        if txn is None:
            raise TransactionNotFoundError(reference)
        return txn

    async def lock_loan(self, loan_id: uuid.UUID) -> Loan:
        result = await self.session.execute(
            select(Loan)
            .where(Loan.id == loan_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        loan = result.scalar_one_or_none()
        if loan is None:
            raise LoanNotFoundError(loan_id)
        return loan

    # -- mutation --------------------------------------------------------

    async def apply_delta(
        self,
        account_id: uuid.UUID,
        balance_delta: int,
        available_delta: int,
    ) -> Account:
        """
        Add the deltas to a locked account's ledger and available balances.

        Negative deltas are debits. The result must keep
        0 <= available <= balance.

        Raises:
            InsufficientFundsError: If either balance would go negative.
            RuntimeError: If the account wasn't locked in this unit.
        """
        account = self._locked_accounts.get(account_id)
        if account is None:
            raise RuntimeError(f"Account {account_id} must be locked before apply_delta")

        new_balance = account.balance_cents + balance_delta
        new_available = account.available_balance_cents + available_delta

        if new_balance < 0 or new_available < 0:
            raise InsufficientFundsError(
                account_id=account_id,
                requested_cents=max(-balance_delta, -available_delta),
                available_cents=account.available_balance_cents,
            )
        if new_available > new_balance:
            raise ValueError(
                f"Available balance of {account_id} would exceed its ledger balance"
            )

        account.balance_cents = new_balance
        account.available_balance_cents = new_available
        await self.session.flush()
        return account

    async def record_transaction(self, txn: Transaction) -> Transaction:
        """Insert a transaction row in this unit and assign its id."""
        self.session.add(txn)
        await self.session.flush()
        return txn

    def release_locks(self) -> None:
        while self._held_locks:
            self._held_locks.pop().release()
        self._locked_accounts.clear()


@asynccontextmanager
async def atomic(session_factory: async_sessionmaker[AsyncSession]):
    """
    Open one atomic unit: a session, a database transaction, and a lock set.

    Commits when the block exits normally, rolls back on any exception, and
    releases every lock in both cases (after commit, so a waiter never reads
    pre-commit balances).
    """
    async with session_factory() as session:
        ledger = LedgerStore(session)
        try:
            yield ledger
            await session.commit()
        except BaseException:
            await session.rollback()
            raise
        finally:
            ledger.release_locks()


def _is_contention(exc: Exception) -> bool:
    """True for database errors that mean lock contention, not a bug."""
    sqlstate = getattr(getattr(exc, "orig", None), "sqlstate", None) or getattr(
        getattr(exc, "orig", None), "pgcode", None
    )
    if sqlstate in _RETRYABLE_SQLSTATES:
        return True
    message = str(exc).lower()
    return isinstance(exc, OperationalError) and (
        "locked" in message or "deadlock" in message or "could not serialize" in message
    )


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    max_retries: int | None = None,
    backoff_seconds: float | None = None,
    description: str = "ledger operation",
) -> T:
    """
    Run `operation` (which opens its own atomic unit) with bounded retries.

    Only contention is retried: lock-wait timeouts and database lock or
    serialization errors. Each retry starts the operation from the top, so
    validation runs again against fresh balances.
    """
    max_retries = settings.LEDGER_MAX_RETRIES if max_retries is None else max_retries
    backoff_seconds = (
        settings.LEDGER_RETRY_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
    )

    attempt = 0
    while True:
        try:
            return await operation()
        except (ConcurrencyConflictError, DBAPIError) as exc:
            if isinstance(exc, DBAPIError) and not _is_contention(exc):
                raise
            attempt += 1
            if attempt > max_retries:
                logger.warning(
                    "Ledger contention retries exhausted",
                    extra={"operation": description, "attempts": attempt},
                )
                if isinstance(exc, ConcurrencyConflictError):
                    raise
                raise ConcurrencyConflictError() from exc

            # Exponential backoff: base, 2*base, 4*base, ...
            delay = backoff_seconds * (2 ** (attempt - 1))
            logger.info(
                "Retrying ledger operation after contention",
                extra={"operation": description, "attempt": attempt, "delay_seconds": delay},
            )
            await asyncio.sleep(delay)
