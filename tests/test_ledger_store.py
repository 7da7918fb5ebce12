"""
Tests for the ledger store primitives.

These tests exercise app.services.ledger_store directly (no HTTP):
  - atomic() commits on success and rolls back everything on error
  - Locks are released when a unit ends, however it ends
  - apply_delta refuses unlocked accounts, overdrafts and holds > balance
  - lock_accounts takes locks in ascending id order
  - run_with_retry retries contention only, with a bounded budget
"""

import asyncio
import uuid

import pytest
from sqlalchemy.exc import OperationalError

from app.exceptions import (
    AccountNotFoundError,
    ConcurrencyConflictError,
    InsufficientFundsError,
    TransactionNotFoundError,
)
from app.models.account import Account
from app.services.ledger_store import (
    LockRegistry,
    account_locks,
    atomic,
    generate_reference,
    run_with_retry,
)


async def make_account(session_factory, balance_cents=0, available_cents=None):
    account = Account(
        owner_id=uuid.uuid4(),
        account_number=str(uuid.uuid4().int)[:10],
        balance_cents=balance_cents,
        available_balance_cents=balance_cents if available_cents is None else available_cents,
    )
    async with session_factory() as session:
        session.add(account)
        await session.commit()
    return account.id


async def balances(session_factory, account_id):
    async with session_factory() as session:
        account = await session.get(Account, account_id)
        return account.balance_cents, account.available_balance_cents


class TestAtomicUnit:
    """Tests for atomic() and LedgerStore.apply_delta."""

    async def test_commit_on_success(self, session_factory):
        a = await make_account(session_factory, 1000)
        b = await make_account(session_factory)

        async with atomic(session_factory) as ledger:
            await ledger.lock_accounts([a, b])
            await ledger.apply_delta(a, -400, -400)
            await ledger.apply_delta(b, 400, 400)

        assert await balances(session_factory, a) == (600, 600)
        assert await balances(session_factory, b) == (400, 400)

    async def test_rollback_on_error(self, session_factory):
        """A debit without its credit is never visible."""
        a = await make_account(session_factory, 1000)
        b = await make_account(session_factory)

        with pytest.raises(RuntimeError, match="boom"):
            async with atomic(session_factory) as ledger:
                await ledger.lock_accounts([a, b])
                await ledger.apply_delta(a, -400, -400)
                raise RuntimeError("boom")

        assert await balances(session_factory, a) == (1000, 1000)
        assert await balances(session_factory, b) == (0, 0)

    async def test_locks_released_after_unit(self, session_factory):
        a = await make_account(session_factory, 1000)

        with pytest.raises(InsufficientFundsError):
            async with atomic(session_factory) as ledger:
                await ledger.lock_accounts([a])
                assert account_locks.get(a).locked()
                await ledger.apply_delta(a, -5000, -5000)

        assert not account_locks.get(a).locked()

    async def test_apply_delta_requires_lock(self, session_factory):
        a = await make_account(session_factory, 1000)

        with pytest.raises(RuntimeError):
            async with atomic(session_factory) as ledger:
                await ledger.apply_delta(a, 100, 100)

    async def test_overdraft_refused(self, session_factory):
        a = await make_account(session_factory, 1000)

        with pytest.raises(InsufficientFundsError) as exc_info:
            async with atomic(session_factory) as ledger:
                await ledger.lock_accounts([a])
                await ledger.apply_delta(a, -1001, -1001)

        assert exc_info.value.requested_cents == 1001
        assert exc_info.value.available_cents == 1000

    async def test_hold_reduces_available_only(self, session_factory):
        a = await make_account(session_factory, 1000)

        async with atomic(session_factory) as ledger:
            await ledger.lock_accounts([a])
            await ledger.apply_delta(a, 0, -300)

        assert await balances(session_factory, a) == (1000, 700)

    async def test_available_cannot_exceed_balance(self, session_factory):
        a = await make_account(session_factory, 1000)

        with pytest.raises(ValueError):
            async with atomic(session_factory) as ledger:
                await ledger.lock_accounts([a])
                await ledger.apply_delta(a, 0, 1)

        assert await balances(session_factory, a) == (1000, 1000)

    async def test_unknown_account(self, session_factory):
        with pytest.raises(AccountNotFoundError):
            async with atomic(session_factory) as ledger:
                await ledger.lock_accounts([uuid.uuid4()])

    async def test_unknown_account_number(self, session_factory):
        with pytest.raises(AccountNotFoundError):
            async with atomic(session_factory) as ledger:
                await ledger.find_account_id_by_number("0000000000")

    async def test_unknown_transaction(self, session_factory):
        with pytest.raises(TransactionNotFoundError):
            async with atomic(session_factory) as ledger:
                await ledger.lock_transaction("TXNNOPE")

    async def test_lock_accounts_returns_ascending_ids(self, session_factory):
        ids = [await make_account(session_factory) for _ in range(3)]

        async with atomic(session_factory) as ledger:
            locked = await ledger.lock_accounts(list(reversed(ids)))

        assert list(locked) == sorted(ids)

    async def test_opposite_order_units_do_not_deadlock(self, session_factory):
        """Two units naming the same pair in opposite orders both finish."""
        a = await make_account(session_factory, 1000)
        b = await make_account(session_factory, 1000)

        async def move(src, dst):
            async with atomic(session_factory) as ledger:
                await ledger.lock_accounts([src, dst])
                await asyncio.sleep(0.01)
                await ledger.apply_delta(src, -100, -100)
                await ledger.apply_delta(dst, 100, 100)

        await asyncio.wait_for(
            asyncio.gather(*[move(a, b) if i % 2 else move(b, a) for i in range(10)]),
            timeout=10,
        )

        assert await balances(session_factory, a) == (1000, 1000)
        assert await balances(session_factory, b) == (1000, 1000)


class TestLockRegistry:
    """Tests for LockRegistry."""

    async def test_same_key_same_lock(self):
        registry = LockRegistry()
        assert registry.get("k") is registry.get("k")
        assert registry.get("k") is not registry.get("other")

    async def test_acquire_timeout(self):
        registry = LockRegistry()
        held = await registry.acquire("k", timeout=1)

        with pytest.raises(ConcurrencyConflictError):
            await registry.acquire("k", timeout=0.05)

        held.release()
        again = await registry.acquire("k", timeout=1)
        again.release()

    async def test_timed_out_waiter_does_not_keep_lock(self):
        registry = LockRegistry()
        held = await registry.acquire("k", timeout=1)

        with pytest.raises(ConcurrencyConflictError):
            await registry.acquire("k", timeout=0.01)
        held.release()

        assert not registry.get("k").locked()
        again = await registry.acquire("k", timeout=0.5)
        again.release()

    async def test_cancelled_waiter_releases_handed_over_lock(self):
        """The holder releases just as the waiter is cancelled."""
        registry = LockRegistry()
        held = await registry.acquire("k", timeout=1)
        waiter = asyncio.create_task(registry.acquire("k", timeout=5))
        await asyncio.sleep(0.01)

        waiter.cancel()
        held.release()
        with pytest.raises(asyncio.CancelledError):
            await waiter

        assert not registry.get("k").locked()
        again = await registry.acquire("k", timeout=0.5)
        again.release()


class TestRunWithRetry:
    """Tests for run_with_retry."""

    async def test_retries_contention_then_succeeds(self):
        attempts = []

        async def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise ConcurrencyConflictError()
            return "done"

        result = await run_with_retry(flaky, max_retries=4, backoff_seconds=0.001)
        assert result == "done"
        assert len(attempts) == 3

    async def test_retries_locked_database(self):
        attempts = []

        async def flaky():
            attempts.append(1)
            if len(attempts) == 1:
                raise OperationalError("UPDATE accounts", {}, Exception("database is locked"))
            return "done"

        assert await run_with_retry(flaky, max_retries=2, backoff_seconds=0.001) == "done"

    async def test_gives_up_after_budget(self):
        attempts = []

        async def always_busy():
            attempts.append(1)
            raise OperationalError("UPDATE accounts", {}, Exception("database is locked"))

        with pytest.raises(ConcurrencyConflictError):
            await run_with_retry(always_busy, max_retries=2, backoff_seconds=0.001)
        assert len(attempts) == 3

    async def test_business_errors_not_retried(self):
        attempts = []

        async def declined():
            attempts.append(1)
            raise InsufficientFundsError(uuid.uuid4(), 10, 0)

        with pytest.raises(InsufficientFundsError):
            await run_with_retry(declined, max_retries=3, backoff_seconds=0.001)
        assert len(attempts) == 1

    async def test_other_database_errors_not_retried(self):
        attempts = []

        async def broken():
            attempts.append(1)
            raise OperationalError("SELECT", {}, Exception("no such table: accounts"))

        with pytest.raises(OperationalError):
            await run_with_retry(broken, max_retries=3, backoff_seconds=0.001)
        assert len(attempts) == 1


class TestReferences:
    def test_reference_format(self):
        reference = generate_reference()
        assert reference.startswith("TXN")
        assert len(reference) == 23
        assert reference == reference.upper()

    def test_references_are_unique(self):
        assert len({generate_reference("FEE") for _ in range(1000)}) == 1000
