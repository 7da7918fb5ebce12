"""
Idempotency manager — exactly-once execution of mutating requests.

A client that retries a transfer (network blip, timeout, double click)
sends the same Idempotency-Key. The first request runs; every later request
with the same key and body gets the first response back, byte for byte,
without moving money again.

Protocol for one request:

    outcome = await manager.begin(scope, key, fingerprint)
    if isinstance(outcome, Duplicate):
        return outcome.body                       # no re-execution
    try:
        response = await do_the_work()
    except RetryableError:
        await manager.abandon(scope, key)         # client may retry the key
        raise
    await manager.complete(scope, key, status, response)

Serialization per key:
  - Within one process, a per-(scope, key) asyncio.Lock is held from a
    Fresh begin() until complete()/abandon(). A concurrent duplicate waits
    on that lock and then finds the completed record.
  - Across processes, the (scope, key) primary key means only one worker
    can insert the provisional record. The others poll it with backoff until
    it completes or the wait budget runs out.
  - Unrelated keys never share a lock.

A provisional record carries a lease (locked_until). If the worker that
created it died, the lease runs out and the next caller takes the record
over with a compare-and-set update.
"""

import asyncio
import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, Response
from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.exceptions import BankAPIError, ConcurrencyConflictError, IdempotencyKeyConflictError
from app.models.idempotency_record import (
    IdempotencyRecord,
    STATE_COMPLETED,
    STATE_IN_PROGRESS,
)
from app.services.ledger_store import LockRegistry

logger = logging.getLogger(__name__)

idempotency_locks = LockRegistry()

_MAX_POLL_DELAY_SECONDS = 1.0


@dataclass(frozen=True)
class Fresh:
    """The caller owns the key and must run the operation."""


@dataclass(frozen=True)
class Duplicate:
    """The key already completed; replay this response."""

    status_code: int
    body: str


FRESH = Fresh()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def request_fingerprint(payload: Any) -> str:
    """SHA-256 over the canonical JSON form of a request body."""
    canonical = json.dumps(
        jsonable_encoder(payload),
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class IdempotencyManager:
    """
    Persistent idempotency store with per-key serialization.

    One instance per request; the lock registry is process-wide.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        ttl: timedelta | None = None,
        wait_timeout: float | None = None,
        lease: timedelta | None = None,
        locks: LockRegistry = idempotency_locks,
    ):
        self._session_factory = session_factory
        self._ttl = ttl or timedelta(hours=settings.IDEMPOTENCY_TTL_HOURS)
        self._wait_timeout = (
            settings.IDEMPOTENCY_WAIT_TIMEOUT_SECONDS if wait_timeout is None else wait_timeout
        )
        self._lease = lease or timedelta(seconds=settings.IDEMPOTENCY_LEASE_SECONDS)
        self._locks = locks
        self._held: dict[tuple[str, str], asyncio.Lock] = {}

    async def begin(self, scope: str, key: str, fingerprint: str) -> Fresh | Duplicate:
        """
        Claim a key, or report that it already completed.

        Raises:
            IdempotencyKeyConflictError: The key was used with another body.
            ConcurrencyConflictError: The original request is still running
                after the wait budget. Nothing ran; retry later.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._wait_timeout

        lock = await self._locks.acquire((scope, key), timeout=self._wait_timeout)
        try:
            outcome = await self._claim(scope, key, fingerprint, deadline)
        except BaseException:
            lock.release()
            raise

        if isinstance(outcome, Duplicate):
            lock.release()
        else:
            self._held[(scope, key)] = lock
        return outcome

    async def _claim(
        self, scope: str, key: str, fingerprint: str, deadline: float
    ) -> Fresh | Duplicate:
        loop = asyncio.get_running_loop()
        delay = 0.05

        while True:
            now = _utcnow()
            async with self._session_factory() as session:
                # Records past retention are treated as if they never existed
                await session.execute(
                    delete(IdempotencyRecord).where(
                        IdempotencyRecord.scope == scope,
                        IdempotencyRecord.key == key,
                        IdempotencyRecord.expires_at <= now,
                    )
                )
                await session.commit()

                record = await session.get(
                    IdempotencyRecord, (scope, key), populate_existing=True
                )

                if record is None:
                    session.add(
                        IdempotencyRecord(
                            scope=scope,
                            key=key,
                            request_fingerprint=fingerprint,
                            state=STATE_IN_PROGRESS,
                            locked_until=now + self._lease,
                            created_at=now,
                            expires_at=now + self._ttl,
                        )
                    )
                    try:
                        await session.commit()
                    except IntegrityError:
                        # Another worker inserted first; look again
                        await session.rollback()
                        continue
                    return FRESH

                if record.request_fingerprint != fingerprint:
                    logger.warning(
                        "Idempotency key reused with a different request",
                        extra={"scope": scope, "idempotency_key": key},
                    )
                    raise IdempotencyKeyConflictError(key)

                if record.state == STATE_COMPLETED:
                    return Duplicate(
                        status_code=record.response_status_code,
                        body=record.response_body,
                    )

                lease_expired = record.locked_until is None or _as_utc(record.locked_until) <= now
                if lease_expired:
                    result = await session.execute(
                        update(IdempotencyRecord)
                        .where(
                            IdempotencyRecord.scope == scope,
                            IdempotencyRecord.key == key,
                            IdempotencyRecord.state == STATE_IN_PROGRESS,
                            IdempotencyRecord.locked_until == record.locked_until,
                        )
                        .values(locked_until=now + self._lease)
                    )
                    await session.commit()
                    if result.rowcount == 1:
                        logger.warning(
                            "Took over idempotency record with expired lease",
                            extra={"scope": scope, "idempotency_key": key},
                        )
                        return FRESH
                    continue

            if loop.time() >= deadline:
                raise ConcurrencyConflictError(
                    "A request with this Idempotency-Key is still being processed"
                )
            await asyncio.sleep(delay)
            delay = min(delay * 2, _MAX_POLL_DELAY_SECONDS)

    async def complete(self, scope: str, key: str, status_code: int, body: str) -> None:
        """Store the final response for a key this instance claimed."""
        try:
            async with self._session_factory() as session:
                await session.execute(
                    update(IdempotencyRecord)
                    .where(IdempotencyRecord.scope == scope, IdempotencyRecord.key == key)
                    .values(
                        state=STATE_COMPLETED,
                        response_status_code=status_code,
                        response_body=body,
                        locked_until=None,
                    )
                )
                await session.commit()
        finally:
            self._release(scope, key)

    async def abandon(self, scope: str, key: str) -> None:
        """Drop a provisional record so the same key can be retried."""
        try:
            async with self._session_factory() as session:
                await session.execute(
                    delete(IdempotencyRecord).where(
                        IdempotencyRecord.scope == scope,
                        IdempotencyRecord.key == key,
                        IdempotencyRecord.state == STATE_IN_PROGRESS,
                    )
                )
                await session.commit()
        finally:
            self._release(scope, key)

    async def purge_expired(self) -> int:
        """Delete every record past its retention window. Returns the count."""
        async with self._session_factory() as session:
            result = await session.execute(
                delete(IdempotencyRecord).where(IdempotencyRecord.expires_at <= _utcnow())
            )
            await session.commit()
            return result.rowcount or 0

    def _release(self, scope: str, key: str) -> None:
        lock = self._held.pop((scope, key), None)
        if lock is not None:
            lock.release()


def _render(status_code: int, content: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=jsonable_encoder(content))


async def run_idempotent(
    manager: IdempotencyManager,
    *,
    scope: str,
    key: str | None,
    payload: Any,
    operation: Callable[[], Awaitable[tuple[int, Any]]],
) -> Response:
    """
    Run `operation` at most once per (scope, key) and return its response.

    `operation` returns (status_code, content). Domain errors that are final
    (validation, not found, insufficient funds, ...) are stored like any
    other response, so a replay gets the same error back. Retryable errors
    and unexpected exceptions abandon the key and propagate.

    Without a key the operation simply runs.
    """
    if key is None:
        status_code, content = await operation()
        return _render(status_code, content)

    outcome = await manager.begin(scope, key, request_fingerprint(payload))
    if isinstance(outcome, Duplicate):
        logger.info(
            "Replaying stored response for idempotency key",
            extra={"scope": scope, "idempotency_key": key},
        )
        return Response(
            content=outcome.body,
            status_code=outcome.status_code,
            media_type="application/json",
            headers={"Idempotent-Replayed": "true"},
        )

    try:
        status_code, content = await operation()
        response = _render(status_code, content)
    except BankAPIError as exc:
        if exc.retryable:
            await manager.abandon(scope, key)
            raise
        response = _render(exc.status_code, exc.to_payload())
    except BaseException:
        await manager.abandon(scope, key)
        raise

    await manager.complete(scope, key, response.status_code, response.body.decode("utf-8"))
    return response
