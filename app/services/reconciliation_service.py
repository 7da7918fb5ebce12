"""
Reconciliation sweep — settles external transfers nobody told us about.

An external transfer stays processing when the gateway answered "pending",
timed out, or errored during submission. The settlement webhook normally
finalizes it; this sweep is the safety net. For every processing external
transfer it polls the gateway and hands final answers to
transfer_service.finalize_settlement(), the same code path the webhook uses,
so a transfer is settled once no matter which of them gets there first.

The sweep also purges idempotency records past their retention window.

run_reconciliation_loop() is started as a background task from the
application lifespan when RECONCILIATION_ENABLED is true.
"""

import asyncio
import logging
from dataclasses import dataclass, field

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.exceptions import BankAPIError
from app.models.transaction import TransactionStatus
from app.services import transfer_service
from app.services.idempotency_service import IdempotencyManager
from app.services.settlement_adapter import SettlementAdapter

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    examined: int = 0
    completed: int = 0
    failed: int = 0
    still_processing: int = 0
    errors: int = 0
    idempotency_records_purged: int = 0
    finalized_references: list[str] = field(default_factory=list)


async def reconcile_processing_transfers(
    session_factory: async_sessionmaker[AsyncSession],
    adapter: SettlementAdapter,
    batch_size: int = 100,
) -> SweepReport:
    """Poll the gateway for every processing external transfer and settle final ones."""
    report = SweepReport()

    async with session_factory() as session:
        references = await transfer_service.list_processing_references(session, batch_size)

    for reference in references:
        report.examined += 1
        try:
            result = await adapter.poll_status(reference)
            if not result.is_final:
                report.still_processing += 1
                continue
            txn = await transfer_service.finalize_settlement(session_factory, reference, result)
        except BankAPIError as exc:
            # One stuck transfer must not block the rest of the batch
            report.errors += 1
            logger.warning(
                "Reconciliation failed for transfer",
                extra={"reference": reference, "error_type": exc.error_type},
            )
            continue

        if txn.status == TransactionStatus.COMPLETED.value:
            report.completed += 1
        elif txn.status == TransactionStatus.FAILED.value:
            report.failed += 1
        report.finalized_references.append(reference)

    report.idempotency_records_purged = await IdempotencyManager(session_factory).purge_expired()

    logger.info(
        "Reconciliation sweep finished",
        extra={
            "examined": report.examined,
            "completed": report.completed,
            "failed": report.failed,
            "still_processing": report.still_processing,
            "errors": report.errors,
            "idempotency_records_purged": report.idempotency_records_purged,
        },
    )
    return report


async def run_reconciliation_loop(
    session_factory: async_sessionmaker[AsyncSession],
    adapter: SettlementAdapter,
    interval_seconds: float | None = None,
) -> None:
    """Run sweeps forever, every `interval_seconds`, until cancelled."""
    interval = interval_seconds or settings.RECONCILIATION_INTERVAL_SECONDS
    while True:
        try:
            await reconcile_processing_transfers(session_factory, adapter)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Reconciliation sweep crashed; retrying next interval")
        await asyncio.sleep(interval)
