"""
Transfer orchestrator — moves money between accounts.

Internal transfers (destination at this bank):
  One atomic unit locks both accounts in ascending id order, re-validates
  everything under the locks, records the transfer as pending, debits the
  source, credits the destination and marks the transfer completed. Either
  all of that commits or none of it does. No fee is charged, so the sum of
  all balances is unchanged.

External transfers (destination bank code is not ours):
  1. Validate the source and ask the gateway whether the destination exists.
  2. Earmark, in one atomic unit: record the transfer as processing, debit
     the amount from the ledger and available balances, and hold the quoted
     fee on the available balance only.
  3. Submit to the gateway with no lock held. A final answer is applied
     immediately; anything else (pending, timeout, gateway error) leaves the
     transfer processing for the webhook or the reconciliation sweep.
     Once the earmark has committed this step never raises: the caller
     always gets the transfer back, so an idempotent retry replays it
     instead of earmarking a second time.
  4. finalize_settlement() applies the outcome exactly once:
       completed -> charge the held fee as a fee transaction
       failed    -> refund the amount with a compensating transaction and
                    release the fee hold

Reversal:
  reverse_transfer() undoes a completed internal transfer with a
  compensating transfer in the opposite direction; the original row moves to
  reversed. History is never rewritten.

Every balance change in this module goes through app.services.ledger_store.
Notifications are emitted only after the unit has committed.
"""

import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.clients.settlement import GatewayResult, SettlementRequest, SettlementStatus
from app.config import settings
from app.exceptions import (
    AccountInactiveError,
    AccountNotFoundError,
    BankAPIError,
    DestinationNotFoundError,
    ExternalGatewayFailureError,
    ExternalGatewayTimeoutError,
    InsufficientFundsError,
    InvalidTransactionStateError,
    TransactionNotFoundError,
    UnauthorizedAccessError,
    ValidationError,
)
from app.models.account import Account
from app.models.transaction import Transaction, TransactionStatus, TransactionType
from app.services.ledger_store import atomic, generate_reference, run_with_retry
from app.services.notification_service import emit_transaction_event
from app.services.settlement_adapter import SettlementAdapter

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _validate_source(source: Account, owner_id: uuid.UUID, currency: str) -> None:
    if source.owner_id != owner_id:
        raise UnauthorizedAccessError("You do not have access to the source account")
    if not source.is_active:
        raise AccountInactiveError(source.id, source.status)
    if source.currency != currency:
        raise ValidationError(
            f"Transfer currency {currency} does not match account currency {source.currency}",
            error_type="currency_mismatch",
        )


def is_external(to_bank_code: str | None) -> bool:
    return to_bank_code is not None and to_bank_code != settings.INTERNAL_BANK_CODE


async def create_transfer(
    session_factory: async_sessionmaker[AsyncSession],
    adapter: SettlementAdapter,
    *,
    owner_id: uuid.UUID,
    from_account_id: uuid.UUID,
    amount_cents: int,
    currency: str,
    to_account_id: uuid.UUID | None = None,
    to_account_number: str | None = None,
    to_bank_code: str | None = None,
    description: str | None = None,
) -> Transaction:
    """
    Execute a transfer, routing it internally or to the settlement gateway.

    Args:
        session_factory: Opens one session per atomic unit.
        adapter: Settlement adapter (used only for external transfers).
        owner_id: The authenticated requester; must own the source account.
        from_account_id: Source account.
        amount_cents: Positive integer amount in cents.
        currency: Must equal the source (and internal destination) currency.
        to_account_id / to_account_number: Destination. External transfers
            need to_account_number.
        to_bank_code: Destination bank; anything other than ours is external.
        description: Optional memo.

    Returns:
        The transfer Transaction: completed for internal transfers;
        processing, completed or failed for external ones.

    Raises:
        ValidationError, AccountNotFoundError, AccountInactiveError,
        UnauthorizedAccessError, InsufficientFundsError,
        DestinationNotFoundError, ConcurrencyConflictError
    """
    if amount_cents <= 0:
        raise ValidationError("Amount must be a positive number of cents", "invalid_amount")

    if is_external(to_bank_code):
        if not to_account_number:
            raise ValidationError("External transfers need to_account_number")
        return await _create_external_transfer(
            session_factory,
            adapter,
            owner_id=owner_id,
            from_account_id=from_account_id,
            to_account_number=to_account_number,
            to_bank_code=to_bank_code,
            amount_cents=amount_cents,
            currency=currency,
            description=description,
        )

    if to_account_id is None and not to_account_number:
        raise ValidationError("A destination account id or number is required")

    return await _create_internal_transfer(
        session_factory,
        owner_id=owner_id,
        from_account_id=from_account_id,
        to_account_id=to_account_id,
        to_account_number=to_account_number,
        amount_cents=amount_cents,
        currency=currency,
        description=description,
    )


async def _create_internal_transfer(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    owner_id: uuid.UUID,
    from_account_id: uuid.UUID,
    to_account_id: uuid.UUID | None,
    to_account_number: str | None,
    amount_cents: int,
    currency: str,
    description: str | None,
) -> Transaction:
    async def operation() -> tuple[Transaction, uuid.UUID]:
        async with atomic(session_factory) as ledger:
            dest_id = to_account_id
            if dest_id is None:
                dest_id = await ledger.find_account_id_by_number(to_account_number)
            if dest_id == from_account_id:
                raise ValidationError(
                    "Source and destination accounts must differ", "same_account"
                )

            # Both locks taken in ascending id order inside lock_accounts
            accounts = await ledger.lock_accounts([from_account_id, dest_id])
            source, dest = accounts[from_account_id], accounts[dest_id]

            _validate_source(source, owner_id, currency)
            if not dest.is_active:
                raise AccountInactiveError(dest.id, dest.status)
            if dest.currency != source.currency:
                raise ValidationError(
                    "Destination account uses a different currency", "currency_mismatch"
                )
            if source.available_balance_cents < amount_cents:
                raise InsufficientFundsError(
                    account_id=source.id,
                    requested_cents=amount_cents,
                    available_cents=source.available_balance_cents,
                )

            txn = Transaction(
                type=TransactionType.TRANSFER.value,
                status=TransactionStatus.PENDING.value,
                amount_cents=amount_cents,
                currency=currency,
                from_account_id=source.id,
                to_account_id=dest.id,
                reference=generate_reference(),
                description=description,
            )
            await ledger.record_transaction(txn)

            await ledger.apply_delta(source.id, -amount_cents, -amount_cents)
            await ledger.apply_delta(dest.id, amount_cents, amount_cents)

            txn.status = TransactionStatus.COMPLETED.value
            txn.processed_at = _utcnow()
            await ledger.session.flush()
            return txn, dest.owner_id

    try:
        txn, dest_owner_id = await run_with_retry(operation, description="internal transfer")
    except (InsufficientFundsError, AccountInactiveError) as exc:
        logger.info(
            "Transfer declined",
            extra={"from_account_id": str(from_account_id), "error_type": exc.error_type},
        )
        raise

    logger.info(
        "Transfer completed",
        extra={
            "reference": txn.reference,
            "from_account_id": str(txn.from_account_id),
            "to_account_id": str(txn.to_account_id),
            "amount_cents": amount_cents,
        },
    )
    emit_transaction_event(txn, owner_id)
    if dest_owner_id != owner_id:
        emit_transaction_event(txn, dest_owner_id)
    return txn


async def _create_external_transfer(
    session_factory: async_sessionmaker[AsyncSession],
    adapter: SettlementAdapter,
    *,
    owner_id: uuid.UUID,
    from_account_id: uuid.UUID,
    to_account_number: str,
    to_bank_code: str,
    amount_cents: int,
    currency: str,
    description: str | None,
) -> Transaction:
    # Cheap checks first so a bad request never reaches the gateway
    async with session_factory() as session:
        source = await session.get(Account, from_account_id)
        if source is None:
            raise AccountNotFoundError(from_account_id)
        _validate_source(source, owner_id, currency)

    destination = await adapter.verify_destination(to_account_number, to_bank_code)
    if destination is None:
        raise DestinationNotFoundError(to_account_number, to_bank_code)

    fee_cents = adapter.quote_fee(amount_cents, to_bank_code, currency)

    async def earmark() -> tuple[Transaction, str]:
        async with atomic(session_factory) as ledger:
            accounts = await ledger.lock_accounts([from_account_id])
            source = accounts[from_account_id]
            _validate_source(source, owner_id, currency)

            required = amount_cents + fee_cents
            if source.available_balance_cents < required:
                raise InsufficientFundsError(
                    account_id=source.id,
                    requested_cents=required,
                    available_cents=source.available_balance_cents,
                )

            txn = Transaction(
                type=TransactionType.TRANSFER.value,
                status=TransactionStatus.PROCESSING.value,
                amount_cents=amount_cents,
                currency=currency,
                from_account_id=source.id,
                fee_cents=fee_cents,
                destination_account_number=to_account_number,
                destination_bank_code=to_bank_code,
                reference=generate_reference(),
                description=description,
            )
            await ledger.record_transaction(txn)

            # Amount leaves the ledger now; the fee is only held
            await ledger.apply_delta(source.id, -amount_cents, -amount_cents)
            await ledger.apply_delta(source.id, 0, -fee_cents)
            return txn, source.account_number

    txn, source_account_number = await run_with_retry(earmark, description="external earmark")
    logger.info(
        "External transfer earmarked",
        extra={
            "reference": txn.reference,
            "amount_cents": amount_cents,
            "fee_cents": fee_cents,
            "bank_code": to_bank_code,
        },
    )

    request = SettlementRequest(
        reference=txn.reference,
        from_account_number=source_account_number,
        destination_account_number=to_account_number,
        destination_bank_code=to_bank_code,
        amount_cents=amount_cents,
        currency=currency,
        narration=description,
    )
    try:
        return await _submit_earmarked(session_factory, adapter, txn, request)
    except (BankAPIError, SQLAlchemyError):
        # Money already moved; the webhook or the sweep settles it from here
        logger.exception(
            "Post-earmark step failed, left for reconciliation",
            extra={"reference": txn.reference},
        )
        return txn


async def _submit_earmarked(
    session_factory: async_sessionmaker[AsyncSession],
    adapter: SettlementAdapter,
    txn: Transaction,
    request: SettlementRequest,
) -> Transaction:
    try:
        result = await adapter.initiate(request)
    except (ExternalGatewayTimeoutError, ExternalGatewayFailureError) as exc:
        # Outcome unknown: the gateway may or may not have the transfer.
        # The sweep asks again later; the funds stay earmarked until then.
        logger.warning(
            "External submission unconfirmed, left for reconciliation",
            extra={"reference": txn.reference, "error_type": exc.error_type},
        )
        return txn

    if result.is_final:
        return await finalize_settlement(session_factory, txn.reference, result)

    if result.external_reference:
        txn = await _record_external_reference(
            session_factory, txn.reference, result.external_reference
        )
    logger.info(
        "External transfer submitted",
        extra={"reference": txn.reference, "gateway_status": result.status.value},
    )
    return txn


async def _record_external_reference(
    session_factory: async_sessionmaker[AsyncSession],
    reference: str,
    external_reference: str,
) -> Transaction:
    async with session_factory() as session:
        result = await session.execute(
            select(Transaction).where(Transaction.reference == reference)
        )
        txn = result.scalar_one()
        if txn.external_reference is None:
            txn.external_reference = external_reference
        await session.commit()
        return txn


async def finalize_settlement(
    session_factory: async_sessionmaker[AsyncSession],
    reference: str,
    result: GatewayResult,
) -> Transaction:
    """
    Apply a final gateway outcome to a processing external transfer.

    Exactly-once: the source account and the transaction are locked and the
    status must still be processing. A late or repeated outcome for a
    transfer that is already final is a no-op that returns it unchanged.

    The fee charged is always the fee quoted and held at submission; a
    different fee reported by the gateway is logged, not applied.

    Raises:
        TransactionNotFoundError: Unknown reference.
        InvalidTransactionStateError: The reference isn't an external transfer.
        ValueError: `result` isn't final.
    """
    if not result.is_final:
        raise ValueError(f"Cannot finalize {reference} with status {result.status.value}")

    async def operation() -> tuple[Transaction, bool, uuid.UUID | None]:
        async with atomic(session_factory) as ledger:
            # Locks go account first, then transaction
            peek = await ledger.session.execute(
                select(Transaction.from_account_id, Transaction.destination_bank_code)
                .where(Transaction.reference == reference)
            )
            row = peek.one_or_none()
            if row is None:
                raise TransactionNotFoundError(reference)
            if row.destination_bank_code is None or row.from_account_id is None:
                raise InvalidTransactionStateError(reference, "internal", "settle")

            accounts = await ledger.lock_accounts([row.from_account_id])
            source = accounts[row.from_account_id]
            txn = await ledger.lock_transaction(reference)
            if txn.status != TransactionStatus.PROCESSING.value:
                return txn, False, None

            now = _utcnow()
            if result.external_reference and txn.external_reference is None:
                txn.external_reference = result.external_reference

            if result.status == SettlementStatus.COMPLETED:
                if result.fee_cents is not None and result.fee_cents != txn.fee_cents:
                    logger.warning(
                        "Gateway fee differs from quoted fee; charging the quote",
                        extra={
                            "reference": reference,
                            "quoted_fee_cents": txn.fee_cents,
                            "gateway_fee_cents": result.fee_cents,
                        },
                    )
                if txn.fee_cents > 0:
                    fee_txn = Transaction(
                        type=TransactionType.FEE.value,
                        status=TransactionStatus.COMPLETED.value,
                        amount_cents=txn.fee_cents,
                        currency=txn.currency,
                        from_account_id=source.id,
                        reference=generate_reference("FEE"),
                        description=f"Settlement fee for {reference}",
                        processed_at=now,
                    )
                    await ledger.record_transaction(fee_txn)
                    # The hold already reduced available; only the ledger moves
                    await ledger.apply_delta(source.id, -txn.fee_cents, 0)
                txn.status = TransactionStatus.COMPLETED.value
            else:
                refund = Transaction(
                    type=TransactionType.TRANSFER.value,
                    status=TransactionStatus.COMPLETED.value,
                    amount_cents=txn.amount_cents,
                    currency=txn.currency,
                    to_account_id=source.id,
                    reversal_of_id=txn.id,
                    reference=generate_reference("REV"),
                    description=f"Refund of failed transfer {reference}",
                    processed_at=now,
                )
                await ledger.record_transaction(refund)
                await ledger.apply_delta(source.id, txn.amount_cents, txn.amount_cents)
                if txn.fee_cents > 0:
                    await ledger.apply_delta(source.id, 0, txn.fee_cents)
                txn.status = TransactionStatus.FAILED.value

            txn.processed_at = now
            await ledger.session.flush()
            return txn, True, source.owner_id

    txn, applied, owner_id = await run_with_retry(operation, description="settlement finalization")
    if not applied:
        logger.info(
            "Settlement outcome ignored, transfer already final",
            extra={"reference": reference, "status": txn.status},
        )
        return txn

    logger.info(
        "External transfer finalized",
        extra={
            "reference": reference,
            "status": txn.status,
            "external_reference": txn.external_reference,
        },
    )
    emit_transaction_event(txn, owner_id)
    return txn


async def reverse_transfer(
    session_factory: async_sessionmaker[AsyncSession],
    reference: str,
) -> Transaction:
    """
    Reverse a completed internal transfer with a compensating transfer.

    Returns:
        The compensating Transaction (destination -> source, completed).

    Raises:
        TransactionNotFoundError: Unknown reference.
        InvalidTransactionStateError: Not a completed internal transfer, or
            itself a compensating transaction.
        InsufficientFundsError: The destination no longer holds the funds.
    """

    async def operation() -> tuple[Transaction, Transaction, uuid.UUID, uuid.UUID]:
        async with atomic(session_factory) as ledger:
            peek = await ledger.session.execute(
                select(Transaction).where(Transaction.reference == reference)
            )
            original = peek.scalar_one_or_none()
            if original is None:
                raise TransactionNotFoundError(reference)
            _check_reversible(original)

            accounts = await ledger.lock_accounts(
                [original.from_account_id, original.to_account_id]
            )
            original = await ledger.lock_transaction(reference)
            _check_reversible(original)

            amount = original.amount_cents
            await ledger.apply_delta(original.to_account_id, -amount, -amount)
            await ledger.apply_delta(original.from_account_id, amount, amount)

            compensation = Transaction(
                type=TransactionType.TRANSFER.value,
                status=TransactionStatus.COMPLETED.value,
                amount_cents=amount,
                currency=original.currency,
                from_account_id=original.to_account_id,
                to_account_id=original.from_account_id,
                reversal_of_id=original.id,
                reference=generate_reference("REV"),
                description=f"Reversal of {reference}",
                processed_at=_utcnow(),
            )
            await ledger.record_transaction(compensation)
            original.status = TransactionStatus.REVERSED.value
            await ledger.session.flush()
            return (
                original,
                compensation,
                accounts[original.from_account_id].owner_id,
                accounts[original.to_account_id].owner_id,
            )

    original, compensation, source_owner, dest_owner = await run_with_retry(
        operation, description="transfer reversal"
    )
    logger.info(
        "Transfer reversed",
        extra={"reference": reference, "compensation_reference": compensation.reference},
    )
    emit_transaction_event(compensation, source_owner)
    if dest_owner != source_owner:
        emit_transaction_event(compensation, dest_owner)
    return compensation


def _check_reversible(txn: Transaction) -> None:
    if (
        txn.type != TransactionType.TRANSFER.value
        or txn.status != TransactionStatus.COMPLETED.value
        or txn.from_account_id is None
        or txn.to_account_id is None
        or txn.reversal_of_id is not None
    ):
        raise InvalidTransactionStateError(txn.reference, txn.status, "reverse")


async def get_transfer(
    db: AsyncSession,
    reference: str,
    owner_id: uuid.UUID,
) -> Transaction:
    """
    Look up a transfer by reference for one of the two parties.

    Raises:
        TransactionNotFoundError: Unknown reference, or the requester owns
            neither side (not revealed as 403).
    """
    result = await db.execute(select(Transaction).where(Transaction.reference == reference))
    txn = result.scalar_one_or_none()
    if txn is None:
        raise TransactionNotFoundError(reference)

    party_ids = [i for i in (txn.from_account_id, txn.to_account_id) if i is not None]
    owned = await db.execute(
        select(Account.id).where(Account.id.in_(party_ids), Account.owner_id == owner_id)
    )
    if owned.first() is None:
        raise TransactionNotFoundError(reference)
    return txn


async def list_processing_references(db: AsyncSession, limit: int = 100) -> list[str]:
    """References of external transfers still waiting for a settlement outcome."""
    result = await db.execute(
        select(Transaction.reference)
        .where(Transaction.status == TransactionStatus.PROCESSING.value)
        .where(Transaction.destination_bank_code.is_not(None))
        .order_by(Transaction.created_at)
        .limit(limit)
    )
    return list(result.scalars().all())
