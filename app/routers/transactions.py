"""
Transactions router — deposits, withdrawals and history for an account.

Member endpoints (scoped to authenticated user's accounts):
  POST /accounts/{account_id}/transactions       — Deposit or withdraw
  GET  /accounts/{account_id}/transactions        — List transactions (with filters)
  GET  /accounts/{account_id}/transactions/{id}   — Get a single transaction

POST accepts an optional Idempotency-Key header; with it, a retried
request returns the original response instead of posting twice.
"""

import uuid

from fastapi import APIRouter, Depends, Header, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.database import get_db, get_session_factory
from app.dependencies import Principal, get_current_principal, get_idempotency_manager
from app.schemas.transaction import (
    TransactionCreateRequest,
    TransactionResponse,
)
from app.services import transaction_service
from app.services.idempotency_service import IdempotencyManager, run_idempotent

router = APIRouter()


@router.post(
    "/{account_id}/transactions",
    response_model=TransactionResponse,
    status_code=201,
    summary="Deposit to or withdraw from an account",
)
async def create_transaction(
    account_id: uuid.UUID,
    body: TransactionCreateRequest,
    request: Request,
    idempotency_key: str | None = Header(
        None, alias="Idempotency-Key", min_length=1, max_length=255
    ),
    principal: Principal = Depends(get_current_principal),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    idempotency: IdempotencyManager = Depends(get_idempotency_manager),
):
    """
    Post a deposit or withdrawal.

    - **deposit**: Adds money to the account
    - **withdrawal**: Removes money; rejected if the *available* balance
      is too low (funds held for external transfers don't count)

    All amounts are in **integer cents** (e.g., $10.50 = 1050).
    """

    async def operation():
        txn = await transaction_service.create_transaction(
            session_factory,
            account_id=account_id,
            owner_id=principal.user_id,
            txn_type=body.type,
            amount_cents=body.amount_cents,
            description=body.description,
        )
        return 201, TransactionResponse.model_validate(txn)

    return await run_idempotent(
        idempotency,
        scope=f"{principal.user_id}:POST {request.url.path}",
        key=idempotency_key,
        payload=body.model_dump(mode="json"),
        operation=operation,
    )


@router.get(
    "/{account_id}/transactions",
    response_model=list[TransactionResponse],
    summary="List transactions for an account",
)
async def list_transactions(
    account_id: uuid.UUID,
    status: str | None = Query(None, description="Filter by status"),
    type: str | None = Query(None, description="Filter by type"),
    limit: int = Query(50, ge=1, le=200, description="Max results"),
    offset: int = Query(0, ge=0, description="Skip N results"),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    """
    List transactions for an account with optional filters.

    Results are ordered by creation time, newest first. Use limit/offset
    for pagination.
    """
    return await transaction_service.get_transactions(
        db=db,
        account_id=account_id,
        owner_id=principal.user_id,
        status_filter=status,
        type_filter=type,
        limit=limit,
        offset=offset,
    )


@router.get(
    "/{account_id}/transactions/{transaction_id}",
    response_model=TransactionResponse,
    summary="Get a single transaction",
)
async def get_transaction(
    account_id: uuid.UUID,
    transaction_id: uuid.UUID,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    """Get details for a specific transaction on one of your accounts."""
    return await transaction_service.get_transaction(
        db=db,
        account_id=account_id,
        transaction_id=transaction_id,
        owner_id=principal.user_id,
    )
