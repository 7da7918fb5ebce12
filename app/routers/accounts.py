"""
Accounts router — bank account management endpoints.

Member endpoints (require JWT, scoped to the authenticated user):
    POST   /accounts                        — Open a new account
    GET    /accounts                        — List own accounts
    GET    /accounts/{account_id}           — Get own account details
    GET    /accounts/{account_id}/balance   — Cached vs. computed balance
    POST   /accounts/{account_id}/close     — Close a zero-balance account

Admin account endpoints live in app/routers/admin.py.
"""

import uuid

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.database import get_db, get_session_factory
from app.dependencies import Principal, get_current_principal
from app.schemas.account import AccountCreateRequest, AccountResponse, BalanceResponse
from app.services import account_service

router = APIRouter()


@router.post(
    "",
    response_model=AccountResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Open a new bank account",
)
async def create_account(
    request: AccountCreateRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    """
    Open a new checking or savings account.

    The account starts with a zero balance and a randomly generated
    10-digit account number. The authenticated user becomes the owner.
    The currency can't be changed later.
    """
    return await account_service.create_account(
        db=db,
        owner_id=principal.user_id,
        account_type=request.account_type,
        currency=request.currency,
    )


@router.get(
    "",
    response_model=list[AccountResponse],
    summary="List your accounts",
)
async def list_accounts(
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    """List all bank accounts owned by the authenticated user."""
    return await account_service.get_accounts(db, principal.user_id)


@router.get(
    "/{account_id}",
    response_model=AccountResponse,
    summary="Get account details",
)
async def get_account(
    account_id: uuid.UUID,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    """
    Get details for a specific account.

    Returns 403 if the account belongs to a different user, or 404 if
    the account doesn't exist.
    """
    return await account_service.get_account(db, account_id, principal.user_id)


@router.get(
    "/{account_id}/balance",
    response_model=BalanceResponse,
    summary="Check account balance",
)
async def get_balance(
    account_id: uuid.UUID,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    """
    Get the account balance — both cached and computed from transactions.

    The response includes a `match` boolean indicating whether the cached
    balance agrees with the replayed transaction history, and `held_cents`
    for fees held against external transfers still in flight.
    """
    return await account_service.get_balance(db, account_id, principal.user_id)


@router.post(
    "/{account_id}/close",
    response_model=AccountResponse,
    summary="Close an account",
)
async def close_account(
    account_id: uuid.UUID,
    principal: Principal = Depends(get_current_principal),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    """
    Close an account. The balance must be exactly zero with nothing on hold.

    Closed accounts can't send or receive money; they're kept for history.
    """
    return await account_service.close_account(session_factory, account_id, principal.user_id)
