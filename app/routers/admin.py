"""
Admin router — operational endpoints for ledger operators.

All endpoints require the admin role.

Endpoints:
  GET  /admin/accounts/{account_id}/balance      — Any account's balance
  POST /admin/accounts/{account_id}/status       — Suspend / deactivate / reactivate
  GET  /admin/transactions/{reference}           — Any transaction by reference
  POST /admin/transfers/{reference}/reverse      — Compensating reversal
  POST /admin/settlements/reconcile              — Run one reconciliation sweep now
  POST /admin/loans/{loan_id}/approve            — pending -> approved
  POST /admin/loans/{loan_id}/disburse           — approved -> active, funds the loan
  POST /admin/loans/{loan_id}/default            — active -> defaulted

By consolidating all admin routes in one router, we avoid route-ordering
conflicts that arise when multiple routers share a prefix and have
overlapping parameterized paths.
"""

import uuid
from dataclasses import asdict

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.database import get_db, get_session_factory
from app.dependencies import Principal, get_settlement_adapter, require_admin
from app.schemas.account import AccountResponse, AccountStatusUpdateRequest, BalanceResponse
from app.schemas.loan import LoanDisbursementRequest, LoanResponse
from app.schemas.settlement import ReconciliationReportResponse
from app.schemas.transaction import TransactionResponse
from app.services import (
    account_service,
    loan_service,
    reconciliation_service,
    transaction_service,
    transfer_service,
)
from app.services.settlement_adapter import SettlementAdapter

router = APIRouter()


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------

@router.get(
    "/accounts/{account_id}/balance",
    response_model=BalanceResponse,
    summary="[Admin] Get any account's balance",
)
async def admin_get_balance(
    account_id: uuid.UUID,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Cached and computed balance of any account, for integrity checks."""
    return await account_service.admin_get_balance(db, account_id)


@router.post(
    "/accounts/{account_id}/status",
    response_model=AccountResponse,
    summary="[Admin] Change account status",
)
async def admin_set_account_status(
    account_id: uuid.UUID,
    body: AccountStatusUpdateRequest,
    admin: Principal = Depends(require_admin),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    """
    Suspend, deactivate or reactivate an account.

    Non-active accounts can neither send nor receive money. Closed accounts
    can't be reopened.
    """
    return await account_service.admin_set_status(session_factory, account_id, body.status)


# ---------------------------------------------------------------------------
# Transactions and transfers
# ---------------------------------------------------------------------------

@router.get(
    "/transactions/{reference}",
    response_model=TransactionResponse,
    summary="[Admin] Get any transaction",
)
async def admin_get_transaction(
    reference: str,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await transaction_service.admin_get_transaction_by_reference(db, reference)


@router.post(
    "/transfers/{reference}/reverse",
    response_model=TransactionResponse,
    summary="[Admin] Reverse a completed internal transfer",
)
async def admin_reverse_transfer(
    reference: str,
    admin: Principal = Depends(require_admin),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    """
    Undo a completed internal transfer.

    Records a compensating transfer from the destination back to the
    source and marks the original reversed. Fails with 422 if the
    destination has already spent the funds.
    """
    return await transfer_service.reverse_transfer(session_factory, reference)


@router.post(
    "/settlements/reconcile",
    response_model=ReconciliationReportResponse,
    summary="[Admin] Run a reconciliation sweep",
)
async def admin_reconcile(
    admin: Principal = Depends(require_admin),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    adapter: SettlementAdapter = Depends(get_settlement_adapter),
):
    """Poll the gateway for every processing external transfer and settle it."""
    report = await reconciliation_service.reconcile_processing_transfers(session_factory, adapter)
    return ReconciliationReportResponse(**asdict(report))


# ---------------------------------------------------------------------------
# Loans
# ---------------------------------------------------------------------------

@router.post(
    "/loans/{loan_id}/approve",
    response_model=LoanResponse,
    summary="[Admin] Approve a loan application",
)
async def admin_approve_loan(
    loan_id: uuid.UUID,
    admin: Principal = Depends(require_admin),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    return await loan_service.approve_loan(session_factory, loan_id)


@router.post(
    "/loans/{loan_id}/disburse",
    response_model=LoanResponse,
    summary="[Admin] Disburse an approved loan",
)
async def admin_disburse_loan(
    loan_id: uuid.UUID,
    body: LoanDisbursementRequest,
    admin: Principal = Depends(require_admin),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    """Credit the principal to one of the borrower's accounts and activate the loan."""
    return await loan_service.disburse_loan(session_factory, loan_id, body.account_id)


@router.post(
    "/loans/{loan_id}/default",
    response_model=LoanResponse,
    summary="[Admin] Mark a loan defaulted",
)
async def admin_default_loan(
    loan_id: uuid.UUID,
    admin: Principal = Depends(require_admin),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    return await loan_service.mark_defaulted(session_factory, loan_id)
