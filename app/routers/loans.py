"""
Loans router — applications, reads and payments.

Member endpoints:
  POST /loans                     — Apply for a loan
  GET  /loans                     — List own loans
  GET  /loans/{loan_id}           — Get one of your loans
  POST /loans/{loan_id}/payment   — Pay down an active loan (optional Idempotency-Key)

Approval, disbursement and default are admin operations (app/routers/admin.py).
"""

import uuid

from fastapi import APIRouter, Depends, Header, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.database import get_db, get_session_factory
from app.dependencies import Principal, get_current_principal, get_idempotency_manager
from app.schemas.loan import (
    LoanApplicationRequest,
    LoanPaymentRequest,
    LoanPaymentResponse,
    LoanResponse,
)
from app.services import loan_service
from app.services.idempotency_service import IdempotencyManager, run_idempotent

router = APIRouter()


@router.post(
    "",
    response_model=LoanResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Apply for a loan",
)
async def apply_for_loan(
    body: LoanApplicationRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    """
    Submit a loan application.

    The interest rate depends on the loan type and the monthly payment is
    amortized over the term. Applications whose payment would exceed 40%
    of monthly income are refused, and only one application can be
    pending at a time.
    """
    return await loan_service.apply_for_loan(
        db,
        owner_id=principal.user_id,
        loan_type=body.loan_type,
        principal_cents=body.principal_cents,
        term_months=body.term_months,
        monthly_income_cents=body.monthly_income_cents,
        purpose=body.purpose,
    )


@router.get("", response_model=list[LoanResponse], summary="List your loans")
async def list_loans(
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    return await loan_service.get_loans(db, principal.user_id)


@router.get("/{loan_id}", response_model=LoanResponse, summary="Get loan details")
async def get_loan(
    loan_id: uuid.UUID,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    return await loan_service.get_loan(db, loan_id, principal.user_id)


@router.post(
    "/{loan_id}/payment",
    response_model=LoanPaymentResponse,
    summary="Make a loan payment",
)
async def make_payment(
    loan_id: uuid.UUID,
    body: LoanPaymentRequest,
    request: Request,
    idempotency_key: str | None = Header(
        None, alias="Idempotency-Key", min_length=1, max_length=255
    ),
    principal: Principal = Depends(get_current_principal),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    idempotency: IdempotencyManager = Depends(get_idempotency_manager),
):
    """
    Pay down an active loan from one of your accounts.

    The account is debited and the outstanding balance reduced in one
    atomic step. The loan is marked paid_off when the balance reaches
    exactly zero. Paying more than the outstanding balance is rejected.
    """

    async def operation():
        outcome = await loan_service.apply_payment(
            session_factory,
            loan_id=loan_id,
            account_id=body.account_id,
            amount_cents=body.amount_cents,
            owner_id=principal.user_id,
        )
        return 200, LoanPaymentResponse(**outcome)

    return await run_idempotent(
        idempotency,
        scope=f"{principal.user_id}:POST {request.url.path}",
        key=idempotency_key,
        payload=body.model_dump(mode="json"),
        operation=operation,
    )
