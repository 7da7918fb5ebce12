"""
Transfers router — money movement between accounts and banks.

Endpoints:
  POST /transfers                — Internal or external transfer (Idempotency-Key required)
  GET  /transfers/banks          — Partner banks reachable for external transfers
  POST /transfers/banks/verify   — Look up an external destination account
  GET  /transfers/{reference}    — Current status of a transfer

Internal transfers complete synchronously (201). External transfers return
202 while the settlement gateway is still working on them; poll
GET /transfers/{reference} for the outcome.

Every POST /transfers must carry an Idempotency-Key. Sending the same key
with the same body again returns the first response byte for byte, without
moving money twice. The same key with a different body is a 409.
"""

from fastapi import APIRouter, Depends, Header, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.database import get_db, get_session_factory
from app.dependencies import (
    Principal,
    get_current_principal,
    get_idempotency_manager,
    get_settlement_adapter,
)
from app.exceptions import DestinationNotFoundError
from app.models.transaction import TransactionStatus
from app.schemas.transaction import (
    SupportedBankResponse,
    TransferData,
    TransferRequest,
    TransferResponse,
    VerifyDestinationRequest,
    VerifyDestinationResponse,
)
from app.services import transfer_service
from app.services.idempotency_service import IdempotencyManager, run_idempotent
from app.services.settlement_adapter import SettlementAdapter

router = APIRouter()


@router.post(
    "",
    response_model=TransferResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Transfer money",
    responses={202: {"model": TransferResponse, "description": "External transfer in flight"}},
)
async def create_transfer(
    body: TransferRequest,
    idempotency_key: str = Header(..., alias="Idempotency-Key", min_length=1, max_length=255),
    principal: Principal = Depends(get_current_principal),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    adapter: SettlementAdapter = Depends(get_settlement_adapter),
    idempotency: IdempotencyManager = Depends(get_idempotency_manager),
):
    """
    Transfer money from one of your accounts.

    Internal transfers are atomic — either both the debit and credit
    happen, or neither does. External transfers debit the amount and hold
    the settlement fee immediately; the fee is charged on completion and
    everything is refunded if the receiving bank rejects the transfer.

    - **from_account_id**: Must belong to the authenticated user
    - **to_account_id** / **to_account_number**: Destination account
    - **to_bank_code**: Omit (or send our own code) for internal transfers
    - **amount_cents**: Positive integer in cents (e.g., $50.00 = 5000)
    - **currency**: Must match the source account
    """

    async def operation():
        txn = await transfer_service.create_transfer(
            session_factory,
            adapter,
            owner_id=principal.user_id,
            from_account_id=body.from_account_id,
            to_account_id=body.to_account_id,
            to_account_number=body.to_account_number,
            to_bank_code=body.to_bank_code,
            amount_cents=body.amount_cents,
            currency=body.currency,
            description=body.description,
        )
        status_code = (
            status.HTTP_202_ACCEPTED
            if txn.status == TransactionStatus.PROCESSING.value
            else status.HTTP_201_CREATED
        )
        return status_code, TransferResponse(data=TransferData.from_transaction(txn))

    return await run_idempotent(
        idempotency,
        scope=f"{principal.user_id}:POST /transfers",
        key=idempotency_key,
        payload=body.model_dump(mode="json"),
        operation=operation,
    )


@router.get(
    "/banks",
    response_model=list[SupportedBankResponse],
    summary="List partner banks",
)
async def list_supported_banks(
    principal: Principal = Depends(get_current_principal),
    adapter: SettlementAdapter = Depends(get_settlement_adapter),
):
    """Banks reachable through the settlement gateway, with their codes."""
    banks = await adapter.supported_banks()
    return [SupportedBankResponse(code=b.code, name=b.name, country=b.country) for b in banks]


@router.post(
    "/banks/verify",
    response_model=VerifyDestinationResponse,
    summary="Verify an external account",
)
async def verify_destination(
    body: VerifyDestinationRequest,
    principal: Principal = Depends(get_current_principal),
    adapter: SettlementAdapter = Depends(get_settlement_adapter),
):
    """
    Confirm that an account exists at another bank before sending money.

    Returns the holder and bank names, or 404 if the account is unknown.
    """
    destination = await adapter.verify_destination(body.account_number, body.bank_code)
    if destination is None:
        raise DestinationNotFoundError(body.account_number, body.bank_code)
    return VerifyDestinationResponse(
        account_number=destination.account_number,
        bank_code=destination.bank_code,
        account_name=destination.account_name,
        bank_name=destination.bank_name,
    )


@router.get(
    "/{reference}",
    response_model=TransferResponse,
    summary="Get transfer status",
)
async def get_transfer(
    reference: str,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    """
    Look up a transfer by its reference.

    Visible to the owners of either side. External transfers move from
    processing to completed or failed once the gateway settles them.
    """
    txn = await transfer_service.get_transfer(db, reference, principal.user_id)
    return TransferResponse(data=TransferData.from_transaction(txn))
