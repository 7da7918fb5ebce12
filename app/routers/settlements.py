"""
Settlements router — callbacks from the settlement gateway.

Endpoints:
  POST /settlements/webhook — Final outcome of an external transfer

The gateway authenticates with a shared secret in the X-Settlement-Secret
header instead of a user token. The outcome goes through the same
finalizer as the reconciliation sweep, so a duplicate or late callback for
a transfer that is already final changes nothing.
"""

import hmac

from fastapi import APIRouter, Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.clients.settlement import GatewayResult, SettlementStatus
from app.config import settings
from app.database import get_session_factory
from app.schemas.settlement import SettlementWebhookRequest, SettlementWebhookResponse
from app.services import transfer_service

router = APIRouter()


def _verify_secret(provided: str | None) -> None:
    if provided is None or not hmac.compare_digest(
        provided.encode("utf-8"), settings.SETTLEMENT_WEBHOOK_SECRET.encode("utf-8")
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid settlement secret",
        )


@router.post(
    "/webhook",
    response_model=SettlementWebhookResponse,
    summary="Settlement outcome callback",
)
async def settlement_webhook(
    body: SettlementWebhookRequest,
    x_settlement_secret: str | None = Header(None, alias="X-Settlement-Secret"),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    """
    Apply a completed or failed outcome to a processing external transfer.

    Returns the transfer's status after the call. Unknown references are 404.
    """
    _verify_secret(x_settlement_secret)

    result = GatewayResult(
        status=SettlementStatus(body.status),
        external_reference=body.external_reference,
        fee_cents=body.fee_cents,
        message=body.message or "",
    )
    txn = await transfer_service.finalize_settlement(session_factory, body.reference, result)
    return SettlementWebhookResponse(reference=txn.reference, status=txn.status)
