"""
Notification emitter — fire-and-forget transaction events.

After a money movement commits, the ledger emits one event per affected
user:

    {"user_id", "type": "transaction", "transaction_id", "status",
     "amount_cents", "currency"}

Delivery is best effort. The event is always logged; when
NOTIFICATION_WEBHOOK_URL is configured it is also POSTed from a background
task. A failed delivery is logged and dropped, it never affects the
transaction that triggered it.
"""

import asyncio
import logging
import uuid

import httpx

from app.config import settings
from app.models.transaction import Transaction

logger = logging.getLogger(__name__)

# Strong references so pending deliveries aren't garbage collected mid-flight
_pending_deliveries: set[asyncio.Task] = set()


def build_transaction_event(txn: Transaction, user_id: uuid.UUID) -> dict:
    return {
        "user_id": str(user_id),
        "type": "transaction",
        "transaction_id": str(txn.id),
        "status": txn.status,
        "amount_cents": txn.amount_cents,
        "currency": txn.currency,
    }


async def _deliver(url: str, event: dict) -> None:
    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            response = await client.post(url, json=event)
            response.raise_for_status()
    except httpx.HTTPError as exc:
        logger.warning(
            "Notification delivery failed",
            extra={"transaction_id": event["transaction_id"], "error": str(exc)},
        )


def emit_transaction_event(txn: Transaction, user_id: uuid.UUID | None) -> None:
    """Emit a transaction event for `user_id`. Call only after commit."""
    if user_id is None:
        return

    event = build_transaction_event(txn, user_id)
    logger.info("Transaction notification", extra=event)

    if settings.NOTIFICATION_WEBHOOK_URL:
        task = asyncio.create_task(_deliver(settings.NOTIFICATION_WEBHOOK_URL, event))
        _pending_deliveries.add(task)
        task.add_done_callback(_pending_deliveries.discard)
