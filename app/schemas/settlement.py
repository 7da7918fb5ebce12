"""Pydantic schemas for settlement callbacks and reconciliation."""

from typing import Literal

from pydantic import BaseModel, Field


class SettlementWebhookRequest(BaseModel):
    """
    Body of POST /settlements/webhook.

    `reference` is the ledger's transaction reference that was sent with the
    original submission. Only final statuses are accepted.
    """
    reference: str = Field(max_length=40)
    status: Literal["completed", "failed"]
    external_reference: str | None = Field(None, max_length=64)
    fee_cents: int | None = Field(None, ge=0)
    message: str | None = None


class SettlementWebhookResponse(BaseModel):
    reference: str
    status: str


class ReconciliationReportResponse(BaseModel):
    examined: int
    completed: int
    failed: int
    still_processing: int
    errors: int
    idempotency_records_purged: int
    finalized_references: list[str]
