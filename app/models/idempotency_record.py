"""
IdempotencyRecord model — one row per (requester+endpoint, Idempotency-Key).

The composite primary key (scope, key) is the cross-process guard: two
workers can't both insert a provisional record for the same key, so only
one of them ever runs the underlying money movement.

Columns:
  - scope: "<requester id>:<endpoint>", so keys never collide across users
    or across endpoints
  - request_fingerprint: SHA-256 of the canonical JSON request body; a
    replay with a different body is a conflict, not a duplicate
  - state: "in_progress" while the first request runs, "completed" once
    the response has been stored
  - response_status_code / response_body: the exact response returned the
    first time; replays return these bytes unchanged
  - locked_until: lease on an in_progress record; a record whose lease ran
    out without completing belonged to a crashed worker and may be taken over
  - expires_at: end of the retention window, after which the record is
    ignored and purged
"""

from datetime import datetime, timezone

from sqlalchemy import String, Integer, Text, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base

STATE_IN_PROGRESS = "in_progress"
STATE_COMPLETED = "completed"


class IdempotencyRecord(Base):
    __tablename__ = "idempotency_records"

    scope: Mapped[str] = mapped_column(
        String(120),
        primary_key=True,
    )

    key: Mapped[str] = mapped_column(
        String(255),
        primary_key=True,
    )

    request_fingerprint: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )

    state: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=STATE_IN_PROGRESS,
    )

    response_status_code: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
    )

    response_body: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    locked_until: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )
