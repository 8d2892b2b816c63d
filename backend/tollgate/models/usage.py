"""
SQLAlchemy model for the `usage_events` table — the usage ledger.

Each row is one metered quantity attributed to a subject, treated as a
financial record, not a throwaway log entry.

Design notes:
  • Append-only. Rows are never updated or deleted; corrections are
    compensating events with a negative quantity.
  • subject_id is the credential id for keyed calls, or the subscriber /
    owner id for key-less metering. subscriber_id is denormalised so
    per-subscriber aggregates span all of that subscriber's keys.
  • quantity uses NUMERIC(20,6) — exact decimal arithmetic, no float rounding.
  • (owner_id, idempotency_key) is unique, so a retried submission can
    never be stored twice.
"""

import datetime
import uuid
from decimal import Decimal

from sqlalchemy import Index, Numeric, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from tollgate.core.database import Base, UTCDateTime
from tollgate.models.api_key import utcnow


class UsageEvent(Base):
    """One immutable usage record."""

    __tablename__ = "usage_events"

    # ── Primary key ─────────────────────────────────────────
    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4,
    )

    # ── Attribution ─────────────────────────────────────────
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    subject_id: Mapped[str] = mapped_column(String(255), nullable=False)
    subscriber_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # ── Measurement ─────────────────────────────────────────
    metric: Mapped[str] = mapped_column(String(100), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(20, 6), nullable=False)
    timestamp: Mapped[datetime.datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow,
    )

    # ── Retry safety ────────────────────────────────────────
    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    recorded_at: Mapped[datetime.datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow,
    )

    # ── Table-level constraints ─────────────────────────────
    __table_args__ = (
        UniqueConstraint(
            "owner_id", "idempotency_key", name="uq_usage_events_idempotency",
        ),
        Index("ix_usage_events_subject", "subject_id", "metric", "timestamp"),
        Index("ix_usage_events_subscriber", "subscriber_id", "metric", "timestamp"),
    )

    def __repr__(self) -> str:
        return (
            f"<UsageEvent id={self.id!s:.8} subject={self.subject_id!s:.8} "
            f"{self.metric}={self.quantity}>"
        )
