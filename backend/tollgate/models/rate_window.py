"""
Rate-limit window counter model.

Each row is the request count for one credential in one calendar window.
Composite PK: (credential_id, window_kind, window_start) — one row per bucket.

Windows (fixed, UTC):
  • 'hour'  — floor to the top of the hour
  • 'day'   — floor to midnight
  • 'month' — floor to the first of the month

Counters are ephemeral: they make the hot-path check cheap and are not
billing data. usage_events is the source of truth; closed windows are
purged after RATE_COUNTER_RETENTION_DAYS.
"""

import datetime
import uuid

from sqlalchemy import ForeignKey, Index, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from tollgate.core.database import Base, UTCDateTime


class RateWindowCounter(Base):
    """Per-credential, per-window request counter."""

    __tablename__ = "rate_window_counters"

    credential_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("api_keys.id", ondelete="CASCADE"),
        primary_key=True,
    )
    window_kind: Mapped[str] = mapped_column(
        String(10),
        primary_key=True,
    )
    window_start: Mapped[datetime.datetime] = mapped_column(
        UTCDateTime,
        primary_key=True,
    )
    request_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )

    __table_args__ = (
        Index("ix_rate_window_counters_window_start", "window_start"),
    )

    def __repr__(self) -> str:
        return (
            f"<RateWindowCounter key={self.credential_id!s:.8} "
            f"kind={self.window_kind} count={self.request_count}>"
        )
