"""
Tier and subscription models.

Tiers are versioned: the table's primary key is (id, version) and every
edit inserts a new row with version + 1. A row's terms are never modified
after insert, which makes edits non-retroactive: a subscription pins the
version it was assigned and keeps those terms until it is migrated.

Design notes:
  • included_usage / overage_rate are JSON maps of metric → decimal string.
    Strings keep exact Decimal values through JSON on every backend.
  • archived_at is the only column updated in place (on every version row
    of the tier); tiers are soft-archived, never deleted.
  • parent_tier_id records clone lineage for audit.
"""

import datetime
import uuid
from decimal import Decimal

from sqlalchemy import ForeignKeyConstraint, Index, Integer, Numeric, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from tollgate.core.database import Base, JSONType, UTCDateTime
from tollgate.models.api_key import utcnow

SUBSCRIPTION_LIVE_STATUSES = ("active", "trialing", "past_due")
SUBSCRIPTION_CANCELED = "canceled"
SUBSCRIPTION_STATUSES = SUBSCRIPTION_LIVE_STATUSES + (SUBSCRIPTION_CANCELED,)


class Tier(Base):
    """One version of a creator's pricing tier."""

    __tablename__ = "tiers"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    version: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)

    # ── Terms (immutable per version) ───────────────────────
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    included_usage: Mapped[dict[str, str]] = mapped_column(
        JSONType, nullable=False, default=dict,
    )
    overage_rate: Mapped[dict[str, str]] = mapped_column(
        JSONType, nullable=False, default=dict,
    )
    entitlements: Mapped[list[str]] = mapped_column(
        JSONType, nullable=False, default=list,
    )

    # ── Lineage / status ────────────────────────────────────
    parent_tier_id: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    archived_at: Mapped[datetime.datetime | None] = mapped_column(UTCDateTime)
    created_at: Mapped[datetime.datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow,
    )

    __table_args__ = (
        Index("ix_tiers_owner_id", "owner_id"),
    )

    def __repr__(self) -> str:
        return f"<Tier id={self.id!s:.8} v{self.version} name={self.name!r}>"


class TierSubscription(Base):
    """A subscriber's assignment to a specific tier version."""

    __tablename__ = "tier_subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4,
    )
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    subscriber_id: Mapped[str] = mapped_column(String(255), nullable=False)
    tier_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    tier_version: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    created_at: Mapped[datetime.datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow,
    )

    __table_args__ = (
        ForeignKeyConstraint(
            ["tier_id", "tier_version"], ["tiers.id", "tiers.version"],
        ),
        Index("ix_tier_subscriptions_tier", "tier_id", "status"),
        Index("ix_tier_subscriptions_subscriber", "owner_id", "subscriber_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<TierSubscription subscriber={self.subscriber_id!r} "
            f"tier={self.tier_id!s:.8} v{self.tier_version} status={self.status}>"
        )
