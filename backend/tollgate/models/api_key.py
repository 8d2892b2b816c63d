"""
API key model — a scoped, rate-limited credential issued by an owner.

Security notes:
  • Raw API keys are NEVER stored. Only a SHA-256 hash is persisted.
  • `hint` keeps the last few characters for display in logs/UI.
  • Keys are never physically deleted; revocation tombstones the row
    (status='revoked' + revoked_at/by/reason) to preserve the audit trail.

Lifecycle:
  pending → active → rotating → revoked
  active → expired (past expires_at)
"""

import datetime
import uuid

from sqlalchemy import CheckConstraint, ForeignKey, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from tollgate.core.database import Base, JSONType, UTCDateTime


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


# Credential states
STATUS_PENDING = "pending"
STATUS_ACTIVE = "active"
STATUS_ROTATING = "rotating"
STATUS_EXPIRED = "expired"
STATUS_REVOKED = "revoked"

ENVIRONMENTS = ("test", "live")


class APIKey(Base):
    """Hashed credential belonging to an owner (creator)."""

    __tablename__ = "api_keys"

    # ── Identity ────────────────────────────────────────────
    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4,
    )
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    subscriber_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    lineage_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("api_key_lineages.id", ondelete="CASCADE"),
        nullable=False,
    )
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    environment: Mapped[str] = mapped_column(String(10), nullable=False)

    # ── Secret material (hash only) ─────────────────────────
    key_hash: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    hint: Mapped[str] = mapped_column(String(16), nullable=False)

    # ── Capabilities ────────────────────────────────────────
    scopes: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    rate_limit_per_hour: Mapped[int] = mapped_column(Integer, nullable=False)
    rate_limit_per_day: Mapped[int] = mapped_column(Integer, nullable=False)
    rate_limit_per_month: Mapped[int] = mapped_column(Integer, nullable=False)

    # ── State machine ───────────────────────────────────────
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=STATUS_ACTIVE,
    )
    created_at: Mapped[datetime.datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow,
    )
    activated_at: Mapped[datetime.datetime | None] = mapped_column(UTCDateTime)
    expires_at: Mapped[datetime.datetime | None] = mapped_column(UTCDateTime)
    rotates_at: Mapped[datetime.datetime | None] = mapped_column(UTCDateTime)
    rotate_every_days: Mapped[int | None] = mapped_column(Integer)
    # End of the rotation grace period (set while status='rotating').
    revokes_at: Mapped[datetime.datetime | None] = mapped_column(UTCDateTime)
    last_used_at: Mapped[datetime.datetime | None] = mapped_column(UTCDateTime)

    # ── Rotation links ──────────────────────────────────────
    supersedes_id: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    superseded_by_id: Mapped[uuid.UUID | None] = mapped_column(Uuid)

    # ── Tombstone ───────────────────────────────────────────
    revoked_at: Mapped[datetime.datetime | None] = mapped_column(UTCDateTime)
    revoked_by: Mapped[str | None] = mapped_column(String(255))
    revoked_reason: Mapped[str | None] = mapped_column(Text)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'active', 'rotating', 'expired', 'revoked')",
            name="ck_api_keys_status_valid",
        ),
        CheckConstraint(
            "environment IN ('test', 'live')",
            name="ck_api_keys_environment_valid",
        ),
        CheckConstraint(
            "rate_limit_per_hour > 0 AND rate_limit_per_day > 0 "
            "AND rate_limit_per_month > 0",
            name="ck_api_keys_rate_limits_positive",
        ),
        Index("ix_api_keys_owner_id", "owner_id"),
        Index("ix_api_keys_lineage_id", "lineage_id"),
    )

    @property
    def rate_limits(self) -> dict[str, int]:
        return {
            "hour": self.rate_limit_per_hour,
            "day": self.rate_limit_per_day,
            "month": self.rate_limit_per_month,
        }

    def __repr__(self) -> str:
        return (
            f"<APIKey id={self.id!s:.8} hint={self.hint!r} "
            f"status={self.status}>"
        )
