"""
Key lineage and rotation audit models.

A lineage is the logical key a customer holds across rotations. It points
at exactly one active credential and, during a rotation grace period, at
one additional credential that is still accepted until grace_expires_at.

Rotation swaps both pointers in a single UPDATE guarded by
`grace_credential_id IS NULL`, so concurrent rotations of the same lineage
cannot both succeed.
"""

import datetime
import uuid

from sqlalchemy import ForeignKey, Index, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from tollgate.core.database import Base, UTCDateTime
from tollgate.models.api_key import utcnow

ROTATION_MANUAL = "manual"
ROTATION_AUTO = "auto"
ROTATION_SECURITY = "security"
ROTATION_TYPES = (ROTATION_MANUAL, ROTATION_AUTO, ROTATION_SECURITY)


class KeyLineage(Base):
    """Rotation pair record: one active member, one optional grace member."""

    __tablename__ = "api_key_lineages"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4,
    )
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    active_credential_id: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    grace_credential_id: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    grace_expires_at: Mapped[datetime.datetime | None] = mapped_column(UTCDateTime)
    # Set when the whole lineage is revoked; no member is usable afterwards.
    closed_at: Mapped[datetime.datetime | None] = mapped_column(UTCDateTime)
    created_at: Mapped[datetime.datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow,
    )

    __table_args__ = (
        Index("ix_api_key_lineages_owner_id", "owner_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<KeyLineage id={self.id!s:.8} active={self.active_credential_id!s:.8} "
            f"grace={self.grace_credential_id!s:.8}>"
        )


class KeyRotation(Base):
    """Append-only audit row written for every rotation."""

    __tablename__ = "api_key_rotations"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4,
    )
    lineage_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("api_key_lineages.id", ondelete="CASCADE"),
        nullable=False,
    )
    old_credential_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    new_credential_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    rotation_type: Mapped[str] = mapped_column(String(16), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text)
    rotated_by: Mapped[str | None] = mapped_column(String(255))
    rotated_at: Mapped[datetime.datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow,
    )

    __table_args__ = (
        Index("ix_api_key_rotations_lineage_id", "lineage_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<KeyRotation old={self.old_credential_id!s:.8} "
            f"new={self.new_credential_id!s:.8} type={self.rotation_type}>"
        )
