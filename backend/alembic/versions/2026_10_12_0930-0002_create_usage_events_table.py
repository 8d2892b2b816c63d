"""create usage_events table

Revision ID: 0002
Revises: 0001
Create Date: 2026-10-12
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "0002"
down_revision: Union[str, None] = "0001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "usage_events",
        sa.Column("id", sa.UUID(), primary_key=True),
        sa.Column("owner_id", sa.String(64), nullable=False),
        sa.Column("subject_id", sa.String(255), nullable=False),
        sa.Column("subscriber_id", sa.String(255), nullable=True),
        sa.Column("metric", sa.String(100), nullable=False),
        sa.Column("quantity", sa.Numeric(20, 6), nullable=False),
        sa.Column("timestamp", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("idempotency_key", sa.String(255), nullable=True),
        sa.Column("recorded_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "owner_id", "idempotency_key", name="uq_usage_events_idempotency",
        ),
    )
    op.create_index(
        "ix_usage_events_subject",
        "usage_events",
        ["subject_id", "metric", "timestamp"],
    )
    op.create_index(
        "ix_usage_events_subscriber",
        "usage_events",
        ["subscriber_id", "metric", "timestamp"],
    )


def downgrade() -> None:
    op.drop_index("ix_usage_events_subscriber", table_name="usage_events")
    op.drop_index("ix_usage_events_subject", table_name="usage_events")
    op.drop_table("usage_events")
