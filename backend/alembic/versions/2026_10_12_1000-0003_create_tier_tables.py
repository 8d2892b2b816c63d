"""create tiers and tier_subscriptions tables

Revision ID: 0003
Revises: 0002
Create Date: 2026-10-12

Tiers are versioned: (id, version) is the primary key and edits insert
a new row. Subscriptions pin the version they were assigned.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "0003"
down_revision: Union[str, None] = "0002"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "tiers",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("owner_id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("price", sa.Numeric(12, 4), nullable=False),
        sa.Column("included_usage", postgresql.JSONB(), nullable=False),
        sa.Column("overage_rate", postgresql.JSONB(), nullable=False),
        sa.Column("entitlements", postgresql.JSONB(), nullable=False),
        sa.Column("parent_tier_id", sa.UUID(), nullable=True),
        sa.Column("archived_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id", "version"),
    )
    op.create_index("ix_tiers_owner_id", "tiers", ["owner_id"])

    op.create_table(
        "tier_subscriptions",
        sa.Column("id", sa.UUID(), primary_key=True),
        sa.Column("owner_id", sa.String(64), nullable=False),
        sa.Column("subscriber_id", sa.String(255), nullable=False),
        sa.Column("tier_id", sa.UUID(), nullable=False),
        sa.Column("tier_version", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["tier_id", "tier_version"], ["tiers.id", "tiers.version"],
        ),
    )
    op.create_index(
        "ix_tier_subscriptions_tier", "tier_subscriptions", ["tier_id", "status"],
    )
    op.create_index(
        "ix_tier_subscriptions_subscriber",
        "tier_subscriptions",
        ["owner_id", "subscriber_id"],
    )


def downgrade() -> None:
    op.drop_index("ix_tier_subscriptions_subscriber", table_name="tier_subscriptions")
    op.drop_index("ix_tier_subscriptions_tier", table_name="tier_subscriptions")
    op.drop_table("tier_subscriptions")
    op.drop_index("ix_tiers_owner_id", table_name="tiers")
    op.drop_table("tiers")
