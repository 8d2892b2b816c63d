"""create api key tables

Revision ID: 0001
Revises:
Create Date: 2026-10-12

Credentials, their rotation lineages, the rotation audit log and the
per-window rate-limit counters.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "api_key_lineages",
        sa.Column("id", sa.UUID(), primary_key=True),
        sa.Column("owner_id", sa.String(64), nullable=False),
        sa.Column("active_credential_id", sa.UUID(), nullable=True),
        sa.Column("grace_credential_id", sa.UUID(), nullable=True),
        sa.Column("grace_expires_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("closed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False),
    )
    op.create_index("ix_api_key_lineages_owner_id", "api_key_lineages", ["owner_id"])

    op.create_table(
        "api_keys",
        sa.Column("id", sa.UUID(), primary_key=True),
        sa.Column("owner_id", sa.String(64), nullable=False),
        sa.Column("subscriber_id", sa.String(255), nullable=True),
        sa.Column("lineage_id", sa.UUID(), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("environment", sa.String(10), nullable=False),
        sa.Column("key_hash", sa.Text(), nullable=False, unique=True),
        sa.Column("hint", sa.String(16), nullable=False),
        sa.Column("scopes", postgresql.JSONB(), nullable=False),
        sa.Column("rate_limit_per_hour", sa.Integer(), nullable=False),
        sa.Column("rate_limit_per_day", sa.Integer(), nullable=False),
        sa.Column("rate_limit_per_month", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("activated_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("expires_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("rotates_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("rotate_every_days", sa.Integer(), nullable=True),
        sa.Column("revokes_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("last_used_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("supersedes_id", sa.UUID(), nullable=True),
        sa.Column("superseded_by_id", sa.UUID(), nullable=True),
        sa.Column("revoked_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("revoked_by", sa.String(255), nullable=True),
        sa.Column("revoked_reason", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(["lineage_id"], ["api_key_lineages.id"], ondelete="CASCADE"),
        sa.CheckConstraint(
            "status IN ('pending', 'active', 'rotating', 'expired', 'revoked')",
            name="ck_api_keys_status_valid",
        ),
        sa.CheckConstraint(
            "environment IN ('test', 'live')",
            name="ck_api_keys_environment_valid",
        ),
        sa.CheckConstraint(
            "rate_limit_per_hour > 0 AND rate_limit_per_day > 0 "
            "AND rate_limit_per_month > 0",
            name="ck_api_keys_rate_limits_positive",
        ),
    )
    op.create_index("ix_api_keys_owner_id", "api_keys", ["owner_id"])
    op.create_index("ix_api_keys_lineage_id", "api_keys", ["lineage_id"])

    op.create_table(
        "api_key_rotations",
        sa.Column("id", sa.UUID(), primary_key=True),
        sa.Column("lineage_id", sa.UUID(), nullable=False),
        sa.Column("old_credential_id", sa.UUID(), nullable=False),
        sa.Column("new_credential_id", sa.UUID(), nullable=False),
        sa.Column("rotation_type", sa.String(16), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("rotated_by", sa.String(255), nullable=True),
        sa.Column("rotated_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["lineage_id"], ["api_key_lineages.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_api_key_rotations_lineage_id", "api_key_rotations", ["lineage_id"])

    op.create_table(
        "rate_window_counters",
        sa.Column("credential_id", sa.UUID(), nullable=False),
        sa.Column("window_kind", sa.String(10), nullable=False),
        sa.Column("window_start", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("request_count", sa.Integer(), nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("credential_id", "window_kind", "window_start"),
        sa.ForeignKeyConstraint(["credential_id"], ["api_keys.id"], ondelete="CASCADE"),
    )
    # Retention purge scans by window_start
    op.create_index(
        "ix_rate_window_counters_window_start",
        "rate_window_counters",
        ["window_start"],
    )


def downgrade() -> None:
    op.drop_index("ix_rate_window_counters_window_start", table_name="rate_window_counters")
    op.drop_table("rate_window_counters")
    op.drop_index("ix_api_key_rotations_lineage_id", table_name="api_key_rotations")
    op.drop_table("api_key_rotations")
    op.drop_index("ix_api_keys_lineage_id", table_name="api_keys")
    op.drop_index("ix_api_keys_owner_id", table_name="api_keys")
    op.drop_table("api_keys")
    op.drop_index("ix_api_key_lineages_owner_id", table_name="api_key_lineages")
    op.drop_table("api_key_lineages")
