"""
Pydantic v2 schemas for API key management.

Separation:
  • APIKeyCreate / RotateRequest / RevokeRequest — what the operator sends.
  • APIKeyOut — the persisted credential. key_hash is intentionally absent;
    only the display hint ever leaves the server.
  • APIKeyIssued — APIKeyOut plus the raw secret, returned exactly once by
    generate and rotate.
"""

from __future__ import annotations

import datetime
import uuid
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


# ── Request schemas ─────────────────────────────────────────
class RateLimitsIn(BaseModel):
    """Per-window ceilings. Omitted values use the configured defaults."""

    model_config = ConfigDict(extra="forbid")

    per_hour: int | None = Field(default=None, ge=1, examples=[1000])
    per_day: int | None = Field(default=None, ge=1, examples=[10000])
    per_month: int | None = Field(default=None, ge=1, examples=[100000])


class APIKeyCreate(BaseModel):
    """Payload accepted by POST /keys."""

    model_config = ConfigDict(extra="forbid")

    environment: Literal["test", "live"] = Field(
        default="test",
        description="Selects the sk_test_ / sk_live_ prefix.",
    )
    name: str | None = Field(default=None, max_length=255, examples=["CI pipeline"])
    subscriber_id: str | None = Field(
        default=None,
        max_length=255,
        description="Customer the key's usage is billed to.",
    )
    scopes: list[str] | None = Field(default=None, examples=[["read:basic"]])
    rate_limits: RateLimitsIn | None = None
    expires_in_days: int | None = Field(default=None, ge=1)
    rotate_every_days: int | None = Field(
        default=None,
        ge=1,
        description="Schedules mandatory rotation at this cadence.",
    )
    activate: bool = Field(
        default=True,
        description="False issues the key in 'pending' state.",
    )


class RotateRequest(BaseModel):
    """Payload accepted by POST /keys/{id}/rotate."""

    model_config = ConfigDict(extra="forbid")

    reason: str | None = Field(default=None, max_length=1000)
    rotated_by: str | None = Field(default=None, max_length=255)
    rotation_type: Literal["manual", "security"] = "manual"
    grace_hours: int | None = Field(
        default=None,
        ge=0,
        description="Overrides the configured rotation grace period.",
    )


class RevokeRequest(BaseModel):
    """Payload accepted by POST /keys/{id}/revoke."""

    model_config = ConfigDict(extra="forbid")

    reason: str | None = Field(default=None, max_length=1000)
    revoked_by: str | None = Field(default=None, max_length=255)


# ── Response schemas ────────────────────────────────────────
class APIKeyOut(BaseModel):
    """A credential as stored. Never includes the secret or its hash."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    owner_id: str
    subscriber_id: str | None
    lineage_id: uuid.UUID
    name: str | None
    environment: str
    hint: str
    scopes: list[str]
    rate_limit_per_hour: int
    rate_limit_per_day: int
    rate_limit_per_month: int
    status: str
    created_at: datetime.datetime
    activated_at: datetime.datetime | None
    expires_at: datetime.datetime | None
    rotates_at: datetime.datetime | None
    revokes_at: datetime.datetime | None
    last_used_at: datetime.datetime | None
    supersedes_id: uuid.UUID | None
    superseded_by_id: uuid.UUID | None
    revoked_at: datetime.datetime | None
    revoked_reason: str | None


class APIKeyIssued(BaseModel):
    """Returned once on generate/rotate. Store raw_secret now, it is not kept."""

    raw_secret: str
    credential: APIKeyOut


class UsagePoint(BaseModel):
    bucket_start: datetime.datetime
    total: Decimal


class UsageStatsOut(BaseModel):
    """Daily usage series per metric for one credential."""

    credential_id: uuid.UUID
    window_days: int
    metrics: dict[str, list[UsagePoint]]


class WindowUsageOut(BaseModel):
    """Consumption of one rate-limit window."""

    model_config = ConfigDict(from_attributes=True)

    window: str
    used: int
    limit: int
    remaining: int
    reset_at: datetime.datetime
