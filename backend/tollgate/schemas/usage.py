"""
Pydantic v2 schemas for usage metering.

Separation:
  • UsageEventCreate   — what the CLIENT sends. Attribution (owner, subject,
                         subscriber) is never accepted from the body; it is
                         derived from the authenticated credential.
  • UsageEventResponse — what the SERVER returns after persistence.
  • EntitlementDecisionOut — flat view of Permit / Overage / Denied.
  • AllowanceReportOut — per-metric standing for the billing period.
"""

from __future__ import annotations

import datetime
import uuid
from decimal import Decimal
from typing import Literal

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field

from tollgate.services.entitlements import Decision, Denied, Overage


# ── Request schema ──────────────────────────────────────────
class UsageEventCreate(BaseModel):
    """
    Payload accepted by POST /usage.

    extra="forbid" ensures unknown fields (e.g. a forged subject_id)
    are rejected with 422, not silently ignored.
    """

    model_config = ConfigDict(extra="forbid")

    metric: str = Field(
        ...,
        min_length=1,
        max_length=100,
        examples=["api_call", "storage_bytes"],
        description="Named counter defined by the subscriber's tier.",
    )
    quantity: Decimal = Field(
        default=Decimal("1"),
        examples=[1],
        description="Units consumed. Negative values are compensating corrections.",
    )
    timestamp: AwareDatetime | None = Field(
        default=None,
        description="When the usage happened (UTC). Defaults to now.",
    )
    idempotency_key: str | None = Field(
        default=None,
        max_length=255,
        description="Retries with the same key are recorded once.",
    )


# ── Response schemas ────────────────────────────────────────
class UsageEventResponse(BaseModel):
    """Full record returned after a usage event is persisted."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    owner_id: str
    subject_id: str
    subscriber_id: str | None
    metric: str
    quantity: Decimal
    timestamp: datetime.datetime
    idempotency_key: str | None


class EntitlementDecisionOut(BaseModel):
    decision: Literal["permit", "overage", "denied"]
    metric: str
    overage_quantity: Decimal | None = None
    overage_cost: Decimal | None = None

    @classmethod
    def from_decision(cls, metric: str, decision: Decision) -> EntitlementDecisionOut:
        if isinstance(decision, Overage):
            return cls(
                decision="overage",
                metric=metric,
                overage_quantity=decision.quantity,
                overage_cost=decision.cost,
            )
        if isinstance(decision, Denied):
            return cls(decision="denied", metric=metric)
        return cls(decision="permit", metric=metric)


class UsageRecordedOut(BaseModel):
    """The stored event plus how the subscriber's tier priced it."""

    event: UsageEventResponse
    entitlement: EntitlementDecisionOut | None = None


class AllowanceStatusOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    metric: str
    used: Decimal
    included: Decimal
    remaining: Decimal
    usage_percentage: Decimal | None
    overage_quantity: Decimal
    overage_cost: Decimal
    should_warn: bool


class AllowanceReportOut(BaseModel):
    """A subscriber's standing against every allowance in the billing period."""

    subscriber_id: str
    tier_id: uuid.UUID
    tier_version: int
    period_start: datetime.datetime
    period_end: datetime.datetime
    soft_limit_threshold: Decimal
    allowances: list[AllowanceStatusOut]
