"""
Pydantic v2 schemas for tiers, subscriptions and impact previews.

Amounts travel as Decimal. Structural tier rules (allowance/overage parity,
non-negative amounts) are enforced by the catalog service, which reports
violations as MalformedTier (422), so they are not duplicated here.
"""

from __future__ import annotations

import datetime
import uuid
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from tollgate.services.impact import (
    ImpactReport,
    MetricOverage,
    SubscriberImpact,
)


# ── Request schemas ─────────────────────────────────────────
class TierCreate(BaseModel):
    """Payload accepted by POST /tiers."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=255, examples=["Pro"])
    price: Decimal = Field(default=Decimal("0"), examples=["49.00"])
    included_usage: dict[str, Decimal] = Field(
        default_factory=dict,
        examples=[{"api_call": 1000}],
    )
    overage_rate: dict[str, Decimal] = Field(
        default_factory=dict,
        examples=[{"api_call": "0.01"}],
    )
    entitlements: list[str] = Field(default_factory=list, examples=[["sso"]])


class TierPatch(BaseModel):
    """
    Partial tier terms for PATCH /tiers/{id} and clone overrides.

    Only fields present in the request are applied.
    """

    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=1, max_length=255)
    price: Decimal | None = None
    included_usage: dict[str, Decimal] | None = None
    overage_rate: dict[str, Decimal] | None = None
    entitlements: list[str] | None = None


class SubscribeRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    subscriber_id: str = Field(..., min_length=1, max_length=255)
    status: Literal["active", "trialing", "past_due"] = "active"


class CandidateTierIn(TierCreate):
    """A proposed tier for POST /tiers/preview-impact."""

    replaces_tier_id: uuid.UUID | None = Field(
        default=None,
        description="Compare against this tier's live subscribers.",
    )
    subscriber_ids: list[str] = Field(
        default_factory=list,
        description="Subscribers to evaluate when no tier is being replaced.",
    )


# ── Response schemas ────────────────────────────────────────
class TierOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    version: int
    owner_id: str
    name: str
    price: Decimal
    included_usage: dict[str, Decimal]
    overage_rate: dict[str, Decimal]
    entitlements: list[str]
    parent_tier_id: uuid.UUID | None
    archived_at: datetime.datetime | None
    created_at: datetime.datetime


class SubscriptionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    subscriber_id: str
    tier_id: uuid.UUID
    tier_version: int
    status: str
    created_at: datetime.datetime


class MetricOutcomeOut(BaseModel):
    status: Literal["within_allowance", "overage"]
    used: Decimal
    included: Decimal
    overage_amount: Decimal = Decimal("0")
    overage_cost: Decimal = Decimal("0")


class SubscriberImpactOut(BaseModel):
    subscriber_id: str
    current_tier_version: int | None
    current_cost: Decimal
    projected_cost: Decimal
    change: Literal["increase", "decrease", "unchanged"]
    within_allowance: bool
    lost_metrics: list[str]
    metrics: dict[str, MetricOutcomeOut]

    @classmethod
    def from_impact(cls, impact: SubscriberImpact) -> SubscriberImpactOut:
        metrics: dict[str, MetricOutcomeOut] = {}
        for metric, outcome in impact.outcomes.items():
            if isinstance(outcome, MetricOverage):
                metrics[metric] = MetricOutcomeOut(
                    status="overage",
                    used=outcome.used,
                    included=outcome.included,
                    overage_amount=outcome.amount,
                    overage_cost=outcome.cost,
                )
            else:
                metrics[metric] = MetricOutcomeOut(
                    status="within_allowance",
                    used=outcome.used,
                    included=outcome.included,
                )
        return cls(
            subscriber_id=impact.subscriber_id,
            current_tier_version=impact.current_tier_version,
            current_cost=impact.current_cost,
            projected_cost=impact.projected_cost,
            change=impact.change,
            within_allowance=impact.within_allowance,
            lost_metrics=list(impact.lost_metrics),
            metrics=metrics,
        )


class ImpactSummaryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    subscribers: int
    increased: int
    decreased: int
    unchanged: int
    within_allowance: int
    in_overage: int
    total_overage_cost: Decimal


class ImpactReportOut(BaseModel):
    replaces_tier_id: uuid.UUID | None
    period_start: datetime.datetime
    period_end: datetime.datetime
    summary: ImpactSummaryOut
    subscribers: list[SubscriberImpactOut]

    @classmethod
    def from_report(cls, report: ImpactReport) -> ImpactReportOut:
        return cls(
            replaces_tier_id=report.replaces_tier_id,
            period_start=report.period_start,
            period_end=report.period_end,
            summary=ImpactSummaryOut.model_validate(report.summary),
            subscribers=[SubscriberImpactOut.from_impact(i) for i in report.subscribers],
        )
