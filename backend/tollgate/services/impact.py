"""
Tier impact simulator — what would a candidate tier cost existing subscribers?

For every live subscriber of the tier being replaced (or every subscriber
named in the request, for a brand-new tier) the trailing period's usage is
read from the ledger metric by metric and priced twice with the same
overage arithmetic the entitlement resolver uses:

  • under the subscriber's CURRENT pinned terms
  • under the CANDIDATE terms

The report lists per-metric outcomes (within allowance / overage amount and
cost) and summarizes how many subscribers would pay more, less, or the same.

This is a report-style bulk read, not a hot-path call. It never adds,
flushes or commits anything, so a caller may abandon it at any point.
"""

from __future__ import annotations

import datetime
import logging
import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from tollgate.core.config import settings
from tollgate.models.api_key import utcnow
from tollgate.services import tier_catalog, usage_ledger
from tollgate.services.entitlements import TierTerms, overage_for

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

CHANGE_INCREASE = "increase"
CHANGE_DECREASE = "decrease"
CHANGE_UNCHANGED = "unchanged"


@dataclass(frozen=True)
class CandidateTier:
    """A proposed tier definition that has not been committed."""

    name: str
    price: Decimal
    included_usage: Mapping[str, Any]
    overage_rate: Mapping[str, Any]
    entitlements: Sequence[str] = ()
    replaces_tier_id: uuid.UUID | None = None
    subscriber_ids: Sequence[str] = ()


# ── Outcomes ────────────────────────────────────────────────
@dataclass(frozen=True, slots=True)
class WithinAllowance:
    used: Decimal
    included: Decimal


@dataclass(frozen=True, slots=True)
class MetricOverage:
    used: Decimal
    included: Decimal
    amount: Decimal
    cost: Decimal


MetricOutcome = WithinAllowance | MetricOverage


@dataclass(frozen=True)
class SubscriberImpact:
    subscriber_id: str
    current_tier_version: int | None
    outcomes: Mapping[str, MetricOutcome]
    current_cost: Decimal
    projected_cost: Decimal
    change: str
    # Metered today, neither metered nor flagged by the candidate.
    lost_metrics: tuple[str, ...] = ()

    @property
    def within_allowance(self) -> bool:
        return all(isinstance(o, WithinAllowance) for o in self.outcomes.values())

    @property
    def overage_cost(self) -> Decimal:
        return sum(
            (o.cost for o in self.outcomes.values() if isinstance(o, MetricOverage)),
            ZERO,
        )


@dataclass(frozen=True)
class ImpactSummary:
    subscribers: int = 0
    increased: int = 0
    decreased: int = 0
    unchanged: int = 0
    within_allowance: int = 0
    in_overage: int = 0
    total_overage_cost: Decimal = ZERO


@dataclass(frozen=True)
class ImpactReport:
    replaces_tier_id: uuid.UUID | None
    period_start: datetime.datetime
    period_end: datetime.datetime
    subscribers: tuple[SubscriberImpact, ...] = ()
    summary: ImpactSummary = field(default_factory=ImpactSummary)


# ── Pricing ─────────────────────────────────────────────────
def _price(
    terms: TierTerms | None,
    usage: Mapping[str, Decimal],
) -> tuple[Decimal, dict[str, MetricOutcome]]:
    """Period cost (price + overage) and per-metric outcomes under `terms`."""
    if terms is None:
        return ZERO, {}

    total = terms.price
    outcomes: dict[str, MetricOutcome] = {}
    for metric, allowance in terms.allowances.items():
        used = usage.get(metric, ZERO)
        amount, cost = overage_for(allowance, used)
        if amount > 0:
            outcomes[metric] = MetricOverage(
                used=used, included=allowance.included, amount=amount, cost=cost,
            )
        else:
            outcomes[metric] = WithinAllowance(used=used, included=allowance.included)
        total += cost
    return total, outcomes


def _direction(current: Decimal, projected: Decimal) -> str:
    if projected > current:
        return CHANGE_INCREASE
    if projected < current:
        return CHANGE_DECREASE
    return CHANGE_UNCHANGED


def _summarize(impacts: Sequence[SubscriberImpact]) -> ImpactSummary:
    return ImpactSummary(
        subscribers=len(impacts),
        increased=sum(1 for i in impacts if i.change == CHANGE_INCREASE),
        decreased=sum(1 for i in impacts if i.change == CHANGE_DECREASE),
        unchanged=sum(1 for i in impacts if i.change == CHANGE_UNCHANGED),
        within_allowance=sum(1 for i in impacts if i.within_allowance),
        in_overage=sum(1 for i in impacts if not i.within_allowance),
        total_overage_cost=sum((i.overage_cost for i in impacts), ZERO),
    )


# ── Preview ─────────────────────────────────────────────────
async def _subscriber_terms(
    session: AsyncSession,
    owner_id: str,
    candidate: CandidateTier,
) -> list[tuple[str, int | None, TierTerms | None]]:
    """(subscriber, pinned version, current terms) for everyone affected."""
    cache: dict[tuple[uuid.UUID, int], TierTerms] = {}

    async def terms_at(tier_id: uuid.UUID, version: int) -> TierTerms:
        key = (tier_id, version)
        if key not in cache:
            tier = await tier_catalog.get(session, owner_id, tier_id, version)
            cache[key] = TierTerms.from_tier(tier)
        return cache[key]

    affected: list[tuple[str, int | None, TierTerms | None]] = []
    if candidate.replaces_tier_id is not None:
        # Ownership check; raises NotFound for foreign tiers.
        await tier_catalog.get(session, owner_id, candidate.replaces_tier_id)
        subscriptions = await tier_catalog.active_subscriptions(
            session, owner_id, candidate.replaces_tier_id,
        )
        for sub in subscriptions:
            terms = await terms_at(sub.tier_id, sub.tier_version)
            affected.append((sub.subscriber_id, sub.tier_version, terms))
        return affected

    for subscriber_id in dict.fromkeys(candidate.subscriber_ids):
        sub = await tier_catalog.current_subscription(session, owner_id, subscriber_id)
        if sub is None:
            affected.append((subscriber_id, None, None))
        else:
            terms = await terms_at(sub.tier_id, sub.tier_version)
            affected.append((subscriber_id, sub.tier_version, terms))
    return affected


async def preview_impact(
    session: AsyncSession,
    owner_id: str,
    candidate: CandidateTier,
    *,
    now: datetime.datetime | None = None,
) -> ImpactReport:
    """
    Replay trailing usage against a candidate tier. Read-only.

    Subscribers without a current subscription are priced against zero.

    Raises:
        MalformedTier: the candidate violates the tier invariants.
        NotFound:      replaces_tier_id is absent or not owned.
    """
    candidate_terms = TierTerms.from_definition(
        candidate.price,
        candidate.included_usage,
        candidate.overage_rate,
        candidate.entitlements,
    )

    end = now or utcnow()
    start = end - datetime.timedelta(days=settings.IMPACT_TRAILING_DAYS)

    impacts: list[SubscriberImpact] = []
    for subscriber_id, version, current_terms in await _subscriber_terms(
        session, owner_id, candidate,
    ):
        metrics = set(candidate_terms.allowances)
        if current_terms is not None:
            metrics |= set(current_terms.allowances)

        usage = {
            metric: await usage_ledger.aggregate(
                session, subscriber_id, metric, start, end, owner_id=owner_id,
            )
            for metric in sorted(metrics)
        }

        current_cost, _ = _price(current_terms, usage)
        projected_cost, outcomes = _price(candidate_terms, usage)

        lost: tuple[str, ...] = ()
        if current_terms is not None:
            lost = tuple(
                metric
                for metric in sorted(current_terms.allowances)
                if metric not in candidate_terms.allowances
                and metric not in candidate_terms.features
                and usage.get(metric, ZERO) > 0
            )

        impacts.append(
            SubscriberImpact(
                subscriber_id=subscriber_id,
                current_tier_version=version,
                outcomes=outcomes,
                current_cost=current_cost,
                projected_cost=projected_cost,
                change=_direction(current_cost, projected_cost),
                lost_metrics=lost,
            )
        )

    report = ImpactReport(
        replaces_tier_id=candidate.replaces_tier_id,
        period_start=start,
        period_end=end,
        subscribers=tuple(impacts),
        summary=_summarize(impacts),
    )
    logger.info(
        "Impact preview for owner %s: %d subscribers (%d up, %d down, %d same)",
        owner_id, report.summary.subscribers, report.summary.increased,
        report.summary.decreased, report.summary.unchanged,
    )
    return report
