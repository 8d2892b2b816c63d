"""Tests for the tier impact simulator."""

import datetime
import uuid
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from tests.helpers import NOW, OWNER_ID, STARTER_TIER, SUBSCRIBER_ID, make_tier
from tollgate.core.errors import MalformedTier, NotFound
from tollgate.models.tier import Tier, TierSubscription
from tollgate.models.usage import UsageEvent
from tollgate.services import tier_catalog, usage_ledger
from tollgate.services.impact import (
    CHANGE_DECREASE,
    CHANGE_INCREASE,
    CandidateTier,
    MetricOverage,
    WithinAllowance,
    preview_impact,
)


async def _subscriber_with_usage(session, calls, subscriber_id=SUBSCRIBER_ID):
    tier = await make_tier(session, dict(STARTER_TIER, included_usage={"api_call": "5000"}))
    await tier_catalog.subscribe(
        session, OWNER_ID, subscriber_id, tier.id, now=NOW - datetime.timedelta(days=20),
    )
    await usage_ledger.record(
        session,
        owner_id=OWNER_ID,
        subject_id="key-1",
        subscriber_id=subscriber_id,
        metric="api_call",
        quantity=calls,
        timestamp=NOW - datetime.timedelta(days=3),
    )
    return tier


def _candidate(**overrides):
    fields = {
        "name": "Lean",
        "price": Decimal("10"),
        "included_usage": {"api_call": "1000"},
        "overage_rate": {"api_call": "0.01"},
    }
    fields.update(overrides)
    return CandidateTier(**fields)


async def _row_counts(session):
    counts = []
    for model in (Tier, TierSubscription, UsageEvent):
        stmt = select(func.count()).select_from(model)
        counts.append((await session.execute(stmt)).scalar_one())
    return counts


class TestPreviewImpact:
    @pytest.mark.asyncio
    async def test_prices_overage_against_trailing_usage(self, session):
        tier = await _subscriber_with_usage(session, 1200)

        report = await preview_impact(
            session, OWNER_ID, _candidate(replaces_tier_id=tier.id), now=NOW,
        )

        (impact,) = report.subscribers
        assert impact.subscriber_id == SUBSCRIBER_ID
        assert impact.outcomes["api_call"] == MetricOverage(
            used=Decimal("1200"),
            included=Decimal("1000"),
            amount=Decimal("200"),
            cost=Decimal("2.00"),
        )
        assert impact.current_cost == Decimal("10")
        assert impact.projected_cost == Decimal("12.00")
        assert impact.change == CHANGE_INCREASE
        assert report.summary.in_overage == 1
        assert report.summary.total_overage_cost == Decimal("2.00")

    @pytest.mark.asyncio
    async def test_within_allowance(self, session):
        tier = await _subscriber_with_usage(session, 300)

        report = await preview_impact(
            session, OWNER_ID, _candidate(replaces_tier_id=tier.id, price=Decimal("5")), now=NOW,
        )

        (impact,) = report.subscribers
        assert impact.outcomes["api_call"] == WithinAllowance(
            used=Decimal("300"), included=Decimal("1000"),
        )
        assert impact.change == CHANGE_DECREASE
        assert report.summary.within_allowance == 1

    @pytest.mark.asyncio
    async def test_preview_writes_nothing(self, session):
        tier = await _subscriber_with_usage(session, 1200)
        before = await _row_counts(session)

        await preview_impact(session, OWNER_ID, _candidate(replaces_tier_id=tier.id), now=NOW)

        assert await _row_counts(session) == before
        assert not session.new and not session.dirty

    @pytest.mark.asyncio
    async def test_named_subscribers_without_tier_are_priced_from_zero(self, session):
        await make_tier(session)
        await usage_ledger.record(
            session, owner_id=OWNER_ID, subject_id="key-9", subscriber_id="prospect",
            metric="api_call", quantity=10, timestamp=NOW - datetime.timedelta(days=1),
        )

        report = await preview_impact(
            session, OWNER_ID, _candidate(subscriber_ids=["prospect"]), now=NOW,
        )

        (impact,) = report.subscribers
        assert impact.current_tier_version is None
        assert impact.current_cost == Decimal("0")
        assert impact.projected_cost == Decimal("10")

    @pytest.mark.asyncio
    async def test_reports_metrics_the_candidate_drops(self, session):
        tier = await _subscriber_with_usage(session, 50)

        report = await preview_impact(
            session,
            OWNER_ID,
            _candidate(
                replaces_tier_id=tier.id,
                included_usage={"storage_gb": "10"},
                overage_rate={"storage_gb": "1"},
            ),
            now=NOW,
        )

        assert report.subscribers[0].lost_metrics == ("api_call",)

    @pytest.mark.asyncio
    async def test_malformed_candidate(self, session):
        with pytest.raises(MalformedTier):
            await preview_impact(session, OWNER_ID, _candidate(overage_rate={}), now=NOW)

    @pytest.mark.asyncio
    async def test_unknown_replaced_tier(self, session):
        with pytest.raises(NotFound):
            await preview_impact(
                session, OWNER_ID, _candidate(replaces_tier_id=uuid.uuid4()), now=NOW,
            )
