"""Tests for the tier catalog: versioning, cloning, archiving, subscriptions."""

from decimal import Decimal

import pytest

from tests.helpers import NOW, OTHER_OWNER_ID, OWNER_ID, STARTER_TIER, SUBSCRIBER_ID, hours, make_tier
from tollgate.core.errors import MalformedTier, NotFound
from tollgate.services import tier_catalog
from tollgate.services.entitlements import TierTerms


class TestCreate:
    @pytest.mark.asyncio
    async def test_creates_version_one(self, session):
        tier = await make_tier(session)

        assert tier.version == 1
        assert tier.price == Decimal("10")
        assert tier.included_usage == {"api_call": "1000"}
        assert tier.entitlements == ["dashboard"]

    @pytest.mark.asyncio
    async def test_allowance_without_rate_is_malformed(self, session):
        definition = dict(STARTER_TIER, overage_rate={})

        with pytest.raises(MalformedTier):
            await make_tier(session, definition)

    @pytest.mark.asyncio
    async def test_name_is_required(self, session):
        with pytest.raises(MalformedTier):
            await make_tier(session, dict(STARTER_TIER, name="  "))


class TestClone:
    @pytest.mark.asyncio
    async def test_clone_without_overrides_has_equal_terms(self, session):
        source = await make_tier(session)

        copy = await tier_catalog.clone(session, OWNER_ID, source.id, now=NOW)

        assert copy.id != source.id
        assert copy.parent_tier_id == source.id
        assert TierTerms.from_tier(copy) == TierTerms.from_tier(source)

    @pytest.mark.asyncio
    async def test_overrides_apply_and_source_is_untouched(self, session):
        source = await make_tier(session)

        copy = await tier_catalog.clone(
            session, OWNER_ID, source.id, {"name": "Starter+", "price": "15"}, now=NOW,
        )

        assert (copy.name, copy.price) == ("Starter+", Decimal("15"))
        latest = await tier_catalog.get(session, OWNER_ID, source.id)
        assert (latest.name, latest.version) == ("Starter", 1)

    @pytest.mark.asyncio
    async def test_unknown_override_is_malformed(self, session):
        source = await make_tier(session)

        with pytest.raises(MalformedTier):
            await tier_catalog.clone(session, OWNER_ID, source.id, {"colour": "red"}, now=NOW)

    @pytest.mark.asyncio
    async def test_foreign_tier_is_not_found(self, session):
        source = await make_tier(session)

        with pytest.raises(NotFound):
            await tier_catalog.clone(session, OTHER_OWNER_ID, source.id, now=NOW)


class TestVersioning:
    @pytest.mark.asyncio
    async def test_update_is_not_retroactive(self, session):
        tier = await make_tier(session)
        await tier_catalog.subscribe(session, OWNER_ID, SUBSCRIBER_ID, tier.id, now=NOW)

        updated = await tier_catalog.update_tier(
            session, OWNER_ID, tier.id, {"included_usage": {"api_call": "500"}},
            now=NOW + hours(1),
        )

        assert updated.version == 2
        pinned = await tier_catalog.terms_for_subscriber(session, OWNER_ID, SUBSCRIBER_ID)
        assert (pinned.version, pinned.included_usage) == (1, {"api_call": "1000"})

        newcomer = await tier_catalog.subscribe(
            session, OWNER_ID, "cust-2", tier.id, now=NOW + hours(2),
        )
        assert newcomer.tier_version == 2

    @pytest.mark.asyncio
    async def test_old_versions_stay_readable(self, session):
        tier = await make_tier(session)
        await tier_catalog.update_tier(session, OWNER_ID, tier.id, {"price": "12"}, now=NOW)

        v1 = await tier_catalog.get(session, OWNER_ID, tier.id, version=1)
        v2 = await tier_catalog.get(session, OWNER_ID, tier.id)

        assert (v1.price, v2.price) == (Decimal("10"), Decimal("12"))
        assert len(await tier_catalog.list_tiers(session, OWNER_ID)) == 1


class TestArchive:
    @pytest.mark.asyncio
    async def test_archived_tier_accepts_no_new_subscribers(self, session):
        tier = await make_tier(session)
        await tier_catalog.subscribe(session, OWNER_ID, SUBSCRIBER_ID, tier.id, now=NOW)

        await tier_catalog.archive(session, OWNER_ID, tier.id, now=NOW)

        with pytest.raises(NotFound):
            await tier_catalog.subscribe(session, OWNER_ID, "cust-2", tier.id, now=NOW)
        assert await tier_catalog.terms_for_subscriber(session, OWNER_ID, SUBSCRIBER_ID)
        assert await tier_catalog.list_tiers(session, OWNER_ID) == []
        assert len(await tier_catalog.list_tiers(session, OWNER_ID, include_archived=True)) == 1


@pytest.mark.asyncio
async def test_resubscribing_cancels_previous_subscription(session):
    starter = await make_tier(session)
    pro = await make_tier(session, dict(STARTER_TIER, name="Pro", price="50"))

    await tier_catalog.subscribe(session, OWNER_ID, SUBSCRIBER_ID, starter.id, now=NOW)
    await tier_catalog.subscribe(session, OWNER_ID, SUBSCRIBER_ID, pro.id, now=NOW + hours(1))

    assert await tier_catalog.active_subscriptions(session, OWNER_ID, starter.id) == []
    current = await tier_catalog.current_subscription(session, OWNER_ID, SUBSCRIBER_ID)
    assert current.tier_id == pro.id
