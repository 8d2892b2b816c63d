"""
Tier catalog service — versioned pricing tiers and subscriber assignment.

VERSIONING:
  Rows are keyed by (id, version). create() and clone() write version 1;
  update() inserts version n+1 and never touches earlier rows. Subscriptions
  pin the version they were assigned, so edits are non-retroactive.

OWNERSHIP:
  Every lookup is scoped by owner_id. A tier owned by someone else is
  reported exactly like a missing one (NotFound).

Tiers are soft-archived, never deleted. Archived tiers keep serving their
existing subscribers but accept no new subscriptions.
"""

from __future__ import annotations

import copy
import datetime
import logging
import uuid
from collections.abc import Mapping
from decimal import Decimal
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tollgate.core.errors import MalformedTier, NotFound
from tollgate.models.api_key import utcnow
from tollgate.models.tier import (
    SUBSCRIPTION_LIVE_STATUSES,
    SUBSCRIPTION_CANCELED,
    Tier,
    TierSubscription,
)
from tollgate.services.entitlements import TierTerms

logger = logging.getLogger(__name__)

# Fields a clone override or an update patch may set.
TIER_FIELDS = ("name", "price", "included_usage", "overage_rate", "entitlements")

_UPDATE_ATTEMPTS = 3


def _normalized_terms(fields: Mapping[str, Any]) -> dict[str, Any]:
    """
    Validate tier fields and return them in storage form.

    Decimal amounts are stored as strings so they survive JSON exactly.
    """
    name = fields.get("name")
    if not name or not str(name).strip():
        raise MalformedTier("Tier name is required.")

    terms = TierTerms.from_definition(
        fields.get("price", Decimal("0")),
        fields.get("included_usage") or {},
        fields.get("overage_rate") or {},
        fields.get("entitlements") or (),
    )
    return {
        "name": str(name).strip(),
        "price": terms.price,
        "included_usage": {m: str(a.included) for m, a in terms.allowances.items()},
        "overage_rate": {m: str(a.overage_rate) for m, a in terms.allowances.items()},
        "entitlements": sorted(terms.features),
    }


def _terms_of(tier: Tier) -> dict[str, Any]:
    """Deep copy of a tier row's terms."""
    return {
        "name": tier.name,
        "price": tier.price,
        "included_usage": copy.deepcopy(dict(tier.included_usage)),
        "overage_rate": copy.deepcopy(dict(tier.overage_rate)),
        "entitlements": list(tier.entitlements),
    }


def _apply(base: dict[str, Any], changes: Mapping[str, Any]) -> dict[str, Any]:
    unknown = sorted(set(changes) - set(TIER_FIELDS))
    if unknown:
        raise MalformedTier(f"Unknown tier fields: {unknown}.")
    merged = dict(base)
    merged.update({key: copy.deepcopy(value) for key, value in changes.items()})
    return merged


# ── Reads ───────────────────────────────────────────────────
async def get(
    session: AsyncSession,
    owner_id: str,
    tier_id: uuid.UUID,
    version: int | None = None,
) -> Tier:
    """Latest version of a tier (or a specific one)."""
    stmt = select(Tier).where(Tier.id == tier_id, Tier.owner_id == owner_id)
    if version is not None:
        stmt = stmt.where(Tier.version == version)
    else:
        stmt = stmt.order_by(Tier.version.desc()).limit(1)

    tier = (await session.execute(stmt)).scalars().first()
    if tier is None:
        raise NotFound("Tier not found.")
    return tier


async def list_tiers(
    session: AsyncSession,
    owner_id: str,
    *,
    include_archived: bool = False,
) -> list[Tier]:
    """Latest version of each of the owner's tiers."""
    stmt = select(Tier).where(Tier.owner_id == owner_id)
    if not include_archived:
        stmt = stmt.where(Tier.archived_at.is_(None))
    stmt = stmt.order_by(Tier.created_at, Tier.version)

    latest: dict[uuid.UUID, Tier] = {}
    for tier in (await session.execute(stmt)).scalars():
        current = latest.get(tier.id)
        if current is None or tier.version > current.version:
            latest[tier.id] = tier
    return list(latest.values())


# ── Writes ──────────────────────────────────────────────────
async def create(
    session: AsyncSession,
    owner_id: str,
    definition: Mapping[str, Any],
    *,
    now: datetime.datetime | None = None,
) -> Tier:
    """
    Create version 1 of a new tier.

    Raises:
        MalformedTier: allowance/overage metric sets differ, bad amounts.
    """
    terms = _normalized_terms(_apply({}, definition))
    tier = Tier(
        id=uuid.uuid4(),
        version=1,
        owner_id=owner_id,
        created_at=now or utcnow(),
        **terms,
    )
    session.add(tier)
    await session.commit()

    logger.info("Created tier %s (%s) for owner %s", tier.id, tier.name, owner_id)
    return tier


async def clone(
    session: AsyncSession,
    owner_id: str,
    source_tier_id: uuid.UUID,
    overrides: Mapping[str, Any] | None = None,
    *,
    now: datetime.datetime | None = None,
) -> Tier:
    """
    Copy the latest version of a tier into a brand-new tier.

    Overrides replace fields one by one. The copy gets a new id,
    version 1 and parent_tier_id = source; the source is never modified.
    """
    source = await get(session, owner_id, source_tier_id)
    terms = _normalized_terms(_apply(_terms_of(source), overrides or {}))

    tier = Tier(
        id=uuid.uuid4(),
        version=1,
        owner_id=owner_id,
        parent_tier_id=source.id,
        created_at=now or utcnow(),
        **terms,
    )
    session.add(tier)
    await session.commit()

    logger.info("Cloned tier %s v%d → %s", source.id, source.version, tier.id)
    return tier


async def update_tier(
    session: AsyncSession,
    owner_id: str,
    tier_id: uuid.UUID,
    patch: Mapping[str, Any],
    *,
    now: datetime.datetime | None = None,
) -> Tier:
    """
    Write a new version of a tier with `patch` applied.

    Existing subscriptions keep the version they were pinned to.
    """
    for attempt in range(1, _UPDATE_ATTEMPTS + 1):
        latest = await get(session, owner_id, tier_id)
        terms = _normalized_terms(_apply(_terms_of(latest), patch))

        tier = Tier(
            id=latest.id,
            version=latest.version + 1,
            owner_id=owner_id,
            parent_tier_id=latest.parent_tier_id,
            archived_at=latest.archived_at,
            created_at=now or utcnow(),
            **terms,
        )
        session.add(tier)
        try:
            await session.commit()
        except IntegrityError:
            # A concurrent edit took this version number; re-read and retry.
            await session.rollback()
            logger.warning("Tier %s version race (attempt %d)", tier_id, attempt)
            continue

        logger.info("Updated tier %s to v%d", tier.id, tier.version)
        return tier

    raise MalformedTier("Tier is being edited concurrently; retry the update.")


async def archive(
    session: AsyncSession,
    owner_id: str,
    tier_id: uuid.UUID,
    *,
    now: datetime.datetime | None = None,
) -> Tier:
    """Soft-archive every version of a tier. Archiving twice is a no-op."""
    latest = await get(session, owner_id, tier_id)
    if latest.archived_at is None:
        archived_at = now or utcnow()
        await session.execute(
            update(Tier)
            .where(Tier.id == tier_id, Tier.owner_id == owner_id)
            .values(archived_at=archived_at)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        latest.archived_at = archived_at
        logger.info("Archived tier %s", tier_id)
    return latest


# ── Subscriptions ───────────────────────────────────────────
async def current_subscription(
    session: AsyncSession,
    owner_id: str,
    subscriber_id: str,
) -> TierSubscription | None:
    stmt = (
        select(TierSubscription)
        .where(
            TierSubscription.owner_id == owner_id,
            TierSubscription.subscriber_id == subscriber_id,
            TierSubscription.status.in_(SUBSCRIPTION_LIVE_STATUSES),
        )
        .order_by(TierSubscription.created_at.desc())
    )
    return (await session.execute(stmt)).scalars().first()


async def subscribe(
    session: AsyncSession,
    owner_id: str,
    subscriber_id: str,
    tier_id: uuid.UUID,
    *,
    status: str = "active",
    now: datetime.datetime | None = None,
) -> TierSubscription:
    """
    Pin a subscriber to the tier's current version.

    Any previous live subscription of the subscriber is canceled.
    """
    if status not in SUBSCRIPTION_LIVE_STATUSES:
        raise ValueError(f"Subscription status must be one of {SUBSCRIPTION_LIVE_STATUSES}")

    tier = await get(session, owner_id, tier_id)
    if tier.archived_at is not None:
        raise NotFound("Tier not found.")

    await session.execute(
        update(TierSubscription)
        .where(
            TierSubscription.owner_id == owner_id,
            TierSubscription.subscriber_id == subscriber_id,
            TierSubscription.status.in_(SUBSCRIPTION_LIVE_STATUSES),
        )
        .values(status=SUBSCRIPTION_CANCELED)
        .execution_options(synchronize_session=False)
    )
    subscription = TierSubscription(
        owner_id=owner_id,
        subscriber_id=subscriber_id,
        tier_id=tier.id,
        tier_version=tier.version,
        status=status,
        created_at=now or utcnow(),
    )
    session.add(subscription)
    await session.commit()

    logger.info(
        "Subscribed %s to tier %s v%d", subscriber_id, tier.id, tier.version,
    )
    return subscription


async def active_subscriptions(
    session: AsyncSession,
    owner_id: str,
    tier_id: uuid.UUID,
) -> list[TierSubscription]:
    """Live subscriptions on any version of the tier."""
    stmt = (
        select(TierSubscription)
        .where(
            TierSubscription.owner_id == owner_id,
            TierSubscription.tier_id == tier_id,
            TierSubscription.status.in_(SUBSCRIPTION_LIVE_STATUSES),
        )
        .order_by(TierSubscription.subscriber_id)
    )
    return list((await session.execute(stmt)).scalars())


async def terms_for_subscriber(
    session: AsyncSession,
    owner_id: str,
    subscriber_id: str,
) -> Tier | None:
    """The pinned tier version a subscriber is billed under, if any."""
    subscription = await current_subscription(session, owner_id, subscriber_id)
    if subscription is None:
        return None
    return await get(session, owner_id, subscription.tier_id, subscription.tier_version)
