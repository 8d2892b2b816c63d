"""
Usage ledger service — append-only accounting of metered usage.

usage_events is the source of truth for billing and tier-impact previews.
Rate-limit counters are derived elsewhere and never read from here.

IDEMPOTENCY:
  record() accepts a caller-supplied idempotency key. A retried submission
  with the same payload returns the stored event instead of writing a
  second row; the same key with a different payload is a caller bug and
  raises WriteConflict. The (owner_id, idempotency_key) unique constraint
  settles races between concurrent duplicates.

AGGREGATION:
  aggregate() sums over the half-open interval [start, end), so results are
  additive across any partition of a range. time_series() does one bounded
  read and returns a lazy, restartable, zero-filled series.
"""

from __future__ import annotations

import datetime
import logging
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tollgate.core.errors import InvalidMetric, WriteConflict
from tollgate.models.tier import SUBSCRIPTION_LIVE_STATUSES, Tier, TierSubscription
from tollgate.models.usage import UsageEvent

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def _to_decimal(value: Any) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _subject_filter(subject_id: str, owner_id: str | None) -> list[Any]:
    """Match events recorded against the subject or billed to it."""
    clauses: list[Any] = [
        or_(UsageEvent.subject_id == subject_id, UsageEvent.subscriber_id == subject_id),
    ]
    if owner_id is not None:
        clauses.append(UsageEvent.owner_id == owner_id)
    return clauses


# ── Series ──────────────────────────────────────────────────
@dataclass(frozen=True)
class UsageSeries:
    """
    Zero-filled (bucket_start, total) pairs covering [start, end).

    Iterating yields buckets lazily from the pre-aggregated totals; every
    new iteration starts again from the first bucket.
    """

    start: datetime.datetime
    end: datetime.datetime
    bucket: datetime.timedelta
    totals: Mapping[int, Decimal] = field(default_factory=dict)

    def __iter__(self) -> Iterator[tuple[datetime.datetime, Decimal]]:
        index = 0
        bucket_start = self.start
        while bucket_start < self.end:
            yield bucket_start, self.totals.get(index, ZERO)
            index += 1
            bucket_start = self.start + index * self.bucket

    def __len__(self) -> int:
        span = self.end - self.start
        return -(-span // self.bucket)  # ceiling division

    def total(self) -> Decimal:
        return sum(self.totals.values(), ZERO)


# ── Metric validation ───────────────────────────────────────
async def recognized_metrics(
    session: AsyncSession,
    owner_id: str,
    subscriber_id: str | None = None,
) -> set[str]:
    """
    Metrics the owner's tier defines for this subscriber.

    Uses the subscriber's pinned tier version when they hold a live
    subscription; otherwise every metric on any non-archived tier owned
    by the owner. Feature flags count as metrics so gated features can be
    metered too.
    """
    if subscriber_id is not None:
        stmt = (
            select(Tier)
            .join(
                TierSubscription,
                (TierSubscription.tier_id == Tier.id)
                & (TierSubscription.tier_version == Tier.version),
            )
            .where(
                TierSubscription.owner_id == owner_id,
                TierSubscription.subscriber_id == subscriber_id,
                TierSubscription.status.in_(SUBSCRIPTION_LIVE_STATUSES),
            )
        )
        tier = (await session.execute(stmt)).scalars().first()
        if tier is not None:
            return set(tier.included_usage) | set(tier.entitlements)

    stmt = select(Tier).where(Tier.owner_id == owner_id, Tier.archived_at.is_(None))
    metrics: set[str] = set()
    for tier in (await session.execute(stmt)).scalars():
        metrics |= set(tier.included_usage) | set(tier.entitlements)
    return metrics


# ── Record ──────────────────────────────────────────────────
async def find_by_idempotency_key(
    session: AsyncSession,
    owner_id: str,
    idempotency_key: str,
) -> UsageEvent | None:
    stmt = select(UsageEvent).where(
        UsageEvent.owner_id == owner_id,
        UsageEvent.idempotency_key == idempotency_key,
    )
    return (await session.execute(stmt)).scalar_one_or_none()


def replay(
    existing: UsageEvent,
    subject_id: str,
    metric: str,
    quantity: Decimal,
) -> UsageEvent:
    """Return the stored event for a true duplicate, else raise WriteConflict."""
    if (
        existing.subject_id != subject_id
        or existing.metric != metric
        or _to_decimal(existing.quantity) != quantity
    ):
        raise WriteConflict(existing.idempotency_key or "")
    logger.info(
        "Duplicate usage submission ignored (event %s, key %s)",
        existing.id, existing.idempotency_key,
    )
    return existing


async def record(
    session: AsyncSession,
    *,
    owner_id: str,
    subject_id: str,
    metric: str,
    quantity: Decimal | int,
    subscriber_id: str | None = None,
    timestamp: datetime.datetime | None = None,
    idempotency_key: str | None = None,
) -> UsageEvent:
    """
    Append one usage event.

    Negative quantities are allowed; they are compensating corrections.

    Raises:
        InvalidMetric: The owner's tier does not define `metric`.
        WriteConflict: `idempotency_key` was used for a different payload.
    """
    quantity = _to_decimal(quantity)

    if idempotency_key is not None:
        existing = await find_by_idempotency_key(session, owner_id, idempotency_key)
        if existing is not None:
            return replay(existing, subject_id, metric, quantity)

    if metric not in await recognized_metrics(session, owner_id, subscriber_id):
        raise InvalidMetric(metric)

    event = UsageEvent(
        owner_id=owner_id,
        subject_id=subject_id,
        subscriber_id=subscriber_id,
        metric=metric,
        quantity=quantity,
        timestamp=timestamp or datetime.datetime.now(datetime.timezone.utc),
        idempotency_key=idempotency_key,
    )

    session.add(event)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        if idempotency_key is None:
            raise
        # Lost a race against a concurrent duplicate.
        existing = await find_by_idempotency_key(session, owner_id, idempotency_key)
        if existing is None:
            raise
        return replay(existing, subject_id, metric, quantity)

    logger.debug("Recorded %s %s for subject %s", quantity, metric, subject_id)
    return event


# ── Reads ───────────────────────────────────────────────────
async def aggregate(
    session: AsyncSession,
    subject_id: str,
    metric: str,
    start: datetime.datetime,
    end: datetime.datetime,
    *,
    owner_id: str | None = None,
) -> Decimal:
    """Total quantity of `metric` for the subject in [start, end)."""
    stmt = select(func.sum(UsageEvent.quantity)).where(
        *_subject_filter(subject_id, owner_id),
        UsageEvent.metric == metric,
        UsageEvent.timestamp >= start,
        UsageEvent.timestamp < end,
    )
    return _to_decimal((await session.execute(stmt)).scalar_one_or_none())


async def aggregate_by_metric(
    session: AsyncSession,
    subject_id: str,
    start: datetime.datetime,
    end: datetime.datetime,
    *,
    owner_id: str | None = None,
    recorded_before: datetime.datetime | None = None,
) -> dict[str, Decimal]:
    """
    Usage snapshot: metric → total for the subject in [start, end).

    `recorded_before` restricts the snapshot to events the ledger had
    accepted before that instant, i.e. the state an earlier event was
    priced against.
    """
    clauses = [
        *_subject_filter(subject_id, owner_id),
        UsageEvent.timestamp >= start,
        UsageEvent.timestamp < end,
    ]
    if recorded_before is not None:
        clauses.append(UsageEvent.recorded_at < recorded_before)
    stmt = (
        select(UsageEvent.metric, func.sum(UsageEvent.quantity).label("total"))
        .where(*clauses)
        .group_by(UsageEvent.metric)
    )
    rows = (await session.execute(stmt)).all()
    return {row.metric: _to_decimal(row.total) for row in rows}


async def list_metrics(
    session: AsyncSession,
    subject_id: str,
    start: datetime.datetime,
    end: datetime.datetime,
) -> list[str]:
    """Metrics with at least one event for the subject in [start, end)."""
    stmt = (
        select(UsageEvent.metric)
        .where(
            *_subject_filter(subject_id, None),
            UsageEvent.timestamp >= start,
            UsageEvent.timestamp < end,
        )
        .distinct()
        .order_by(UsageEvent.metric)
    )
    return list((await session.execute(stmt)).scalars())


async def time_series(
    session: AsyncSession,
    subject_id: str,
    metric: str,
    bucket: datetime.timedelta,
    start: datetime.datetime,
    end: datetime.datetime,
) -> UsageSeries:
    """
    Bucketed totals for `metric` over [start, end), buckets aligned to start.

    Raises:
        ValueError: Non-positive bucket or empty range.
    """
    if bucket <= datetime.timedelta(0):
        raise ValueError("bucket size must be positive")
    if end <= start:
        raise ValueError("time series range must be non-empty")

    stmt = select(UsageEvent.timestamp, UsageEvent.quantity).where(
        *_subject_filter(subject_id, None),
        UsageEvent.metric == metric,
        UsageEvent.timestamp >= start,
        UsageEvent.timestamp < end,
    )
    totals: dict[int, Decimal] = {}
    for row in (await session.execute(stmt)).all():
        index = (row.timestamp - start) // bucket
        totals[index] = totals.get(index, ZERO) + _to_decimal(row.quantity)

    return UsageSeries(start=start, end=end, bucket=bucket, totals=totals)
