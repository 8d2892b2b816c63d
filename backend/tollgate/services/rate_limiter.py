"""
Database-backed rate limiter service.

Enforces per-credential ceilings across three fixed calendar windows
(hour, day, month — floored in UTC) using counters in rate_window_counters.

Design decisions:
  • Atomic increment-and-compare — one
      INSERT … ON CONFLICT DO UPDATE SET request_count = request_count + 1
      WHERE request_count < :limit RETURNING request_count
    per window. No row back means the window is exhausted. There is no
    separate read, so concurrent requests can never overshoot a ceiling.
  • All-or-nothing — the three upserts share one transaction. The first
    exhausted window rolls the transaction back, so a denied call leaves
    every counter untouched. On Postgres the first upsert row-locks the
    credential's hour counter, serializing concurrent checks per key.
  • Denials are results, not exceptions — check() returns Allow or Deny
    with the exhausted window and its reset time; the HTTP layer decides
    how to surface it.
  • Fresh counters after rotation — counters are keyed by credential id
    and a rotated-in credential has a new id, so it starts at zero. The old
    credential's consumption is intentionally not carried over.
"""

from __future__ import annotations

import datetime
import logging
import uuid
from dataclasses import dataclass

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from tollgate.core.config import settings
from tollgate.core.database import upsert_insert
from tollgate.models.api_key import APIKey
from tollgate.models.rate_window import RateWindowCounter

logger = logging.getLogger(__name__)

# Window kind constants, checked in this order
WINDOW_HOUR = "hour"
WINDOW_DAY = "day"
WINDOW_MONTH = "month"
WINDOW_KINDS = (WINDOW_HOUR, WINDOW_DAY, WINDOW_MONTH)


# ── Window arithmetic ───────────────────────────────────────
def window_start(kind: str, now: datetime.datetime) -> datetime.datetime:
    """Floor a timestamp to the start of its calendar window (UTC)."""
    now = now.astimezone(datetime.timezone.utc)
    if kind == WINDOW_HOUR:
        return now.replace(minute=0, second=0, microsecond=0)
    if kind == WINDOW_DAY:
        return now.replace(hour=0, minute=0, second=0, microsecond=0)
    if kind == WINDOW_MONTH:
        return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    raise ValueError(f"Unknown window kind '{kind}'")


def window_end(kind: str, start: datetime.datetime) -> datetime.datetime:
    """The exclusive end of the window starting at `start` (its reset time)."""
    if kind == WINDOW_HOUR:
        return start + datetime.timedelta(hours=1)
    if kind == WINDOW_DAY:
        return start + datetime.timedelta(days=1)
    if kind == WINDOW_MONTH:
        if start.month == 12:
            return start.replace(year=start.year + 1, month=1)
        return start.replace(month=start.month + 1)
    raise ValueError(f"Unknown window kind '{kind}'")


# ── Results ─────────────────────────────────────────────────
@dataclass(frozen=True, slots=True)
class Allow:
    """The call was counted in every window."""

    remaining: int

    allowed = True


@dataclass(frozen=True, slots=True)
class Deny:
    """A window is exhausted; nothing was counted."""

    window: str
    reset_at: datetime.datetime
    limit: int

    allowed = False

    def retry_after(self, now: datetime.datetime) -> int:
        """Whole seconds until the window resets (at least 1)."""
        return max(1, int((self.reset_at - now).total_seconds() + 0.999))


RateDecision = Allow | Deny


@dataclass(frozen=True, slots=True)
class WindowUsage:
    """Read-only view of one window's consumption."""

    window: str
    used: int
    limit: int
    reset_at: datetime.datetime

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)


# ── Counters ────────────────────────────────────────────────
async def _increment_if_below(
    session: AsyncSession,
    credential_id: uuid.UUID,
    kind: str,
    start: datetime.datetime,
    limit: int,
) -> int | None:
    """
    Atomically bump the counter if it is below `limit`.

    Returns the new count, or None when the window is already full.
    """
    stmt = (
        upsert_insert(session, RateWindowCounter)
        .values(
            credential_id=credential_id,
            window_kind=kind,
            window_start=start,
            request_count=1,
        )
        .on_conflict_do_update(
            index_elements=["credential_id", "window_kind", "window_start"],
            set_={"request_count": RateWindowCounter.request_count + 1},
            where=RateWindowCounter.request_count < limit,
        )
        .returning(RateWindowCounter.request_count)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def check(
    session: AsyncSession,
    credential: APIKey,
    *,
    now: datetime.datetime | None = None,
) -> RateDecision:
    """
    Count one call against all three windows, or none of them.

    Commits on Allow, rolls back on Deny.
    """
    now = now or datetime.datetime.now(datetime.timezone.utc)
    credential_id = credential.id
    limits = credential.rate_limits

    remaining: list[int] = []
    for kind in WINDOW_KINDS:
        start = window_start(kind, now)
        count = await _increment_if_below(session, credential_id, kind, start, limits[kind])
        if count is None:
            # Rollback expires loaded instances; reload the credential for the caller.
            await session.rollback()
            await session.refresh(credential)
            reset_at = window_end(kind, start)
            logger.info(
                "Rate limit hit: key %s %s window (limit %d, resets %s)",
                credential_id, kind, limits[kind], reset_at.isoformat(),
            )
            return Deny(window=kind, reset_at=reset_at, limit=limits[kind])
        remaining.append(limits[kind] - count)

    await session.commit()
    return Allow(remaining=min(remaining))


async def snapshot(
    session: AsyncSession,
    credential: APIKey,
    *,
    now: datetime.datetime | None = None,
) -> list[WindowUsage]:
    """Current consumption of each window, without counting a call."""
    now = now or datetime.datetime.now(datetime.timezone.utc)
    limits = credential.rate_limits

    usage: list[WindowUsage] = []
    for kind in WINDOW_KINDS:
        start = window_start(kind, now)
        stmt = select(RateWindowCounter.request_count).where(
            RateWindowCounter.credential_id == credential.id,
            RateWindowCounter.window_kind == kind,
            RateWindowCounter.window_start == start,
        )
        used = (await session.execute(stmt)).scalar_one_or_none() or 0
        usage.append(
            WindowUsage(
                window=kind,
                used=used,
                limit=limits[kind],
                reset_at=window_end(kind, start),
            )
        )
    return usage


async def purge_closed_windows(
    session: AsyncSession,
    *,
    now: datetime.datetime | None = None,
) -> int:
    """Delete counters whose window started before the retention horizon."""
    now = now or datetime.datetime.now(datetime.timezone.utc)
    horizon = now - datetime.timedelta(days=settings.RATE_COUNTER_RETENTION_DAYS)

    result = await session.execute(
        delete(RateWindowCounter)
        .where(RateWindowCounter.window_start < horizon)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    if result.rowcount:
        logger.info("Purged %d closed rate-limit counters", result.rowcount)
    return result.rowcount
