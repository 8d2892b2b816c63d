"""
Key vault service — credential issuance, validation, rotation and revocation.

State machine (per credential):
    pending → active → rotating → revoked
    active  → expired                       (past expires_at)
    pending | active → revoked              (explicit revoke)

Rotation is modelled by a KeyLineage row holding one active member and at
most one grace member. rotate() creates the new credential, flips the old
one to 'rotating' and swaps the lineage pointers in ONE transaction. The
lineage swap is a compare-and-set (`grace_credential_id IS NULL`), so a
concurrent second rotation fails with AlreadyRotating instead of producing
a third live member.

Security:
  • The raw secret is returned exactly once by generate()/rotate() and is
    never persisted or logged. Only the hash and the display hint are.
  • validate() compares digests in constant time, including on a miss.

Transitions discovered lazily (grace over, expiry passed) are persisted
by validate() and by run_key_maintenance() at startup.
"""

from __future__ import annotations

import datetime
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tollgate.auth.hashing import (
    digests_match,
    generate_api_key,
    hash_api_key,
    looks_like_api_key,
)
from tollgate.core.config import settings
from tollgate.core.errors import (
    AlreadyRotating,
    CredentialExpired,
    CredentialRevoked,
    InvalidCredential,
    NotFound,
)
from tollgate.models.api_key import (
    STATUS_ACTIVE,
    STATUS_EXPIRED,
    STATUS_PENDING,
    STATUS_REVOKED,
    STATUS_ROTATING,
    APIKey,
    utcnow,
)
from tollgate.models.key_lineage import (
    ROTATION_AUTO,
    ROTATION_MANUAL,
    ROTATION_TYPES,
    KeyLineage,
    KeyRotation,
)
from tollgate.services import usage_ledger
from tollgate.services.usage_ledger import UsageSeries

logger = logging.getLogger(__name__)

_GRACE_ENDED_REASON = "rotation grace period ended"


@dataclass(frozen=True, slots=True)
class RateLimits:
    """Per-credential ceilings; None falls back to the configured default."""

    per_hour: int | None = None
    per_day: int | None = None
    per_month: int | None = None

    def resolved(self) -> tuple[int, int, int]:
        limits = (
            self.per_hour or settings.DEFAULT_RATE_LIMIT_PER_HOUR,
            self.per_day or settings.DEFAULT_RATE_LIMIT_PER_DAY,
            self.per_month or settings.DEFAULT_RATE_LIMIT_PER_MONTH,
        )
        if any(limit <= 0 for limit in limits):
            raise ValueError("rate limits must be positive")
        return limits


@dataclass
class MaintenanceReport:
    """What one maintenance sweep changed."""

    grace_finalized: int = 0
    expired: int = 0
    due_for_rotation: list[uuid.UUID] = field(default_factory=list)
    rotated: int = 0


# ── Lookups ─────────────────────────────────────────────────
async def _get_owned(
    session: AsyncSession,
    credential_id: uuid.UUID,
    owner_id: str,
    *,
    for_update: bool = False,
) -> APIKey:
    """Load a credential the owner holds; NotFound for absent OR foreign."""
    stmt = select(APIKey).where(
        APIKey.id == credential_id,
        APIKey.owner_id == owner_id,
    )
    if for_update:
        stmt = stmt.with_for_update()
    credential = (await session.execute(stmt)).scalar_one_or_none()
    if credential is None:
        raise NotFound("API key not found.")
    return credential


async def get_credential(
    session: AsyncSession,
    credential_id: uuid.UUID,
    owner_id: str,
) -> APIKey:
    return await _get_owned(session, credential_id, owner_id)


async def list_credentials(session: AsyncSession, owner_id: str) -> list[APIKey]:
    """All of an owner's credentials, newest first (tombstones included)."""
    stmt = (
        select(APIKey)
        .where(APIKey.owner_id == owner_id)
        .order_by(APIKey.created_at.desc())
    )
    return list((await session.execute(stmt)).scalars())


# ── Transitions (no commit) ─────────────────────────────────
def _tombstone(
    credential: APIKey,
    at: datetime.datetime,
    revoked_by: str | None,
    reason: str | None,
) -> None:
    credential.status = STATUS_REVOKED
    credential.revoked_at = at
    credential.revoked_by = revoked_by
    credential.revoked_reason = reason
    credential.rotates_at = None


async def _finalize_grace(session: AsyncSession, credential: APIKey) -> None:
    """rotating → revoked once the grace period is over; clears the lineage slot."""
    _tombstone(credential, credential.revokes_at or utcnow(), None, _GRACE_ENDED_REASON)
    await session.execute(
        update(KeyLineage)
        .where(
            KeyLineage.id == credential.lineage_id,
            KeyLineage.grace_credential_id == credential.id,
        )
        .values(grace_credential_id=None, grace_expires_at=None)
        .execution_options(synchronize_session=False)
    )


def _grace_over(credential: APIKey, now: datetime.datetime) -> bool:
    return (
        credential.status == STATUS_ROTATING
        and credential.revokes_at is not None
        and now > credential.revokes_at
    )


def _past_expiry(credential: APIKey, now: datetime.datetime) -> bool:
    return credential.expires_at is not None and now >= credential.expires_at


# ── Generate ────────────────────────────────────────────────
async def generate(
    session: AsyncSession,
    owner_id: str,
    scopes: list[str] | None = None,
    rate_limits: RateLimits | None = None,
    environment: str = "test",
    *,
    subscriber_id: str | None = None,
    name: str | None = None,
    expires_in_days: int | None = None,
    rotate_every_days: int | None = None,
    activate: bool = True,
    now: datetime.datetime | None = None,
) -> tuple[str, APIKey]:
    """
    Issue a new credential in a new lineage.

    Returns:
        (raw_secret, credential); raw_secret is shown once and never stored.
    """
    now = now or utcnow()
    per_hour, per_day, per_month = (rate_limits or RateLimits()).resolved()
    generated = generate_api_key(environment)

    lineage_id = uuid.uuid4()
    credential = APIKey(
        id=uuid.uuid4(),
        owner_id=owner_id,
        subscriber_id=subscriber_id,
        lineage_id=lineage_id,
        name=name,
        environment=environment,
        key_hash=generated.key_hash,
        hint=generated.hint,
        scopes=list(scopes) if scopes else list(settings.DEFAULT_SCOPES),
        rate_limit_per_hour=per_hour,
        rate_limit_per_day=per_day,
        rate_limit_per_month=per_month,
        status=STATUS_ACTIVE if activate else STATUS_PENDING,
        created_at=now,
        activated_at=now if activate else None,
        expires_at=(
            now + datetime.timedelta(days=expires_in_days) if expires_in_days else None
        ),
        rotate_every_days=rotate_every_days,
        rotates_at=(
            now + datetime.timedelta(days=rotate_every_days) if rotate_every_days else None
        ),
    )
    lineage = KeyLineage(
        id=lineage_id,
        owner_id=owner_id,
        active_credential_id=credential.id,
        created_at=now,
    )

    session.add(lineage)
    await session.flush()
    session.add(credential)
    await session.commit()

    logger.info(
        "Issued %s key %s (%s) for owner %s",
        environment, credential.id, credential.hint, owner_id,
    )
    return generated.raw_key, credential


async def activate(
    session: AsyncSession,
    credential_id: uuid.UUID,
    owner_id: str,
    *,
    now: datetime.datetime | None = None,
) -> APIKey:
    """pending → active. Activating an active key is a no-op."""
    now = now or utcnow()
    credential = await _get_owned(session, credential_id, owner_id, for_update=True)

    if credential.status == STATUS_REVOKED:
        raise CredentialRevoked()
    if credential.status == STATUS_EXPIRED:
        raise CredentialExpired()
    if credential.status == STATUS_PENDING:
        credential.status = STATUS_ACTIVE
        credential.activated_at = now
        await session.commit()
        logger.info("Activated key %s (%s)", credential.id, credential.hint)
    return credential


# ── Validate ────────────────────────────────────────────────
async def validate(
    session: AsyncSession,
    raw_secret: str,
    *,
    now: datetime.datetime | None = None,
) -> APIKey:
    """
    Resolve a presented secret to its credential.

    Accepts 'active' credentials and 'rotating' ones still inside their
    grace period.

    Raises:
        InvalidCredential: unknown, malformed, or pending.
        CredentialExpired: past expires_at.
        CredentialRevoked: revoked, or rotation grace period over.
    """
    now = now or utcnow()
    presented = hash_api_key(raw_secret)

    credential: APIKey | None = None
    if looks_like_api_key(raw_secret):
        stmt = select(APIKey).where(APIKey.key_hash == presented)
        credential = (await session.execute(stmt)).scalar_one_or_none()

    if not digests_match(presented, credential.key_hash if credential else None):
        raise InvalidCredential()
    if credential is None:
        raise InvalidCredential()

    if credential.status == STATUS_PENDING:
        raise InvalidCredential()
    if credential.status == STATUS_REVOKED:
        raise CredentialRevoked()
    if credential.status == STATUS_EXPIRED:
        raise CredentialExpired()

    if _grace_over(credential, now):
        await _finalize_grace(session, credential)
        await session.commit()
        logger.info("Key %s (%s) revoked: grace period over", credential.id, credential.hint)
        raise CredentialRevoked()

    if _past_expiry(credential, now):
        if credential.status == STATUS_ACTIVE:
            credential.status = STATUS_EXPIRED
            credential.rotates_at = None
            await session.commit()
            logger.info("Key %s (%s) expired", credential.id, credential.hint)
        raise CredentialExpired()

    credential.last_used_at = now
    await session.commit()
    return credential


# ── Rotate ──────────────────────────────────────────────────
async def rotate(
    session: AsyncSession,
    credential_id: uuid.UUID,
    owner_id: str,
    reason: str | None = None,
    *,
    rotated_by: str | None = None,
    rotation_type: str = ROTATION_MANUAL,
    grace_period: datetime.timedelta | None = None,
    now: datetime.datetime | None = None,
) -> tuple[str, APIKey]:
    """
    Replace a credential with a fresh secret, keeping the old one valid
    for the grace period.

    The new credential copies scopes, limits, environment, subscriber,
    expiry and rotation cadence. It starts with fresh rate-limit counters.

    Raises:
        NotFound:          absent, or not owned by owner_id.
        AlreadyRotating:   the lineage already has a member in grace.
        CredentialRevoked / CredentialExpired / InvalidCredential:
                           the credential cannot be rotated from its state.
    """
    if rotation_type not in ROTATION_TYPES:
        raise ValueError(f"Unknown rotation type '{rotation_type}'")

    now = now or utcnow()
    grace = (
        grace_period
        if grace_period is not None
        else datetime.timedelta(hours=settings.ROTATION_GRACE_HOURS)
    )

    old = await _get_owned(session, credential_id, owner_id, for_update=True)
    if old.status == STATUS_ROTATING:
        raise AlreadyRotating()
    if old.status == STATUS_REVOKED:
        raise CredentialRevoked()
    if old.status == STATUS_PENDING:
        raise InvalidCredential("A pending API key cannot be rotated.")
    if old.status == STATUS_EXPIRED:
        raise CredentialExpired()
    if _past_expiry(old, now):
        old.status = STATUS_EXPIRED
        old.rotates_at = None
        await session.commit()
        raise CredentialExpired()

    lineage = await session.get(
        KeyLineage, old.lineage_id, with_for_update=True, populate_existing=True,
    )
    if lineage is None or lineage.closed_at is not None:
        raise CredentialRevoked()

    if lineage.grace_credential_id is not None:
        in_grace = await session.get(APIKey, lineage.grace_credential_id)
        if in_grace is None or not _grace_over(in_grace, now):
            raise AlreadyRotating()
        # Previous grace period already ended; finish it before rotating again.
        await _finalize_grace(session, in_grace)

    generated = generate_api_key(old.environment)
    new = APIKey(
        id=uuid.uuid4(),
        owner_id=old.owner_id,
        subscriber_id=old.subscriber_id,
        lineage_id=old.lineage_id,
        name=old.name,
        environment=old.environment,
        key_hash=generated.key_hash,
        hint=generated.hint,
        scopes=list(old.scopes),
        rate_limit_per_hour=old.rate_limit_per_hour,
        rate_limit_per_day=old.rate_limit_per_day,
        rate_limit_per_month=old.rate_limit_per_month,
        status=STATUS_ACTIVE,
        created_at=now,
        activated_at=now,
        expires_at=old.expires_at,
        rotate_every_days=old.rotate_every_days,
        rotates_at=(
            now + datetime.timedelta(days=old.rotate_every_days)
            if old.rotate_every_days else None
        ),
        supersedes_id=old.id,
    )
    session.add(new)

    # Compare-and-set: only one rotation can claim the empty grace slot.
    swapped = await session.execute(
        update(KeyLineage)
        .where(
            KeyLineage.id == old.lineage_id,
            KeyLineage.active_credential_id == old.id,
            KeyLineage.grace_credential_id.is_(None),
        )
        .values(
            active_credential_id=new.id,
            grace_credential_id=old.id,
            grace_expires_at=now + grace,
        )
        .execution_options(synchronize_session=False)
    )
    if swapped.rowcount != 1:
        await session.rollback()
        raise AlreadyRotating()

    old.status = STATUS_ROTATING
    old.superseded_by_id = new.id
    old.revokes_at = now + grace
    old.rotates_at = None

    session.add(
        KeyRotation(
            lineage_id=old.lineage_id,
            old_credential_id=old.id,
            new_credential_id=new.id,
            rotation_type=rotation_type,
            reason=reason,
            rotated_by=rotated_by,
            rotated_at=now,
        )
    )
    await session.commit()

    logger.info(
        "Rotated key %s (%s) → %s (%s), %s rotation, grace until %s",
        old.id, old.hint, new.id, new.hint, rotation_type, old.revokes_at.isoformat(),
    )
    return generated.raw_key, new


# ── Revoke ──────────────────────────────────────────────────
async def revoke(
    session: AsyncSession,
    credential_id: uuid.UUID,
    owner_id: str,
    *,
    revoked_by: str | None = None,
    reason: str | None = None,
    now: datetime.datetime | None = None,
) -> APIKey:
    """
    Tombstone a credential. Revoking twice is a no-op.

    Revoking the grace member only ends its grace period early. Revoking
    any other member closes the lineage: every live member is revoked.
    """
    now = now or utcnow()
    credential = await _get_owned(session, credential_id, owner_id, for_update=True)
    if credential.status == STATUS_REVOKED:
        return credential

    lineage = await session.get(
        KeyLineage, credential.lineage_id, with_for_update=True, populate_existing=True,
    )

    if lineage is not None and lineage.grace_credential_id == credential.id:
        _tombstone(credential, now, revoked_by, reason)
        await session.execute(
            update(KeyLineage)
            .where(KeyLineage.id == lineage.id)
            .values(grace_credential_id=None, grace_expires_at=None)
            .execution_options(synchronize_session=False)
        )
    else:
        stmt = select(APIKey).where(
            APIKey.lineage_id == credential.lineage_id,
            APIKey.status != STATUS_REVOKED,
        )
        for member in (await session.execute(stmt)).scalars():
            _tombstone(member, now, revoked_by, reason)
        await session.execute(
            update(KeyLineage)
            .where(KeyLineage.id == credential.lineage_id)
            .values(grace_credential_id=None, grace_expires_at=None, closed_at=now)
            .execution_options(synchronize_session=False)
        )

    await session.commit()
    logger.info(
        "Revoked key %s (%s) by %s", credential.id, credential.hint, revoked_by or "system",
    )
    return credential


# ── Maintenance ─────────────────────────────────────────────
async def run_key_maintenance(
    session: AsyncSession,
    *,
    now: datetime.datetime | None = None,
) -> MaintenanceReport:
    """
    Persist time-driven transitions and report keys due for rotation.

      • rotating keys past their grace period → revoked
      • active keys past expires_at          → expired
      • active keys past rotates_at          → listed in due_for_rotation
    """
    now = now or utcnow()
    report = MaintenanceReport()

    stmt = select(APIKey).where(
        APIKey.status == STATUS_ROTATING,
        APIKey.revokes_at < now,
    )
    for credential in (await session.execute(stmt)).scalars().all():
        await _finalize_grace(session, credential)
        report.grace_finalized += 1

    stmt = select(APIKey).where(
        APIKey.status == STATUS_ACTIVE,
        APIKey.expires_at <= now,
    )
    for credential in (await session.execute(stmt)).scalars().all():
        credential.status = STATUS_EXPIRED
        credential.rotates_at = None
        report.expired += 1

    await session.commit()

    stmt = select(APIKey.id).where(
        APIKey.status == STATUS_ACTIVE,
        APIKey.rotates_at <= now,
    )
    report.due_for_rotation = list((await session.execute(stmt)).scalars())

    logger.info(
        "Key maintenance: %d grace periods closed, %d expired, %d due for rotation",
        report.grace_finalized, report.expired, len(report.due_for_rotation),
    )
    return report


async def rotate_due_keys(
    session: AsyncSession,
    deliver: Callable[[APIKey, str], Awaitable[None]],
    *,
    now: datetime.datetime | None = None,
) -> int:
    """
    Auto-rotate every active key past its rotates_at.

    `deliver` receives each new credential with its raw secret; it is the
    only place the secret goes. Keys whose lineage is already mid-rotation
    are skipped until the next sweep.
    """
    now = now or utcnow()
    stmt = select(APIKey.id, APIKey.owner_id).where(
        APIKey.status == STATUS_ACTIVE,
        APIKey.rotates_at <= now,
    )
    due = (await session.execute(stmt)).all()

    rotated = 0
    for row in due:
        try:
            raw_secret, new = await rotate(
                session,
                row.id,
                row.owner_id,
                "scheduled rotation",
                rotation_type=ROTATION_AUTO,
                now=now,
            )
        except (AlreadyRotating, CredentialExpired) as exc:
            logger.info("Skipping scheduled rotation of key %s: %s", row.id, exc.message)
            continue
        await deliver(new, raw_secret)
        rotated += 1
    return rotated


# ── Usage stats ─────────────────────────────────────────────
async def usage_stats(
    session: AsyncSession,
    credential_id: uuid.UUID,
    owner_id: str,
    window_days: int = 30,
    *,
    now: datetime.datetime | None = None,
) -> dict[str, UsageSeries]:
    """
    Daily usage series per metric over the trailing `window_days` days,
    today included.
    """
    if window_days <= 0:
        raise ValueError("window_days must be positive")

    now = now or utcnow()
    credential = await _get_owned(session, credential_id, owner_id)
    subject_id = str(credential.id)

    end = now.replace(hour=0, minute=0, second=0, microsecond=0) + datetime.timedelta(days=1)
    start = end - datetime.timedelta(days=window_days)
    day = datetime.timedelta(days=1)

    metrics = await usage_ledger.list_metrics(session, subject_id, start, end)
    return {
        metric: await usage_ledger.time_series(session, subject_id, metric, day, start, end)
        for metric in metrics
    }
