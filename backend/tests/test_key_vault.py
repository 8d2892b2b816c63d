"""Tests for the key vault: issuance, validation, rotation, revocation."""

import asyncio
import datetime
from decimal import Decimal

import pytest
from sqlalchemy import select

from tests.helpers import NOW, OTHER_OWNER_ID, OWNER_ID, SUBSCRIBER_ID, hours, make_key, make_tier
from tollgate.auth.hashing import hash_api_key
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
    STATUS_REVOKED,
    STATUS_ROTATING,
    APIKey,
)
from tollgate.models.key_lineage import KeyLineage, KeyRotation
from tollgate.services import key_vault, usage_ledger

DAY = datetime.timedelta(days=1)


async def _live_members(session, lineage_id):
    stmt = select(APIKey).where(
        APIKey.lineage_id == lineage_id,
        APIKey.status.in_((STATUS_ACTIVE, STATUS_ROTATING)),
    )
    return list((await session.execute(stmt)).scalars())


# ---------------------------------------------------------------------------
# generate / validate
# ---------------------------------------------------------------------------


class TestGenerate:
    @pytest.mark.asyncio
    async def test_secret_is_returned_once_and_only_hash_stored(self, session):
        raw, credential = await make_key(session, environment="live")

        assert raw.startswith("sk_live_")
        assert credential.key_hash == hash_api_key(raw)
        assert credential.hint == "..." + raw[-4:]
        assert raw not in (credential.key_hash, credential.hint)

    @pytest.mark.asyncio
    async def test_defaults_applied(self, session):
        _, credential = await make_key(session)

        assert credential.status == STATUS_ACTIVE
        assert credential.scopes == ["read:basic"]
        assert credential.rate_limits == {"hour": 1000, "day": 10000, "month": 100000}

    @pytest.mark.asyncio
    async def test_non_positive_rate_limit_is_rejected(self, session):
        with pytest.raises(ValueError):
            await make_key(session, rate_limits=key_vault.RateLimits(per_hour=-1))

    @pytest.mark.asyncio
    async def test_unknown_environment_is_rejected(self, session):
        with pytest.raises(ValueError):
            await make_key(session, environment="staging")


class TestValidate:
    @pytest.mark.asyncio
    async def test_resolves_secret_to_credential(self, session):
        raw, credential = await make_key(session)

        resolved = await key_vault.validate(session, raw, now=NOW + hours(1))

        assert resolved.id == credential.id
        assert resolved.last_used_at == NOW + hours(1)

    @pytest.mark.asyncio
    async def test_unknown_secret_is_invalid(self, session):
        with pytest.raises(InvalidCredential):
            await key_vault.validate(session, "sk_test_doesnotexist", now=NOW)

    @pytest.mark.asyncio
    async def test_malformed_secret_is_invalid(self, session):
        with pytest.raises(InvalidCredential):
            await key_vault.validate(session, "not-a-key", now=NOW)

    @pytest.mark.asyncio
    async def test_missing_credential_is_invalid_whatever_the_comparison(self, session, monkeypatch):
        monkeypatch.setattr(key_vault, "digests_match", lambda presented, stored: True)

        with pytest.raises(InvalidCredential):
            await key_vault.validate(session, "sk_test_doesnotexist", now=NOW)

    @pytest.mark.asyncio
    async def test_pending_key_is_invalid_until_activated(self, session):
        raw, credential = await make_key(session, activate=False)

        with pytest.raises(InvalidCredential):
            await key_vault.validate(session, raw, now=NOW)

        await key_vault.activate(session, credential.id, OWNER_ID, now=NOW)
        assert (await key_vault.validate(session, raw, now=NOW)).id == credential.id

    @pytest.mark.asyncio
    async def test_expired_key(self, session):
        raw, credential = await make_key(session, expires_in_days=1)

        with pytest.raises(CredentialExpired):
            await key_vault.validate(session, raw, now=NOW + 2 * DAY)
        assert credential.status == STATUS_EXPIRED


# ---------------------------------------------------------------------------
# rotate
# ---------------------------------------------------------------------------


class TestRotate:
    @pytest.mark.asyncio
    async def test_old_key_valid_during_grace_then_revoked(self, session):
        old_raw, old = await make_key(session)
        new_raw, new = await key_vault.rotate(session, old.id, OWNER_ID, now=NOW)

        assert new.id != old.id
        assert new.supersedes_id == old.id
        assert old.status == STATUS_ROTATING
        assert (await key_vault.validate(session, old_raw, now=NOW + hours(1))).id == old.id
        assert (await key_vault.validate(session, new_raw, now=NOW + hours(1))).id == new.id

        with pytest.raises(CredentialRevoked):
            await key_vault.validate(session, old_raw, now=NOW + hours(25))
        assert (await key_vault.validate(session, new_raw, now=NOW + hours(25))).id == new.id

    @pytest.mark.asyncio
    async def test_grace_boundary_is_inclusive(self, session):
        old_raw, old = await make_key(session)
        await key_vault.rotate(session, old.id, OWNER_ID, now=NOW)

        assert (await key_vault.validate(session, old_raw, now=NOW + hours(24))).id == old.id

    @pytest.mark.asyncio
    async def test_second_rotation_during_grace_conflicts(self, session):
        _, old = await make_key(session)
        _, new = await key_vault.rotate(session, old.id, OWNER_ID, now=NOW)

        with pytest.raises(AlreadyRotating):
            await key_vault.rotate(session, old.id, OWNER_ID, now=NOW + hours(1))
        with pytest.raises(AlreadyRotating):
            await key_vault.rotate(session, new.id, OWNER_ID, now=NOW + hours(1))

        assert len(await _live_members(session, old.lineage_id)) == 2

    @pytest.mark.asyncio
    async def test_rotation_after_grace_finishes_previous_one(self, session):
        _, first = await make_key(session)
        _, second = await key_vault.rotate(session, first.id, OWNER_ID, now=NOW)
        _, third = await key_vault.rotate(session, second.id, OWNER_ID, now=NOW + 2 * DAY)

        live = {c.id for c in await _live_members(session, first.lineage_id)}
        assert live == {second.id, third.id}
        await session.refresh(first)
        assert first.status == STATUS_REVOKED

    @pytest.mark.asyncio
    async def test_rotation_is_audited(self, session):
        _, old = await make_key(session)
        _, new = await key_vault.rotate(
            session, old.id, OWNER_ID, "leaked in CI logs",
            rotated_by="alice", rotation_type="security", now=NOW,
        )

        rotation = (await session.execute(select(KeyRotation))).scalar_one()
        assert (rotation.old_credential_id, rotation.new_credential_id) == (old.id, new.id)
        assert rotation.rotation_type == "security"
        assert rotation.reason == "leaked in CI logs"

    @pytest.mark.asyncio
    async def test_foreign_owner_gets_not_found(self, session):
        _, credential = await make_key(session)

        with pytest.raises(NotFound):
            await key_vault.rotate(session, credential.id, OTHER_OWNER_ID, now=NOW)

    @pytest.mark.asyncio
    async def test_successor_inherits_capabilities(self, session):
        _, old = await make_key(
            session,
            scopes=["usage:write"],
            rate_limits=key_vault.RateLimits(per_hour=7),
            subscriber_id=SUBSCRIBER_ID,
        )
        _, new = await key_vault.rotate(session, old.id, OWNER_ID, now=NOW)

        assert new.scopes == ["usage:write"]
        assert new.rate_limit_per_hour == 7
        assert new.subscriber_id == SUBSCRIBER_ID
        assert new.lineage_id == old.lineage_id

    @pytest.mark.asyncio
    async def test_concurrent_rotations_have_one_winner(self, concurrent_session_factory):
        async with concurrent_session_factory() as session:
            _, old = await make_key(session)

        async def attempt():
            async with concurrent_session_factory() as session:
                _, new = await key_vault.rotate(session, old.id, OWNER_ID, now=NOW)
                return new

        results = await asyncio.gather(attempt(), attempt(), return_exceptions=True)

        winners = [r for r in results if isinstance(r, APIKey)]
        assert len(winners) == 1
        assert sum(isinstance(r, AlreadyRotating) for r in results) == 1

        async with concurrent_session_factory() as session:
            live = await _live_members(session, old.lineage_id)
            lineage = await session.get(KeyLineage, old.lineage_id)
        assert sorted(c.status for c in live) == [STATUS_ACTIVE, STATUS_ROTATING]
        assert (lineage.active_credential_id, lineage.grace_credential_id) == (winners[0].id, old.id)


# ---------------------------------------------------------------------------
# revoke
# ---------------------------------------------------------------------------


class TestRevoke:
    @pytest.mark.asyncio
    async def test_revoked_key_is_rejected_and_kept_as_tombstone(self, session):
        raw, credential = await make_key(session)

        await key_vault.revoke(
            session, credential.id, OWNER_ID, revoked_by="alice", reason="offboarded", now=NOW,
        )

        with pytest.raises(CredentialRevoked):
            await key_vault.validate(session, raw, now=NOW + hours(1))
        assert credential.status == STATUS_REVOKED
        assert credential.revoked_reason == "offboarded"
        assert len(await key_vault.list_credentials(session, OWNER_ID)) == 1

    @pytest.mark.asyncio
    async def test_revoking_active_member_closes_lineage(self, session):
        old_raw, old = await make_key(session)
        _, new = await key_vault.rotate(session, old.id, OWNER_ID, now=NOW)

        await key_vault.revoke(session, new.id, OWNER_ID, now=NOW + hours(1))

        with pytest.raises(CredentialRevoked):
            await key_vault.validate(session, old_raw, now=NOW + hours(2))
        lineage = await session.get(KeyLineage, old.lineage_id, populate_existing=True)
        assert lineage.closed_at is not None

    @pytest.mark.asyncio
    async def test_revoking_grace_member_frees_rotation_slot(self, session):
        _, old = await make_key(session)
        _, new = await key_vault.rotate(session, old.id, OWNER_ID, now=NOW)

        await key_vault.revoke(session, old.id, OWNER_ID, now=NOW + hours(1))
        _, newest = await key_vault.rotate(session, new.id, OWNER_ID, now=NOW + hours(2))

        assert newest.supersedes_id == new.id

    @pytest.mark.asyncio
    async def test_revoke_is_idempotent(self, session):
        _, credential = await make_key(session)

        await key_vault.revoke(session, credential.id, OWNER_ID, now=NOW)
        again = await key_vault.revoke(session, credential.id, OWNER_ID, now=NOW + hours(1))

        assert again.revoked_at == NOW


# ---------------------------------------------------------------------------
# Maintenance and stats
# ---------------------------------------------------------------------------


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_persists_time_driven_transitions(self, session):
        _, rotated = await make_key(session)
        await key_vault.rotate(session, rotated.id, OWNER_ID, now=NOW)
        _, expiring = await make_key(session, expires_in_days=1)
        _, scheduled = await make_key(session, rotate_every_days=1)

        report = await key_vault.run_key_maintenance(session, now=NOW + 2 * DAY)

        assert report.grace_finalized == 1
        assert report.expired == 1
        assert scheduled.id in report.due_for_rotation
        assert rotated.status == STATUS_REVOKED
        assert expiring.status == STATUS_EXPIRED

    @pytest.mark.asyncio
    async def test_rotate_due_keys_delivers_each_new_secret(self, session):
        _, scheduled = await make_key(session, rotate_every_days=1)
        delivered = []

        async def deliver(credential, raw_secret):
            delivered.append((credential.supersedes_id, raw_secret))

        rotated = await key_vault.rotate_due_keys(session, deliver, now=NOW + 2 * DAY)

        assert rotated == 1
        assert delivered[0][0] == scheduled.id
        assert delivered[0][1].startswith("sk_test_")


@pytest.mark.asyncio
async def test_usage_stats_daily_series(session):
    await make_tier(session)
    _, credential = await make_key(session)
    await usage_ledger.record(
        session, owner_id=OWNER_ID, subject_id=str(credential.id),
        metric="api_call", quantity=4, timestamp=NOW - DAY,
    )
    await usage_ledger.record(
        session, owner_id=OWNER_ID, subject_id=str(credential.id),
        metric="api_call", quantity=6, timestamp=NOW,
    )

    stats = await key_vault.usage_stats(session, credential.id, OWNER_ID, window_days=7, now=NOW)

    series = list(stats["api_call"])
    assert len(series) == 7
    assert [total for _, total in series[-2:]] == [Decimal("4"), Decimal("6")]
    assert stats["api_call"].total() == Decimal("10")
