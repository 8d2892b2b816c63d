"""Constants and small builders shared by the test modules."""

import datetime

from tollgate.services import key_vault, tier_catalog

OWNER_ID = "owner-1"
OTHER_OWNER_ID = "owner-2"
SUBSCRIBER_ID = "cust-1"

# A fixed clock well inside a month, so window arithmetic is predictable.
NOW = datetime.datetime(2026, 3, 10, 14, 30, tzinfo=datetime.timezone.utc)

STARTER_TIER = {
    "name": "Starter",
    "price": "10",
    "included_usage": {"api_call": "1000"},
    "overage_rate": {"api_call": "0.01"},
    "entitlements": ["dashboard"],
}


def hours(n: float) -> datetime.timedelta:
    return datetime.timedelta(hours=n)


async def make_tier(session, definition=None, *, owner_id=OWNER_ID, now=NOW):
    return await tier_catalog.create(session, owner_id, definition or STARTER_TIER, now=now)


async def make_key(session, *, owner_id=OWNER_ID, now=NOW, **kwargs):
    return await key_vault.generate(session, owner_id, now=now, **kwargs)
