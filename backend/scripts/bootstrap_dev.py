"""
Dev bootstrap script — seed a tier, a subscriber and an API key locally.

Usage:
    python -m scripts.bootstrap_dev

This will:
  1. Create a "Dev Starter" tier (1000 included api_call, 0.01 overage)
  2. Subscribe the "dev-subscriber" customer to it
  3. Generate a test-mode API key for that subscriber
  4. Print the raw key ONCE (it is never stored)

The raw key is shown exactly once — copy it immediately.
"""

import asyncio
import sys

# Ensure the project root is on the path
sys.path.insert(0, ".")

from tollgate.core.database import async_session_factory, engine
from tollgate.services import key_vault, tier_catalog

OWNER_ID = "dev-owner"
SUBSCRIBER_ID = "dev-subscriber"


async def main() -> None:
    async with async_session_factory() as session:
        # ── Create tier ─────────────────────────────────────
        tier = await tier_catalog.create(
            session,
            OWNER_ID,
            {
                "name": "Dev Starter",
                "price": "0",
                "included_usage": {"api_call": "1000"},
                "overage_rate": {"api_call": "0.01"},
                "entitlements": ["dashboard"],
            },
        )

        # ── Subscribe ───────────────────────────────────────
        await tier_catalog.subscribe(session, OWNER_ID, SUBSCRIBER_ID, tier.id)

        # ── Generate API key ────────────────────────────────
        raw_key, api_key = await key_vault.generate(
            session,
            OWNER_ID,
            environment="test",
            subscriber_id=SUBSCRIBER_ID,
            name="Dev key",
        )

    # ── Print results ───────────────────────────────────────
    print()
    print("=" * 60)
    print("  Dev Bootstrap Complete")
    print("=" * 60)
    print()
    print(f"  Owner:      {OWNER_ID}  (send as X-Owner-Id)")
    print(f"  Tier:       {tier.name} ({tier.id})")
    print(f"  Subscriber: {SUBSCRIBER_ID}")
    print()
    print(f"  API Key:    {raw_key}")
    print(f"  Key ID:     {api_key.id}")
    print()
    print("  ⚠  Copy this key now — it will NEVER be shown again.")
    print("=" * 60)
    print()

    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
