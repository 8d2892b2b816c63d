"""
Tier catalog router — operator endpoints (X-Owner-Id).

  POST  /tiers                     — create version 1
  GET   /tiers                     — latest version of each tier
  GET   /tiers/{id}                — latest (or ?version=n)
  PATCH /tiers/{id}                — new version; subscribers keep theirs
  POST  /tiers/{id}/clone          — copy into a new tier
  POST  /tiers/{id}/archive        — hide from new subscriptions
  POST  /tiers/{id}/subscribers    — pin a subscriber to the current version
  GET   /tiers/{id}/subscribers    — live subscriptions
  POST  /tiers/preview-impact      — price a candidate tier against real usage
"""

import logging
import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from tollgate.auth.dependencies import get_owner_id
from tollgate.core.database import get_db_session
from tollgate.models.tier import Tier, TierSubscription
from tollgate.schemas.tier import (
    CandidateTierIn,
    ImpactReportOut,
    SubscribeRequest,
    SubscriptionOut,
    TierCreate,
    TierOut,
    TierPatch,
)
from tollgate.services import tier_catalog
from tollgate.services.impact import CandidateTier, preview_impact

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Tiers"])

# Type aliases for cleaner signatures
DbSession = Annotated[AsyncSession, Depends(get_db_session)]
OwnerId = Annotated[str, Depends(get_owner_id)]


@router.post(
    "",
    response_model=TierOut,
    status_code=status.HTTP_201_CREATED,
    summary="Create a tier",
    description=(
        "Every metric with an included allowance needs an overage rate and "
        "vice versa; violations return 422."
    ),
)
async def create_tier(payload: TierCreate, session: DbSession, owner_id: OwnerId) -> Tier:
    return await tier_catalog.create(session, owner_id, payload.model_dump())


@router.get(
    "",
    response_model=list[TierOut],
    summary="List tiers",
)
async def list_tiers(
    session: DbSession,
    owner_id: OwnerId,
    include_archived: bool = Query(default=False),
) -> list[Tier]:
    return await tier_catalog.list_tiers(session, owner_id, include_archived=include_archived)


@router.post(
    "/preview-impact",
    response_model=ImpactReportOut,
    summary="Preview a candidate tier against trailing usage",
    description=(
        "Read-only. Replays each affected subscriber's recent usage under "
        "both the current and the candidate terms."
    ),
)
async def preview_tier_impact(
    payload: CandidateTierIn,
    session: DbSession,
    owner_id: OwnerId,
) -> ImpactReportOut:
    candidate = CandidateTier(
        name=payload.name,
        price=payload.price,
        included_usage=payload.included_usage,
        overage_rate=payload.overage_rate,
        entitlements=tuple(payload.entitlements),
        replaces_tier_id=payload.replaces_tier_id,
        subscriber_ids=tuple(payload.subscriber_ids),
    )
    report = await preview_impact(session, owner_id, candidate)
    return ImpactReportOut.from_report(report)


@router.get(
    "/{tier_id}",
    response_model=TierOut,
    summary="Get a tier",
)
async def get_tier(
    tier_id: uuid.UUID,
    session: DbSession,
    owner_id: OwnerId,
    version: int | None = Query(default=None, ge=1),
) -> Tier:
    return await tier_catalog.get(session, owner_id, tier_id, version)


@router.patch(
    "/{tier_id}",
    response_model=TierOut,
    summary="Update a tier (new version)",
    description="Existing subscribers stay on the version they were assigned.",
)
async def update_tier(
    tier_id: uuid.UUID,
    payload: TierPatch,
    session: DbSession,
    owner_id: OwnerId,
) -> Tier:
    return await tier_catalog.update_tier(
        session, owner_id, tier_id, payload.model_dump(exclude_unset=True),
    )


@router.post(
    "/{tier_id}/clone",
    response_model=TierOut,
    status_code=status.HTTP_201_CREATED,
    summary="Clone a tier",
)
async def clone_tier(
    tier_id: uuid.UUID,
    session: DbSession,
    owner_id: OwnerId,
    payload: TierPatch | None = None,
) -> Tier:
    overrides = payload.model_dump(exclude_unset=True) if payload is not None else {}
    return await tier_catalog.clone(session, owner_id, tier_id, overrides)


@router.post(
    "/{tier_id}/archive",
    response_model=TierOut,
    summary="Archive a tier",
)
async def archive_tier(tier_id: uuid.UUID, session: DbSession, owner_id: OwnerId) -> Tier:
    return await tier_catalog.archive(session, owner_id, tier_id)


@router.post(
    "/{tier_id}/subscribers",
    response_model=SubscriptionOut,
    status_code=status.HTTP_201_CREATED,
    summary="Subscribe a customer to a tier",
)
async def subscribe(
    tier_id: uuid.UUID,
    payload: SubscribeRequest,
    session: DbSession,
    owner_id: OwnerId,
) -> TierSubscription:
    return await tier_catalog.subscribe(
        session, owner_id, payload.subscriber_id, tier_id, status=payload.status,
    )


@router.get(
    "/{tier_id}/subscribers",
    response_model=list[SubscriptionOut],
    summary="List live subscriptions of a tier",
)
async def list_subscribers(
    tier_id: uuid.UUID,
    session: DbSession,
    owner_id: OwnerId,
) -> list[TierSubscription]:
    await tier_catalog.get(session, owner_id, tier_id)
    return await tier_catalog.active_subscriptions(session, owner_id, tier_id)
