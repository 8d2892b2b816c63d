"""
Key management router.

Operator endpoints (X-Owner-Id):
  POST /keys                  — issue a key (secret returned once)
  GET  /keys                  — list the owner's keys
  GET  /keys/{id}             — one key
  POST /keys/{id}/activate    — pending → active
  POST /keys/{id}/rotate      — new secret; old one kept for the grace period
  POST /keys/{id}/revoke      — tombstone
  GET  /keys/{id}/usage       — daily usage per metric

Integration endpoint (Bearer):
  GET  /keys/me/limits        — current rate-limit window consumption
"""

import datetime
import logging
import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from tollgate.auth.dependencies import AuthContext, get_current_credential, get_owner_id
from tollgate.core.database import get_db_session
from tollgate.models.api_key import APIKey
from tollgate.schemas.api_key import (
    APIKeyCreate,
    APIKeyIssued,
    APIKeyOut,
    RevokeRequest,
    RotateRequest,
    UsagePoint,
    UsageStatsOut,
    WindowUsageOut,
)
from tollgate.services import key_vault, rate_limiter

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Keys"])

# Type aliases for cleaner signatures
DbSession = Annotated[AsyncSession, Depends(get_db_session)]
OwnerId = Annotated[str, Depends(get_owner_id)]
Auth = Annotated[AuthContext, Depends(get_current_credential)]


def _issued(raw_secret: str, credential: APIKey) -> APIKeyIssued:
    return APIKeyIssued(
        raw_secret=raw_secret,
        credential=APIKeyOut.model_validate(credential),
    )


@router.post(
    "",
    response_model=APIKeyIssued,
    status_code=status.HTTP_201_CREATED,
    summary="Issue a new API key",
    description=(
        "Creates a key in a new lineage. The raw secret is returned in this "
        "response only; the server keeps its SHA-256 digest."
    ),
)
async def create_key(
    payload: APIKeyCreate,
    session: DbSession,
    owner_id: OwnerId,
) -> APIKeyIssued:
    rate_limits = None
    if payload.rate_limits is not None:
        rate_limits = key_vault.RateLimits(
            per_hour=payload.rate_limits.per_hour,
            per_day=payload.rate_limits.per_day,
            per_month=payload.rate_limits.per_month,
        )

    raw_secret, credential = await key_vault.generate(
        session,
        owner_id,
        scopes=payload.scopes,
        rate_limits=rate_limits,
        environment=payload.environment,
        subscriber_id=payload.subscriber_id,
        name=payload.name,
        expires_in_days=payload.expires_in_days,
        rotate_every_days=payload.rotate_every_days,
        activate=payload.activate,
    )
    return _issued(raw_secret, credential)


@router.get(
    "",
    response_model=list[APIKeyOut],
    summary="List API keys",
    description="All of the owner's keys, newest first, revoked ones included.",
)
async def list_keys(session: DbSession, owner_id: OwnerId) -> list[APIKey]:
    return await key_vault.list_credentials(session, owner_id)


@router.get(
    "/me/limits",
    response_model=list[WindowUsageOut],
    summary="Rate-limit consumption of the calling key",
    description="Reads the hour, day and month windows without counting a call.",
)
async def my_limits(session: DbSession, auth: Auth) -> list[WindowUsageOut]:
    usage = await rate_limiter.snapshot(session, auth.credential)
    return [WindowUsageOut.model_validate(window) for window in usage]


@router.get(
    "/{key_id}",
    response_model=APIKeyOut,
    summary="Get one API key",
)
async def get_key(key_id: uuid.UUID, session: DbSession, owner_id: OwnerId) -> APIKey:
    return await key_vault.get_credential(session, key_id, owner_id)


@router.post(
    "/{key_id}/activate",
    response_model=APIKeyOut,
    summary="Activate a pending key",
)
async def activate_key(key_id: uuid.UUID, session: DbSession, owner_id: OwnerId) -> APIKey:
    return await key_vault.activate(session, key_id, owner_id)


@router.post(
    "/{key_id}/rotate",
    response_model=APIKeyIssued,
    summary="Rotate an API key",
    description=(
        "Issues a successor secret. The old key keeps working until its grace "
        "period ends. Returns 409 if the lineage is already mid-rotation."
    ),
)
async def rotate_key(
    key_id: uuid.UUID,
    session: DbSession,
    owner_id: OwnerId,
    payload: RotateRequest | None = None,
) -> APIKeyIssued:
    payload = payload or RotateRequest()
    grace_period = (
        datetime.timedelta(hours=payload.grace_hours)
        if payload.grace_hours is not None
        else None
    )
    raw_secret, credential = await key_vault.rotate(
        session,
        key_id,
        owner_id,
        payload.reason,
        rotated_by=payload.rotated_by,
        rotation_type=payload.rotation_type,
        grace_period=grace_period,
    )
    return _issued(raw_secret, credential)


@router.post(
    "/{key_id}/revoke",
    response_model=APIKeyOut,
    summary="Revoke an API key",
    description=(
        "Tombstones the key. Revoking the current key of a lineage also "
        "revokes its predecessor still in grace."
    ),
)
async def revoke_key(
    key_id: uuid.UUID,
    session: DbSession,
    owner_id: OwnerId,
    payload: RevokeRequest | None = None,
) -> APIKey:
    payload = payload or RevokeRequest()
    return await key_vault.revoke(
        session,
        key_id,
        owner_id,
        revoked_by=payload.revoked_by,
        reason=payload.reason,
    )


@router.get(
    "/{key_id}/usage",
    response_model=UsageStatsOut,
    summary="Daily usage of one key",
    description="Per-metric daily totals over the trailing window, today included.",
)
async def key_usage(
    key_id: uuid.UUID,
    session: DbSession,
    owner_id: OwnerId,
    window_days: int = Query(default=30, ge=1, le=366),
) -> UsageStatsOut:
    stats = await key_vault.usage_stats(session, key_id, owner_id, window_days)
    return UsageStatsOut(
        credential_id=key_id,
        window_days=window_days,
        metrics={
            metric: [UsagePoint(bucket_start=start, total=total) for start, total in series]
            for metric, series in stats.items()
        },
    )
