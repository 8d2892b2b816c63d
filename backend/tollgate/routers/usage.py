"""
Usage router — metering entry point for integrations.

POST /usage
  1. Authenticates via API key.
  2. Enforces rate limits (hour / day / month windows).
  3. Validates the payload (Pydantic).
  4. Replays a retried idempotency key with its original decision.
  5. Resolves the entitlement decision against the subscriber's tier.
  6. Appends the event to the usage ledger.
  7. Returns the stored record and the decision with 201 Created.

GET /usage/entitlements/{metric}
  Read-only entitlement check for a prospective action.

GET /usage/allowances
  The subscriber's standing against each allowance this billing period.
"""

import datetime
import logging
from decimal import Decimal
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from tollgate.auth.dependencies import AuthContext
from tollgate.auth.rate_limit import enforce_rate_limit
from tollgate.core.config import settings
from tollgate.core.database import get_db_session
from tollgate.core.errors import InvalidMetric
from tollgate.models.api_key import utcnow
from tollgate.models.tier import Tier
from tollgate.models.usage import UsageEvent
from tollgate.schemas.usage import (
    AllowanceReportOut,
    AllowanceStatusOut,
    EntitlementDecisionOut,
    UsageEventCreate,
    UsageEventResponse,
    UsageRecordedOut,
)
from tollgate.services import rate_limiter, tier_catalog, usage_ledger
from tollgate.services.entitlements import (
    Decision,
    Denied,
    TierTerms,
    allowance_status,
    evaluate,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Usage"])

# Type aliases for cleaner signatures
DbSession = Annotated[AsyncSession, Depends(get_db_session)]
Auth = Annotated[AuthContext, Depends(enforce_rate_limit)]


def _billing_period(at: datetime.datetime) -> tuple[datetime.datetime, datetime.datetime]:
    """The calendar month containing `at`."""
    start = rate_limiter.window_start(rate_limiter.WINDOW_MONTH, at)
    return start, rate_limiter.window_end(rate_limiter.WINDOW_MONTH, start)


async def _subscriber_tier(session: AsyncSession, auth: AuthContext) -> Tier | None:
    subscriber_id = auth.credential.subscriber_id
    if subscriber_id is None:
        return None
    return await tier_catalog.terms_for_subscriber(session, auth.owner_id, subscriber_id)


async def _resolve(
    session: AsyncSession,
    auth: AuthContext,
    metric: str,
    quantity: Decimal,
    at: datetime.datetime,
    *,
    recorded_before: datetime.datetime | None = None,
) -> Decision | None:
    """
    Entitlement decision for the credential's subscriber, or None when the
    credential is not attached to a subscriber with a tier.

    Usage is read from the billing period containing `at`.

    Raises:
        InvalidMetric: no tier of the owner defines `metric`, as a metered
            allowance or as a feature flag.
    """
    tier = await _subscriber_tier(session, auth)
    if tier is None:
        return None

    known = set(tier.included_usage) | set(tier.entitlements)
    if metric not in known and metric not in await usage_ledger.recognized_metrics(
        session, auth.owner_id,
    ):
        raise InvalidMetric(metric)

    period_start, period_end = _billing_period(at)
    snapshot = await usage_ledger.aggregate_by_metric(
        session,
        auth.credential.subscriber_id,
        period_start,
        period_end,
        owner_id=auth.owner_id,
        recorded_before=recorded_before,
    )
    return evaluate(TierTerms.from_tier(tier), snapshot, metric, quantity)


def _recorded(event: UsageEvent, metric: str, decision: Decision | None) -> UsageRecordedOut:
    return UsageRecordedOut(
        event=UsageEventResponse.model_validate(event),
        entitlement=(
            EntitlementDecisionOut.from_decision(metric, decision)
            if decision is not None
            else None
        ),
    )


@router.post(
    "",
    response_model=UsageRecordedOut,
    status_code=status.HTTP_201_CREATED,
    summary="Record a usage event",
    description=(
        "Appends a usage event attributed to the authenticated key and its "
        "subscriber. Returns the entitlement decision for the subscriber's "
        "tier. Actions outside the tier are rejected with 403, unknown "
        "metrics with 422. Rate limited."
    ),
)
async def record_usage(
    payload: UsageEventCreate,
    session: DbSession,
    auth: Auth,
) -> UsageRecordedOut:
    """
    Core metering endpoint.

    The client NEVER supplies owner or subject; both come from the
    authenticated credential.
    """
    subject_id = str(auth.credential_id)

    # ── 1. Retried submission ───────────────────────────────
    if payload.idempotency_key is not None:
        existing = await usage_ledger.find_by_idempotency_key(
            session, auth.owner_id, payload.idempotency_key,
        )
        if existing is not None:
            event = usage_ledger.replay(existing, subject_id, payload.metric, payload.quantity)
            decision = await _resolve(
                session, auth, payload.metric, payload.quantity, event.timestamp,
                recorded_before=event.recorded_at,
            )
            return _recorded(event, payload.metric, decision)

    # ── 2. Entitlement decision ─────────────────────────────
    at = payload.timestamp or utcnow()
    decision = await _resolve(session, auth, payload.metric, payload.quantity, at)
    if isinstance(decision, Denied):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Feature '{decision.feature}' is not included in the subscriber's tier.",
        )

    # ── 3. Append to the ledger ─────────────────────────────
    event = await usage_ledger.record(
        session,
        owner_id=auth.owner_id,
        subject_id=subject_id,
        subscriber_id=auth.credential.subscriber_id,
        metric=payload.metric,
        quantity=payload.quantity,
        timestamp=at,
        idempotency_key=payload.idempotency_key,
    )

    logger.info(
        "Recorded usage: key=%s metric=%s quantity=%s",
        auth.credential.hint, event.metric, event.quantity,
    )
    return _recorded(event, payload.metric, decision)


@router.get(
    "/entitlements/{metric}",
    response_model=EntitlementDecisionOut,
    summary="Check an entitlement without recording usage",
    description=(
        "Evaluates whether the subscriber's tier permits the action, and "
        "what overage it would incur. Nothing is recorded. Rate limited."
    ),
)
async def check_entitlement(
    metric: str,
    session: DbSession,
    auth: Auth,
    quantity: Decimal = Query(default=Decimal("1")),
) -> EntitlementDecisionOut:
    decision = await _resolve(session, auth, metric, quantity, utcnow())
    if decision is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="This key is not attached to a subscriber with a tier.",
        )
    return EntitlementDecisionOut.from_decision(metric, decision)


@router.get(
    "/allowances",
    response_model=AllowanceReportOut,
    summary="Allowance standing for the current billing period",
    description=(
        "Usage, remaining allowance, usage percentage and overage per metered "
        "metric of the subscriber's tier, with a soft-limit warning flag. "
        "Rate limited."
    ),
)
async def allowance_report(session: DbSession, auth: Auth) -> AllowanceReportOut:
    tier = await _subscriber_tier(session, auth)
    if tier is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="This key is not attached to a subscriber with a tier.",
        )

    subscriber_id = auth.credential.subscriber_id
    period_start, period_end = _billing_period(utcnow())
    snapshot = await usage_ledger.aggregate_by_metric(
        session, subscriber_id, period_start, period_end, owner_id=auth.owner_id,
    )
    statuses = allowance_status(
        TierTerms.from_tier(tier), snapshot, settings.SOFT_LIMIT_THRESHOLD,
    )
    for standing in statuses:
        if standing.should_warn:
            logger.info(
                "Subscriber %s at %s%% of %s allowance",
                subscriber_id, standing.usage_percentage, standing.metric,
            )

    return AllowanceReportOut(
        subscriber_id=subscriber_id,
        tier_id=tier.id,
        tier_version=tier.version,
        period_start=period_start,
        period_end=period_end,
        soft_limit_threshold=settings.SOFT_LIMIT_THRESHOLD,
        allowances=[AllowanceStatusOut.model_validate(s) for s in statuses],
    )
