"""
FastAPI dependency for rate limit enforcement.

Depends on get_current_credential (auth runs first), then counts the call
against the credential's hour, day and month windows.
Order in request pipeline: AUTH → RATE LIMIT → ROUTER LOGIC.

A Deny becomes RateLimitExceeded, which the app's error handler renders as
429 with Retry-After and RateLimit-* headers.
"""

from __future__ import annotations

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from tollgate.auth.dependencies import AuthContext, get_current_credential
from tollgate.core.database import get_db_session
from tollgate.core.errors import RateLimitExceeded
from tollgate.services import rate_limiter


async def enforce_rate_limit(
    auth: AuthContext = Depends(get_current_credential),
    session: AsyncSession = Depends(get_db_session),
) -> AuthContext:
    """
    Count one call; raise RateLimitExceeded if any window is exhausted.

    Returns the AuthContext so routers can access the credential.
    """
    decision = await rate_limiter.check(session, auth.credential)
    if isinstance(decision, rate_limiter.Deny):
        raise RateLimitExceeded(decision.window, decision.reset_at, decision.limit)
    return auth
