"""
FastAPI application entrypoint.

Lifespan:
  • On startup: verify DB connectivity, run key maintenance and purge
    closed rate-limit windows.
  • On shutdown: dispose the engine cleanly.

Routers:
  • /keys  — API key lifecycle
  • /usage — metering and entitlement checks
  • /tiers — tier catalog and impact preview
  • /health — shallow liveness check
"""

import logging
from contextlib import asynccontextmanager
from collections.abc import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from tollgate.core.config import settings
from tollgate.core.database import async_session_factory, engine
from tollgate.core.errors import CredentialError, RateLimitExceeded, TollgateError
from tollgate.models.api_key import utcnow
from tollgate.routers.keys import router as keys_router
from tollgate.routers.tiers import router as tiers_router
from tollgate.routers.usage import router as usage_router
from tollgate.services import key_vault, rate_limiter

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)


# ── Lifespan ────────────────────────────────────────────────
@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """Startup / shutdown lifecycle."""

    # Startup: verify DB is reachable
    db_available = False
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        logger.info("Database connection verified ✓")
        db_available = True
    except Exception:
        logger.warning(
            "Could not reach the database on startup. "
            "The app will start, but requests will fail until the DB is available."
        )

    # Startup: persist time-driven key transitions (until a scheduler owns this)
    if db_available and settings.RUN_MAINTENANCE_ON_STARTUP:
        try:
            async with async_session_factory() as session:
                report = await key_vault.run_key_maintenance(session)
                purged = await rate_limiter.purge_closed_windows(session)
            logger.info(
                "Startup maintenance completed ✓ (%d keys due for rotation, %d counters purged)",
                len(report.due_for_rotation), purged,
            )
        except Exception:
            logger.exception("Startup maintenance failed (non-fatal)")

    yield  # ← application runs here

    # Shutdown: clean up connection pool
    await engine.dispose()
    logger.info("Database engine disposed ✓")


# ── App ─────────────────────────────────────────────────────
app = FastAPI(
    title=settings.APP_NAME,
    version="0.1.0",
    description=(
        "API key governance and usage-based tier entitlements: "
        "keys, rate limits, metering, tiers and impact previews."
    ),
    lifespan=lifespan,
)


# ── Error mapping ───────────────────────────────────────────
@app.exception_handler(TollgateError)
async def tollgate_error_handler(_request: Request, exc: TollgateError) -> JSONResponse:
    """Render engine failures as {"detail": ...} with their HTTP status."""
    headers: dict[str, str] = {}
    if isinstance(exc, CredentialError):
        headers["WWW-Authenticate"] = "Bearer"
    elif isinstance(exc, RateLimitExceeded):
        retry_after = max(1, int((exc.reset_at - utcnow()).total_seconds() + 0.999))
        headers["Retry-After"] = str(retry_after)
        headers["RateLimit-Limit"] = str(exc.limit)
        headers["RateLimit-Remaining"] = "0"
        headers["RateLimit-Reset"] = str(retry_after)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message},
        headers=headers or None,
    )


# Mount routers
app.include_router(keys_router, prefix="/keys")
app.include_router(usage_router, prefix="/usage")
app.include_router(tiers_router, prefix="/tiers")


# ── Health check ────────────────────────────────────────────
@app.get(
    "/health",
    tags=["System"],
    summary="Liveness check",
)
async def health_check() -> dict[str, str]:
    """Shallow health check. Confirms the process is alive."""
    return {"status": "healthy"}
