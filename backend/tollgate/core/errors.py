"""
Typed failures raised by the engine services.

Every error carries the HTTP status it maps to; main.py registers a single
handler for the base class. Rate-limit denials and overage pricing are NOT
errors; services return them as result values. RateLimitExceeded exists
only for the HTTP boundary that turns a Deny into a 429.
"""

from __future__ import annotations

import datetime


class TollgateError(Exception):
    """Base class for all engine failures."""

    status_code: int = 400
    message: str = "Request could not be processed."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.message
        super().__init__(self.message)


class NotFound(TollgateError):
    """Credential or tier is absent, or belongs to another owner.

    The two cases are deliberately indistinguishable to the caller.
    """

    status_code = 404
    message = "Resource not found."


# ── Credential state errors ─────────────────────────────────
class CredentialError(TollgateError):
    """A presented credential cannot be used."""

    status_code = 401
    message = "Invalid or missing API key."


class InvalidCredential(CredentialError):
    """Unknown, malformed, or not-yet-activated secret."""


class CredentialExpired(CredentialError):
    """The credential passed its expires_at."""

    message = "API key has expired."


class CredentialRevoked(CredentialError):
    """The credential was revoked or its rotation grace period ended."""

    message = "API key has been revoked."


class AlreadyRotating(TollgateError):
    """A rotation is already in flight for this key lineage."""

    status_code = 409
    message = "A rotation is already in progress for this key."


# ── Metering errors ─────────────────────────────────────────
class RateLimitExceeded(TollgateError):
    """Raised at the HTTP boundary when RateLimiter.check denies."""

    status_code = 429

    def __init__(
        self,
        window: str,
        reset_at: datetime.datetime,
        limit: int,
    ) -> None:
        self.window = window
        self.reset_at = reset_at
        self.limit = limit
        super().__init__(
            f"Rate limit exceeded for the current {window} window. "
            f"Retry after {reset_at.isoformat()}."
        )


class InvalidMetric(TollgateError):
    """The metric is not defined by the owner's tier."""

    status_code = 422

    def __init__(self, metric: str) -> None:
        self.metric = metric
        super().__init__(f"Metric '{metric}' is not recognized for this owner.")


class WriteConflict(TollgateError):
    """An idempotency key was reused with a different payload."""

    status_code = 409

    def __init__(self, idempotency_key: str) -> None:
        self.idempotency_key = idempotency_key
        super().__init__(
            f"Idempotency key '{idempotency_key}' was already used "
            "for a different usage event."
        )


# ── Catalog errors ──────────────────────────────────────────
class MalformedTier(TollgateError):
    """Tier definition violates the allowance/overage invariants."""

    status_code = 422
    message = "Tier definition is malformed."
