"""
FastAPI dependencies for caller identity.

Two kinds of caller:
  • Integrations present an API key as a Bearer token. The key vault
    resolves it (hash lookup, constant-time compare, lifecycle checks)
    and the credential travels on as AuthContext.
  • Operators managing keys and tiers identify the owning tenant with the
    X-Owner-Id header, set by the gateway in front of this service.

Security:
  • Raw keys are NEVER logged
  • Credential failures surface as CredentialError (401 + WWW-Authenticate)
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from tollgate.core.database import get_db_session
from tollgate.core.errors import InvalidCredential
from tollgate.models.api_key import APIKey
from tollgate.services import key_vault

_OWNER_MISSING = HTTPException(
    status_code=status.HTTP_401_UNAUTHORIZED,
    detail="Missing X-Owner-Id header.",
)


@dataclass(frozen=True, slots=True)
class AuthContext:
    """Authenticated request context injected into every key-protected route.

    Attributes:
        credential: The validated API key. Its id is the rate-limit and
                    usage subject; subscriber_id selects the billing tier.
    """

    credential: APIKey

    @property
    def credential_id(self) -> uuid.UUID:
        return self.credential.id

    @property
    def owner_id(self) -> str:
        return self.credential.owner_id


async def get_current_credential(
    authorization: str | None = Header(default=None, alias="Authorization"),
    session: AsyncSession = Depends(get_db_session),
) -> AuthContext:
    """
    FastAPI dependency — resolves a Bearer token to an AuthContext.

    Usage in routers:
        Auth = Annotated[AuthContext, Depends(get_current_credential)]
    """
    if not authorization:
        raise InvalidCredential()

    parts = authorization.split(" ", maxsplit=1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise InvalidCredential()

    credential = await key_vault.validate(session, parts[1].strip())
    return AuthContext(credential=credential)


async def get_owner_id(
    x_owner_id: str | None = Header(default=None, alias="X-Owner-Id"),
) -> str:
    """FastAPI dependency — the tenant an operator request acts for."""
    if not x_owner_id or not x_owner_id.strip():
        raise _OWNER_MISSING
    return x_owner_id.strip()
