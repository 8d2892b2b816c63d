"""
API key hashing utilities.

Security notes:
  • SHA-256 is used for key hashing — acceptable for API keys because
    they are high-entropy random strings (not low-entropy passwords).
    bcrypt/argon2 would add latency to every request on the hot path.
  • Raw keys carry an environment prefix: sk_test_ / sk_live_
    (convention, not security).
  • generate_api_key() returns the raw key exactly once — the caller
    must display it to the user immediately. It is never stored.
  • digests_match() compares in constant time.
"""

import hashlib
import hmac
import secrets
from dataclasses import dataclass

from tollgate.core.config import settings

KEY_PREFIXES = {
    "test": "sk_test_",
    "live": "sk_live_",
}

# 32 url-safe base64 characters ≈ 192 bits of entropy.
_KEY_BODY_LENGTH = 32

# Compared against on a lookup miss so hits and misses cost the same.
_DUMMY_DIGEST = hashlib.sha256(b"tollgate-no-such-key").hexdigest()


@dataclass(frozen=True, slots=True)
class GeneratedKey:
    """Raw secret plus the values that are safe to persist."""

    raw_key: str
    key_hash: str
    hint: str


def hash_api_key(raw_key: str) -> str:
    """
    Hash a raw API key using SHA-256.

    Returns the hex digest string for storage/lookup.
    """
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def key_hint(raw_key: str) -> str:
    """Display-safe hint: '...' plus the last few characters."""
    return "..." + raw_key[-settings.KEY_HINT_LENGTH:]


def generate_api_key(environment: str = "test") -> GeneratedKey:
    """
    Generate a new API key for the given environment ('test' or 'live').

    Raises:
        ValueError: If the environment is unknown.
    """
    prefix = KEY_PREFIXES.get(environment)
    if prefix is None:
        raise ValueError(f"Unknown key environment '{environment}'")

    body = secrets.token_urlsafe(_KEY_BODY_LENGTH)[:_KEY_BODY_LENGTH]
    raw_key = f"{prefix}{body}"
    return GeneratedKey(
        raw_key=raw_key,
        key_hash=hash_api_key(raw_key),
        hint=key_hint(raw_key),
    )


def looks_like_api_key(raw_key: str) -> bool:
    """Cheap structural check before touching the database."""
    return any(raw_key.startswith(prefix) for prefix in KEY_PREFIXES.values())


def digests_match(presented: str, stored: str | None) -> bool:
    """
    Constant-time digest comparison.

    When the lookup found nothing (stored is None) the presented digest is
    still compared against a dummy so the call takes the same time.
    """
    if stored is None:
        hmac.compare_digest(presented, _DUMMY_DIGEST)
        return False
    return hmac.compare_digest(presented, stored)
