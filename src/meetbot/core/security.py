"""Short-lived meeting SDK credentials.

Every bot process launch (initial join and each reconnect attempt) gets a
freshly signed HS256 JWT so a retry never reuses an expired token.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone

from jose import jwt

SDK_TOKEN_ALGORITHM = "HS256"

_WHITESPACE_RE = re.compile(r"\s")


def create_sdk_token(
    sdk_key: str,
    sdk_secret: str,
    meeting_number: str,
    role: int = 0,
    ttl_seconds: int = 2 * 60 * 60,
    now: datetime | None = None,
) -> str:
    """Sign a meeting SDK JWT for one meeting.

    Args:
        sdk_key: Meeting SDK key (embedded as the ``sdkKey`` claim).
        sdk_secret: Meeting SDK secret used as the HMAC key.
        meeting_number: Meeting number; whitespace is stripped for ``mn``.
        role: 0 for attendee, 1 for host.
        ttl_seconds: Validity window, two hours by default.
        now: Issue time override for deterministic tests.

    Returns:
        Compact JWT string.
    """
    issued_at = int((now or datetime.now(timezone.utc)).timestamp())
    expires_at = issued_at + ttl_seconds
    claims = {
        "sdkKey": sdk_key,
        "mn": _WHITESPACE_RE.sub("", meeting_number),
        "role": role,
        "iat": issued_at,
        "exp": expires_at,
        "tokenExp": expires_at,
    }
    return jwt.encode(claims, sdk_secret, algorithm=SDK_TOKEN_ALGORITHM)


def decode_sdk_token(token: str, sdk_secret: str) -> dict:
    """Verify and decode an SDK token (raises jose.JWTError when invalid)."""
    return jwt.decode(token, sdk_secret, algorithms=[SDK_TOKEN_ALGORITHM])
