"""Claim reader for compact JWTs.

Decodes the payload segment of an access token WITHOUT verifying it.

Trust boundary: this is a parsing convenience for tokens this process has
just received over TLS from the token endpoint (or from a trusted local
credential source). It performs no signature, issuer or audience checks.
Never use it to make trust decisions about a JWT supplied by a third party.

Claims read:
- tid: tenant id
- upn / unique_name / preferred_username: user principal (display only)
- exp: expiry (seconds since epoch)
"""

from __future__ import annotations

__all__ = [
    "decode_claims",
    "get_expiry",
    "get_tenant_id",
    "get_user_principal",
]

import base64
import binascii
import json
from datetime import datetime, timezone
from typing import Any

# Order matters: upn is set for work accounts, the others for guests/MSA
_USER_CLAIMS = ("upn", "unique_name", "preferred_username")


def decode_claims(token: str) -> dict[str, Any] | None:
    """Decode the claims (middle) segment of a compact JWT.

    The segment is base64url without padding; it is converted to the
    standard alphabet and re-padded to a multiple of 4 before decoding.

    Args:
        token: Compact JWT (header.payload.signature).

    Returns:
        Claims mapping, or None if the token has fewer than three segments
        or the payload is not valid base64 / a JSON object.
    """
    parts = token.split(".")
    if len(parts) < 3 or not parts[1]:
        return None

    payload = parts[1].replace("-", "+").replace("_", "/")
    payload += "=" * (-len(payload) % 4)

    try:
        raw = base64.b64decode(payload, validate=True)
        claims = json.loads(raw)
    except (binascii.Error, ValueError):
        return None

    if not isinstance(claims, dict):
        return None
    return claims


def get_tenant_id(claims: dict[str, Any] | None) -> str | None:
    """Return the `tid` claim, if present and non-empty."""
    if not claims:
        return None
    tid = claims.get("tid")
    return str(tid) if tid else None


def get_user_principal(claims: dict[str, Any] | None) -> str | None:
    """Return the first of upn / unique_name / preferred_username."""
    if not claims:
        return None
    for name in _USER_CLAIMS:
        value = claims.get(name)
        if value:
            return str(value)
    return None


def get_expiry(claims: dict[str, Any] | None) -> datetime | None:
    """Return the `exp` claim as an aware UTC datetime."""
    if not claims:
        return None
    exp = claims.get("exp")
    if isinstance(exp, bool) or not isinstance(exp, (int, float)):
        return None
    try:
        return datetime.fromtimestamp(exp, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None
