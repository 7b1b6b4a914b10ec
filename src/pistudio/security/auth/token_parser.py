"""Shared OAuth token endpoint response parsing.

Used by the device flow, the browser flow and the refresh grant so all
three read success and error bodies the same way.
"""

from __future__ import annotations

__all__ = [
    "OAuthErrorBody",
    "TokenResponse",
    "format_oauth_error",
    "parse_token_response",
    "read_json_body",
]

from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError


class TokenResponse(BaseModel):
    """Successful token endpoint response.

    Attributes:
        access_token: Resource-scoped JWT access token.
        refresh_token: Present on login; present on refresh only when rotated.
        id_token: OIDC ID token (unused, kept for completeness).
        expires_in: Access token lifetime in seconds.
    """

    model_config = ConfigDict(extra="ignore")

    access_token: str
    refresh_token: str | None = None
    id_token: str | None = None
    expires_in: int | None = None
    token_type: str | None = None
    scope: str | None = None


class OAuthErrorBody(BaseModel):
    """OAuth error response (RFC 6749 section 5.2)."""

    model_config = ConfigDict(extra="ignore")

    error: str = ""
    error_description: str = ""


def read_json_body(response: httpx.Response) -> dict[str, Any]:
    """Parse a response body as a JSON object, or return {} if it isn't one."""
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def parse_token_response(data: dict[str, Any]) -> TokenResponse | None:
    """Parse a token endpoint body.

    Returns:
        TokenResponse when the body has no `error` and a non-empty
        `access_token`; None otherwise.
    """
    if data.get("error") or not data.get("access_token"):
        return None
    try:
        return TokenResponse.model_validate(data)
    except ValidationError:
        return None


def format_oauth_error(body: OAuthErrorBody, fallback: str = "unknown_error") -> str:
    """Render `error` and `error_description` verbatim for the user."""
    error = body.error or fallback
    if body.error_description:
        return f"{error}: {body.error_description}"
    return error
