"""Token refresh for OAuth refresh_token grant.

Exchanges a stored refresh token for an access token scoped to one
resource. The provider may rotate the refresh token; the caller is
responsible for persisting a new one when the response carries it.

Flow:
1. Session cache misses for a resource
2. Call refresh_tokens() with the profile's refresh token and tenant
3. Get new access_token (and possibly new refresh_token)
4. Caller caches the access token and persists a rotated refresh token
"""

from __future__ import annotations

__all__ = [
    "TokenRefreshError",
    "TokenRefreshExpiredError",
    "refresh_tokens",
    "resource_scope",
]

import httpx

from pistudio.config import AuthConfig
from pistudio.constants import OFFLINE_ACCESS_SCOPE
from pistudio.exceptions import OAuthProtocolError
from pistudio.security.auth.token_parser import (
    OAuthErrorBody,
    TokenResponse,
    format_oauth_error,
    parse_token_response,
    read_json_body,
)


class TokenRefreshError(OAuthProtocolError):
    """Token refresh failed (possibly transient)."""

    failure_type = "token_refresh_failure"


class TokenRefreshExpiredError(TokenRefreshError):
    """Refresh token was rejected with invalid_grant - user must re-authenticate."""

    failure_type = "refresh_token_expired"


def resource_scope(resource: str) -> str:
    """Scope string requesting a resource's default permissions plus refresh."""
    return f"{resource.rstrip('/')}/.default {OFFLINE_ACCESS_SCOPE}"


def refresh_tokens(
    config: AuthConfig,
    tenant_id: str,
    refresh_token: str,
    resource: str,
    http_client: httpx.Client | None = None,
) -> TokenResponse:
    """Refresh an access token for a resource using the refresh_token grant.

    Args:
        config: Authentication configuration.
        tenant_id: Tenant the refresh token was issued in.
        refresh_token: Stored refresh token.
        resource: Resource the access token is for.
        http_client: Optional httpx client (for testing).

    Returns:
        TokenResponse with the new access token (and rotated refresh token, if any).

    Raises:
        TokenRefreshExpiredError: On invalid_grant (user must log in again).
        TokenRefreshError: For any other failure, including transport errors.
    """
    client = http_client or httpx.Client(timeout=config.http_timeout_seconds)
    owns_client = http_client is None

    try:
        response = client.post(
            config.token_url(tenant_id),
            data={
                "grant_type": "refresh_token",
                "client_id": config.require_client_id(),
                "refresh_token": refresh_token,
                "scope": resource_scope(resource),
            },
        )
    except httpx.HTTPError as e:
        raise TokenRefreshError(f"HTTP error during token refresh: {e}") from e
    finally:
        if owns_client:
            client.close()

    data = read_json_body(response)
    token = parse_token_response(data)
    if token is not None:
        return token

    body = OAuthErrorBody.model_validate(data)
    detail = format_oauth_error(body, fallback=f"HTTP {response.status_code}")

    if body.error == "invalid_grant":
        raise TokenRefreshExpiredError(
            f"Refresh token rejected ({detail}). Please log in again.",
            error=body.error,
            error_description=body.error_description,
        )

    raise TokenRefreshError(
        f"Token refresh failed: {detail}",
        error=body.error,
        error_description=body.error_description,
    )
