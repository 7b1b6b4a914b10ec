"""Authentication against Azure AD (Microsoft identity platform v2.0).

This module provides:
- Token storage (one owner-only JSON file per profile)
- Process-scoped access token cache
- Authorization code + PKCE browser login with a loopback listener
- OAuth Device Flow for headless login
- Refresh grant with rotation, and fallback credential sources
- AccessTokenBroker, the entry point that composes all of the above
"""

from pistudio.security.auth.broker import (
    AccessTokenBroker,
    AuthStatus,
    LoginCallbacks,
    LoginResult,
)
from pistudio.security.auth.browser_flow import (
    AuthorizationCodeExchangeError,
    BrowserFlow,
    BrowserFlowError,
)
from pistudio.security.auth.credential_sources import (
    AzureCliSource,
    CredentialSource,
    M365CliSource,
    SourceIdentity,
    default_credential_sources,
)
from pistudio.security.auth.device_flow import (
    DeviceCodeResponse,
    DeviceFlow,
    DeviceFlowDeniedError,
    DeviceFlowError,
    DeviceFlowExpiredError,
    DeviceFlowResult,
    DeviceFlowState,
    run_device_flow,
)
from pistudio.security.auth.jwt_claims import decode_claims
from pistudio.security.auth.session_cache import SessionCache
from pistudio.security.auth.token_refresh import (
    TokenRefreshError,
    TokenRefreshExpiredError,
    refresh_tokens,
)
from pistudio.security.auth.token_storage import ProfileTokenStore, StoredProfile

__all__ = [
    # Broker
    "AccessTokenBroker",
    "AuthStatus",
    "LoginCallbacks",
    "LoginResult",
    # Token storage
    "ProfileTokenStore",
    "StoredProfile",
    "SessionCache",
    # Browser flow
    "BrowserFlow",
    "BrowserFlowError",
    "AuthorizationCodeExchangeError",
    # Device flow
    "DeviceFlow",
    "DeviceCodeResponse",
    "DeviceFlowDeniedError",
    "DeviceFlowError",
    "DeviceFlowExpiredError",
    "DeviceFlowResult",
    "DeviceFlowState",
    "run_device_flow",
    # Token refresh
    "TokenRefreshError",
    "TokenRefreshExpiredError",
    "refresh_tokens",
    # Fallback sources
    "CredentialSource",
    "M365CliSource",
    "AzureCliSource",
    "SourceIdentity",
    "default_credential_sources",
    # Claims
    "decode_claims",
]
