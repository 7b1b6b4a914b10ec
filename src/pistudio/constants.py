"""Application-wide constants for pistudio.

Constants that define application behavior.
For user-configurable settings, see config.py.
"""

__all__ = [
    # Application identity
    "APP_NAME",
    # Identity provider
    "DEFAULT_AUTHORITY",
    "DEFAULT_CLIENT_ID",
    "DEFAULT_TENANT",
    "MANAGEMENT_RESOURCE",
    "OFFLINE_ACCESS_SCOPE",
    # Token storage
    "DEFAULT_AUTH_DIR",
    "DEFAULT_PROFILE",
    "PROFILE_LOCK_STALE_SECONDS",
    "PROFILE_LOCK_RETRY_SECONDS",
    # Session cache
    "ACCESS_TOKEN_SAFETY_MARGIN_SECONDS",
    # HTTP
    "OAUTH_CLIENT_TIMEOUT_SECONDS",
    # Browser (PKCE) flow
    "BROWSER_CALLBACK_TIMEOUT_SECONDS",
    "CALLBACK_PORT_MIN",
    "CALLBACK_PORT_MAX",
    "CALLBACK_PORT_SEARCH_ATTEMPTS",
    "CODE_VERIFIER_LENGTH",
    # Device code flow
    "DEVICE_FLOW_POLL_INTERVAL_SECONDS",
    "DEVICE_FLOW_SLOW_DOWN_INCREMENT_SECONDS",
    "DEVICE_FLOW_MAX_POLLS",
    "DEVICE_LOGIN_URL",
    # Configuration
    "DEFAULT_CONFIG_FILE",
]

from pathlib import Path

from platformdirs import user_config_dir

# ============================================================================
# Application Identity
# ============================================================================

APP_NAME: str = "pistudio"

# ============================================================================
# Identity Provider (Microsoft identity platform v2.0)
# ============================================================================

DEFAULT_AUTHORITY: str = "https://login.microsoftonline.com"

# Azure CLI public client; works without an app registration in most tenants
DEFAULT_CLIENT_ID: str = "04b07795-8ddb-461a-bbee-02f9e1bf7b46"

# Wildcard tenant, replaced by the token's `tid` claim after login
DEFAULT_TENANT: str = "common"

# Resource requested at login; its token warms the session cache
MANAGEMENT_RESOURCE: str = "https://management.azure.com"

OFFLINE_ACCESS_SCOPE: str = "offline_access"

# ============================================================================
# Token Storage
# ============================================================================

# One <profile>.json per profile, owner-only permissions
# - macOS: ~/Library/Application Support/pistudio/tokens
# - Linux: ~/.config/pistudio/tokens
DEFAULT_AUTH_DIR: Path = Path(user_config_dir(APP_NAME)) / "tokens"

DEFAULT_PROFILE: str = "default"

# A lock directory older than this is considered abandoned and force-cleared
PROFILE_LOCK_STALE_SECONDS: float = 5.0

PROFILE_LOCK_RETRY_SECONDS: float = 0.1

# ============================================================================
# Session Cache
# ============================================================================

# Cached access tokens with less validity than this are treated as absent
ACCESS_TOKEN_SAFETY_MARGIN_SECONDS: int = 120

# ============================================================================
# HTTP
# ============================================================================

# Timeout for identity provider requests (device code, token, refresh)
OAUTH_CLIENT_TIMEOUT_SECONDS: int = 30

# ============================================================================
# Browser Flow (Authorization Code + PKCE)
# ============================================================================

BROWSER_CALLBACK_TIMEOUT_SECONDS: int = 120

# IANA dynamic/private port range for the loopback redirect listener
CALLBACK_PORT_MIN: int = 49152
CALLBACK_PORT_MAX: int = 65535

CALLBACK_PORT_SEARCH_ATTEMPTS: int = 20

# RFC 7636 allows 43-128 characters
CODE_VERIFIER_LENGTH: int = 64

# ============================================================================
# Device Code Flow (RFC 8628)
# ============================================================================

# Used when the provider omits `interval`
DEVICE_FLOW_POLL_INTERVAL_SECONDS: int = 5

# Added to the interval on every `slow_down` response
DEVICE_FLOW_SLOW_DOWN_INCREMENT_SECONDS: int = 5

# Guard against a provider that never returns a terminal state
DEVICE_FLOW_MAX_POLLS: int = 720

DEVICE_LOGIN_URL: str = "https://microsoft.com/devicelogin"

# ============================================================================
# Configuration
# ============================================================================

# Profile store location when neither --config nor PISTUDIO_CONFIG_FILE is set
DEFAULT_CONFIG_FILE: Path = Path("config") / "copilot-export.json"
