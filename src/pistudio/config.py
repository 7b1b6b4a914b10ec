"""Application configuration for pistudio.

Two kinds of configuration live here:

- AuthConfig: identity provider settings and authentication tunables,
  passed explicitly into the AccessTokenBroker. Defaults come from
  constants.py and can be overridden by environment variables.
- AppConfig: the profile store, a JSON file mapping profile names to
  tenant/client ids and Power Platform environment details.

Example usage:
    auth_config = AuthConfig.from_env()
    app_config = load_app_config(resolve_config_path(None))
    profile = app_config.get_profile("dev")
"""

from __future__ import annotations

__all__ = [
    "AppConfig",
    "AuthConfig",
    "ProfileConfig",
    "load_app_config",
    "resolve_active_profile",
    "resolve_config_path",
    "validate_profile_name",
]

import os
import re
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from pistudio.constants import (
    ACCESS_TOKEN_SAFETY_MARGIN_SECONDS,
    BROWSER_CALLBACK_TIMEOUT_SECONDS,
    CALLBACK_PORT_SEARCH_ATTEMPTS,
    DEFAULT_AUTH_DIR,
    DEFAULT_AUTHORITY,
    DEFAULT_CLIENT_ID,
    DEFAULT_CONFIG_FILE,
    DEFAULT_PROFILE,
    DEVICE_FLOW_MAX_POLLS,
    DEVICE_FLOW_SLOW_DOWN_INCREMENT_SECONDS,
    MANAGEMENT_RESOURCE,
    OAUTH_CLIENT_TIMEOUT_SECONDS,
    PROFILE_LOCK_STALE_SECONDS,
)
from pistudio.exceptions import ConfigurationError
from pistudio.utils.file_helpers import load_validated_json

# Profile names become file names in the token directory
_PROFILE_NAME_PATTERN = re.compile(r"[A-Za-z0-9_-][A-Za-z0-9._-]*")


def validate_profile_name(name: str) -> str:
    """Check that a profile name is a safe file name.

    Args:
        name: Profile name.

    Returns:
        The name unchanged.

    Raises:
        ConfigurationError: If the name is empty, starts with a dot, or
            contains characters other than letters, digits, '.', '_', '-'.
    """
    if not _PROFILE_NAME_PATTERN.fullmatch(name):
        raise ConfigurationError(
            f"Invalid profile name {name!r}. Use letters, digits, '.', '_' or '-'."
        )
    return name


# =============================================================================
# Authentication Configuration
# =============================================================================


class AuthConfig(BaseModel):
    """Identity provider and authentication settings.

    Attributes:
        authority: Identity provider base URL (tenant is appended).
        client_id: Public client application id.
        auth_dir: Directory holding one token file per profile.
        management_resource: Resource requested at login.
        cache_safety_margin_seconds: Cached tokens closer to expiry are ignored.
        callback_timeout_seconds: How long the browser flow waits for the redirect.
        http_timeout_seconds: Timeout for identity provider requests.
        device_flow_max_polls: Poll count treated as an implicit device flow error.
        slow_down_increment_seconds: Interval increase on `slow_down`.
        port_search_attempts: Random ports tried before giving up.
        lock_stale_seconds: Age after which a profile lock is force-cleared.
    """

    model_config = ConfigDict(frozen=True)

    authority: str = Field(default=DEFAULT_AUTHORITY, min_length=1)
    client_id: str = DEFAULT_CLIENT_ID
    auth_dir: Path = DEFAULT_AUTH_DIR
    management_resource: str = MANAGEMENT_RESOURCE
    cache_safety_margin_seconds: int = Field(default=ACCESS_TOKEN_SAFETY_MARGIN_SECONDS, ge=0)
    callback_timeout_seconds: float = Field(default=BROWSER_CALLBACK_TIMEOUT_SECONDS, gt=0)
    http_timeout_seconds: float = Field(default=OAUTH_CLIENT_TIMEOUT_SECONDS, gt=0)
    device_flow_max_polls: int = Field(default=DEVICE_FLOW_MAX_POLLS, ge=1)
    slow_down_increment_seconds: int = Field(default=DEVICE_FLOW_SLOW_DOWN_INCREMENT_SECONDS, ge=1)
    port_search_attempts: int = Field(default=CALLBACK_PORT_SEARCH_ATTEMPTS, ge=1)
    lock_stale_seconds: float = Field(default=PROFILE_LOCK_STALE_SECONDS, gt=0)

    @classmethod
    def from_env(cls) -> "AuthConfig":
        """Build config from defaults and PISTUDIO_* environment overrides.

        Honours PISTUDIO_CLIENT_ID, PISTUDIO_AUTH_DIR and PISTUDIO_AUTHORITY.
        """
        overrides: dict[str, object] = {}
        if "PISTUDIO_CLIENT_ID" in os.environ:
            overrides["client_id"] = os.environ["PISTUDIO_CLIENT_ID"]
        if os.environ.get("PISTUDIO_AUTH_DIR"):
            overrides["auth_dir"] = Path(os.environ["PISTUDIO_AUTH_DIR"]).expanduser()
        if os.environ.get("PISTUDIO_AUTHORITY"):
            overrides["authority"] = os.environ["PISTUDIO_AUTHORITY"]
        return cls(**overrides)

    def require_client_id(self) -> str:
        """Return the client id, failing fast when none is configured.

        Raises:
            ConfigurationError: If client_id is empty.
        """
        if not self.client_id.strip():
            raise ConfigurationError(
                "No client id configured. Set PISTUDIO_CLIENT_ID or a profile 'clientId'."
            )
        return self.client_id

    def endpoint(self, tenant: str) -> str:
        """OAuth2 v2.0 endpoint base for a tenant."""
        return f"{self.authority.rstrip('/')}/{tenant}/oauth2/v2.0"

    def authorize_url(self, tenant: str) -> str:
        return f"{self.endpoint(tenant)}/authorize"

    def token_url(self, tenant: str) -> str:
        return f"{self.endpoint(tenant)}/token"

    def device_code_url(self, tenant: str) -> str:
        return f"{self.endpoint(tenant)}/devicecode"


# =============================================================================
# Profile Store
# =============================================================================


class ProfileConfig(BaseModel):
    """One named profile from the config file.

    Only tenant_id and client_id are used by authentication; the
    environment fields are carried for the resource commands.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    tenant_id: str | None = Field(default=None, alias="tenantId")
    client_id: str | None = Field(default=None, alias="clientId")
    environment_url: str | None = Field(default=None, alias="environmentUrl")
    environment_id: str | None = Field(default=None, alias="environmentId")
    dataverse_url: str | None = Field(default=None, alias="dataverseUrl")
    bot_id: str | None = Field(default=None, alias="botId")


class AppConfig(BaseModel):
    """Profile store loaded from copilot-export.json."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    default_profile: str | None = Field(default=None, alias="defaultProfile")
    profiles: dict[str, ProfileConfig] = Field(default_factory=dict)

    def get_profile(self, name: str) -> ProfileConfig:
        """Return the named profile, or an empty one if it is not configured.

        Logging in to an unconfigured profile is allowed; it simply has no
        tenant or client id preset.
        """
        return self.profiles.get(name) or ProfileConfig()

    def auth_config_for(self, base: AuthConfig, profile: str) -> AuthConfig:
        """Apply a profile's clientId override to the base AuthConfig."""
        client_id = self.get_profile(profile).client_id
        if client_id:
            return base.model_copy(update={"client_id": client_id})
        return base


def resolve_config_path(cli_path: Path | None) -> Path:
    """Locate the profile config file.

    Order: --config option, PISTUDIO_CONFIG_FILE, ./config/copilot-export.json.
    """
    if cli_path is not None:
        return cli_path
    env_path = os.environ.get("PISTUDIO_CONFIG_FILE")
    if env_path:
        return Path(env_path).expanduser()
    return DEFAULT_CONFIG_FILE


def load_app_config(path: Path) -> AppConfig:
    """Load the profile store.

    A missing file yields an empty AppConfig.

    Raises:
        ConfigurationError: If the file exists but is invalid.
    """
    if not path.exists():
        return AppConfig()
    try:
        return load_validated_json(
            path,
            AppConfig,
            file_type="profile config",
            recovery_hint="Fix the file or point PISTUDIO_CONFIG_FILE at a valid one.",
        )
    except ValueError as e:
        raise ConfigurationError(str(e)) from e


def resolve_active_profile(cli_profile: str | None, app_config: AppConfig) -> str:
    """Pick the active profile name.

    Order: --profile option, PISTUDIO_PROFILE, config defaultProfile, "default".

    Raises:
        ConfigurationError: If the resulting name is not a safe file name.
    """
    name = (
        cli_profile
        or os.environ.get("PISTUDIO_PROFILE")
        or app_config.default_profile
        or DEFAULT_PROFILE
    )
    return validate_profile_name(name)
