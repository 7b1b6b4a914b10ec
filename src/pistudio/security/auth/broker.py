"""Access token broker.

The single entry point for obtaining bearer tokens and for the explicit
login/logout/status operations built on the token store.

Token lookup order for get_access_token(resource, profile):
1. Session cache (process-scoped, per profile)
2. Refresh grant with the profile's stored refresh token
   - rotated refresh token is written back under the profile lock
   - invalid_grant deletes the stored profile
3. Fallback credential sources (m365, az), tenant-checked
4. None; the caller must ask the user to log in

get_access_token never starts an interactive login.
"""

from __future__ import annotations

__all__ = [
    "AccessTokenBroker",
    "AuthStatus",
    "LoginCallbacks",
    "LoginResult",
]

import webbrowser
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass
from datetime import datetime

import httpx
from pydantic import BaseModel, ConfigDict, Field

from pistudio.config import AuthConfig
from pistudio.constants import DEFAULT_TENANT
from pistudio.exceptions import (
    AuthenticationError,
    ConfigurationError,
    LocalResourceError,
    NotLoggedInError,
)
from pistudio.security.auth.browser_flow import BrowserFlow
from pistudio.security.auth.credential_sources import (
    CredentialSource,
    SourceIdentity,
    default_credential_sources,
)
from pistudio.security.auth.device_flow import run_device_flow
from pistudio.security.auth.jwt_claims import decode_claims, get_tenant_id, get_user_principal
from pistudio.security.auth.session_cache import SessionCache
from pistudio.security.auth.token_parser import TokenResponse
from pistudio.security.auth.token_refresh import (
    TokenRefreshError,
    TokenRefreshExpiredError,
    refresh_tokens,
)
from pistudio.security.auth.token_storage import ProfileTokenStore, StoredProfile
from pistudio.telemetry.system_logger import get_system_logger

_logger = get_system_logger()


@dataclass
class LoginCallbacks:
    """User-facing hooks used during an interactive login.

    Attributes:
        show_device_code: Receives the device flow instruction text.
        show_browser_url: Receives (authorize_url, browser_opened).
        warn: Receives warnings such as a fallback to device code.
        on_poll: Called before each device flow poll.
    """

    show_device_code: Callable[[str], None] | None = None
    show_browser_url: Callable[[str, bool], None] | None = None
    warn: Callable[[str], None] | None = None
    on_poll: Callable[[], None] | None = None


@dataclass(frozen=True)
class LoginResult:
    """Outcome of a successful login.

    Attributes:
        profile: Profile that was written.
        tenant_id: Persisted tenant (resolved from the token if "common").
        user: User principal from the token ("" if absent).
        method: "browser" or "device_code".
        fell_back: True if a browser login was downgraded to device code.
    """

    profile: str
    tenant_id: str
    user: str
    method: str
    fell_back: bool = False


class AuthStatus(BaseModel):
    """Login status for one profile, serialized with camelCase keys."""

    model_config = ConfigDict(populate_by_name=True)

    logged_in: bool
    connected_as: str | None = Field(default=None, alias="connectedAs")
    tenant_id: str | None = Field(default=None, alias="tenantId")
    acquired_at: datetime | None = Field(default=None, alias="acquiredAt")

    def to_json_dict(self) -> dict[str, object]:
        """Status document: {logged_in, connectedAs, tenantId, acquiredAt}."""
        return {
            "logged_in": self.logged_in,
            "connectedAs": self.connected_as,
            "tenantId": self.tenant_id,
            "acquiredAt": (
                self.acquired_at.strftime("%Y-%m-%dT%H:%M:%SZ") if self.acquired_at else None
            ),
        }


class AccessTokenBroker:
    """Obtains access tokens for resources on behalf of profiles.

    Usage:
        with AccessTokenBroker(AuthConfig.from_env()) as broker:
            broker.login("dev", tenant="common")
            token = broker.get_access_token("https://api.example.com", "dev")
    """

    def __init__(
        self,
        config: AuthConfig,
        *,
        store: ProfileTokenStore | None = None,
        credential_sources: Sequence[CredentialSource] | None = None,
        http_client: httpx.Client | None = None,
        open_browser: Callable[[str], bool] | None = webbrowser.open,
    ) -> None:
        """Initialize the broker.

        Args:
            config: Authentication configuration.
            store: Token store (defaults to one at config.auth_dir).
            credential_sources: Fallback sources (defaults to m365, az).
            http_client: Optional httpx client shared by all grants (for testing).
            open_browser: Browser opener for PKCE login; None to never open one.
        """
        self._config = config
        self._store = store or ProfileTokenStore(
            config.auth_dir, lock_stale_seconds=config.lock_stale_seconds
        )
        self._sources: list[CredentialSource] = list(
            default_credential_sources() if credential_sources is None else credential_sources
        )
        self._client = http_client or httpx.Client(timeout=config.http_timeout_seconds)
        self._owns_client = http_client is None
        self._open_browser = open_browser
        self._caches: dict[str, SessionCache] = {}

    def __enter__(self) -> "AccessTokenBroker":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def close(self) -> None:
        """Drop cached tokens and close the HTTP client if we own it."""
        for cache in self._caches.values():
            cache.close()
        self._caches.clear()
        if self._owns_client:
            self._client.close()

    @property
    def config(self) -> AuthConfig:
        return self._config

    @property
    def store(self) -> ProfileTokenStore:
        return self._store

    def session_cache(self, profile: str) -> SessionCache:
        """Process-scoped access token cache for a profile."""
        cache = self._caches.get(profile)
        if cache is None:
            cache = SessionCache(self._config.cache_safety_margin_seconds)
            self._caches[profile] = cache
        return cache

    # =========================================================================
    # Token acquisition
    # =========================================================================

    def get_access_token(
        self,
        resource: str,
        profile: str,
        tenant: str | None = None,
    ) -> str | None:
        """Get a bearer token for resource without any user interaction.

        Args:
            resource: Resource URL (e.g. "https://management.azure.com").
            profile: Active profile.
            tenant: Profile's configured tenant, used for fallback sources
                when nothing is stored.

        Returns:
            Access token, or None if every tier failed.

        Raises:
            ConfigurationError: If no client id is configured.
            TokenStorageError: If a rotated refresh token cannot be saved.
        """
        cache = self.session_cache(profile)
        token = cache.get(resource)
        if token:
            return token

        record = self._store.read_profile(profile)
        if record is not None and record.refresh_token:
            token = self._refresh(profile, record, resource)
            if token:
                return token

        expected_tenant = record.tenant_id if record is not None else tenant
        token = self._from_credential_sources(resource, expected_tenant)
        if token:
            cache.put(resource, token)
            return token

        _logger.info(
            {
                "event": "access_token_unavailable",
                "message": f"No access token available for {resource}",
                "profile": profile,
            }
        )
        return None

    def require_access_token(self, resource: str, profile: str, tenant: str | None = None) -> str:
        """Like get_access_token, but raise NotLoggedInError instead of returning None."""
        token = self.get_access_token(resource, profile, tenant)
        if token is None:
            raise NotLoggedInError(profile, resource)
        return token

    def _refresh(self, profile: str, record: StoredProfile, resource: str) -> str | None:
        try:
            response = refresh_tokens(
                self._config,
                record.tenant_id,
                record.refresh_token,
                resource,
                http_client=self._client,
            )
        except TokenRefreshExpiredError as e:
            _logger.warning(
                {
                    "event": "refresh_token_expired",
                    "message": f"Refresh token expired for profile '{profile}'. Re-login required.",
                    "profile": profile,
                    "error_description": e.error_description,
                }
            )
            self._store.delete(profile)
            return None
        except TokenRefreshError as e:
            _logger.warning(
                {
                    "event": "token_refresh_failed",
                    "message": str(e),
                    "profile": profile,
                    "error": e.error,
                }
            )
            return None

        self.session_cache(profile).put(resource, response.access_token)
        if response.refresh_token and response.refresh_token != record.refresh_token:
            self._store.rotate_refresh_token(profile, response.refresh_token, record.tenant_id)
            _logger.debug({"event": "refresh_token_rotated", "profile": profile})
        return response.access_token

    def _from_credential_sources(self, resource: str, tenant: str | None) -> str | None:
        known_tenant = tenant if tenant and tenant != DEFAULT_TENANT else None

        for source in self._sources:
            token = source.try_get_token(resource, known_tenant)
            if not token:
                continue

            if known_tenant is not None:
                token_tenant = get_tenant_id(decode_claims(token))
                if token_tenant != known_tenant:
                    _logger.warning(
                        {
                            "event": "fallback_tenant_mismatch",
                            "message": (
                                f"Ignoring token from {source.name}: issued for tenant "
                                f"{token_tenant or 'unknown'}, expected {known_tenant}"
                            ),
                            "source": source.name,
                        }
                    )
                    continue

            _logger.info(
                {
                    "event": "fallback_token_used",
                    "message": f"Using access token from {source.name}",
                    "source": source.name,
                }
            )
            return token
        return None

    # =========================================================================
    # Explicit login / logout / status
    # =========================================================================

    def login(
        self,
        profile: str,
        *,
        tenant: str | None = None,
        device_code: bool = False,
        login_hint: str | None = None,
        callbacks: LoginCallbacks | None = None,
    ) -> LoginResult:
        """Interactive login; persists the refresh token and warms the cache.

        Browser (PKCE) login is used unless device_code is set. If no
        loopback listener or no free port is available the device code
        flow is used instead.

        Raises:
            ConfigurationError: If no client id is configured.
            AuthenticationError: If the flow fails (subclasses carry the
                flow-specific exit code).
        """
        callbacks = callbacks or LoginCallbacks()
        self._config.require_client_id()
        tenant = tenant or DEFAULT_TENANT
        fell_back = False

        if device_code:
            token = self._device_code_login(tenant, callbacks)
            method = "device_code"
        else:
            try:
                token = self._browser_login(tenant, login_hint, callbacks)
                method = "browser"
            except (ConfigurationError, LocalResourceError) as e:
                message = f"Browser login unavailable ({e}). Falling back to device code flow."
                _logger.warning({"event": "browser_login_fallback", "message": message})
                if callbacks.warn:
                    callbacks.warn(message)
                token = self._device_code_login(tenant, callbacks)
                method = "device_code"
                fell_back = True

        return self._complete_login(profile, tenant, token, method, fell_back)

    def _browser_login(
        self,
        tenant: str,
        login_hint: str | None,
        callbacks: LoginCallbacks,
    ) -> TokenResponse:
        flow = BrowserFlow(
            self._config,
            tenant,
            http_client=self._client,
            open_browser=self._open_browser,
            show_url=callbacks.show_browser_url,
        )
        with flow:
            return flow.run(login_hint=login_hint)

    def _device_code_login(self, tenant: str, callbacks: LoginCallbacks) -> TokenResponse:
        result = run_device_flow(
            self._config,
            tenant,
            display_callback=callbacks.show_device_code or (lambda message: None),
            poll_callback=callbacks.on_poll,
            http_client=self._client,
        )
        return result.token

    def _complete_login(
        self,
        profile: str,
        tenant: str,
        token: TokenResponse,
        method: str,
        fell_back: bool,
    ) -> LoginResult:
        if not token.refresh_token:
            raise AuthenticationError(
                "Login response did not include a refresh token. "
                "Check that the client is allowed to request 'offline_access'."
            )

        claims = decode_claims(token.access_token)
        if claims is None:
            raise AuthenticationError("Login returned an access token that is not a readable JWT.")

        resolved_tenant = get_tenant_id(claims)
        if tenant == DEFAULT_TENANT and resolved_tenant:
            tenant = resolved_tenant
        user = get_user_principal(claims) or ""

        with self._store.lock(profile):
            self._store.write(profile, tenant, token.refresh_token, user)

        cache = self.session_cache(profile)
        cache.clear()
        cache.put(self._config.management_resource, token.access_token)

        _logger.info(
            {
                "event": "login_succeeded",
                "message": f"Logged in as {user or 'unknown user'} (tenant: {tenant})",
                "profile": profile,
                "method": method,
            }
        )
        return LoginResult(
            profile=profile,
            tenant_id=tenant,
            user=user,
            method=method,
            fell_back=fell_back,
        )

    def logout(self, profile: str) -> bool:
        """Forget a profile's stored credentials. Idempotent.

        Returns:
            True if stored credentials were removed.
        """
        self.session_cache(profile).clear()
        removed = self._store.delete(profile)
        _logger.info({"event": "logout", "profile": profile, "removed": removed})
        return removed

    def status(self, profile: str) -> AuthStatus:
        """Stored login state for a profile (no network calls)."""
        record = self._store.read_profile(profile)
        if record is None or not record.refresh_token:
            return AuthStatus(logged_in=False)
        return AuthStatus(
            logged_in=True,
            connected_as=record.user or None,
            tenant_id=record.tenant_id,
            acquired_at=record.acquired_at,
        )

    def has_valid_session(self, profile: str) -> bool:
        """True iff a non-empty refresh token is stored (not checked server-side)."""
        return self._store.exists(profile)

    # =========================================================================
    # Active identity
    # =========================================================================

    def active_tenant_id(self, profile: str, configured_tenant: str | None = None) -> str | None:
        """Best-known tenant for a profile, without any login.

        Order: stored record, `tid` of a cached access token, the profile's
        configured tenant, then the account m365 or az is signed in with.
        """
        record = self._store.read_profile(profile)
        if record is not None and record.tenant_id:
            return record.tenant_id

        for token in self.session_cache(profile).tokens():
            tenant = get_tenant_id(decode_claims(token))
            if tenant:
                return tenant

        if configured_tenant:
            return configured_tenant

        for identity in self._source_identities():
            if identity.tenant_id:
                return identity.tenant_id
        return None

    def active_user(self, profile: str) -> str | None:
        """Best-known user principal for a profile, without any login.

        Order: stored record, user claim of a cached access token, then the
        account m365 or az is signed in with.
        """
        record = self._store.read_profile(profile)
        if record is not None and record.user:
            return record.user

        for token in self.session_cache(profile).tokens():
            user = get_user_principal(decode_claims(token))
            if user:
                return user

        for identity in self._source_identities():
            if identity.user:
                return identity.user
        return None

    def _source_identities(self) -> Iterator[SourceIdentity]:
        # Lazy so later tools are only run when earlier ones had no answer
        for source in self._sources:
            identity = source.try_get_identity()
            if identity is not None:
                _logger.debug({"event": "fallback_identity_found", "source": source.name})
                yield identity
