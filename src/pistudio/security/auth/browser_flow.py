"""Authorization code + PKCE browser login.

Flow:
1. Select a loopback listener implementation (ConfigurationError if none)
2. Generate verifier, S256 challenge and state
3. Find a free port in 49152-65535 (LocalResourceError if none)
4. Bind the single-shot listener, then open the browser at /authorize
5. Wait for the redirect; abort on state mismatch or timeout
6. Exchange the code (with the verifier) at /token

The listener and its handoff file are released by the `with` block before
the exchange request is sent, whichever step failed.
"""

from __future__ import annotations

__all__ = [
    "AuthorizationCodeExchangeError",
    "BrowserFlow",
    "BrowserFlowError",
]

import webbrowser
from collections.abc import Callable
from urllib.parse import urlencode

import httpx

from pistudio.config import AuthConfig
from pistudio.exceptions import CallbackIntegrityError, OAuthProtocolError
from pistudio.security.auth.loopback import LoopbackListener, find_free_port, select_listener
from pistudio.security.auth.pkce import PKCEParameters, generate_pkce_parameters
from pistudio.security.auth.token_parser import (
    OAuthErrorBody,
    TokenResponse,
    format_oauth_error,
    parse_token_response,
    read_json_body,
)
from pistudio.security.auth.token_refresh import resource_scope
from pistudio.telemetry.system_logger import get_system_logger

_logger = get_system_logger()

_DEVICE_CODE_HINT = "Try 'pistudio login --device-code' instead."


class BrowserFlowError(OAuthProtocolError):
    """Browser login failed (IdP refused the authorization)."""

    failure_type = "browser_flow_failure"


class AuthorizationCodeExchangeError(BrowserFlowError):
    """Token endpoint rejected the authorization code."""

    failure_type = "code_exchange_failure"


class BrowserFlow:
    """Interactive PKCE login through the system browser.

    Usage:
        with BrowserFlow(config, tenant="common") as flow:
            token = flow.run(login_hint="a@b.com")
    """

    def __init__(
        self,
        config: AuthConfig,
        tenant: str,
        http_client: httpx.Client | None = None,
        *,
        open_browser: Callable[[str], bool] | None = webbrowser.open,
        show_url: Callable[[str, bool], None] | None = None,
        pkce_factory: Callable[[], PKCEParameters] = generate_pkce_parameters,
        listener_selector: Callable[[], type[LoopbackListener]] = select_listener,
    ) -> None:
        """Initialize browser flow.

        Args:
            config: Authentication configuration.
            tenant: Tenant segment for the authorize/token endpoints.
            http_client: Optional httpx client (for testing).
            open_browser: Opens a URL, returning False if it could not.
                None means never try (print the URL instead).
            show_url: Called with (url, browser_opened) so the caller can
                tell the user what is happening.
            pkce_factory: Source of PKCE parameters (for testing).
            listener_selector: Picks the listener implementation.
        """
        self._config = config
        self._tenant = tenant
        self._client = http_client or httpx.Client(timeout=config.http_timeout_seconds)
        self._owns_client = http_client is None
        self._open_browser = open_browser
        self._show_url = show_url
        self._pkce_factory = pkce_factory
        self._listener_selector = listener_selector

    def __enter__(self) -> "BrowserFlow":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def close(self) -> None:
        """Close HTTP client if we own it."""
        if self._owns_client:
            self._client.close()

    def build_authorize_url(
        self,
        pkce: PKCEParameters,
        redirect_uri: str,
        login_hint: str | None = None,
    ) -> str:
        """Authorization endpoint URL for one login attempt."""
        params = {
            "client_id": self._config.require_client_id(),
            "response_type": "code",
            "redirect_uri": redirect_uri,
            "scope": resource_scope(self._config.management_resource),
            "code_challenge": pkce.code_challenge,
            "code_challenge_method": pkce.code_challenge_method,
            "state": pkce.state,
            # Otherwise a cached browser session may silently pick another account
            "prompt": "select_account",
        }
        if login_hint:
            params["login_hint"] = login_hint
        return f"{self._config.authorize_url(self._tenant)}?{urlencode(params)}"

    def run(self, login_hint: str | None = None) -> TokenResponse:
        """Run the full browser login.

        Returns:
            TokenResponse from the code exchange.

        Raises:
            ConfigurationError: No listener implementation (caller may fall back).
            LocalResourceError: No free port or bind failure (caller may fall back).
            CallbackIntegrityError: State mismatch or missing code on the callback.
            BrowserLoginTimeoutError: No callback within the timeout.
            BrowserFlowError: The IdP redirected back with an error.
            AuthorizationCodeExchangeError: The code exchange failed.
        """
        listener_class = self._listener_selector()
        pkce = self._pkce_factory()
        port = find_free_port(self._config.port_search_attempts)

        with listener_class(port, pkce.state) as listener:
            redirect_uri = listener.redirect_uri
            url = self.build_authorize_url(pkce, redirect_uri, login_hint)
            self._launch_browser(url)

            result = listener.wait_for_callback(self._config.callback_timeout_seconds)
            if result.error and result.state_ok:
                body = OAuthErrorBody(error=result.error, error_description=result.error_description)
                raise BrowserFlowError(
                    f"Sign-in was refused: {format_oauth_error(body)}. {_DEVICE_CODE_HINT}",
                    error=result.error,
                    error_description=result.error_description,
                )
            if not result.state_ok:
                _logger.warning(
                    {
                        "event": "callback_state_mismatch",
                        "message": "Login callback carried an unexpected state value; aborting",
                        "port": port,
                    }
                )
                raise CallbackIntegrityError(
                    "Login callback failed state validation and was rejected. "
                    f"Please retry the login. {_DEVICE_CODE_HINT}"
                )
            if not result.has_code:
                raise CallbackIntegrityError(
                    f"Login callback did not include an authorization code. {_DEVICE_CODE_HINT}"
                )
            code = listener.read_code()

        return self.exchange_code(code, pkce.code_verifier, redirect_uri)

    def _launch_browser(self, url: str) -> None:
        opened = False
        if self._open_browser is not None:
            try:
                opened = bool(self._open_browser(url))
            except webbrowser.Error as e:
                _logger.debug({"event": "browser_open_failed", "error": str(e)})
        _logger.debug({"event": "browser_login_started", "browser_opened": opened})
        if self._show_url is not None:
            self._show_url(url, opened)

    def exchange_code(self, code: str, code_verifier: str, redirect_uri: str) -> TokenResponse:
        """Exchange an authorization code for tokens. Not retried.

        Raises:
            AuthorizationCodeExchangeError: On transport or protocol failure.
        """
        try:
            response = self._client.post(
                self._config.token_url(self._tenant),
                data={
                    "grant_type": "authorization_code",
                    "client_id": self._config.require_client_id(),
                    "code": code,
                    "redirect_uri": redirect_uri,
                    "code_verifier": code_verifier,
                    "scope": resource_scope(self._config.management_resource),
                },
            )
        except httpx.HTTPError as e:
            raise AuthorizationCodeExchangeError(
                f"HTTP error exchanging authorization code: {e}. {_DEVICE_CODE_HINT}"
            ) from e

        data = read_json_body(response)
        token = parse_token_response(data)
        if token is not None:
            return token

        body = OAuthErrorBody.model_validate(data)
        raise AuthorizationCodeExchangeError(
            f"Token exchange failed: {format_oauth_error(body, fallback=f'HTTP {response.status_code}')}. "
            f"{_DEVICE_CODE_HINT}",
            error=body.error,
            error_description=body.error_description,
        )
