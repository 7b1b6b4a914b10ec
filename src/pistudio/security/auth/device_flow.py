"""OAuth Device Authorization Flow (RFC 8628) for CLI authentication.

Used when no browser is available on this machine (SSH sessions,
containers) or when the browser flow cannot bind a loopback listener.

Flow:
1. Request a device code from /devicecode          (Requesting)
2. Display: "open https://... and enter the code"  (AwaitingUser)
3. Poll /token at the provider's interval until a terminal state:
   Approved, Denied, Expired or Error

`slow_down` permanently raises the interval for the rest of the session.
"""

from __future__ import annotations

__all__ = [
    "DeviceCodeResponse",
    "DeviceFlow",
    "DeviceFlowDeniedError",
    "DeviceFlowError",
    "DeviceFlowExpiredError",
    "DeviceFlowResult",
    "DeviceFlowState",
    "PollOnceResult",
    "run_device_flow",
]

import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx

from pistudio.config import AuthConfig
from pistudio.constants import DEVICE_FLOW_POLL_INTERVAL_SECONDS, DEVICE_LOGIN_URL
from pistudio.exceptions import OAuthProtocolError
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

DEVICE_CODE_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:device_code"

# Azure AD reports a user refusal as authorization_declined
_DENIED_ERRORS = frozenset({"access_denied", "authorization_declined"})


class DeviceFlowState(str, Enum):
    """Device code session states."""

    REQUESTING = "requesting"
    AWAITING_USER = "awaiting_user"
    APPROVED = "approved"
    DENIED = "denied"
    EXPIRED = "expired"
    ERROR = "error"


@dataclass
class DeviceCodeResponse:
    """Response from device authorization request.

    Attributes:
        device_code: Code used to poll for tokens (don't show to user).
        user_code: Code user enters in browser (e.g., "ABC-123").
        verification_uri: URL user opens to authenticate.
        expires_in: Seconds until codes expire.
        interval: Polling interval in seconds.
        message: Provider-supplied instruction text, if any.
    """

    device_code: str
    user_code: str
    verification_uri: str
    expires_in: int
    interval: int
    message: str | None = None

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> "DeviceCodeResponse":
        """Parse from the /devicecode response.

        Raises:
            KeyError: If device_code or user_code is missing.
        """
        return cls(
            device_code=data["device_code"],
            user_code=data["user_code"],
            verification_uri=data.get("verification_uri") or DEVICE_LOGIN_URL,
            expires_in=int(data.get("expires_in") or 900),
            interval=int(data.get("interval") or DEVICE_FLOW_POLL_INTERVAL_SECONDS),
            message=data.get("message") or None,
        )

    @property
    def instructions(self) -> str:
        """Text to show the user, synthesized when the provider sent none."""
        if self.message:
            return self.message
        return (
            f"To sign in, use a web browser to open the page {self.verification_uri} "
            f"and enter the code {self.user_code} to authenticate."
        )


@dataclass
class DeviceFlowResult:
    """Result of successful device flow authentication.

    Attributes:
        token: Token endpoint response.
        user_code: The code user entered (for logging).
        polls: Number of token requests made.
        state: Final state (always APPROVED on return).
    """

    token: TokenResponse
    user_code: str
    polls: int
    state: DeviceFlowState = DeviceFlowState.APPROVED


@dataclass(frozen=True)
class PollOnceResult:
    """Result of a single poll attempt.

    Attributes:
        state: AWAITING_USER while pending, otherwise a terminal state.
        token: Token if state is APPROVED, None otherwise.
        slow_down: Provider asked for a longer interval.
        error: OAuth error code for terminal failures.
        error_description: OAuth error description.
    """

    state: DeviceFlowState
    token: TokenResponse | None = None
    slow_down: bool = False
    error: str = ""
    error_description: str = ""


class DeviceFlowError(OAuthProtocolError):
    """Device flow specific errors."""

    failure_type = "device_flow_failure"


class DeviceFlowExpiredError(DeviceFlowError):
    """Device code expired before user authenticated."""

    failure_type = "device_flow_expired"


class DeviceFlowDeniedError(DeviceFlowError):
    """User denied the authorization request."""

    failure_type = "device_flow_denied"


class DeviceFlow:
    """OAuth Device Authorization Flow implementation.

    Usage:
        with DeviceFlow(config, tenant="common") as flow:
            device_code = flow.request_device_code()
            print(device_code.instructions)
            result = flow.poll_for_token(device_code)
    """

    def __init__(
        self,
        config: AuthConfig,
        tenant: str,
        http_client: httpx.Client | None = None,
    ) -> None:
        """Initialize device flow.

        Args:
            config: Authentication configuration.
            tenant: Tenant segment for the /devicecode and /token endpoints.
            http_client: Optional httpx client (for testing).
        """
        self._config = config
        self._tenant = tenant
        self._client = http_client or httpx.Client(timeout=config.http_timeout_seconds)
        self._owns_client = http_client is None
        self.state = DeviceFlowState.REQUESTING

    def __enter__(self) -> "DeviceFlow":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def close(self) -> None:
        """Close HTTP client if we own it."""
        if self._owns_client:
            self._client.close()

    def request_device_code(self) -> DeviceCodeResponse:
        """Request a device code.

        Returns:
            DeviceCodeResponse with user_code and verification_uri.

        Raises:
            DeviceFlowError: If request fails.
        """
        self.state = DeviceFlowState.REQUESTING
        try:
            response = self._client.post(
                self._config.device_code_url(self._tenant),
                data={
                    "client_id": self._config.require_client_id(),
                    "scope": resource_scope(self._config.management_resource),
                },
            )
        except httpx.HTTPError as e:
            self.state = DeviceFlowState.ERROR
            raise DeviceFlowError(f"HTTP error requesting device code: {e}") from e

        data = read_json_body(response)
        if response.status_code == 200 and not data.get("error"):
            try:
                device_code = DeviceCodeResponse.from_response(data)
            except (KeyError, TypeError, ValueError) as e:
                self.state = DeviceFlowState.ERROR
                raise DeviceFlowError(f"Malformed device code response: missing {e}") from e
            self.state = DeviceFlowState.AWAITING_USER
            return device_code

        self.state = DeviceFlowState.ERROR
        body = OAuthErrorBody.model_validate(data)
        raise DeviceFlowError(
            f"Failed to request device code: {format_oauth_error(body, fallback=f'HTTP {response.status_code}')}",
            error=body.error,
            error_description=body.error_description,
        )

    def poll_for_token(
        self,
        device_code: DeviceCodeResponse,
        on_poll: Callable[[], None] | None = None,
    ) -> DeviceFlowResult:
        """Poll token endpoint until the session reaches a terminal state.

        There is no timeout beyond the device code's own expiry, but more
        than device_flow_max_polls requests is treated as an error.

        Args:
            device_code: Response from request_device_code().
            on_poll: Optional callback called on each poll (for progress display).

        Returns:
            DeviceFlowResult with tokens.

        Raises:
            DeviceFlowExpiredError: If device code expires.
            DeviceFlowDeniedError: If user denies authorization.
            DeviceFlowError: For other errors.
        """
        self.state = DeviceFlowState.AWAITING_USER
        interval = device_code.interval
        deadline = time.monotonic() + device_code.expires_in

        for poll in range(1, self._config.device_flow_max_polls + 1):
            if time.monotonic() >= deadline:
                self.state = DeviceFlowState.EXPIRED
                raise DeviceFlowExpiredError(
                    "Device code expired. Please run 'pistudio login --device-code' again."
                )

            if on_poll:
                on_poll()

            time.sleep(interval)
            result = self.poll_once(device_code)
            self.state = result.state

            if result.state == DeviceFlowState.APPROVED and result.token is not None:
                _logger.debug({"event": "device_flow_approved", "polls": poll})
                return DeviceFlowResult(token=result.token, user_code=device_code.user_code, polls=poll)

            if result.state == DeviceFlowState.AWAITING_USER:
                if result.slow_down:
                    interval += self._config.slow_down_increment_seconds
                    _logger.debug({"event": "device_flow_slow_down", "interval": interval})
                continue

            body = OAuthErrorBody(error=result.error, error_description=result.error_description)
            detail = format_oauth_error(body)

            if result.state == DeviceFlowState.EXPIRED:
                raise DeviceFlowExpiredError(
                    f"Device code expired ({detail}). Please run 'pistudio login --device-code' again.",
                    error=result.error,
                    error_description=result.error_description,
                )
            if result.state == DeviceFlowState.DENIED:
                raise DeviceFlowDeniedError(
                    f"Authorization was denied ({detail}).",
                    error=result.error,
                    error_description=result.error_description,
                )
            raise DeviceFlowError(
                f"Device code login failed: {detail}. Please try again.",
                error=result.error,
                error_description=result.error_description,
            )

        self.state = DeviceFlowState.ERROR
        raise DeviceFlowError(
            f"Gave up after {self._config.device_flow_max_polls} polls without a result. "
            "Please try again."
        )

    def poll_once(self, device_code: DeviceCodeResponse) -> PollOnceResult:
        """Poll token endpoint once (non-blocking).

        Returns immediately with the classified response.

        Args:
            device_code: Response from request_device_code().

        Returns:
            PollOnceResult with state and token (if approved).
        """
        try:
            response = self._client.post(
                self._config.token_url(self._tenant),
                data={
                    "grant_type": DEVICE_CODE_GRANT_TYPE,
                    "client_id": self._config.require_client_id(),
                    "device_code": device_code.device_code,
                },
            )
        except httpx.HTTPError as e:
            return PollOnceResult(
                state=DeviceFlowState.ERROR,
                error="transport_error",
                error_description=f"HTTP error polling for token: {e}",
            )

        data = read_json_body(response)
        token = parse_token_response(data)
        if token is not None:
            return PollOnceResult(state=DeviceFlowState.APPROVED, token=token)

        body = OAuthErrorBody.model_validate(data)
        error = body.error

        if error == "authorization_pending":
            return PollOnceResult(state=DeviceFlowState.AWAITING_USER)

        if error == "slow_down":
            return PollOnceResult(state=DeviceFlowState.AWAITING_USER, slow_down=True)

        if error == "expired_token":
            state = DeviceFlowState.EXPIRED
        elif error in _DENIED_ERRORS:
            state = DeviceFlowState.DENIED
        else:
            state = DeviceFlowState.ERROR

        return PollOnceResult(
            state=state,
            error=error or f"HTTP {response.status_code}",
            error_description=body.error_description,
        )


def run_device_flow(
    config: AuthConfig,
    tenant: str,
    display_callback: Callable[[str], None],
    poll_callback: Callable[[], None] | None = None,
    http_client: httpx.Client | None = None,
) -> DeviceFlowResult:
    """Run complete device flow with callbacks for display.

    Args:
        config: Authentication configuration.
        tenant: Tenant to authenticate against.
        display_callback: Called with the instruction text for the user.
        poll_callback: Optional callback called on each poll iteration.
        http_client: Optional httpx client (for testing).

    Returns:
        DeviceFlowResult with the approved tokens.

    Raises:
        DeviceFlowError: If authentication fails.
    """
    with DeviceFlow(config, tenant, http_client=http_client) as flow:
        device_code = flow.request_device_code()
        display_callback(device_code.instructions)
        return flow.poll_for_token(device_code, on_poll=poll_callback)
