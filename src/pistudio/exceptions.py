"""Custom exceptions for pistudio.

This module contains all custom exceptions used by the authentication
subsystem and the CLI built on it. Every exception carries an exit code
so the CLI can translate failures without inspecting messages:

General failures (exit 1):
    - PistudioError: Base for all pistudio failures
    - AuthenticationError: Login, refresh or token fetch failed

Flow-specific failures (distinct exit codes):
    - ConfigurationError (2): Missing client id, bad profile, bad config file
    - CallbackIntegrityError (3): PKCE callback failed state validation
    - BrowserLoginTimeoutError (4): No browser callback within the timeout
    - LocalResourceError (5): No free loopback port / listener bind failure

Usage:
    from pistudio.exceptions import AuthenticationError, ConfigurationError
"""

from __future__ import annotations

__all__ = [
    "AuthenticationError",
    "BrowserLoginTimeoutError",
    "CallbackIntegrityError",
    "ConfigurationError",
    "LocalResourceError",
    "NotLoggedInError",
    "OAuthProtocolError",
    "PistudioError",
    "TokenStorageError",
]


class PistudioError(Exception):
    """Base exception for pistudio failures.

    Attributes:
        exit_code: Process exit code used by the CLI.
        failure_type: Category string for logging.
    """

    exit_code: int = 1
    failure_type: str = "unknown"


class ConfigurationError(PistudioError):
    """Configuration is invalid or incomplete.

    Raised when:
    - No client id is configured
    - A profile name is not a safe file name
    - The profile config file contains invalid JSON or fails validation
    - No loopback listener can be bound and no fallback was allowed

    Exit code 2 indicates configuration failure.
    """

    exit_code = 2
    failure_type = "configuration_failure"


class AuthenticationError(PistudioError):
    """Authentication failed.

    Raised when:
    - A login flow fails or is denied
    - The identity provider is unreachable
    - A refresh token is rejected and no fallback source produced a token
    """

    exit_code = 1
    failure_type = "authentication_failure"


class OAuthProtocolError(AuthenticationError):
    """Identity provider answered with an OAuth `error` field.

    Both `error` and `error_description` are kept so they can be
    surfaced verbatim.
    """

    failure_type = "oauth_protocol_error"

    def __init__(self, message: str, *, error: str = "", error_description: str = "") -> None:
        super().__init__(message)
        self.error = error
        self.error_description = error_description


class TokenStorageError(AuthenticationError):
    """Durable token store could not be written or deleted."""

    failure_type = "token_storage_failure"


class NotLoggedInError(AuthenticationError):
    """No usable token could be obtained for a profile.

    Attributes:
        profile: Profile that needs an explicit login.
    """

    failure_type = "not_logged_in"

    def __init__(self, profile: str, resource: str | None = None) -> None:
        target = f" for {resource}" if resource else ""
        super().__init__(
            f"Could not get an access token{target}. "
            f"Please run 'pistudio login -p {profile}' again."
        )
        self.profile = profile
        self.resource = resource


class CallbackIntegrityError(PistudioError):
    """Browser callback failed integrity checks.

    Raised when the loopback listener receives a callback whose `state`
    does not match the value sent to the authorize endpoint, or which is
    missing the authorization code. A state mismatch may indicate a
    cross-site request forgery attempt, so the login attempt is aborted.

    Exit code 3 indicates an integrity failure.
    """

    exit_code = 3
    failure_type = "callback_integrity_failure"


class BrowserLoginTimeoutError(AuthenticationError):
    """No authorization code arrived before the callback timeout.

    Exit code 4 indicates a browser login timeout.
    """

    exit_code = 4
    failure_type = "browser_login_timeout"


class LocalResourceError(AuthenticationError):
    """A local resource needed by the browser flow is unavailable.

    Raised on loopback port exhaustion or listener bind failure.
    Exit code 5 indicates a local resource failure.
    """

    exit_code = 5
    failure_type = "local_resource_failure"
