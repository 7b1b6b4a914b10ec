"""Process-scoped access token cache.

Access tokens are memoized per resource for the lifetime of one CLI
invocation. Nothing here is written to disk; every run starts cold and
re-derives tokens from the durable refresh token.

Expiry is re-read from the token's `exp` claim on every lookup. A token
with no more than the safety margin left is treated as absent so a
follow-up API call cannot race its expiry.
"""

from __future__ import annotations

__all__ = [
    "SessionCache",
    "normalize_resource_key",
]

import re
import threading
import time

from pistudio.constants import ACCESS_TOKEN_SAFETY_MARGIN_SECONDS
from pistudio.security.auth.jwt_claims import decode_claims, get_expiry
from pistudio.security.shutdown import register_exit_cleanup, unregister_exit_cleanup

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def normalize_resource_key(resource: str) -> str:
    """Stable cache key for a resource URL.

    Case-folds and collapses every run of non-alphanumeric characters to
    a single underscore: "https://Management.Azure.com/" and
    "https://management.azure.com" share a key.
    """
    return _NON_ALNUM.sub("_", resource.casefold()).strip("_")


class SessionCache:
    """In-memory, resource-keyed access token cache.

    Usage:
        cache = SessionCache()
        cache.put("https://management.azure.com", token)
        cache.get("https://management.azure.com")  # token, or None near expiry
    """

    def __init__(
        self,
        safety_margin_seconds: int = ACCESS_TOKEN_SAFETY_MARGIN_SECONDS,
        *,
        clear_on_exit: bool = True,
    ) -> None:
        """Initialize the cache.

        Args:
            safety_margin_seconds: Minimum remaining validity for a hit.
            clear_on_exit: Register clear() with the process exit handlers.
        """
        self._margin = safety_margin_seconds
        self._tokens: dict[str, str] = {}
        # Reentrant: clear() may run from a signal handler on the thread holding it
        self._lock = threading.RLock()
        if clear_on_exit:
            register_exit_cleanup(self.clear)

    def get(self, resource: str) -> str | None:
        """Return the cached token if its `exp` is beyond the safety margin."""
        with self._lock:
            token = self._tokens.get(normalize_resource_key(resource))
        if token is None:
            return None

        expiry = get_expiry(decode_claims(token))
        if expiry is None:
            return None
        if expiry.timestamp() > time.time() + self._margin:
            return token
        return None

    def put(self, resource: str, token: str) -> None:
        """Store a token, replacing any previous entry for the resource."""
        with self._lock:
            self._tokens[normalize_resource_key(resource)] = token

    def tokens(self) -> list[str]:
        """Snapshot of every cached token, expired or not."""
        with self._lock:
            return list(self._tokens.values())

    def clear(self) -> None:
        """Drop every cached token. Safe to call repeatedly."""
        with self._lock:
            self._tokens.clear()

    def close(self) -> None:
        """Clear the cache and drop it from the exit handlers."""
        self.clear()
        unregister_exit_cleanup(self.clear)

    def __len__(self) -> int:
        with self._lock:
            return len(self._tokens)
