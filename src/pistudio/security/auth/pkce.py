"""PKCE (RFC 7636) parameter generation for the browser login flow.

The verifier stays in this process and is sent only to the token
endpoint; the authorize request carries the S256 challenge derived from it.
"""

from __future__ import annotations

__all__ = [
    "PKCEParameters",
    "derive_code_challenge",
    "generate_code_verifier",
    "generate_pkce_parameters",
    "generate_state",
]

import base64
import hashlib
import secrets
import string
from dataclasses import dataclass

from pistudio.constants import CODE_VERIFIER_LENGTH

# RFC 7636 section 4.1 unreserved characters
_VERIFIER_ALPHABET = string.ascii_letters + string.digits + "-._~"


@dataclass(frozen=True)
class PKCEParameters:
    """Single-use PKCE exchange values.

    Attributes:
        code_verifier: Secret sent with the code exchange. Sensitive.
        code_challenge: base64url(SHA-256(verifier)), unpadded.
        state: Anti-forgery value echoed back on the callback.
    """

    code_verifier: str
    code_challenge: str
    state: str
    code_challenge_method: str = "S256"


def generate_code_verifier(length: int = CODE_VERIFIER_LENGTH) -> str:
    """Generate a cryptographically random code verifier.

    Args:
        length: Number of characters, 43 to 128.

    Raises:
        ValueError: If length is outside 43..128.
    """
    if not 43 <= length <= 128:
        raise ValueError(f"Code verifier length must be 43-128, got {length}")
    return "".join(secrets.choice(_VERIFIER_ALPHABET) for _ in range(length))


def derive_code_challenge(code_verifier: str) -> str:
    """BASE64URL-ENCODE(SHA256(ASCII(code_verifier))) without padding."""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def generate_state() -> str:
    """16 random bytes, hex encoded."""
    return secrets.token_hex(16)


def generate_pkce_parameters() -> PKCEParameters:
    """Create a fresh verifier, its challenge, and a state value."""
    verifier = generate_code_verifier()
    return PKCEParameters(
        code_verifier=verifier,
        code_challenge=derive_code_challenge(verifier),
        state=generate_state(),
    )
