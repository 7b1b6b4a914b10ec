"""Shared fixtures for pistudio tests."""

from __future__ import annotations

import time
from collections.abc import Callable
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import jwt
import pytest

from pistudio.config import AuthConfig

# HS256 key for minting test tokens; claims are read without verification
TEST_SIGNING_KEY = "pistudio-test-signing-key-0123456789abcdef"


@pytest.fixture
def auth_config(tmp_path: Path) -> AuthConfig:
    """AuthConfig pointing at a temporary token directory."""
    return AuthConfig(
        authority="https://login.example.test",
        client_id="test-client-id",
        auth_dir=tmp_path / "tokens",
    )


@pytest.fixture
def make_token() -> Callable[..., str]:
    """Factory for compact JWTs with the given claims.

    `exp_in` sets exp relative to now (default one hour).
    """

    def _make(exp_in: int | None = 3600, **claims: Any) -> str:
        if exp_in is not None and "exp" not in claims:
            claims["exp"] = int(time.time()) + exp_in
        return jwt.encode(claims, TEST_SIGNING_KEY, algorithm="HS256")

    return _make


@pytest.fixture
def json_response() -> Callable[[int, dict[str, Any]], MagicMock]:
    """Factory for mocked httpx responses with a JSON body."""

    def _response(status_code: int, body: dict[str, Any]) -> MagicMock:
        response = MagicMock()
        response.status_code = status_code
        response.json.return_value = body
        return response

    return _response
