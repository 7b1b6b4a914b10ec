"""Tests for AccessTokenBroker token acquisition, login, logout and status."""

from __future__ import annotations

from collections.abc import Callable
from unittest.mock import MagicMock, patch

import httpx
import pytest

from pistudio.config import AuthConfig
from pistudio.exceptions import AuthenticationError, ConfigurationError, LocalResourceError, NotLoggedInError
from pistudio.security import shutdown
from pistudio.security.auth.broker import AccessTokenBroker, LoginCallbacks
from pistudio.security.auth.credential_sources import SourceIdentity

RESOURCE = "https://api.example.com"


class FakeSource:
    """Credential source returning a fixed token and identity."""

    def __init__(self, name: str, token: str | None, identity: SourceIdentity | None = None) -> None:
        self.name = name
        self.token = token
        self.identity = identity
        self.calls: list[tuple[str, str | None]] = []
        self.identity_calls = 0

    def try_get_token(self, resource: str, tenant: str | None) -> str | None:
        self.calls.append((resource, tenant))
        return self.token

    def try_get_identity(self) -> SourceIdentity | None:
        self.identity_calls += 1
        return self.identity


@pytest.fixture
def mock_client() -> MagicMock:
    return MagicMock(spec=httpx.Client)


@pytest.fixture
def broker(auth_config: AuthConfig, mock_client: MagicMock) -> AccessTokenBroker:
    return AccessTokenBroker(auth_config, credential_sources=[], http_client=mock_client, open_browser=None)


class TestGetAccessToken:
    """Cache, refresh and fallback tiers of get_access_token."""

    def test_refreshes_once_then_serves_from_cache(
        self,
        broker: AccessTokenBroker,
        mock_client: MagicMock,
        make_token: Callable[..., str],
        json_response: Callable[..., MagicMock],
    ) -> None:
        """Given a stored RT and an empty cache, one refresh serves both calls."""
        # Arrange
        broker.store.write("dev", "tenant-x", "RT1", "a@b.com")
        access = make_token(tid="tenant-x")
        mock_client.post.return_value = json_response(200, {"access_token": access, "expires_in": 3600})

        # Act
        first = broker.get_access_token(RESOURCE, "dev")
        second = broker.get_access_token(RESOURCE, "dev")

        # Assert
        assert first == access
        assert second == access
        assert mock_client.post.call_count == 1
        assert mock_client.post.call_args.args[0] == "https://login.example.test/tenant-x/oauth2/v2.0/token"

    def test_rotated_refresh_token_is_persisted(
        self,
        broker: AccessTokenBroker,
        mock_client: MagicMock,
        make_token: Callable[..., str],
        json_response: Callable[..., MagicMock],
    ) -> None:
        """Given a response with RT2, the store holds RT2 and keeps the user."""
        # Arrange
        broker.store.write("dev", "tenant-x", "RT1", "a@b.com")
        mock_client.post.return_value = json_response(
            200, {"access_token": make_token(), "refresh_token": "RT2"}
        )

        # Act
        broker.get_access_token(RESOURCE, "dev")

        # Assert
        record = broker.store.read_profile("dev")
        assert record is not None
        assert record.refresh_token == "RT2"
        assert record.user == "a@b.com"
        assert record.tenant_id == "tenant-x"

    def test_refresh_without_rotation_keeps_stored_token(
        self,
        broker: AccessTokenBroker,
        mock_client: MagicMock,
        make_token: Callable[..., str],
        json_response: Callable[..., MagicMock],
    ) -> None:
        """Given a response without refresh_token, RT1 stays stored."""
        # Arrange
        broker.store.write("dev", "tenant-x", "RT1", "a@b.com")
        mock_client.post.return_value = json_response(200, {"access_token": make_token()})

        # Act
        broker.get_access_token(RESOURCE, "dev")

        # Assert
        assert broker.store.read("dev", "refresh_token") == "RT1"

    def test_invalid_grant_deletes_profile(
        self,
        broker: AccessTokenBroker,
        mock_client: MagicMock,
        json_response: Callable[..., MagicMock],
    ) -> None:
        """Given invalid_grant, returns None and the profile needs a new login."""
        # Arrange
        broker.store.write("dev", "tenant-x", "RT1", "a@b.com")
        mock_client.post.return_value = json_response(
            400, {"error": "invalid_grant", "error_description": "AADSTS70008: expired"}
        )

        # Act
        token = broker.get_access_token(RESOURCE, "dev")

        # Assert
        assert token is None
        assert broker.has_valid_session("dev") is False
        assert broker.store.read_profile("dev") is None

    def test_transient_refresh_failure_keeps_profile(
        self,
        broker: AccessTokenBroker,
        mock_client: MagicMock,
        json_response: Callable[..., MagicMock],
    ) -> None:
        """Given a 503 from the token endpoint, returns None but keeps RT1."""
        # Arrange
        broker.store.write("dev", "tenant-x", "RT1", "a@b.com")
        mock_client.post.return_value = json_response(503, {})

        # Act
        token = broker.get_access_token(RESOURCE, "dev")

        # Assert
        assert token is None
        assert broker.has_valid_session("dev") is True

    def test_transport_error_keeps_profile(self, broker: AccessTokenBroker, mock_client: MagicMock) -> None:
        """Given a network failure, returns None but keeps RT1."""
        # Arrange
        broker.store.write("dev", "tenant-x", "RT1", "a@b.com")
        mock_client.post.side_effect = httpx.ConnectError("offline")

        # Act & Assert
        assert broker.get_access_token(RESOURCE, "dev") is None
        assert broker.store.read("dev", "refresh_token") == "RT1"

    def test_nothing_available_returns_none(self, broker: AccessTokenBroker, mock_client: MagicMock) -> None:
        """Given no stored profile and no sources, returns None without network calls."""
        # Act & Assert
        assert broker.get_access_token(RESOURCE, "dev") is None
        mock_client.post.assert_not_called()

    def test_require_access_token_raises_not_logged_in(self, broker: AccessTokenBroker) -> None:
        """Given nothing available, require_access_token names the profile to log in to."""
        # Act & Assert
        with pytest.raises(NotLoggedInError, match="pistudio login -p dev") as exc_info:
            broker.require_access_token(RESOURCE, "dev")
        assert exc_info.value.exit_code == 1

    def test_profiles_have_separate_caches(
        self,
        broker: AccessTokenBroker,
        make_token: Callable[..., str],
    ) -> None:
        """A token cached for one profile is not served to another."""
        # Arrange
        broker.session_cache("dev").put(RESOURCE, make_token())

        # Act & Assert
        assert broker.get_access_token(RESOURCE, "prod") is None


class TestCredentialSourceFallback:
    """Fallback to m365 / az style sources."""

    def test_sources_tried_in_order(
        self,
        auth_config: AuthConfig,
        mock_client: MagicMock,
        make_token: Callable[..., str],
    ) -> None:
        """The first source yielding a token wins and the token is cached."""
        # Arrange
        token = make_token(tid="tenant-x")
        first = FakeSource("m365", None)
        second = FakeSource("az", token)
        third = FakeSource("other", "never")
        broker = AccessTokenBroker(auth_config, credential_sources=[first, second, third], http_client=mock_client)

        # Act
        result = broker.get_access_token(RESOURCE, "dev")

        # Assert
        assert result == token
        assert first.calls == [(RESOURCE, None)]
        assert second.calls == [(RESOURCE, None)]
        assert third.calls == []
        assert broker.session_cache("dev").get(RESOURCE) == token

    def test_token_for_other_tenant_is_rejected(
        self,
        auth_config: AuthConfig,
        mock_client: MagicMock,
        make_token: Callable[..., str],
    ) -> None:
        """Given a known tenant, a fallback token from another tenant is skipped."""
        # Arrange
        wrong = FakeSource("m365", make_token(tid="tenant-other"))
        right_token = make_token(tid="tenant-x")
        right = FakeSource("az", right_token)
        broker = AccessTokenBroker(auth_config, credential_sources=[wrong, right], http_client=mock_client)

        # Act
        result = broker.get_access_token(RESOURCE, "dev", tenant="tenant-x")

        # Assert
        assert result == right_token
        assert right.calls == [(RESOURCE, "tenant-x")]

    def test_mismatch_only_yields_none(
        self,
        auth_config: AuthConfig,
        mock_client: MagicMock,
        make_token: Callable[..., str],
    ) -> None:
        # Arrange
        source = FakeSource("az", make_token(tid="tenant-other"))
        broker = AccessTokenBroker(auth_config, credential_sources=[source], http_client=mock_client)

        # Act & Assert
        assert broker.get_access_token(RESOURCE, "dev", tenant="tenant-x") is None

    def test_common_tenant_accepts_any_token(
        self,
        auth_config: AuthConfig,
        mock_client: MagicMock,
        make_token: Callable[..., str],
    ) -> None:
        """Given tenant 'common', no tenant is passed and no check is made."""
        # Arrange
        token = make_token(tid="tenant-other")
        source = FakeSource("az", token)
        broker = AccessTokenBroker(auth_config, credential_sources=[source], http_client=mock_client)

        # Act & Assert
        assert broker.get_access_token(RESOURCE, "dev", tenant="common") == token
        assert source.calls == [(RESOURCE, None)]

    def test_stored_tenant_is_used_after_failed_refresh(
        self,
        auth_config: AuthConfig,
        mock_client: MagicMock,
        make_token: Callable[..., str],
        json_response: Callable[..., MagicMock],
    ) -> None:
        """Given a stored profile whose refresh fails, fallback checks the stored tenant."""
        # Arrange
        source = FakeSource("az", make_token(tid="tenant-other"))
        broker = AccessTokenBroker(auth_config, credential_sources=[source], http_client=mock_client)
        broker.store.write("dev", "tenant-x", "RT1", "a@b.com")
        mock_client.post.return_value = json_response(503, {})

        # Act & Assert
        assert broker.get_access_token(RESOURCE, "dev") is None
        assert source.calls == [(RESOURCE, "tenant-x")]


def _device_code_body() -> dict[str, object]:
    return {
        "device_code": "DC",
        "user_code": "ABC-123",
        "verification_uri": "https://microsoft.com/devicelogin",
        "expires_in": 900,
        "interval": 5,
    }


class TestLogin:
    """Interactive login through the broker."""

    def test_device_login_resolves_common_tenant(
        self,
        broker: AccessTokenBroker,
        mock_client: MagicMock,
        make_token: Callable[..., str],
        json_response: Callable[..., MagicMock],
    ) -> None:
        """Given tenant 'common', the token's tid is persisted and the cache is warmed."""
        # Arrange
        access = make_token(tid="tenant-xyz", upn="a@b.com")
        mock_client.post.side_effect = [
            json_response(200, _device_code_body()),
            json_response(200, {"access_token": access, "refresh_token": "RT1"}),
        ]
        shown: list[str] = []

        # Act
        with patch("pistudio.security.auth.device_flow.time.sleep"):
            result = broker.login(
                "dev",
                tenant="common",
                device_code=True,
                callbacks=LoginCallbacks(show_device_code=shown.append),
            )

        # Assert
        assert result.tenant_id == "tenant-xyz"
        assert result.user == "a@b.com"
        assert result.method == "device_code"
        assert result.fell_back is False
        assert "ABC-123" in shown[0]
        assert broker.store.read("dev", "tenant_id") == "tenant-xyz"
        assert broker.store.read("dev", "refresh_token") == "RT1"
        assert broker.store.read("dev", "user") == "a@b.com"
        assert mock_client.post.call_args_list[0].args[0] == (
            "https://login.example.test/common/oauth2/v2.0/devicecode"
        )
        assert broker.session_cache("dev").get("https://management.azure.com") == access

    def test_device_login_after_pending_polls_persists_profile(
        self,
        broker: AccessTokenBroker,
        mock_client: MagicMock,
        make_token: Callable[..., str],
        json_response: Callable[..., MagicMock],
    ) -> None:
        """Given two authorization_pending polls, the third poll's tokens are stored."""
        # Arrange
        broker.store.write("dev", "common", "RT-OLD", "")
        pending = {"error": "authorization_pending", "error_description": "waiting"}
        mock_client.post.side_effect = [
            json_response(200, {**_device_code_body(), "device_code": "DC1"}),
            json_response(400, pending),
            json_response(400, pending),
            json_response(
                200,
                {"access_token": make_token(tid="resolved-tenant-id", upn="a@b.com"), "refresh_token": "RT1"},
            ),
        ]
        polls: list[int] = []

        # Act
        with patch("pistudio.security.auth.device_flow.time.sleep"):
            broker.login(
                "dev",
                tenant="common",
                device_code=True,
                callbacks=LoginCallbacks(on_poll=lambda: polls.append(1)),
            )

        # Assert
        record = broker.store.read_profile("dev")
        assert record is not None
        assert (record.tenant_id, record.refresh_token, record.user) == ("resolved-tenant-id", "RT1", "a@b.com")
        assert len(polls) == 3
        assert mock_client.post.call_args_list[1].kwargs["data"]["device_code"] == "DC1"

    def test_explicit_tenant_is_kept(
        self,
        broker: AccessTokenBroker,
        mock_client: MagicMock,
        make_token: Callable[..., str],
        json_response: Callable[..., MagicMock],
    ) -> None:
        """Given an explicit tenant, it is persisted as given."""
        # Arrange
        mock_client.post.side_effect = [
            json_response(200, _device_code_body()),
            json_response(200, {"access_token": make_token(tid="guid-x"), "refresh_token": "RT1"}),
        ]

        # Act
        with patch("pistudio.security.auth.device_flow.time.sleep"):
            result = broker.login("dev", tenant="contoso.onmicrosoft.com", device_code=True)

        # Assert
        assert result.tenant_id == "contoso.onmicrosoft.com"
        assert broker.store.read("dev", "tenant_id") == "contoso.onmicrosoft.com"

    def test_browser_falls_back_to_device_code_without_free_port(
        self,
        broker: AccessTokenBroker,
        mock_client: MagicMock,
        make_token: Callable[..., str],
        json_response: Callable[..., MagicMock],
    ) -> None:
        """Given no free loopback port, login warns and completes via device code."""
        # Arrange
        mock_client.post.side_effect = [
            json_response(200, _device_code_body()),
            json_response(200, {"access_token": make_token(tid="tenant-x"), "refresh_token": "RT1"}),
        ]
        warnings: list[str] = []

        # Act
        with (
            patch(
                "pistudio.security.auth.browser_flow.find_free_port",
                side_effect=LocalResourceError("No free port for the login callback"),
            ),
            patch("pistudio.security.auth.device_flow.time.sleep"),
        ):
            result = broker.login("dev", callbacks=LoginCallbacks(warn=warnings.append))

        # Assert
        assert result.method == "device_code"
        assert result.fell_back is True
        assert len(warnings) == 1
        assert "device code" in warnings[0]
        assert broker.has_valid_session("dev") is True

    def test_missing_refresh_token_is_an_error(
        self,
        broker: AccessTokenBroker,
        mock_client: MagicMock,
        make_token: Callable[..., str],
        json_response: Callable[..., MagicMock],
    ) -> None:
        """Given a login response without refresh_token, nothing is stored."""
        # Arrange
        mock_client.post.side_effect = [
            json_response(200, _device_code_body()),
            json_response(200, {"access_token": make_token(tid="tenant-x")}),
        ]

        # Act & Assert
        with patch("pistudio.security.auth.device_flow.time.sleep"):
            with pytest.raises(AuthenticationError, match="refresh token"):
                broker.login("dev", device_code=True)
        assert broker.store.read_profile("dev") is None

    def test_missing_client_id_fails_before_network(
        self, auth_config: AuthConfig, mock_client: MagicMock
    ) -> None:
        """Given an empty client id, login raises ConfigurationError (exit 2)."""
        # Arrange
        broker = AccessTokenBroker(
            auth_config.model_copy(update={"client_id": ""}),
            credential_sources=[],
            http_client=mock_client,
        )

        # Act & Assert
        with pytest.raises(ConfigurationError) as exc_info:
            broker.login("dev", device_code=True)
        assert exc_info.value.exit_code == 2
        mock_client.post.assert_not_called()


class TestLogoutAndStatus:
    """Logout and status."""

    def test_status_not_logged_in(self, broker: AccessTokenBroker) -> None:
        # Act
        status = broker.status("dev")

        # Assert
        assert status.logged_in is False
        assert status.to_json_dict() == {
            "logged_in": False,
            "connectedAs": None,
            "tenantId": None,
            "acquiredAt": None,
        }

    def test_status_logged_in(self, broker: AccessTokenBroker) -> None:
        # Arrange
        broker.store.write("dev", "tenant-x", "RT1", "a@b.com")

        # Act
        document = broker.status("dev").to_json_dict()

        # Assert
        assert document["logged_in"] is True
        assert document["connectedAs"] == "a@b.com"
        assert document["tenantId"] == "tenant-x"
        assert isinstance(document["acquiredAt"], str)
        assert document["acquiredAt"].endswith("Z")
        assert "RT1" not in str(document)

    def test_logout_is_idempotent_and_clears_cache(
        self, broker: AccessTokenBroker, make_token: Callable[..., str]
    ) -> None:
        # Arrange
        broker.store.write("dev", "tenant-x", "RT1", "a@b.com")
        broker.session_cache("dev").put(RESOURCE, make_token())

        # Act
        first = broker.logout("dev")
        second = broker.logout("dev")

        # Assert
        assert first is True
        assert second is False
        assert broker.has_valid_session("dev") is False
        assert len(broker.session_cache("dev")) == 0

    def test_close_releases_exit_cleanups(
        self, auth_config: AuthConfig, mock_client: MagicMock, make_token: Callable[..., str]
    ) -> None:
        """Given many brokers created and closed, the exit cleanup registry does not grow."""
        # Arrange
        before = len(shutdown._cleanups)

        # Act
        for _ in range(50):
            with AccessTokenBroker(auth_config, credential_sources=[], http_client=mock_client) as broker:
                broker.session_cache("dev").put(RESOURCE, make_token())

        # Assert
        assert len(shutdown._cleanups) == before


class TestActiveIdentity:
    """Tenant and user resolution without a login."""

    def test_stored_record_wins(self, auth_config: AuthConfig, mock_client: MagicMock) -> None:
        # Arrange
        source = FakeSource("m365", None, SourceIdentity(tenant_id="tenant-m365", user="m@x.com"))
        broker = AccessTokenBroker(auth_config, credential_sources=[source], http_client=mock_client)
        broker.store.write("dev", "tenant-x", "RT1", "a@b.com")

        # Act & Assert
        assert broker.active_tenant_id("dev", configured_tenant="tenant-cfg") == "tenant-x"
        assert broker.active_user("dev") == "a@b.com"
        assert source.identity_calls == 0

    def test_cached_token_claims_are_used(
        self, auth_config: AuthConfig, mock_client: MagicMock, make_token: Callable[..., str]
    ) -> None:
        """Given no stored record, tid and upn come from a cached access token."""
        # Arrange
        source = FakeSource("m365", None, SourceIdentity(tenant_id="tenant-m365", user="m@x.com"))
        broker = AccessTokenBroker(auth_config, credential_sources=[source], http_client=mock_client)
        broker.session_cache("dev").put(RESOURCE, make_token(tid="tenant-cached", upn="cached@b.com"))

        # Act & Assert
        assert broker.active_tenant_id("dev", configured_tenant="tenant-cfg") == "tenant-cached"
        assert broker.active_user("dev") == "cached@b.com"
        assert source.identity_calls == 0

    def test_configured_tenant_before_other_tools(self, auth_config: AuthConfig, mock_client: MagicMock) -> None:
        # Arrange
        source = FakeSource("m365", None, SourceIdentity(tenant_id="tenant-m365", user="m@x.com"))
        broker = AccessTokenBroker(auth_config, credential_sources=[source], http_client=mock_client)

        # Act & Assert
        assert broker.active_tenant_id("dev", configured_tenant="tenant-cfg") == "tenant-cfg"
        assert source.identity_calls == 0

    def test_other_tools_in_order(self, auth_config: AuthConfig, mock_client: MagicMock) -> None:
        """Given nothing local, m365 answers first and az is only asked for what m365 lacks."""
        # Arrange
        m365 = FakeSource("m365", None, SourceIdentity(tenant_id=None, user="m@x.com"))
        az = FakeSource("az", None, SourceIdentity(tenant_id="tenant-az", user="z@x.com"))
        broker = AccessTokenBroker(auth_config, credential_sources=[m365, az], http_client=mock_client)

        # Act
        user = broker.active_user("dev")
        az_calls_after_user = az.identity_calls
        tenant = broker.active_tenant_id("dev")

        # Assert
        assert user == "m@x.com"
        assert az_calls_after_user == 0
        assert tenant == "tenant-az"

    def test_nothing_known(self, auth_config: AuthConfig, mock_client: MagicMock) -> None:
        # Arrange
        broker = AccessTokenBroker(
            auth_config, credential_sources=[FakeSource("az", None)], http_client=mock_client
        )

        # Act & Assert
        assert broker.active_tenant_id("dev") is None
        assert broker.active_user("dev") is None
