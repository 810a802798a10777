"""
Tests for the OAuth credential manager.

The loopback listener is real; the "browser" is a coroutine that follows
the redirect itself, and the provider is the in-process FakeOAuthProvider.
"""

from __future__ import annotations

import urllib.parse

import aiohttp
import pytest

from conftest import browser_hitting_callback
from session_mirror.config import OAuthConfig
from session_mirror.exceptions import (
    AuthenticationError,
    NotSignedInError,
    OAuthProviderError,
    SignInTimeoutError,
    StateMismatchError,
    TokenRefreshError,
)
from session_mirror.identity.credentials import (
    PLACEHOLDER_EMAIL,
    PLACEHOLDER_NAME,
    AuthState,
    CredentialManager,
    LoopbackReceiver,
)
from session_mirror.identity.secrets import SecretStore


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestSignIn:
    """Tests for the interactive loopback flow."""

    @pytest.mark.asyncio
    async def test_successful_sign_in(self, secret_store, oauth_config, oauth_provider) -> None:
        pages: list[str] = []
        manager = CredentialManager(
            secret_store, oauth_config, open_browser=browser_hitting_callback(oauth_config, pages=pages)
        )

        status = await manager.sign_in()

        assert status.is_signed_in is True
        assert (status.email, status.display_name) == ("dev@example.com", "Dev User")
        assert manager.state == AuthState.SIGNED_IN
        assert await secret_store.get("refresh_token") == "refresh-1"
        assert await secret_store.get("access_token") == "access-1"
        assert oauth_provider.exchanges[0]["redirect_uri"] == oauth_config.redirect_uri
        assert oauth_provider.exchanges[0]["code"] == "good-code"
        assert "Authorization complete" in pages[0]

    @pytest.mark.asyncio
    async def test_state_mismatch_performs_no_exchange(
        self, secret_store, oauth_config, oauth_provider
    ) -> None:
        """A forged state aborts before the code is ever exchanged."""
        manager = CredentialManager(
            secret_store, oauth_config, open_browser=browser_hitting_callback(oauth_config, state="forged")
        )

        with pytest.raises(StateMismatchError):
            await manager.sign_in()

        assert oauth_provider.exchanges == []
        assert manager.state == AuthState.SIGNED_OUT
        assert await secret_store.get("access_token") is None

    @pytest.mark.asyncio
    async def test_provider_error(self, secret_store, oauth_config, oauth_provider) -> None:
        pages: list[str] = []
        manager = CredentialManager(
            secret_store,
            oauth_config,
            open_browser=browser_hitting_callback(
                oauth_config, code=None, error="access_denied", pages=pages
            ),
        )

        with pytest.raises(OAuthProviderError) as exc_info:
            await manager.sign_in()

        assert exc_info.value.details["error"] == "access_denied"
        assert oauth_provider.exchanges == []
        assert "access_denied" in pages[0]

    @pytest.mark.asyncio
    async def test_missing_code(self, secret_store, oauth_config) -> None:
        manager = CredentialManager(
            secret_store, oauth_config, open_browser=browser_hitting_callback(oauth_config, code=None)
        )
        with pytest.raises(AuthenticationError, match="no code"):
            await manager.sign_in()

    @pytest.mark.asyncio
    async def test_rejected_code(self, secret_store, oauth_config) -> None:
        manager = CredentialManager(
            secret_store, oauth_config, open_browser=browser_hitting_callback(oauth_config, code="bad")
        )
        with pytest.raises(AuthenticationError, match="Token exchange failed"):
            await manager.sign_in()
        assert manager.state == AuthState.SIGNED_OUT

    @pytest.mark.asyncio
    async def test_timeout_releases_port(self, secret_store, oauth_config) -> None:
        oauth_config.callback_timeout_s = 0.2
        opened: list[str] = []
        manager = CredentialManager(secret_store, oauth_config, open_browser=opened.append)

        with pytest.raises(SignInTimeoutError):
            await manager.sign_in()

        assert len(opened) == 1
        assert manager.state == AuthState.SIGNED_OUT
        receiver = LoopbackReceiver(
            oauth_config.redirect_host, oauth_config.redirect_port, oauth_config.redirect_path
        )
        await receiver.start()
        await receiver.close()

    @pytest.mark.asyncio
    async def test_profile_failure_uses_placeholders(
        self, secret_store, oauth_config, oauth_provider
    ) -> None:
        oauth_provider.fail_userinfo = True
        manager = CredentialManager(
            secret_store, oauth_config, open_browser=browser_hitting_callback(oauth_config)
        )

        status = await manager.sign_in()

        assert (status.email, status.display_name) == (PLACEHOLDER_EMAIL, PLACEHOLDER_NAME)

    @pytest.mark.asyncio
    async def test_non_object_profile_uses_placeholders(
        self, secret_store, oauth_config, oauth_provider
    ) -> None:
        oauth_provider.userinfo_payload = ["dev@example.com"]
        manager = CredentialManager(
            secret_store, oauth_config, open_browser=browser_hitting_callback(oauth_config)
        )

        status = await manager.sign_in()

        assert status.is_signed_in
        assert (status.email, status.display_name) == (PLACEHOLDER_EMAIL, PLACEHOLDER_NAME)

    @pytest.mark.asyncio
    async def test_missing_client_credentials(self, secret_store) -> None:
        manager = CredentialManager(secret_store, OAuthConfig(), open_browser=lambda url: None)
        with pytest.raises(AuthenticationError, match="console.cloud.google.com"):
            await manager.sign_in()

    @pytest.mark.asyncio
    async def test_client_credentials_from_secret_store(self, secret_store, oauth_config) -> None:
        config = OAuthConfig(
            token_url=oauth_config.token_url,
            userinfo_url=oauth_config.userinfo_url,
            redirect_port=oauth_config.redirect_port,
        )
        manager = CredentialManager(
            secret_store, config, open_browser=browser_hitting_callback(config)
        )
        await manager.set_client_credentials("stored-id", "stored-secret")

        status = await manager.sign_in()

        assert status.is_signed_in

    def test_authorize_url(self, secret_store, oauth_config) -> None:
        manager = CredentialManager(secret_store, oauth_config)
        url = manager.build_authorize_url("cid", "abc")
        query = urllib.parse.parse_qs(urllib.parse.urlparse(url).query)

        assert query["scope"] == ["https://www.googleapis.com/auth/drive.appdata"]
        assert query["access_type"] == ["offline"]
        assert query["state"] == ["abc"]
        assert query["redirect_uri"] == [f"http://localhost:{oauth_config.redirect_port}/callback"]


class TestLoopbackReceiver:
    """Tests for the redirect listener."""

    @pytest.mark.asyncio
    async def test_other_paths_are_not_found(self, oauth_config) -> None:
        receiver = LoopbackReceiver("127.0.0.1", oauth_config.redirect_port, "/callback")
        await receiver.start()
        try:
            async with aiohttp.ClientSession() as http:
                async with http.get(f"http://127.0.0.1:{oauth_config.redirect_port}/other") as resp:
                    assert resp.status == 404
        finally:
            await receiver.close()

    @pytest.mark.asyncio
    async def test_busy_port(self, oauth_config) -> None:
        first = LoopbackReceiver("127.0.0.1", oauth_config.redirect_port, "/callback")
        await first.start()
        try:
            second = LoopbackReceiver("127.0.0.1", oauth_config.redirect_port, "/callback")
            with pytest.raises(AuthenticationError, match="Could not bind"):
                await second.start()
        finally:
            await first.close()


class TestAccessTokens:
    """Tests for token caching and refresh."""

    @pytest.fixture
    async def seeded_store(self, secret_store: SecretStore) -> SecretStore:
        await secret_store.set_many({"access_token": "old", "refresh_token": "refresh-1"})
        return secret_store

    @pytest.mark.asyncio
    async def test_refresh_then_cache(self, seeded_store, oauth_config, oauth_provider) -> None:
        clock = FakeClock()
        manager = CredentialManager(seeded_store, oauth_config, clock=clock)

        first = await manager.get_access_token()
        second = await manager.get_access_token()

        assert first == second == "access-1"
        assert len(oauth_provider.refreshes) == 1
        assert oauth_provider.refreshes[0]["grant_type"] == "refresh_token"
        assert manager.expires_at == clock.now + 3600

    @pytest.mark.asyncio
    async def test_refresh_inside_safety_margin(self, seeded_store, oauth_config, oauth_provider) -> None:
        clock = FakeClock()
        manager = CredentialManager(seeded_store, oauth_config, clock=clock)
        await manager.get_access_token()

        clock.now += 3600 - 59
        token = await manager.get_access_token()

        assert token == "access-2"
        assert len(oauth_provider.refreshes) == 2

    @pytest.mark.asyncio
    async def test_not_signed_in(self, secret_store, oauth_config) -> None:
        manager = CredentialManager(secret_store, oauth_config)
        with pytest.raises(NotSignedInError):
            await manager.get_access_token()

    @pytest.mark.asyncio
    async def test_rejected_refresh_token(self, secret_store, oauth_config) -> None:
        await secret_store.set("refresh_token", "revoked")
        manager = CredentialManager(secret_store, oauth_config)

        with pytest.raises(TokenRefreshError) as exc_info:
            await manager.get_access_token()

        assert exc_info.value.details["status"] == 400


class TestSignOut:
    """Tests for sign-out."""

    @pytest.mark.asyncio
    async def test_sign_out_clears_credentials(self, signed_in_credentials, secret_store) -> None:
        await signed_in_credentials.set_client_credentials("cid", "secret")
        assert signed_in_credentials.state == AuthState.SIGNED_IN

        await signed_in_credentials.sign_out()

        assert signed_in_credentials.state == AuthState.SIGNED_OUT
        assert await secret_store.get_all() == {"client_id": "cid", "client_secret": "secret"}
        assert (await signed_in_credentials.get_auth_status()).is_signed_in is False
        with pytest.raises(NotSignedInError):
            await signed_in_credentials.get_access_token()
