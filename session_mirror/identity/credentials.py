"""
OAuth2 credential lifecycle for the Drive mirror.

Implements the authorization-code flow with a loopback redirect:

    SIGNED_OUT --sign_in()--> AWAITING_CALLBACK --code ok--> SIGNED_IN
                                    |
                                    +--error / timeout / state mismatch--> SIGNED_OUT

Token refresh happens inside SIGNED_IN and never changes the state.

Usage:
    manager = CredentialManager(SecretStore(path), settings.oauth)
    await manager.sign_in()
    token = await manager.get_access_token()
"""

from __future__ import annotations

import asyncio
import hmac
import html
import inspect
import logging
import platform
import secrets
import shutil
import subprocess
import time
import urllib.parse
import webbrowser
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import aiohttp
from aiohttp import web

from ..config import OAuthConfig
from ..exceptions import (
    AuthenticationError,
    NotSignedInError,
    OAuthProviderError,
    SignInTimeoutError,
    StateMismatchError,
    StorageConnectionError,
    TokenRefreshError,
)
from ..models import AuthStatus, CredentialRecord
from .secrets import (
    ACCESS_TOKEN_KEY,
    CLIENT_ID_KEY,
    CLIENT_SECRET_KEY,
    CREDENTIAL_KEYS,
    REFRESH_TOKEN_KEY,
    USER_EMAIL_KEY,
    USER_NAME_KEY,
    SecretStore,
)

logger = logging.getLogger(__name__)

# Shown when profile lookup fails; sign-in still succeeds
PLACEHOLDER_EMAIL = "unknown@gmail.com"
PLACEHOLDER_NAME = "Google User"

SETUP_INSTRUCTIONS = "\n".join(
    [
        "To use Google Drive sync, you need to set up OAuth credentials:",
        "1. Go to console.cloud.google.com",
        "2. Create a project and enable the Drive API",
        "3. Create OAuth 2.0 credentials (Desktop app)",
        "4. Put client_id and client_secret under 'oauth' in settings.yaml,",
        "   or export SESSION_MIRROR_CLIENT_ID / SESSION_MIRROR_CLIENT_SECRET",
    ]
)

BrowserOpener = Callable[[str], Awaitable[None] | None]


class AuthState(Enum):
    SIGNED_OUT = "signed_out"
    AWAITING_CALLBACK = "awaiting_callback"
    SIGNED_IN = "signed_in"


def _is_wsl() -> bool:
    """Detect if running inside WSL."""
    try:
        return "microsoft" in platform.release().lower()
    except Exception:
        return False


def open_system_browser(url: str) -> None:
    """Open URL in browser, with WSL2 support."""
    if _is_wsl():
        if shutil.which("wslview"):
            subprocess.Popen(["wslview", url], stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
            return
        ps = shutil.which("powershell.exe")
        if ps:
            subprocess.Popen(
                [ps, "-NoProfile", "-Command", f'Start-Process "{url}"'],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
            return

    webbrowser.open(url)


# =============================================================================
# Loopback redirect listener
# =============================================================================


@dataclass
class CallbackResult:
    """Query parameters received on the redirect."""

    code: str | None = None
    state: str | None = None
    error: str | None = None
    error_description: str | None = None


def _callback_page(error: str | None) -> str:
    if error:
        body = f'<p style="color:red">Error: {html.escape(error)}</p>'
    else:
        body = '<p style="color:green">Authorization complete. You can close this tab.</p>'
    return (
        "<html><body style='font-family:system-ui;text-align:center;padding:40px'>"
        f"<h2>Session Mirror</h2>{body}</body></html>"
    )


class LoopbackReceiver:
    """One-shot HTTP listener for the OAuth redirect.

    Only the first request on the callback path is recorded. Every request
    on that path gets the acknowledgment page; anything else is a 404.
    """

    def __init__(self, host: str, port: int, path: str):
        self.host = host
        self.port = port
        self.path = path
        self._runner: web.AppRunner | None = None
        self._result: asyncio.Future[CallbackResult] | None = None

    async def start(self) -> None:
        self._result = asyncio.get_running_loop().create_future()

        app = web.Application()
        app.router.add_get(self.path, self._handle_callback)
        self._runner = web.AppRunner(app, access_log=None)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        try:
            await site.start()
        except OSError as e:
            await self._runner.cleanup()
            self._runner = None
            raise AuthenticationError(
                f"Could not bind OAuth callback listener to {self.host}:{self.port}. "
                "Make sure the port is free.",
                {"port": self.port, "cause": str(e)},
            ) from e

    async def _handle_callback(self, request: web.Request) -> web.StreamResponse:
        params = request.query
        result = CallbackResult(
            code=params.get("code"),
            state=params.get("state"),
            error=params.get("error"),
            error_description=params.get("error_description"),
        )
        if result.error is None and result.code is None:
            page_error = "Authorization failed: no code received"
        else:
            page_error = result.error

        response = web.Response(text=_callback_page(page_error), content_type="text/html")
        await response.prepare(request)
        await response.write_eof()

        if self._result is not None and not self._result.done():
            self._result.set_result(result)
        return response

    async def wait(self, timeout_s: float) -> CallbackResult:
        """Wait for the callback.

        Raises:
            TimeoutError: If nothing arrives within timeout_s
        """
        if self._result is None:
            raise RuntimeError("Receiver not started")
        return await asyncio.wait_for(asyncio.shield(self._result), timeout_s)

    async def close(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None


# =============================================================================
# Credential manager
# =============================================================================


class CredentialManager:
    """
    Owns OAuth tokens for the signed-in account.

    Access tokens are cached with their expiry kept in memory only; after a
    restart the first get_access_token() refreshes.
    """

    def __init__(
        self,
        secret_store: SecretStore,
        config: OAuthConfig | None = None,
        *,
        open_browser: BrowserOpener | None = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the credential manager.

        Args:
            secret_store: Where tokens and profile details are persisted
            config: OAuth client settings
            open_browser: Called with the consent URL (defaults to the system browser)
            clock: Wall clock in epoch seconds
        """
        self.secrets = secret_store
        self.config = config or OAuthConfig()
        self._open_browser = open_browser or open_system_browser
        self._clock = clock
        self._expires_at = 0.0
        self._state = AuthState.SIGNED_OUT
        self._refresh_lock = asyncio.Lock()

    @property
    def state(self) -> AuthState:
        return self._state

    @property
    def expires_at(self) -> float:
        return self._expires_at

    async def load_state(self) -> AuthState:
        """Derive the outer state from what is persisted."""
        if self._state != AuthState.AWAITING_CALLBACK:
            record = await self.get_record()
            self._state = AuthState.SIGNED_IN if record.is_signed_in else AuthState.SIGNED_OUT
        return self._state

    async def get_record(self) -> CredentialRecord:
        data = await self.secrets.get_all()
        return CredentialRecord(
            access_token=data.get(ACCESS_TOKEN_KEY),
            refresh_token=data.get(REFRESH_TOKEN_KEY),
            expires_at=self._expires_at,
            email=data.get(USER_EMAIL_KEY),
            display_name=data.get(USER_NAME_KEY),
        )

    async def get_auth_status(self) -> AuthStatus:
        record = await self.get_record()
        return AuthStatus(
            is_signed_in=record.is_signed_in,
            email=record.email,
            display_name=record.display_name,
        )

    async def set_client_credentials(self, client_id: str, client_secret: str) -> None:
        await self.secrets.set_many({CLIENT_ID_KEY: client_id, CLIENT_SECRET_KEY: client_secret})

    async def _client_credentials(self) -> tuple[str, str]:
        client_id = self.config.client_id or await self.secrets.get(CLIENT_ID_KEY)
        client_secret = self.config.client_secret or await self.secrets.get(CLIENT_SECRET_KEY)
        if not client_id or not client_secret:
            raise AuthenticationError(SETUP_INSTRUCTIONS)
        return client_id, client_secret

    def build_authorize_url(self, client_id: str, state: str) -> str:
        params = urllib.parse.urlencode(
            {
                "client_id": client_id,
                "redirect_uri": self.config.redirect_uri,
                "response_type": "code",
                "scope": " ".join(self.config.scopes),
                "access_type": "offline",
                "prompt": "consent",
                "state": state,
            }
        )
        return f"{self.config.authorize_url}?{params}"

    # =========================================================================
    # Sign in / out
    # =========================================================================

    async def sign_in(self) -> AuthStatus:
        """Run the interactive loopback flow and persist the tokens.

        Raises:
            AuthenticationError: Client credentials missing, port busy, no code,
                or the code exchange was rejected
            OAuthProviderError: Provider redirected back with an error
            StateMismatchError: Callback state differs from the one we issued
            SignInTimeoutError: No callback before the deadline
        """
        previous = self._state
        client_id, client_secret = await self._client_credentials()

        state = secrets.token_hex(16)
        receiver = LoopbackReceiver(
            self.config.redirect_host, self.config.redirect_port, self.config.redirect_path
        )
        await receiver.start()
        self._state = AuthState.AWAITING_CALLBACK

        try:
            try:
                auth_url = self.build_authorize_url(client_id, state)
                logger.info(f"Opening browser for authentication on port {self.config.redirect_port}")
                opened = self._open_browser(auth_url)
                if inspect.isawaitable(opened):
                    await opened
                result = await receiver.wait(self.config.callback_timeout_s)
            except TimeoutError as e:
                raise SignInTimeoutError(self.config.callback_timeout_s) from e
            finally:
                await receiver.close()

            if result.error:
                raise OAuthProviderError(result.error, result.error_description)
            if not result.code:
                raise AuthenticationError("Authorization failed: no code received")
            if not hmac.compare_digest((result.state or "").encode(), state.encode()):
                raise StateMismatchError()

            tokens = await self._exchange_code(result.code, client_id, client_secret)
            await self._save_tokens(tokens)

            email, name = await self._fetch_user_info(tokens["access_token"])
            await self.secrets.set_many({USER_EMAIL_KEY: email, USER_NAME_KEY: name})
        except BaseException:
            self._state = previous if previous != AuthState.AWAITING_CALLBACK else AuthState.SIGNED_OUT
            raise

        self._state = AuthState.SIGNED_IN
        logger.info(f"Signed in as {email}")
        return await self.get_auth_status()

    async def sign_out(self) -> None:
        """Remove every piece of credential material in one write."""
        await self.secrets.delete_many(CREDENTIAL_KEYS)
        self._expires_at = 0.0
        self._state = AuthState.SIGNED_OUT
        logger.info("Signed out; credentials cleared")

    # =========================================================================
    # Tokens
    # =========================================================================

    async def get_access_token(self) -> str:
        """Return a bearer token valid for at least the safety margin.

        Raises:
            NotSignedInError: No refresh token is stored
            TokenRefreshError: The provider rejected the refresh token
        """
        async with self._refresh_lock:
            record = await self.get_record()
            if record.is_fresh(now=self._clock()):
                return record.access_token  # type: ignore[return-value]

            if not record.refresh_token:
                raise NotSignedInError()

            return await self._refresh_access_token(record.refresh_token)

    async def _refresh_access_token(self, refresh_token: str) -> str:
        client_id, client_secret = await self._client_credentials()
        status, payload, body = await self._post_token(
            {
                "refresh_token": refresh_token,
                "client_id": client_id,
                "client_secret": client_secret,
                "grant_type": "refresh_token",
            }
        )
        if status >= 300 or not payload.get("access_token"):
            raise TokenRefreshError(status, body)

        await self._save_tokens(payload)
        logger.debug("Access token refreshed")
        return payload["access_token"]

    async def _exchange_code(self, code: str, client_id: str, client_secret: str) -> dict[str, Any]:
        status, payload, body = await self._post_token(
            {
                "code": code,
                "client_id": client_id,
                "client_secret": client_secret,
                "redirect_uri": self.config.redirect_uri,
                "grant_type": "authorization_code",
            }
        )
        if status >= 300 or not payload.get("access_token"):
            raise AuthenticationError(
                f"Token exchange failed (HTTP {status}): {body}", {"status": status}
            )
        return payload

    async def _save_tokens(self, tokens: dict[str, Any]) -> None:
        values = {ACCESS_TOKEN_KEY: tokens["access_token"]}
        if tokens.get("refresh_token"):
            values[REFRESH_TOKEN_KEY] = tokens["refresh_token"]
        await self.secrets.set_many(values)
        self._expires_at = self._clock() + float(tokens.get("expires_in", 3600))

    async def _post_token(self, form: dict[str, str]) -> tuple[int, dict[str, Any], str]:
        timeout = aiohttp.ClientTimeout(total=self.config.http_timeout_s)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as http:
                async with http.post(self.config.token_url, data=form) as resp:
                    body = await resp.text()
                    try:
                        payload = await resp.json(content_type=None)
                    except ValueError:
                        payload = {}
                    return resp.status, payload if isinstance(payload, dict) else {}, body
        except (aiohttp.ClientError, TimeoutError) as e:
            raise StorageConnectionError(self.config.token_url, e) from e

    async def _fetch_user_info(self, access_token: str) -> tuple[str, str]:
        """Best-effort profile lookup; placeholders on any failure."""
        timeout = aiohttp.ClientTimeout(total=self.config.http_timeout_s)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as http:
                async with http.get(
                    self.config.userinfo_url,
                    headers={"Authorization": f"Bearer {access_token}"},
                ) as resp:
                    if resp.status >= 300:
                        logger.warning(f"User info lookup failed: HTTP {resp.status}")
                        return PLACEHOLDER_EMAIL, PLACEHOLDER_NAME
                    info = await resp.json(content_type=None)
        except (aiohttp.ClientError, TimeoutError, ValueError) as e:
            logger.warning(f"User info lookup failed: {e}")
            return PLACEHOLDER_EMAIL, PLACEHOLDER_NAME

        if not isinstance(info, dict):
            logger.warning(f"User info response is not an object: {type(info).__name__}")
            return PLACEHOLDER_EMAIL, PLACEHOLDER_NAME
        return info.get("email") or PLACEHOLDER_EMAIL, info.get("name") or PLACEHOLDER_NAME
