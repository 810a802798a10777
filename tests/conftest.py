"""
Shared test configuration and fixtures.

Network collaborators are replaced by small in-process aiohttp apps:
- FakeDrive: the subset of the Drive v3 REST API the blob channel uses
- FakeOAuthProvider: token and userinfo endpoints

Both run on 127.0.0.1 through aiohttp's TestServer, so the real HTTP code
paths are exercised.
"""

from __future__ import annotations

import itertools
import json
import re
import urllib.parse
from collections.abc import Callable
from pathlib import Path

import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer, unused_port

from session_mirror.config import OAuthConfig, Settings
from session_mirror.identity.credentials import CredentialManager
from session_mirror.identity.secrets import SecretStore
from session_mirror.local.file_store import FlatFileSessionStore
from session_mirror.local.sqlite_store import SQLiteSessionStore
from session_mirror.models import Message, MessageRole, Session, SessionMode
from session_mirror.remote.drive import DriveBlobChannel

# =============================================================================
# Fake Drive
# =============================================================================

_QUERY_NAME = re.compile(r"name='((?:[^'\\]|\\.)*)' and trashed=false")


def parse_multipart(body: bytes, content_type: str) -> list[tuple[str, bytes]]:
    """Split a multipart/related body into (content-type, payload) pairs."""
    boundary = content_type.split("boundary=", 1)[1].strip()
    delimiter = b"--" + boundary.encode("ascii")
    parts = []
    for chunk in body.split(delimiter)[1:]:
        if chunk.startswith(b"--"):
            break
        headers, _, payload = chunk.partition(b"\r\n\r\n")
        header_text = headers.decode("ascii").strip()
        parts.append((header_text.split(":", 1)[1].strip(), payload[:-2]))
    return parts


class FakeDrive:
    """In-memory app-data folder."""

    def __init__(self) -> None:
        self.files: dict[str, dict] = {}
        self.requests: list[tuple[str, str]] = []
        self.seen_tokens: list[str] = []
        self.reject_auth = False
        self.fail_status: int | None = None
        self.page_size_cap: int | None = None
        self._ids = itertools.count(1)
        self.base_url = ""

    # -- helpers for tests ----------------------------------------------------

    def put(self, name: str, data: bytes, mime_type: str = "application/octet-stream") -> str:
        file_id = f"file-{next(self._ids)}"
        self.files[file_id] = {"name": name, "data": data, "mimeType": mime_type}
        return file_id

    def get_by_name(self, name: str) -> bytes | None:
        for entry in self.files.values():
            if entry["name"] == name:
                return entry["data"]
        return None

    def channel(self, token: str = "valid-token", **kwargs) -> DriveBlobChannel:
        async def token_provider() -> str:
            return token

        return self.channel_for(token_provider, **kwargs)

    def channel_for(self, token_provider, **kwargs) -> DriveBlobChannel:
        return DriveBlobChannel(
            token_provider,
            api_url=f"{self.base_url}/drive/v3",
            upload_url=f"{self.base_url}/upload/drive/v3",
            **kwargs,
        )

    # -- HTTP ----------------------------------------------------------------

    def app(self) -> web.Application:
        app = web.Application(middlewares=[self._middleware])
        app.router.add_get("/drive/v3/files", self._list)
        app.router.add_get("/drive/v3/files/{file_id}", self._download)
        app.router.add_delete("/drive/v3/files/{file_id}", self._delete)
        app.router.add_post("/upload/drive/v3/files", self._create)
        app.router.add_patch("/upload/drive/v3/files/{file_id}", self._update)
        return app

    @web.middleware
    async def _middleware(self, request: web.Request, handler):
        self.requests.append((request.method, request.path))
        auth = request.headers.get("Authorization", "")
        self.seen_tokens.append(auth.removeprefix("Bearer "))
        if self.reject_auth or not auth.startswith("Bearer "):
            return web.json_response({"error": {"code": 401}}, status=401)
        if self.fail_status is not None:
            return web.json_response({"error": {"code": self.fail_status}}, status=self.fail_status)
        return await handler(request)

    async def _list(self, request: web.Request) -> web.Response:
        assert request.query.get("spaces") == "appDataFolder"
        matches = list(self.files.items())
        query = request.query.get("q")
        if query:
            wanted = _QUERY_NAME.fullmatch(query).group(1).replace("\\'", "'")
            matches = [(fid, f) for fid, f in matches if f["name"] == wanted]

        offset = int(request.query.get("pageToken", "0"))
        size = int(request.query.get("pageSize", "100"))
        if self.page_size_cap:
            size = min(size, self.page_size_cap)
        page = matches[offset : offset + size]
        body: dict = {
            "files": [
                {"id": fid, "name": f["name"], "size": str(len(f["data"]))} for fid, f in page
            ]
        }
        if offset + size < len(matches):
            body["nextPageToken"] = str(offset + size)
        return web.json_response(body)

    async def _download(self, request: web.Request) -> web.Response:
        entry = self.files.get(request.match_info["file_id"])
        if entry is None or request.query.get("alt") != "media":
            return web.json_response({"error": {"code": 404}}, status=404)
        return web.Response(body=entry["data"], content_type=entry["mimeType"])

    async def _delete(self, request: web.Request) -> web.Response:
        if self.files.pop(request.match_info["file_id"], None) is None:
            return web.json_response({"error": {"code": 404}}, status=404)
        return web.Response(status=204)

    async def _create(self, request: web.Request) -> web.Response:
        assert request.query.get("uploadType") == "multipart"
        (_, meta_raw), (mime_type, data) = parse_multipart(
            await request.read(), request.headers["Content-Type"]
        )
        metadata = json.loads(meta_raw)
        assert metadata["parents"] == ["appDataFolder"]
        file_id = self.put(metadata["name"], data, mime_type)
        return web.json_response({"id": file_id, "name": metadata["name"]})

    async def _update(self, request: web.Request) -> web.Response:
        file_id = request.match_info["file_id"]
        if file_id not in self.files:
            return web.json_response({"error": {"code": 404}}, status=404)
        (_, meta_raw), (mime_type, data) = parse_multipart(
            await request.read(), request.headers["Content-Type"]
        )
        assert json.loads(meta_raw) == {}
        self.files[file_id].update(data=data, mimeType=mime_type)
        return web.json_response({"id": file_id})


@pytest.fixture
async def fake_drive():
    drive = FakeDrive()
    async with TestServer(drive.app()) as server:
        drive.base_url = str(server.make_url("/")).rstrip("/")
        yield drive


@pytest.fixture
async def drive_channel(fake_drive: FakeDrive):
    channel = fake_drive.channel()
    yield channel
    await channel.close()


# =============================================================================
# Fake OAuth provider
# =============================================================================


class FakeOAuthProvider:
    """Token and userinfo endpoints."""

    def __init__(self) -> None:
        self.valid_code = "good-code"
        self.valid_refresh = "refresh-1"
        self.exchanges: list[dict[str, str]] = []
        self.refreshes: list[dict[str, str]] = []
        self.fail_userinfo = False
        self.userinfo_payload: object = {"email": "dev@example.com", "name": "Dev User"}
        self._access = itertools.count(1)
        self.base_url = ""

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/token", self._token)
        app.router.add_get("/userinfo", self._userinfo)
        return app

    async def _token(self, request: web.Request) -> web.Response:
        form = dict(await request.post())
        if form.get("grant_type") == "authorization_code":
            self.exchanges.append(form)
            if form.get("code") != self.valid_code:
                return web.json_response({"error": "invalid_grant"}, status=400)
            return web.json_response(
                {
                    "access_token": f"access-{next(self._access)}",
                    "refresh_token": self.valid_refresh,
                    "expires_in": 3600,
                }
            )

        self.refreshes.append(form)
        if form.get("refresh_token") != self.valid_refresh:
            return web.json_response({"error": "invalid_grant"}, status=400)
        return web.json_response({"access_token": f"access-{next(self._access)}", "expires_in": 3600})

    async def _userinfo(self, request: web.Request) -> web.Response:
        if self.fail_userinfo:
            return web.json_response({"error": "server"}, status=500)
        return web.json_response(self.userinfo_payload)


@pytest.fixture
async def oauth_provider():
    provider = FakeOAuthProvider()
    async with TestServer(provider.app()) as server:
        provider.base_url = str(server.make_url("/")).rstrip("/")
        yield provider


@pytest.fixture
def oauth_config(oauth_provider: FakeOAuthProvider) -> OAuthConfig:
    return OAuthConfig(
        client_id="test-client",
        client_secret="test-secret",
        token_url=f"{oauth_provider.base_url}/token",
        userinfo_url=f"{oauth_provider.base_url}/userinfo",
        redirect_port=unused_port(),
        callback_timeout_s=5.0,
        http_timeout_s=5.0,
    )


@pytest.fixture
def secret_store(tmp_path: Path) -> SecretStore:
    return SecretStore(tmp_path / "secrets" / ".credentials.json")


def browser_hitting_callback(
    config: OAuthConfig,
    code: str | None = "good-code",
    state: str | None = None,
    error: str | None = None,
    pages: list[str] | None = None,
) -> Callable:
    """An ``open_browser`` stand-in that follows the redirect itself.

    The state from the consent URL is echoed back unless ``state`` overrides it.
    """

    async def open_browser(url: str) -> None:
        issued = urllib.parse.parse_qs(urllib.parse.urlparse(url).query)
        params: dict[str, str] = {"state": state if state is not None else issued["state"][0]}
        if code is not None:
            params["code"] = code
        if error is not None:
            params["error"] = error
        callback = (
            f"http://{config.redirect_host}:{config.redirect_port}{config.redirect_path}"
            f"?{urllib.parse.urlencode(params)}"
        )
        async with aiohttp.ClientSession() as http:
            async with http.get(callback) as resp:
                assert resp.status == 200
                if pages is not None:
                    pages.append(await resp.text())

    return open_browser


@pytest.fixture
async def signed_in_credentials(secret_store: SecretStore, oauth_config: OAuthConfig) -> CredentialManager:
    """Credentials with a stored refresh token; the first use refreshes."""
    await secret_store.set_many(
        {
            "access_token": "stale-access",
            "refresh_token": "refresh-1",
            "email": "dev@example.com",
            "display_name": "Dev User",
        }
    )
    credentials = CredentialManager(secret_store, oauth_config)
    await credentials.load_state()
    return credentials


# =============================================================================
# Stores and sessions
# =============================================================================


@pytest.fixture
async def sqlite_store(tmp_path: Path):
    store = await SQLiteSessionStore.create(tmp_path / "local" / "session-mirror.db")
    yield store
    await store.close()


@pytest.fixture
async def file_store(tmp_path: Path):
    store = FlatFileSessionStore(tmp_path / "flat")
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
def settings(tmp_path: Path, oauth_config: OAuthConfig) -> Settings:
    return Settings(storage_dir=tmp_path / "home", oauth=oauth_config)


@pytest.fixture
def make_session() -> Callable[..., Session]:
    """Build a session with fixed timestamps and n alternating messages."""

    def factory(
        session_id: str,
        updated_at: int = 1000,
        created_at: int | None = None,
        title: str | None = None,
        messages: int = 2,
        mode: SessionMode = SessionMode.CHAT,
    ) -> Session:
        created = updated_at if created_at is None else created_at
        session = Session(
            id=session_id,
            title=title or f"Session {session_id}",
            mode=mode,
            created_at=created,
            updated_at=updated_at,
        )
        for i in range(messages):
            role = MessageRole.USER if i % 2 == 0 else MessageRole.ASSISTANT
            session.messages.append(
                Message(
                    id=f"{session_id}-m{i}",
                    role=role,
                    content=f"{session_id} message {i}",
                    timestamp=created + i,
                    sequence=i,
                )
            )
        return session

    return factory
