"""
Google Drive app-data folder as a named-blob store.

Every call fetches a bearer token from the token provider, so an expired
token is refreshed transparently. Files live in the hidden per-application
``appDataFolder`` and are addressed by name; ids are looked up on demand.
"""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import aiohttp

from ..exceptions import RemoteAuthError, RemoteRequestError, StorageConnectionError
from ..logging_utils import get_sync_logger
from .multipart import MultipartBody

logger = get_sync_logger("remote.drive")

DRIVE_API_URL = "https://www.googleapis.com/drive/v3"
DRIVE_UPLOAD_URL = "https://www.googleapis.com/upload/drive/v3"
APP_DATA_FOLDER = "appDataFolder"

METADATA_TIMEOUT_S = 10.0
TRANSFER_TIMEOUT_S = 60.0
LIST_PAGE_SIZE = 100

TokenProvider = Callable[[], Awaitable[str]]


@dataclass
class RemoteFile:
    """A file in the app-data folder."""

    id: str
    name: str
    size: int | None = None
    modified_time: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RemoteFile:
        size = data.get("size")
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            size=int(size) if size is not None else None,
            modified_time=data.get("modifiedTime"),
        )


class DriveBlobChannel:
    """Named-blob operations against the Drive v3 REST API."""

    def __init__(
        self,
        token_provider: TokenProvider,
        *,
        session: aiohttp.ClientSession | None = None,
        api_url: str = DRIVE_API_URL,
        upload_url: str = DRIVE_UPLOAD_URL,
        metadata_timeout_s: float = METADATA_TIMEOUT_S,
        transfer_timeout_s: float = TRANSFER_TIMEOUT_S,
    ):
        """Initialize the channel.

        Args:
            token_provider: Coroutine returning a valid access token
            session: Shared HTTP session (one is created and owned otherwise)
            api_url: Base URL for metadata and download calls
            upload_url: Base URL for media uploads
            metadata_timeout_s: Deadline for lookups, listing and deletes
            transfer_timeout_s: Deadline for uploads and downloads
        """
        self._token_provider = token_provider
        self._session = session
        self._owns_session = session is None
        self.api_url = api_url.rstrip("/")
        self.upload_url = upload_url.rstrip("/")
        self.metadata_timeout_s = metadata_timeout_s
        self.transfer_timeout_s = transfer_timeout_s

    async def _http(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _request(
        self,
        method: str,
        url: str,
        *,
        timeout_s: float,
        params: dict[str, str] | None = None,
        data: bytes | None = None,
        content_type: str | None = None,
        allow_not_found: bool = False,
    ) -> bytes | None:
        token = await self._token_provider()
        headers = {"Authorization": f"Bearer {token}"}
        if content_type:
            headers["Content-Type"] = content_type

        http = await self._http()
        try:
            async with http.request(
                method,
                url,
                params=params,
                data=data,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=timeout_s),
            ) as resp:
                status = resp.status
                body = await resp.read()
        except (aiohttp.ClientError, TimeoutError) as e:
            raise StorageConnectionError(url, e) from e

        if status in (401, 403):
            raise RemoteAuthError(method, url, status, body.decode("utf-8", "replace"))
        if status == 404 and allow_not_found:
            return None
        if status >= 300:
            raise RemoteRequestError(method, url, status, body.decode("utf-8", "replace"))
        return body

    async def _request_json(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        body = await self._request(method, url, **kwargs)
        if not body:
            return {}
        try:
            return json.loads(body)
        except ValueError as e:
            raise RemoteRequestError(method, url, 200, f"Invalid JSON response: {e}") from e

    # =========================================================================
    # Operations
    # =========================================================================

    async def find_by_name(self, name: str) -> str | None:
        """Return the id of the first non-trashed app-data file with this name."""
        escaped = name.replace("\\", "\\\\").replace("'", "\\'")
        result = await self._request_json(
            "GET",
            f"{self.api_url}/files",
            params={
                "q": f"name='{escaped}' and trashed=false",
                "spaces": APP_DATA_FOLDER,
                "fields": "files(id,name)",
            },
            timeout_s=self.metadata_timeout_s,
        )
        files = result.get("files") or []
        return files[0]["id"] if files else None

    async def upload(
        self,
        name: str,
        data: bytes,
        mime_type: str,
        existing_id: str | None = None,
    ) -> str:
        """Create the file, or replace its content if existing_id is given."""
        if existing_id:
            body = MultipartBody.for_upload({}, data, mime_type)
            method, url = "PATCH", f"{self.upload_url}/files/{existing_id}"
        else:
            body = MultipartBody.for_upload({"name": name, "parents": [APP_DATA_FOLDER]}, data, mime_type)
            method, url = "POST", f"{self.upload_url}/files"

        result = await self._request_json(
            method,
            url,
            params={"uploadType": "multipart"},
            data=body.to_bytes(),
            content_type=body.content_type,
            timeout_s=self.transfer_timeout_s,
        )
        file_id = result.get("id") or existing_id
        if not file_id:
            raise RemoteRequestError(method, url, 200, "Upload response carried no file id")

        logger.debug(
            f"Uploaded {name} ({len(data)} bytes) as {file_id}",
            extra={"operation": "upload", "blob": name, "bytes": len(data)},
        )
        return file_id

    async def upload_by_name(self, name: str, data: bytes, mime_type: str) -> str:
        """Overwrite the file called name, creating it if absent."""
        existing_id = await self.find_by_name(name)
        return await self.upload(name, data, mime_type, existing_id)

    async def download(self, file_id: str) -> bytes:
        body = await self._request(
            "GET",
            f"{self.api_url}/files/{file_id}",
            params={"alt": "media"},
            timeout_s=self.transfer_timeout_s,
        )
        return body or b""

    async def download_by_name(self, name: str) -> bytes | None:
        """Content of the named file, or None when it does not exist."""
        file_id = await self.find_by_name(name)
        if file_id is None:
            return None
        return await self.download(file_id)

    async def delete(self, file_id: str) -> bool:
        """Delete a file. Returns False if it was already gone."""
        body = await self._request(
            "DELETE",
            f"{self.api_url}/files/{file_id}",
            timeout_s=self.metadata_timeout_s,
            allow_not_found=True,
        )
        return body is not None

    async def list_files(self) -> list[RemoteFile]:
        """Every file in the app-data folder, following pagination."""
        files: list[RemoteFile] = []
        page_token: str | None = None
        while True:
            params = {
                "spaces": APP_DATA_FOLDER,
                "fields": "nextPageToken, files(id,name,size,modifiedTime)",
                "pageSize": str(LIST_PAGE_SIZE),
            }
            if page_token:
                params["pageToken"] = page_token

            result = await self._request_json(
                "GET", f"{self.api_url}/files", params=params, timeout_s=self.metadata_timeout_s
            )
            files.extend(RemoteFile.from_dict(f) for f in result.get("files") or [])
            page_token = result.get("nextPageToken")
            if not page_token:
                return files
