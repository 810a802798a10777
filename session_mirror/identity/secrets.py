"""
File-backed secret storage.

Credentials live in one JSON file with 0600 permissions. Each logical key
can be set or cleared on its own; ``delete_many`` rewrites the file once,
so clearing several keys is all-or-nothing.
"""

from __future__ import annotations

import asyncio
import logging
import stat
from collections.abc import Iterable
from pathlib import Path

from ..exceptions import StorageIOError
from ..local.file_ops import read_json, remove_file, write_json_atomic

logger = logging.getLogger(__name__)

ACCESS_TOKEN_KEY = "access_token"
REFRESH_TOKEN_KEY = "refresh_token"
USER_EMAIL_KEY = "email"
USER_NAME_KEY = "display_name"
CLIENT_ID_KEY = "client_id"
CLIENT_SECRET_KEY = "client_secret"

# Everything sign-out must remove
CREDENTIAL_KEYS = (ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY, USER_EMAIL_KEY, USER_NAME_KEY)

_FILE_MODE = stat.S_IRUSR | stat.S_IWUSR


class SecretStore:
    """Small key/value store for credential material."""

    def __init__(self, path: Path):
        self.path = Path(path).expanduser()
        self._lock = asyncio.Lock()

    async def _read(self) -> dict[str, str]:
        try:
            data = await read_json(self.path)
        except StorageIOError as e:
            # A corrupt credential file is the same as no credentials
            logger.warning(f"Credential file unreadable, ignoring: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    async def get(self, key: str) -> str | None:
        return (await self._read()).get(key)

    async def get_all(self) -> dict[str, str]:
        return await self._read()

    async def set(self, key: str, value: str) -> None:
        await self.set_many({key: value})

    async def set_many(self, values: dict[str, str]) -> None:
        async with self._lock:
            data = await self._read()
            data.update(values)
            await write_json_atomic(self.path, data, mode=_FILE_MODE)

    async def delete(self, key: str) -> None:
        await self.delete_many([key])

    async def delete_many(self, keys: Iterable[str]) -> None:
        """Remove several keys in a single atomic rewrite."""
        doomed = frozenset(keys)
        async with self._lock:
            data = await self._read()
            remaining = {k: v for k, v in data.items() if k not in doomed}
            if remaining == data:
                return
            if remaining:
                await write_json_atomic(self.path, remaining, mode=_FILE_MODE)
            else:
                await remove_file(self.path)
