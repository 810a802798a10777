"""
Flat-file session backend.

Used when the embedded database cannot be opened. Layout under base_dir:

    sessions/{session_id}.json   full session with messages
    sessions-index.json          summaries, newest first, capped
    api-keys.json                {name: {"value": ..., "updatedAt": ...}}

Every file is replaced atomically (temp file + rename). This backend has
no single-file snapshot, so it is never mirrored remotely.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from ..exceptions import SessionValidationError, StorageIOError
from ..models import Session, SessionSummary, StorageStats, now_ms
from .base import DEFAULT_LIST_LIMIT, SessionBackend
from .file_ops import (
    ensure_directory,
    file_size,
    list_files,
    read_json,
    remove_file,
    write_json_atomic,
)

logger = logging.getLogger(__name__)

SESSIONS_DIR = "sessions"
INDEX_FILE = "sessions-index.json"
API_KEYS_FILE = "api-keys.json"

# The index only ever holds this many summaries
INDEX_LIMIT = 100


def _validate_session_id(session_id: str) -> None:
    """Validate session ID to prevent path traversal attacks.

    Raises:
        SessionValidationError: If session_id is invalid
    """
    if not session_id or not session_id.strip():
        raise SessionValidationError("session_id cannot be empty", field="session_id")

    if "/" in session_id or "\\" in session_id or session_id in (".", ".."):
        raise SessionValidationError(f"Invalid session_id: {session_id}", field="session_id")


class FlatFileSessionStore(SessionBackend):
    """
    JSON-file session store.

    Contract:
    - Inputs: Session objects
    - Side Effects: Filesystem writes under base_dir
    - Files created: sessions/{id}.json, sessions-index.json, api-keys.json
    """

    name = "flat-file"

    def __init__(self, base_dir: Path):
        self.base_dir = Path(base_dir).expanduser()
        self.sessions_dir = self.base_dir / SESSIONS_DIR
        self.index_file = self.base_dir / INDEX_FILE
        self.api_keys_file = self.base_dir / API_KEYS_FILE
        self._write_lock = asyncio.Lock()

    async def initialize(self) -> None:
        await ensure_directory(self.sessions_dir)
        if await read_json(self.index_file) is None:
            await write_json_atomic(self.index_file, [])
        logger.info(f"Flat-file store initialized: {self.base_dir}")

    async def close(self) -> None:
        return None

    def _session_file(self, session_id: str) -> Path:
        _validate_session_id(session_id)
        return self.sessions_dir / f"{session_id}.json"

    # =========================================================================
    # Index
    # =========================================================================

    async def _read_index(self) -> list[SessionSummary]:
        try:
            data = await read_json(self.index_file)
        except StorageIOError as e:
            logger.warning(f"Session index unreadable, rebuilding from files: {e}")
            return await self._rebuild_index()
        return [SessionSummary.from_dict(entry) for entry in data or []]

    async def _write_index(self, summaries: list[SessionSummary]) -> None:
        summaries.sort(key=lambda s: s.updated_at, reverse=True)
        await write_json_atomic(self.index_file, [s.to_dict() for s in summaries[:INDEX_LIMIT]])

    async def _rebuild_index(self) -> list[SessionSummary]:
        summaries = [session.summary() for session in await self._load_all()]
        await self._write_index(summaries)
        return summaries[:INDEX_LIMIT]

    async def _load_all(self) -> list[Session]:
        sessions = []
        for name in await list_files(self.sessions_dir, ".json"):
            session = await self.load_session(name[: -len(".json")])
            if session is not None:
                sessions.append(session)
        return sessions

    # =========================================================================
    # Sessions
    # =========================================================================

    async def save_session(self, session: Session) -> None:
        path = self._session_file(session.id)
        async with self._write_lock:
            await write_json_atomic(path, session.to_dict())

            index = [s for s in await self._read_index() if s.id != session.id]
            index.append(session.summary())
            await self._write_index(index)

        logger.debug(f"Session {session.id} saved to {path}")

    async def load_session(self, session_id: str) -> Session | None:
        path = self._session_file(session_id)
        try:
            data = await read_json(path)
        except StorageIOError as e:
            logger.warning(f"Failed to load session {session_id}: {e}")
            return None
        if data is None:
            return None
        try:
            return Session.from_dict(data)
        except (KeyError, ValueError, TypeError) as e:
            logger.warning(f"Session file {path} is malformed: {e}")
            return None

    async def list_sessions(self, limit: int = DEFAULT_LIST_LIMIT) -> list[SessionSummary]:
        index = await self._read_index()
        index.sort(key=lambda s: s.updated_at, reverse=True)
        return index[:limit]

    async def session_timestamps(self) -> dict[str, int]:
        return {s.id: s.updated_at for s in await self._load_all()}

    async def delete_session(self, session_id: str) -> bool:
        path = self._session_file(session_id)
        async with self._write_lock:
            index = await self._read_index()
            remaining = [s for s in index if s.id != session_id]
            if len(remaining) != len(index):
                await self._write_index(remaining)
            removed = await remove_file(path)

        if removed:
            logger.info(f"Deleted session: {session_id}")
        return removed

    async def clear_all(self) -> int:
        async with self._write_lock:
            await self._write_index([])
            names = await list_files(self.sessions_dir, ".json")
            for name in names:
                await remove_file(self.sessions_dir / name)

        logger.info(f"Cleared {len(names)} sessions")
        return len(names)

    # =========================================================================
    # API keys
    # =========================================================================

    async def _read_api_keys(self) -> dict[str, dict]:
        return await read_json(self.api_keys_file) or {}

    async def save_api_key(self, key_name: str, key_value: str) -> None:
        async with self._write_lock:
            keys = await self._read_api_keys()
            keys[key_name] = {"value": key_value, "updatedAt": now_ms()}
            await write_json_atomic(self.api_keys_file, keys, mode=0o600)

    async def get_api_key(self, key_name: str) -> str | None:
        entry = (await self._read_api_keys()).get(key_name)
        return entry["value"] if entry else None

    async def delete_api_key(self, key_name: str) -> bool:
        async with self._write_lock:
            keys = await self._read_api_keys()
            if key_name not in keys:
                return False
            del keys[key_name]
            await write_json_atomic(self.api_keys_file, keys, mode=0o600)
        return True

    async def list_api_keys(self) -> list[tuple[str, int]]:
        keys = await self._read_api_keys()
        return sorted((name, int(entry.get("updatedAt", 0))) for name, entry in keys.items())

    async def clear_api_keys(self) -> int:
        async with self._write_lock:
            keys = await self._read_api_keys()
            await write_json_atomic(self.api_keys_file, {}, mode=0o600)
        return len(keys)

    # =========================================================================
    # Introspection
    # =========================================================================

    async def stats(self) -> StorageStats:
        sessions = await self._load_all()
        size = await file_size(self.index_file)
        for name in await list_files(self.sessions_dir, ".json"):
            size += await file_size(self.sessions_dir / name)
        return StorageStats(
            backend=self.name,
            session_count=len(sessions),
            message_count=sum(len(s.messages) for s in sessions),
            size_bytes=size,
        )
