"""
Abstract base class for local session backends.

Both implementations (embedded SQLite, flat JSON files) satisfy the same
contract so the session manager can hold one reference and never branch
on which backend is active.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path

from ..models import Session, SessionSummary, StorageStats

# Default cap on listing results
DEFAULT_LIST_LIMIT = 200


class SessionBackend(ABC):
    """
    Abstract local session store.

    Contract:
    - save_session is an idempotent upsert that replaces the session row
      and its whole message set.
    - load_session returns None for unknown ids; it never raises for them.
    - list_sessions is ordered by updated_at descending and capped.
    - delete_session / clear_all are atomic with respect to readers.
    """

    name: str = "abstract"

    @abstractmethod
    async def initialize(self) -> None:
        """Open or create the backing store.

        Raises:
            StorageConnectionError: If the backend cannot be used
        """
        ...

    @abstractmethod
    async def close(self) -> None: ...

    @abstractmethod
    async def save_session(self, session: Session) -> None: ...

    @abstractmethod
    async def load_session(self, session_id: str) -> Session | None: ...

    @abstractmethod
    async def list_sessions(self, limit: int = DEFAULT_LIST_LIMIT) -> list[SessionSummary]: ...

    @abstractmethod
    async def session_timestamps(self) -> dict[str, int]:
        """Map of every session id to its updated_at, without a cap."""
        ...

    @abstractmethod
    async def delete_session(self, session_id: str) -> bool: ...

    @abstractmethod
    async def clear_all(self) -> int:
        """Delete every session. Returns the number removed."""
        ...

    async def rename_session(self, session_id: str, title: str) -> bool:
        """Rename a session, bumping updated_at.

        Returns False if the session does not exist.
        """
        session = await self.load_session(session_id)
        if session is None:
            return False
        session.title = title
        session.touch()
        await self.save_session(session)
        return True

    # =========================================================================
    # API keys
    # =========================================================================

    @abstractmethod
    async def save_api_key(self, key_name: str, key_value: str) -> None: ...

    @abstractmethod
    async def get_api_key(self, key_name: str) -> str | None: ...

    @abstractmethod
    async def delete_api_key(self, key_name: str) -> bool: ...

    @abstractmethod
    async def list_api_keys(self) -> list[tuple[str, int]]:
        """List stored key names with their last update time (epoch ms)."""
        ...

    @abstractmethod
    async def clear_api_keys(self) -> int: ...

    # =========================================================================
    # Introspection
    # =========================================================================

    @abstractmethod
    async def stats(self) -> StorageStats: ...

    @property
    def blob_path(self) -> Path | None:
        """Location of a single-file snapshot of the store, if there is one.

        Only backends that return a path here can be mirrored by the sync
        engine.
        """
        return None

    async def is_empty(self) -> bool:
        return not await self.list_sessions(limit=1)
