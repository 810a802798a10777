"""
Synchronization engine for the whole-store mirror.

The local SQLite file is the unit of transport:
- Push: upload the database file, then a small JSON index for cheap listing
- Pull: download the remote file and merge it into the local store,
  importing sessions that are new or strictly newer. Nothing local is ever
  deleted by a pull.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from pathlib import Path

import aiosqlite

from ..exceptions import StorageConnectionError, StorageIOError
from ..local.file_ops import file_exists, remove_file, write_bytes_atomic
from ..local.sqlite_store import SQLiteSessionStore
from ..logging_utils import SyncLoggerAdapter, get_sync_logger
from ..models import PullResult, RemoteIndexEntry, Session, now_ms
from ..remote.drive import DriveBlobChannel
from .scheduler import Clock, PushScheduler

logger = get_sync_logger("sync.engine")

DB_BLOB_NAME = "session-mirror.db"
INDEX_BLOB_NAME = "session-mirror-index.json"
DB_MIME_TYPE = "application/octet-stream"
INDEX_MIME_TYPE = "application/json"
TEMP_SUFFIX = ".remote-tmp"


@dataclass
class SyncConfig:
    """Configuration for the sync engine."""

    push_delay_ms: int = 3000
    index_limit: int = 200
    # Peer sessions loaded in parallel during a merge
    merge_concurrency: int = 8


class SyncEngine:
    """Push/pull between a SQLite store and the remote blob channel.

    Push and pull are serialized against each other; scheduled pushes go
    through a PushScheduler and only ever log their failures.
    """

    def __init__(
        self,
        store: SQLiteSessionStore,
        channel: DriveBlobChannel,
        config: SyncConfig | None = None,
        clock: Clock | None = None,
    ):
        """Initialize the sync engine.

        Args:
            store: Writable local store whose file is mirrored
            channel: Remote blob channel
            config: Sync configuration
            clock: Timer source for debounced pushes
        """
        self.store = store
        self.channel = channel
        self.config = config or SyncConfig()
        self.scheduler = PushScheduler(self.push, clock, name="push")
        self._sync_lock = asyncio.Lock()
        self._last_sync_at: int | None = None

    @property
    def last_sync_at(self) -> int | None:
        """Epoch ms of the last completed push or pull."""
        return self._last_sync_at

    def schedule_push(self, delay_ms: int | None = None) -> None:
        """Push after a quiet period; a newer call replaces a pending one."""
        self.scheduler.schedule(self.config.push_delay_ms if delay_ms is None else delay_ms)

    # =========================================================================
    # Push
    # =========================================================================

    async def push(self) -> bool:
        """Upload the database file and the listing index.

        Returns:
            False if the store has no backing file yet
        """
        log = SyncLoggerAdapter(logger, {"operation": "push"})
        async with self._sync_lock:
            data = await self.store.snapshot_bytes()
            if data is None:
                log.debug("Nothing to push: store has no backing file", extra={"result": "skipped"})
                return False

            await self.channel.upload_by_name(DB_BLOB_NAME, data, DB_MIME_TYPE)

            summaries = await self.store.list_sessions(limit=self.config.index_limit)
            index = [RemoteIndexEntry.from_summary(s).to_dict() for s in summaries]
            await self.channel.upload_by_name(
                INDEX_BLOB_NAME, json.dumps(index).encode("utf-8"), INDEX_MIME_TYPE
            )

            self._last_sync_at = now_ms()

        log.info(
            f"Pushed {len(data)} bytes, {len(index)} index entries",
            extra={"result": "pushed", "bytes": len(data), "sessions": len(index)},
        )
        return True

    async def fetch_remote_index(self) -> list[RemoteIndexEntry]:
        """Remote session listing without downloading the database."""
        data = await self.channel.download_by_name(INDEX_BLOB_NAME)
        if not data:
            return []
        try:
            entries = json.loads(data)
        except ValueError as e:
            logger.warning(f"Remote index is not valid JSON: {e}")
            return []
        return [RemoteIndexEntry.from_dict(entry) for entry in entries if isinstance(entry, dict)]

    # =========================================================================
    # Pull
    # =========================================================================

    async def pull(self) -> PullResult:
        """Bring the remote snapshot into the local store.

        Returns:
            REPLACED when the remote file became the local store,
            MERGED when at least one session was imported,
            SKIPPED otherwise (no remote, nothing newer, unreadable peer)
        """
        log = SyncLoggerAdapter(logger, {"operation": "pull"})
        async with self._sync_lock:
            data = await self.channel.download_by_name(DB_BLOB_NAME)
            if data is None:
                log.info("No remote snapshot; pull skipped", extra={"result": PullResult.SKIPPED.value})
                return PullResult.SKIPPED

            if not await file_exists(self.store.db_path):
                await self.store.restore_from_bytes(data)
                self._last_sync_at = now_ms()
                log.info(
                    f"Local store bootstrapped from remote ({len(data)} bytes)",
                    extra={"result": PullResult.REPLACED.value, "bytes": len(data)},
                )
                return PullResult.REPLACED

            result = await self._merge(data, log.bind(blob=DB_BLOB_NAME, bytes=len(data)))
            self._last_sync_at = now_ms()
            return result

    async def _merge(self, data: bytes, log: SyncLoggerAdapter) -> PullResult:
        temp_path = self.store.db_path.with_name(self.store.db_path.name + TEMP_SUFFIX)
        await write_bytes_atomic(temp_path, data)

        try:
            try:
                incoming, peer_tombstones = await self._read_peer(temp_path)
            except (StorageConnectionError, StorageIOError, aiosqlite.Error) as e:
                log.warning(
                    f"Remote snapshot unreadable; pull skipped: {e}",
                    extra={"result": PullResult.SKIPPED.value},
                )
                return PullResult.SKIPPED

            # One transaction per session, each re-checking the local copy at commit
            imported = 0
            for session in incoming:
                if await self.store.import_session(session):
                    imported += 1
            await self.store.record_tombstones(peer_tombstones)
        finally:
            await remove_file(temp_path)

        if not imported:
            log.info(
                "Remote snapshot has nothing newer; pull skipped",
                extra={"result": PullResult.SKIPPED.value},
            )
            return PullResult.SKIPPED

        log.info(
            f"Merged {imported} sessions from remote",
            extra={"result": PullResult.MERGED.value, "sessions": imported},
        )
        return PullResult.MERGED

    async def _read_peer(self, path: Path) -> tuple[list[Session], dict[str, int]]:
        """Sessions from the peer file that should replace or extend local ones."""
        peer = await SQLiteSessionStore.open_peer(path)
        try:
            local_times = await self.store.session_timestamps()
            local_tombstones = await self.store.tombstones()
            peer_times = await peer.session_timestamps()

            wanted = [
                session_id
                for session_id, updated_at in peer_times.items()
                if updated_at > local_times.get(session_id, -1)
                and updated_at > local_tombstones.get(session_id, -1)
            ]

            semaphore = asyncio.Semaphore(self.config.merge_concurrency)

            async def load(session_id: str) -> Session | None:
                async with semaphore:
                    return await peer.load_session(session_id)

            # Let every load finish before the peer connection is closed
            loaded = await asyncio.gather(*(load(sid) for sid in wanted), return_exceptions=True)
            for outcome in loaded:
                if isinstance(outcome, BaseException):
                    raise outcome
            return [s for s in loaded if s is not None], await peer.tombstones()
        finally:
            await peer.close()

    async def close(self) -> None:
        """Drop any pending push and wait for a running one."""
        await self.scheduler.close()
