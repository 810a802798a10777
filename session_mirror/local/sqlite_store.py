"""
SQLite session backend.

The whole store lives in one database file. That file is what the sync
engine uploads, so the connection uses the rollback journal (not WAL):
after every commit the main file alone is a complete, consistent snapshot.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import aiosqlite

from ..exceptions import StorageConnectionError, StorageIOError
from ..models import (
    Message,
    MessageKind,
    MessageRole,
    Session,
    SessionMode,
    SessionSummary,
    StorageStats,
    now_ms,
)
from .base import DEFAULT_LIST_LIMIT, SessionBackend
from .file_ops import ensure_directory, file_size, read_bytes, remove_file, write_bytes_atomic

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS sessions (
    id           TEXT PRIMARY KEY,
    title        TEXT NOT NULL DEFAULT 'Untitled',
    mode         TEXT NOT NULL DEFAULT 'chat',
    project_path TEXT,
    created_at   INTEGER NOT NULL,
    updated_at   INTEGER NOT NULL,
    plan_json    TEXT
);

CREATE TABLE IF NOT EXISTS messages (
    session_id    TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
    seq           INTEGER NOT NULL,
    id            TEXT NOT NULL,
    role          TEXT NOT NULL,
    content       TEXT NOT NULL,
    type          TEXT NOT NULL DEFAULT 'text',
    timestamp     INTEGER NOT NULL,
    metadata_json TEXT,
    PRIMARY KEY (session_id, seq)
);

CREATE INDEX IF NOT EXISTS idx_messages_session ON messages(session_id, seq);
CREATE INDEX IF NOT EXISTS idx_sessions_updated ON sessions(updated_at DESC);

CREATE TABLE IF NOT EXISTS api_keys (
    key_name   TEXT PRIMARY KEY,
    key_value  TEXT NOT NULL,
    updated_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS tombstones (
    session_id TEXT PRIMARY KEY,
    deleted_at INTEGER NOT NULL
);
"""

SESSION_COLUMNS = "id, title, mode, project_path, created_at, updated_at, plan_json"


class SQLiteSessionStore(SessionBackend):
    """
    Session store backed by a single SQLite file.

    Features:
    - Sessions and messages in separate tables, messages ordered by seq
    - Deletions leave tombstones so a pull does not resurrect them
    - Read-only peer mode for merging a downloaded snapshot
    """

    name = "sqlite"

    def __init__(self, db_path: str | Path, *, read_only: bool = False):
        """
        Initialize SQLite store.

        Args:
            db_path: Database file path
            read_only: Open without schema creation or writes (merge peers)
        """
        self.db_path = Path(db_path).expanduser()
        self.read_only = read_only
        self.conn: aiosqlite.Connection | None = None
        self._initialized = False
        # aiosqlite serializes statements but not transactions
        self._write_lock = asyncio.Lock()

    @classmethod
    async def create(cls, db_path: str | Path) -> SQLiteSessionStore:
        """Create and initialize a writable store."""
        store = cls(db_path)
        await store.initialize()
        return store

    @classmethod
    async def open_peer(cls, db_path: str | Path) -> SQLiteSessionStore:
        """Open a database file read-only, e.g. a downloaded remote snapshot."""
        store = cls(db_path, read_only=True)
        await store.initialize()
        return store

    async def initialize(self) -> None:
        """Initialize SQLite connection and schema."""
        if self._initialized:
            return

        try:
            if self.read_only:
                if not self.db_path.exists():
                    raise FileNotFoundError(str(self.db_path))
                uri = f"{self.db_path.resolve().as_uri()}?mode=ro"
                self.conn = await aiosqlite.connect(uri, uri=True)
            else:
                await ensure_directory(self.db_path.parent)
                self.conn = await aiosqlite.connect(str(self.db_path))
                await self.conn.execute("PRAGMA journal_mode = DELETE")
                await self.conn.executescript(SCHEMA_SQL)
                await self.conn.commit()

            self.conn.row_factory = aiosqlite.Row
            await self.conn.execute("PRAGMA foreign_keys = ON")

            # Fail early on files that are not databases
            async with self.conn.execute("SELECT COUNT(*) FROM sessions") as cursor:
                await cursor.fetchone()

            self._initialized = True
            logger.info(f"SQLite store initialized: {self.db_path} (read_only={self.read_only})")

        except Exception as e:
            if self.conn is not None:
                await self.conn.close()
                self.conn = None
            raise StorageConnectionError(str(self.db_path), e) from e

    async def close(self) -> None:
        """Close SQLite connection."""
        if self.conn:
            await self.conn.close()
            self.conn = None
        self._initialized = False

    @property
    def blob_path(self) -> Path | None:
        if self.read_only:
            return None
        return self.db_path

    def _require_conn(self, operation: str) -> aiosqlite.Connection:
        if self.conn is None:
            raise StorageIOError(operation, str(self.db_path), RuntimeError("Not initialized"))
        return self.conn

    def _require_writable(self, operation: str) -> aiosqlite.Connection:
        conn = self._require_conn(operation)
        if self.read_only:
            raise StorageIOError(operation, str(self.db_path), RuntimeError("Store is read-only"))
        return conn

    # =========================================================================
    # Sessions
    # =========================================================================

    async def save_session(self, session: Session) -> None:
        """Upsert the session row and replace its messages in one transaction."""
        conn = self._require_writable("save_session")

        async with self._write_lock:
            try:
                await self._write_session(conn, session)
                await conn.commit()
            except aiosqlite.Error as e:
                await conn.rollback()
                raise StorageIOError("save_session", str(self.db_path), e) from e

        logger.debug(f"Session {session.id} saved ({len(session.messages)} messages)")

    async def import_session(self, session: Session) -> bool:
        """Save a session only if it is newer than the stored copy and tombstone.

        The comparison and the write share one transaction under the write
        lock, so an edit committed after the caller decided to import is
        never overwritten by an older copy.

        Returns:
            True if the session was written
        """
        conn = self._require_writable("import_session")

        async with self._write_lock:
            try:
                async with conn.execute(
                    """
                    SELECT
                        (SELECT updated_at FROM sessions WHERE id = ?) AS updated_at,
                        (SELECT deleted_at FROM tombstones WHERE session_id = ?) AS deleted_at
                    """,
                    (session.id, session.id),
                ) as cursor:
                    row = await cursor.fetchone()
                floor = max(row["updated_at"] or -1, row["deleted_at"] or -1)
                if session.updated_at <= floor:
                    return False

                await self._write_session(conn, session)
                await conn.commit()
            except aiosqlite.Error as e:
                await conn.rollback()
                raise StorageIOError("import_session", str(self.db_path), e) from e

        logger.debug(f"Session {session.id} imported at {session.updated_at}")
        return True

    @staticmethod
    async def _write_session(conn: aiosqlite.Connection, session: Session) -> None:
        await conn.execute(
            f"""
            INSERT INTO sessions ({SESSION_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                title = excluded.title,
                mode = excluded.mode,
                project_path = excluded.project_path,
                created_at = excluded.created_at,
                updated_at = excluded.updated_at,
                plan_json = excluded.plan_json
            """,
            (
                session.id,
                session.title,
                session.mode.value,
                session.project_path,
                session.created_at,
                session.updated_at,
                json.dumps(session.plan) if session.plan is not None else None,
            ),
        )
        await conn.execute("DELETE FROM messages WHERE session_id = ?", (session.id,))
        await conn.executemany(
            """
            INSERT INTO messages
                (session_id, seq, id, role, content, type, timestamp, metadata_json)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    session.id,
                    seq,
                    msg.id,
                    msg.role.value,
                    msg.content,
                    msg.kind.value,
                    msg.timestamp,
                    json.dumps(msg.metadata) if msg.metadata is not None else None,
                )
                for seq, msg in enumerate(session.messages)
            ],
        )

    async def load_session(self, session_id: str) -> Session | None:
        conn = self._require_conn("load_session")

        async with conn.execute(
            f"SELECT {SESSION_COLUMNS} FROM sessions WHERE id = ?", (session_id,)
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None

        async with conn.execute(
            """
            SELECT seq, id, role, content, type, timestamp, metadata_json
            FROM messages WHERE session_id = ? ORDER BY seq ASC
            """,
            (session_id,),
        ) as cursor:
            message_rows = await cursor.fetchall()

        try:
            return self._hydrate(row, message_rows)
        except (ValueError, TypeError, KeyError) as e:
            # Bad JSON or an unknown enum value in a stored row
            raise StorageIOError("load_session", str(self.db_path), e) from e

    @staticmethod
    def _hydrate(row: Mapping[str, Any], message_rows: list[Mapping[str, Any]]) -> Session:
        messages = [
            Message(
                id=m["id"],
                role=MessageRole(m["role"]),
                content=m["content"],
                kind=MessageKind(m["type"] or "text"),
                timestamp=m["timestamp"],
                metadata=json.loads(m["metadata_json"]) if m["metadata_json"] else None,
                sequence=index,
            )
            for index, m in enumerate(message_rows)
        ]
        return Session(
            id=row["id"],
            title=row["title"],
            mode=SessionMode(row["mode"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            messages=messages,
            project_path=row["project_path"],
            plan=json.loads(row["plan_json"]) if row["plan_json"] else None,
        )

    async def list_sessions(self, limit: int = DEFAULT_LIST_LIMIT) -> list[SessionSummary]:
        conn = self._require_conn("list_sessions")

        async with conn.execute(
            """
            SELECT s.id, s.title, s.mode, s.created_at, s.updated_at,
                   COUNT(m.seq) AS message_count
            FROM sessions s
            LEFT JOIN messages m ON m.session_id = s.id
            GROUP BY s.id
            ORDER BY s.updated_at DESC
            LIMIT ?
            """,
            (limit,),
        ) as cursor:
            rows = await cursor.fetchall()

        return [
            SessionSummary(
                id=r["id"],
                title=r["title"],
                mode=SessionMode(r["mode"]),
                created_at=r["created_at"],
                updated_at=r["updated_at"],
                message_count=r["message_count"],
            )
            for r in rows
        ]

    async def session_timestamps(self) -> dict[str, int]:
        conn = self._require_conn("session_timestamps")
        async with conn.execute("SELECT id, updated_at FROM sessions") as cursor:
            rows = await cursor.fetchall()
        return {r["id"]: r["updated_at"] for r in rows}

    async def delete_session(self, session_id: str) -> bool:
        """Delete a session, its messages, and leave a tombstone."""
        conn = self._require_writable("delete_session")

        async with self._write_lock:
            try:
                await conn.execute("DELETE FROM messages WHERE session_id = ?", (session_id,))
                cursor = await conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
                deleted = cursor.rowcount > 0
                if deleted:
                    await self._insert_tombstones(conn, {session_id: now_ms()})
                await conn.commit()
            except aiosqlite.Error as e:
                await conn.rollback()
                raise StorageIOError("delete_session", str(self.db_path), e) from e

        logger.info(f"Deleted session: {session_id} (existed={deleted})")
        return deleted

    async def clear_all(self) -> int:
        conn = self._require_writable("clear_all")

        async with self._write_lock:
            try:
                async with conn.execute("SELECT id FROM sessions") as cursor:
                    ids = [r["id"] for r in await cursor.fetchall()]
                await conn.execute("DELETE FROM messages")
                await conn.execute("DELETE FROM sessions")
                deleted_at = now_ms()
                await self._insert_tombstones(conn, {sid: deleted_at for sid in ids})
                await conn.commit()
            except aiosqlite.Error as e:
                await conn.rollback()
                raise StorageIOError("clear_all", str(self.db_path), e) from e

        logger.info(f"Cleared {len(ids)} sessions")
        return len(ids)

    # =========================================================================
    # Tombstones
    # =========================================================================

    async def tombstones(self) -> dict[str, int]:
        """Map of deleted session ids to deletion time.

        Snapshots written before tombstones existed have no table; they
        simply contribute none.
        """
        conn = self._require_conn("tombstones")
        try:
            async with conn.execute("SELECT session_id, deleted_at FROM tombstones") as cursor:
                rows = await cursor.fetchall()
        except aiosqlite.OperationalError:
            return {}
        return {r["session_id"]: r["deleted_at"] for r in rows}

    async def record_tombstones(self, tombstones: Mapping[str, int]) -> None:
        """Merge tombstones in, keeping the latest deletion time per id."""
        if not tombstones:
            return
        conn = self._require_writable("record_tombstones")
        async with self._write_lock:
            try:
                await self._insert_tombstones(conn, tombstones)
                await conn.commit()
            except aiosqlite.Error as e:
                await conn.rollback()
                raise StorageIOError("record_tombstones", str(self.db_path), e) from e

    @staticmethod
    async def _insert_tombstones(conn: aiosqlite.Connection, tombstones: Mapping[str, int]) -> None:
        await conn.executemany(
            """
            INSERT INTO tombstones (session_id, deleted_at) VALUES (?, ?)
            ON CONFLICT(session_id) DO UPDATE SET
                deleted_at = MAX(deleted_at, excluded.deleted_at)
            """,
            list(tombstones.items()),
        )

    # =========================================================================
    # API keys
    # =========================================================================

    async def save_api_key(self, key_name: str, key_value: str) -> None:
        conn = self._require_writable("save_api_key")
        async with self._write_lock:
            try:
                await conn.execute(
                    """
                    INSERT INTO api_keys (key_name, key_value, updated_at) VALUES (?, ?, ?)
                    ON CONFLICT(key_name) DO UPDATE SET
                        key_value = excluded.key_value,
                        updated_at = excluded.updated_at
                    """,
                    (key_name, key_value, now_ms()),
                )
                await conn.commit()
            except aiosqlite.Error as e:
                await conn.rollback()
                raise StorageIOError("save_api_key", str(self.db_path), e) from e

    async def get_api_key(self, key_name: str) -> str | None:
        conn = self._require_conn("get_api_key")
        async with conn.execute(
            "SELECT key_value FROM api_keys WHERE key_name = ?", (key_name,)
        ) as cursor:
            row = await cursor.fetchone()
        return row["key_value"] if row else None

    async def delete_api_key(self, key_name: str) -> bool:
        conn = self._require_writable("delete_api_key")
        async with self._write_lock:
            try:
                cursor = await conn.execute("DELETE FROM api_keys WHERE key_name = ?", (key_name,))
                await conn.commit()
            except aiosqlite.Error as e:
                await conn.rollback()
                raise StorageIOError("delete_api_key", str(self.db_path), e) from e
        return cursor.rowcount > 0

    async def list_api_keys(self) -> list[tuple[str, int]]:
        conn = self._require_conn("list_api_keys")
        async with conn.execute(
            "SELECT key_name, updated_at FROM api_keys ORDER BY key_name"
        ) as cursor:
            rows = await cursor.fetchall()
        return [(r["key_name"], r["updated_at"]) for r in rows]

    async def clear_api_keys(self) -> int:
        conn = self._require_writable("clear_api_keys")
        async with self._write_lock:
            try:
                cursor = await conn.execute("DELETE FROM api_keys")
                await conn.commit()
            except aiosqlite.Error as e:
                await conn.rollback()
                raise StorageIOError("clear_api_keys", str(self.db_path), e) from e
        return cursor.rowcount

    # =========================================================================
    # Snapshot handling
    # =========================================================================

    async def stats(self) -> StorageStats:
        conn = self._require_conn("stats")
        async with conn.execute("SELECT COUNT(*) FROM sessions") as cursor:
            session_count = (await cursor.fetchone())[0]
        async with conn.execute("SELECT COUNT(*) FROM messages") as cursor:
            message_count = (await cursor.fetchone())[0]
        return StorageStats(
            backend=self.name,
            session_count=session_count,
            message_count=message_count,
            size_bytes=await file_size(self.db_path),
        )

    async def snapshot_bytes(self) -> bytes | None:
        """Contents of the database file, read between transactions."""
        if self.read_only:
            return None
        async with self._write_lock:
            return await read_bytes(self.db_path)

    async def restore_from_bytes(self, data: bytes) -> None:
        """Install raw database bytes as this store's backing file.

        If the store was open it is closed first and reopened afterwards,
        so callers keep using the same object.
        """
        if self.read_only:
            raise StorageIOError("restore", str(self.db_path), RuntimeError("Store is read-only"))

        async with self._write_lock:
            was_open = self.conn is not None
            if was_open:
                await self.close()

            await remove_file(self.db_path.with_name(self.db_path.name + "-journal"))
            await write_bytes_atomic(self.db_path, data)
        logger.info(f"Restored store from snapshot ({len(data)} bytes): {self.db_path}")

        if was_open:
            await self.initialize()
