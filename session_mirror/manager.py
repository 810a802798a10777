"""
Session orchestration.

SessionManager is the entry point applications use. It picks the local
backend once, owns the credential manager and (while signed in) the sync
engine, and decides when changes reach the remote mirror:

- incremental edits (new session, new message, save, rename) schedule a
  debounced push
- destructive edits (delete, clear, full reset, sign-out) push right away,
  because a pending debounce may never fire if the process exits

Background sync failures are logged and never fail the local operation
that triggered them. Foreground sync (sign_in, sync_now) raises.

Usage:
    manager = await SessionManager.create(Settings.load())
    chat = manager.conversation()
    await chat.start(SessionMode.CHAT)
    await chat.add_message(MessageRole.USER, "Build me a todo app")
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from collections.abc import Callable
from datetime import datetime
from typing import Any

from .config import Settings
from .exceptions import (
    NotSignedInError,
    SessionNotFoundError,
    SessionStorageError,
    StorageConnectionError,
    SyncError,
)
from .identity.credentials import AuthState, CredentialManager
from .identity.secrets import SecretStore
from .local.base import SessionBackend
from .local.file_store import FlatFileSessionStore
from .local.sqlite_store import SQLiteSessionStore
from .models import (
    RENAME_MAX_LENGTH,
    TITLE_MAX_LENGTH,
    AuthStatus,
    Message,
    MessageKind,
    MessageRole,
    PullResult,
    RemoteIndexEntry,
    Session,
    SessionMode,
    SessionSummary,
    StorageStats,
    new_id,
)
from .remote.drive import DriveBlobChannel
from .sync.engine import SyncConfig, SyncEngine
from .sync.scheduler import Clock

logger = logging.getLogger(__name__)

ChannelFactory = Callable[[CredentialManager], DriveBlobChannel]

# Separates the mode label from the timestamp in generated titles
TITLE_SEPARATOR = " - "


def default_title(mode: SessionMode, when: datetime | None = None) -> str:
    """e.g. ``Chat - Oct 18, 03:04 PM``"""
    dt = when or datetime.now()
    return f"{mode.label}{TITLE_SEPARATOR}{dt:%b} {dt.day}, {dt:%I:%M %p}"


def title_from_message(content: str) -> str:
    """Single-line title from message text, truncated with an ellipsis."""
    cleaned = content.replace("\n", " ").strip()
    if len(cleaned) > TITLE_MAX_LENGTH:
        return cleaned[: TITLE_MAX_LENGTH - 3] + "..."
    return cleaned


def _has_generated_title(session: Session) -> bool:
    return session.title.startswith(session.mode.label + TITLE_SEPARATOR)


def _default_channel_factory(credentials: CredentialManager) -> DriveBlobChannel:
    return DriveBlobChannel(credentials.get_access_token)


class SessionManager:
    """
    Local-first session store with an optional remote mirror.

    All mutations go through one asyncio.Lock, so two saves never race on
    the backend.
    """

    def __init__(
        self,
        settings: Settings,
        store: SessionBackend,
        credentials: CredentialManager,
        channel_factory: ChannelFactory | None = None,
        clock: Clock | None = None,
    ):
        self.settings = settings
        self.store = store
        self.credentials = credentials
        self._channel_factory = channel_factory or _default_channel_factory
        self._clock = clock
        self._engine: SyncEngine | None = None
        self._startup_pull: asyncio.Task[None] | None = None
        self._lock = asyncio.Lock()
        self._conversations: weakref.WeakSet[Conversation] = weakref.WeakSet()

    @classmethod
    async def create(
        cls,
        settings: Settings | None = None,
        credentials: CredentialManager | None = None,
        channel_factory: ChannelFactory | None = None,
        clock: Clock | None = None,
    ) -> SessionManager:
        """Open the preferred backend (falling back to flat files) and initialize."""
        settings = settings or Settings.load()
        store = await cls._open_store(settings)
        if credentials is None:
            credentials = CredentialManager(SecretStore(settings.secrets_path), settings.oauth)

        manager = cls(settings, store, credentials, channel_factory, clock)
        await manager.initialize()
        return manager

    @staticmethod
    async def _open_store(settings: Settings) -> SessionBackend:
        sqlite = SQLiteSessionStore(settings.db_path)
        try:
            await sqlite.initialize()
            return sqlite
        except StorageConnectionError as e:
            logger.warning(f"SQLite unavailable, using flat-file storage: {e}")

        fallback = FlatFileSessionStore(settings.storage_dir)
        await fallback.initialize()
        return fallback

    @property
    def backend_name(self) -> str:
        return self.store.name

    @property
    def engine(self) -> SyncEngine | None:
        return self._engine

    async def initialize(self) -> None:
        """Attach sync if signed in; bootstrap an empty store in the background."""
        state = await self.credentials.load_state()
        if state != AuthState.SIGNED_IN:
            return

        self._engine = self._build_engine()
        if self._engine is not None and await self.store.is_empty():
            self._startup_pull = asyncio.create_task(self._background_pull())

    def _build_engine(self) -> SyncEngine | None:
        if not isinstance(self.store, SQLiteSessionStore):
            logger.info(f"{self.store.name} backend has no single-file snapshot; sync disabled")
            return None
        config = SyncConfig(
            push_delay_ms=self.settings.push_delay_ms,
            index_limit=self.settings.index_limit,
        )
        return SyncEngine(self.store, self._channel_factory(self.credentials), config, self._clock)

    async def _background_pull(self) -> None:
        try:
            result = await self._engine.pull()
            logger.info(f"Startup pull: {result.value}")
        except SessionStorageError as e:
            logger.error(f"Startup pull failed: {e}")

    async def wait_for_startup(self) -> None:
        """Wait for the startup pull, if one was started."""
        if self._startup_pull is not None:
            await self._startup_pull

    async def close(self, flush: bool = True) -> None:
        """Stop sync and close the backend.

        Args:
            flush: Run a pending debounced push before closing
        """
        await self.wait_for_startup()
        if self._engine is not None:
            if flush and self._engine.scheduler.deadline is not None:
                await self._engine.scheduler.flush()
            await self._engine.close()
            await self._engine.channel.close()
            self._engine = None
        await self.store.close()

    # =========================================================================
    # Push policy
    # =========================================================================

    def _schedule_push(self, delay_ms: int | None = None) -> None:
        if self._engine is not None:
            self._engine.schedule_push(delay_ms)

    async def _push_now(self, reason: str) -> None:
        if self._engine is None:
            return
        self._engine.scheduler.cancel()
        try:
            await self._engine.push()
        except SessionStorageError as e:
            logger.error(f"Push after {reason} failed: {e}")

    # =========================================================================
    # Sessions
    # =========================================================================

    def conversation(self) -> Conversation:
        """A fresh conversation context with no current session."""
        conversation = Conversation(self)
        self._conversations.add(conversation)
        return conversation

    async def create_session(
        self,
        mode: SessionMode = SessionMode.CHAT,
        project_path: str | None = None,
        title: str | None = None,
    ) -> Session:
        session = Session.new(mode, title or default_title(mode), project_path)
        async with self._lock:
            await self.store.save_session(session)
        self._schedule_push()
        logger.debug(f"Created session {session.id} ({mode.value})")
        return session

    async def add_message(
        self,
        session: Session,
        role: MessageRole,
        content: str,
        kind: MessageKind = MessageKind.TEXT,
        metadata: dict[str, Any] | None = None,
    ) -> Message:
        """Append a message and persist the session.

        The first user message replaces a generated title.
        """
        message = session.append(
            Message(id=new_id(), role=role, content=content, kind=kind, metadata=metadata)
        )
        if role == MessageRole.USER and session.user_message_count() == 1 and _has_generated_title(session):
            session.title = title_from_message(content) or session.title

        await self.save_session(session)
        return message

    async def save_session(self, session: Session) -> None:
        async with self._lock:
            await self.store.save_session(session)
        self._schedule_push()

    async def load_session(self, session_id: str) -> Session | None:
        return await self.store.load_session(session_id)

    async def list_sessions(self, limit: int | None = None) -> list[SessionSummary]:
        return await self.store.list_sessions(limit or self.settings.list_limit)

    async def rename_session(self, session_id: str, title: str) -> bool:
        """Rename a session. Blank titles are ignored."""
        trimmed = title.strip()[:RENAME_MAX_LENGTH]
        if not trimmed:
            return False

        async with self._lock:
            renamed = await self.store.rename_session(session_id, trimmed)
        if not renamed:
            return False

        for conversation in self._conversations:
            if conversation.current is not None and conversation.current.id == session_id:
                conversation.current.title = trimmed
                conversation.current.touch()

        self._schedule_push(self.settings.rename_push_delay_ms)
        return True

    async def delete_session(self, session_id: str) -> bool:
        async with self._lock:
            deleted = await self.store.delete_session(session_id)
        self._forget(session_id)
        await self._push_now("delete")
        return deleted

    async def clear_history(self) -> int:
        async with self._lock:
            count = await self.store.clear_all()
        self._forget(None)
        await self._push_now("clear")
        return count

    async def full_reset(self) -> None:
        """Remove every session and every stored API key."""
        async with self._lock:
            await self.store.clear_all()
            await self.store.clear_api_keys()
        self._forget(None)
        await self._push_now("reset")

    def _forget(self, session_id: str | None) -> None:
        for conversation in self._conversations:
            current = conversation.current
            if current is not None and (session_id is None or current.id == session_id):
                conversation.current = None

    # =========================================================================
    # Account and sync
    # =========================================================================

    async def get_auth_status(self) -> AuthStatus:
        return await self.credentials.get_auth_status()

    async def sign_in(self) -> AuthStatus:
        """Interactive sign-in followed by a foreground pull.

        Raises:
            AuthenticationError: Sign-in failed
            SessionStorageError: The pull after sign-in failed
        """
        status = await self.credentials.sign_in()
        if self._engine is None:
            self._engine = self._build_engine()
        if self._engine is not None:
            result = await self._engine.pull()
            logger.info(f"Pull after sign-in: {result.value}")
        return status

    async def sign_out(self) -> None:
        """Best-effort final push, then remove all credentials."""
        if self._engine is not None:
            await self._push_now("sign-out")
            await self._engine.close()
            await self._engine.channel.close()
            self._engine = None
        await self.credentials.sign_out()

    async def sync_now(self) -> PullResult:
        """Pull remote changes, then push the merged store.

        Raises:
            NotSignedInError: No account is connected
            SyncError: The active backend cannot be mirrored
        """
        if self._engine is None:
            if await self.credentials.load_state() != AuthState.SIGNED_IN:
                raise NotSignedInError()
            self._engine = self._build_engine()
            if self._engine is None:
                raise SyncError(f"The {self.store.name} backend cannot be synced")

        self._engine.scheduler.cancel()
        result = await self._engine.pull()
        await self._engine.push()
        return result

    async def remote_sessions(self) -> list[RemoteIndexEntry]:
        if self._engine is None:
            raise NotSignedInError()
        return await self._engine.fetch_remote_index()

    @property
    def last_sync_at(self) -> int | None:
        return self._engine.last_sync_at if self._engine is not None else None

    # =========================================================================
    # API keys
    # =========================================================================

    async def save_api_key(self, key_name: str, key_value: str) -> None:
        async with self._lock:
            await self.store.save_api_key(key_name, key_value)
        self._schedule_push()

    async def get_api_key(self, key_name: str) -> str | None:
        return await self.store.get_api_key(key_name)

    async def delete_api_key(self, key_name: str) -> bool:
        async with self._lock:
            deleted = await self.store.delete_api_key(key_name)
        if deleted:
            self._schedule_push()
        return deleted

    async def list_api_keys(self) -> list[tuple[str, int]]:
        return await self.store.list_api_keys()

    async def storage_stats(self) -> StorageStats:
        return await self.store.stats()


class Conversation:
    """Holds at most one current session for one caller.

    Several conversations can share a manager without seeing each
    other's current session.
    """

    def __init__(self, manager: SessionManager):
        self.manager = manager
        self.current: Session | None = None

    async def start(
        self,
        mode: SessionMode = SessionMode.CHAT,
        project_path: str | None = None,
    ) -> Session:
        self.current = await self.manager.create_session(mode, project_path)
        return self.current

    async def open(self, session_id: str) -> Session:
        """Make a stored session current.

        Raises:
            SessionNotFoundError: No session has this id
        """
        session = await self.manager.load_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        self.current = session
        return session

    def _require_current(self) -> Session:
        if self.current is None:
            raise SessionStorageError("No active session. Call start() or open() first.")
        return self.current

    async def add_message(
        self,
        role: MessageRole,
        content: str,
        kind: MessageKind = MessageKind.TEXT,
        metadata: dict[str, Any] | None = None,
    ) -> Message:
        return await self.manager.add_message(self._require_current(), role, content, kind, metadata)

    async def save(self) -> None:
        if self.current is not None:
            await self.manager.save_session(self.current)

    def messages(self) -> list[Message]:
        return list(self.current.messages) if self.current else []

    def ai_messages(self) -> list[dict[str, str]]:
        """Role/content pairs for a completion request, without system messages."""
        return [
            {"role": m.role.value, "content": m.content}
            for m in self.messages()
            if m.role != MessageRole.SYSTEM
        ]
