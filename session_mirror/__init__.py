"""
Session Mirror

Local-first session history with a Google Drive mirror.

Provides:
- Local session stores (SQLite, with a flat-file fallback)
- OAuth2 loopback sign-in with token refresh
- Whole-store push/pull against the Drive app-data folder
- Debounced background pushes and a non-destructive merge on pull

Usage:

    >>> from session_mirror import SessionManager, Settings, SessionMode, MessageRole
    >>> manager = await SessionManager.create(Settings.load())
    >>> chat = manager.conversation()
    >>> await chat.start(SessionMode.CHAT)
    >>> await chat.add_message(MessageRole.USER, "Add dark mode to the settings page")
    >>> await manager.sign_in()      # opens the browser, then pulls
    >>> await manager.sync_now()
"""

from .config import OAuthConfig, Settings

# Exceptions
from .exceptions import (
    AuthenticationError,
    NotSignedInError,
    OAuthProviderError,
    RemoteAuthError,
    RemoteRequestError,
    SessionNotFoundError,
    SessionStorageError,
    SessionValidationError,
    SignInTimeoutError,
    StateMismatchError,
    StorageConnectionError,
    StorageIOError,
    SyncError,
    TokenRefreshError,
)
from .identity import AuthState, CredentialManager, SecretStore
from .local import FlatFileSessionStore, SessionBackend, SQLiteSessionStore
from .manager import Conversation, SessionManager
from .models import (
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
)
from .remote import DriveBlobChannel, MultipartBody
from .sync import PushScheduler, SyncEngine, VirtualClock

__all__ = [
    # Orchestration
    "SessionManager",
    "Conversation",
    "Settings",
    "OAuthConfig",
    # Models
    "Session",
    "Message",
    "MessageRole",
    "MessageKind",
    "SessionMode",
    "SessionSummary",
    "RemoteIndexEntry",
    "AuthStatus",
    "StorageStats",
    "PullResult",
    # Storage
    "SessionBackend",
    "SQLiteSessionStore",
    "FlatFileSessionStore",
    # Identity
    "CredentialManager",
    "SecretStore",
    "AuthState",
    # Remote and sync
    "DriveBlobChannel",
    "MultipartBody",
    "SyncEngine",
    "PushScheduler",
    "VirtualClock",
    # Exceptions
    "SessionStorageError",
    "SessionNotFoundError",
    "SessionValidationError",
    "StorageIOError",
    "StorageConnectionError",
    "SyncError",
    "AuthenticationError",
    "NotSignedInError",
    "StateMismatchError",
    "OAuthProviderError",
    "SignInTimeoutError",
    "TokenRefreshError",
    "RemoteRequestError",
    "RemoteAuthError",
]

__version__ = "0.1.0"
