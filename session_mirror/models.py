"""
Core data types for sessions, messages, the remote index and credentials.

Timestamps are integer milliseconds since the epoch. They are compared
directly by the merge, so they must survive every backend and the JSON
index without loss of precision.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

# Auto-generated titles are cut to this many characters
TITLE_MAX_LENGTH = 60
# Hard cap applied to explicit renames
RENAME_MAX_LENGTH = 100


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def new_id() -> str:
    return str(uuid.uuid4())


# =============================================================================
# Enumerations
# =============================================================================


class SessionMode(Enum):
    """Purpose of a session."""

    CHAT = "chat"
    NEW_APP = "new-app"
    EXISTING_PROJECT = "existing-project"

    @property
    def label(self) -> str:
        return {
            SessionMode.CHAT: "Chat",
            SessionMode.NEW_APP: "New App",
            SessionMode.EXISTING_PROJECT: "Project Work",
        }[self]


class MessageRole(Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class MessageKind(Enum):
    """What the content of a message represents."""

    TEXT = "text"
    PLAN = "plan"
    CODE = "code"
    DIFF = "diff"
    BUILD_RESULT = "build-result"
    ERROR = "error"
    PROGRESS = "progress"
    INTERVIEW = "interview"


class PullResult(Enum):
    """Outcome of a pull from the remote mirror."""

    REPLACED = "replaced"
    MERGED = "merged"
    SKIPPED = "skipped"


# =============================================================================
# Sessions and messages
# =============================================================================


@dataclass
class Message:
    """A single message within a session.

    Messages are append-only; an edit is a new message. ``sequence`` is
    assigned by ``Session.append`` and is the only ordering key.
    """

    id: str
    role: MessageRole
    content: str
    kind: MessageKind = MessageKind.TEXT
    timestamp: int = field(default_factory=now_ms)
    metadata: dict[str, Any] | None = None
    sequence: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "type": self.kind.value,
            "timestamp": self.timestamp,
            "metadata": self.metadata,
            "sequence": self.sequence,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        """Create from dictionary."""
        return cls(
            id=data["id"],
            role=MessageRole(data["role"]),
            content=data.get("content", ""),
            kind=MessageKind(data.get("type") or "text"),
            timestamp=int(data.get("timestamp", 0)),
            metadata=data.get("metadata"),
            sequence=int(data.get("sequence", 0)),
        )


@dataclass
class Session:
    """One persisted conversation.

    Invariants:
    - ``updated_at >= created_at``
    - ``updated_at`` never decreases (see ``touch``)
    - message sequences are 0..n-1 in list order
    """

    id: str
    title: str
    mode: SessionMode
    created_at: int
    updated_at: int
    messages: list[Message] = field(default_factory=list)
    project_path: str | None = None
    plan: dict[str, Any] | None = None

    def __post_init__(self) -> None:
        if self.updated_at < self.created_at:
            self.updated_at = self.created_at

    @classmethod
    def new(
        cls,
        mode: SessionMode,
        title: str,
        project_path: str | None = None,
        session_id: str | None = None,
    ) -> Session:
        ts = now_ms()
        return cls(
            id=session_id or new_id(),
            title=title,
            mode=mode,
            created_at=ts,
            updated_at=ts,
            project_path=project_path,
        )

    def touch(self, at: int | None = None) -> int:
        """Bump ``updated_at`` without ever moving it backwards."""
        candidate = now_ms() if at is None else at
        self.updated_at = max(candidate, self.updated_at, self.created_at)
        return self.updated_at

    def append(self, message: Message) -> Message:
        """Append a message, assigning the next contiguous sequence number."""
        message.sequence = len(self.messages)
        self.messages.append(message)
        self.touch()
        return message

    def user_message_count(self) -> int:
        return sum(1 for m in self.messages if m.role == MessageRole.USER)

    def summary(self) -> SessionSummary:
        return SessionSummary(
            id=self.id,
            title=self.title,
            mode=self.mode,
            created_at=self.created_at,
            updated_at=self.updated_at,
            message_count=len(self.messages),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "title": self.title,
            "mode": self.mode.value,
            "projectPath": self.project_path,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "plan": self.plan,
            "messages": [m.to_dict() for m in self.messages],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        """Create from dictionary.

        Message sequences are renumbered from list order so a file written
        by hand (or by an older version) still satisfies the contiguity rule.
        """
        messages = [Message.from_dict(m) for m in data.get("messages", [])]
        messages.sort(key=lambda m: m.sequence)
        for seq, message in enumerate(messages):
            message.sequence = seq

        return cls(
            id=data["id"],
            title=data.get("title") or "Untitled",
            mode=SessionMode(data.get("mode") or "chat"),
            created_at=int(data["createdAt"]),
            updated_at=int(data["updatedAt"]),
            messages=messages,
            project_path=data.get("projectPath"),
            plan=data.get("plan"),
        )


@dataclass
class SessionSummary:
    """Listing projection of a session."""

    id: str
    title: str
    mode: SessionMode
    created_at: int
    updated_at: int
    message_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "mode": self.mode.value,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "messageCount": self.message_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionSummary:
        return cls(
            id=data["id"],
            title=data.get("title") or "Untitled",
            mode=SessionMode(data.get("mode") or "chat"),
            created_at=int(data.get("createdAt", 0)),
            updated_at=int(data.get("updatedAt", 0)),
            message_count=int(data.get("messageCount", 0)),
        )


@dataclass
class RemoteIndexEntry:
    """Lossy projection of a session stored in the remote index file."""

    id: str
    title: str
    mode: str
    updated_at: int

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "title": self.title, "mode": self.mode, "updatedAt": self.updated_at}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RemoteIndexEntry:
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            mode=data.get("mode", "chat"),
            updated_at=int(data.get("updatedAt", 0)),
        )

    @classmethod
    def from_summary(cls, summary: SessionSummary) -> RemoteIndexEntry:
        return cls(
            id=summary.id,
            title=summary.title,
            mode=summary.mode.value,
            updated_at=summary.updated_at,
        )


# =============================================================================
# Credentials and status
# =============================================================================

# Tokens are treated as expired this many seconds early
TOKEN_EXPIRY_MARGIN_S = 60


@dataclass
class CredentialRecord:
    """Credential material for the signed-in account."""

    access_token: str | None = None
    refresh_token: str | None = None
    expires_at: float = 0.0  # epoch seconds, in memory only
    email: str | None = None
    display_name: str | None = None

    def is_fresh(self, now: float | None = None, margin: float = TOKEN_EXPIRY_MARGIN_S) -> bool:
        """True if the access token has more than ``margin`` seconds left."""
        if not self.access_token:
            return False
        current = time.time() if now is None else now
        return self.expires_at > current + margin

    @property
    def is_signed_in(self) -> bool:
        return bool(self.access_token or self.refresh_token)


@dataclass
class AuthStatus:
    is_signed_in: bool
    email: str | None = None
    display_name: str | None = None

    @property
    def storage_type(self) -> str:
        return "drive" if self.is_signed_in else "local"

    def to_dict(self) -> dict[str, Any]:
        return {
            "isSignedIn": self.is_signed_in,
            "userEmail": self.email,
            "userName": self.display_name,
            "storageType": self.storage_type,
        }


@dataclass
class StorageStats:
    backend: str
    session_count: int = 0
    message_count: int = 0
    size_bytes: int = 0
