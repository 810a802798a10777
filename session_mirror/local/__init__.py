"""
Local session storage.

Two interchangeable backends behind one interface:
- SQLiteSessionStore: single-file database, the one the sync engine mirrors
- FlatFileSessionStore: JSON files, used when SQLite cannot be opened
"""

from .base import DEFAULT_LIST_LIMIT, SessionBackend
from .file_ops import (
    read_bytes,
    read_json,
    remove_file,
    write_bytes_atomic,
    write_json_atomic,
)
from .file_store import FlatFileSessionStore
from .sqlite_store import SQLiteSessionStore

__all__ = [
    "SessionBackend",
    "SQLiteSessionStore",
    "FlatFileSessionStore",
    "DEFAULT_LIST_LIMIT",
    # Low-level file operations
    "read_json",
    "write_json_atomic",
    "read_bytes",
    "write_bytes_atomic",
    "remove_file",
]
