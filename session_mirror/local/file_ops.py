"""
Async file operations for local storage.

Provides atomic read/write helpers with:
- Atomic writes using temp file + rename
- Raw byte writes that never pass through a text codec
- StorageIOError wrapping so callers see one error type for disk failures
"""

import json
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os

from ..exceptions import StorageIOError


async def ensure_directory(path: Path) -> None:
    """Ensure directory exists, creating if necessary.

    Args:
        path: Directory path to ensure exists
    """
    try:
        await aiofiles.os.makedirs(path, exist_ok=True)
    except OSError as e:
        raise StorageIOError("create_directory", str(path), e) from e


async def read_json(path: Path) -> Any | None:
    """Read a JSON file.

    Args:
        path: Path to JSON file

    Returns:
        Parsed JSON data or None if file doesn't exist
    """
    try:
        if not await aiofiles.os.path.exists(path):
            return None
        async with aiofiles.open(path, encoding="utf-8") as f:
            content = await f.read()
            return json.loads(content) if content.strip() else None
    except json.JSONDecodeError as e:
        raise StorageIOError("parse_json", str(path), e) from e
    except OSError as e:
        raise StorageIOError("read_json", str(path), e) from e


async def write_json_atomic(path: Path, data: Any, *, mode: int | None = None) -> None:
    """Write JSON file atomically using temp file + rename.

    Args:
        path: Target path for JSON file
        data: Data to serialize as JSON
        mode: Optional permission bits applied before the rename
    """
    content = json.dumps(data, indent=2, ensure_ascii=False, default=_json_serializer)
    await write_bytes_atomic(path, content.encode("utf-8"), mode=mode)


async def write_bytes_atomic(path: Path, data: bytes, *, mode: int | None = None) -> None:
    """Write raw bytes atomically.

    The payload is written exactly as given: no newline translation,
    no decoding. Used for database snapshots.

    Args:
        path: Target path
        data: Bytes to write
        mode: Optional permission bits applied before the rename
    """
    await ensure_directory(path.parent)

    fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=".tmp_", suffix=path.suffix)
    try:
        os.close(fd)
        if mode is not None:
            os.chmod(temp_path, mode)
        async with aiofiles.open(temp_path, "wb") as f:
            await f.write(data)
            await f.flush()
            os.fsync(f.fileno())

        await aiofiles.os.replace(temp_path, path)
    except Exception as e:
        try:
            await aiofiles.os.remove(temp_path)
        except OSError:
            pass
        raise StorageIOError("write", str(path), e) from e


async def read_bytes(path: Path) -> bytes | None:
    """Read a whole file as bytes, or None if it doesn't exist."""
    try:
        if not await aiofiles.os.path.exists(path):
            return None
        async with aiofiles.open(path, "rb") as f:
            return await f.read()
    except OSError as e:
        raise StorageIOError("read", str(path), e) from e


async def file_exists(path: Path) -> bool:
    """Check if a file exists.

    Args:
        path: Path to check

    Returns:
        True if file exists
    """
    try:
        return await aiofiles.os.path.exists(path)
    except OSError:
        return False


async def file_size(path: Path) -> int:
    """Size of a file in bytes, 0 if missing."""
    try:
        if not await aiofiles.os.path.exists(path):
            return 0
        return await aiofiles.os.path.getsize(path)
    except OSError as e:
        raise StorageIOError("stat", str(path), e) from e


async def remove_file(path: Path) -> bool:
    """Remove a file if it exists.

    Args:
        path: Path to remove

    Returns:
        True if file was removed, False if it didn't exist
    """
    try:
        if await aiofiles.os.path.exists(path):
            await aiofiles.os.remove(path)
            return True
        return False
    except OSError as e:
        raise StorageIOError("remove", str(path), e) from e


async def list_files(path: Path, suffix: str) -> list[str]:
    """List file names in a directory that end with ``suffix``."""
    try:
        if not await aiofiles.os.path.exists(path):
            return []
        entries = await aiofiles.os.listdir(path)
        return sorted(e for e in entries if e.endswith(suffix) and not e.startswith("."))
    except OSError as e:
        raise StorageIOError("list_files", str(path), e) from e


def _json_serializer(obj: Any) -> Any:
    """Custom JSON serializer for types not handled by default.

    Args:
        obj: Object to serialize

    Returns:
        JSON-serializable representation
    """
    if isinstance(obj, datetime):
        return obj.isoformat()
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")
