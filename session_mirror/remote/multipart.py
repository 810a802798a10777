"""
multipart/related request bodies for metadata + media uploads.

The body is assembled from typed segments and joined as bytes, so binary
payloads pass through untouched:

    --BOUNDARY\r\n
    Content-Type: application/json; charset=UTF-8\r\n\r\n
    {"name": ...}\r\n
    --BOUNDARY\r\n
    Content-Type: application/octet-stream\r\n\r\n
    <raw bytes>\r\n
    --BOUNDARY--
"""

from __future__ import annotations

import json
import secrets
from dataclasses import dataclass
from typing import Any

CRLF = b"\r\n"


@dataclass(frozen=True)
class TextSegment:
    """A UTF-8 text part."""

    content_type: str
    text: str

    def payload(self) -> bytes:
        return self.text.encode("utf-8")


@dataclass(frozen=True)
class BinarySegment:
    """A raw byte part."""

    content_type: str
    data: bytes

    def payload(self) -> bytes:
        return bytes(self.data)


Segment = TextSegment | BinarySegment


def _new_boundary() -> str:
    return f"session-mirror-{secrets.token_hex(16)}"


class MultipartBody:
    """Ordered segments plus a boundary that occurs in none of them."""

    def __init__(self, segments: list[Segment], boundary: str | None = None):
        if not segments:
            raise ValueError("A multipart body needs at least one segment")
        self.segments = list(segments)
        self.boundary = boundary or _new_boundary()
        while self._boundary_collides():
            self.boundary = _new_boundary()

    @classmethod
    def for_upload(
        cls, metadata: dict[str, Any], data: bytes, mime_type: str
    ) -> MultipartBody:
        """JSON metadata part followed by the media part."""
        return cls(
            [
                TextSegment("application/json; charset=UTF-8", json.dumps(metadata)),
                BinarySegment(mime_type, data),
            ]
        )

    def _boundary_collides(self) -> bool:
        marker = self.boundary.encode("ascii")
        return any(marker in segment.payload() for segment in self.segments)

    @property
    def content_type(self) -> str:
        return f"multipart/related; boundary={self.boundary}"

    def to_bytes(self) -> bytes:
        delimiter = b"--" + self.boundary.encode("ascii")
        parts: list[bytes] = []
        for segment in self.segments:
            parts.append(delimiter + CRLF)
            parts.append(f"Content-Type: {segment.content_type}".encode("ascii") + CRLF + CRLF)
            parts.append(segment.payload() + CRLF)
        parts.append(delimiter + b"--")
        return b"".join(parts)
