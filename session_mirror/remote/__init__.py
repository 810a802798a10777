"""
Remote blob channel: named binary files in a per-application cloud folder.
"""

from .drive import APP_DATA_FOLDER, DriveBlobChannel, RemoteFile, TokenProvider
from .multipart import BinarySegment, MultipartBody, TextSegment

__all__ = [
    "DriveBlobChannel",
    "RemoteFile",
    "TokenProvider",
    "APP_DATA_FOLDER",
    "MultipartBody",
    "TextSegment",
    "BinarySegment",
]
