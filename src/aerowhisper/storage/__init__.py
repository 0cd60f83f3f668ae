"""AeroWhisper storage module."""

from .backend import StorageBackend, StorageConnection, InMemoryBackend
from .sqlite_backend import SQLiteBackend
from .file_backend import FileBackend
from .pool import ConnectionPool, DEFAULT_CONNECT_TIMEOUT

__all__ = [
    "StorageBackend",
    "StorageConnection",
    "InMemoryBackend",
    "SQLiteBackend",
    "FileBackend",
    "ConnectionPool",
    "DEFAULT_CONNECT_TIMEOUT",
]
