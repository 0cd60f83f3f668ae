"""Cached storage connections with a hard open timeout."""

import asyncio
import logging
from typing import Optional

from ..types import AeroWhisperError, BackendError, StorageTimeoutError
from .backend import StorageBackend, StorageConnection

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT = 5.0


class ConnectionPool:
    """
    Holds at most one open connection per backend.

    Concurrent callers asking for the same backend wait on a shared lock and
    receive the same connection instead of racing to open their own. An open
    that fails or exceeds `timeout` seconds leaves nothing cached, so the
    next `acquire` starts clean.
    """

    def __init__(self, timeout: float = DEFAULT_CONNECT_TIMEOUT) -> None:
        self.timeout = timeout
        self._connections: dict[StorageBackend, StorageConnection] = {}
        self._locks: dict[StorageBackend, asyncio.Lock] = {}

    def cached(self, backend: StorageBackend) -> Optional[StorageConnection]:
        conn = self._connections.get(backend)
        if conn is not None and conn.closed:
            self._connections.pop(backend, None)
            return None
        return conn

    async def acquire(self, backend: StorageBackend) -> StorageConnection:
        """
        Return the cached connection for `backend`, opening one if needed.

        Raises:
            StorageTimeoutError: If opening takes longer than `timeout`
            UnsupportedEnvironmentError: If the backend cannot exist here
            BackendError: If opening fails for any other reason
        """
        conn = self.cached(backend)
        if conn is not None:
            return conn

        lock = self._locks.setdefault(backend, asyncio.Lock())
        async with lock:
            conn = self.cached(backend)
            if conn is not None:
                return conn

            try:
                conn = await asyncio.wait_for(backend.connect(), timeout=self.timeout)
            except asyncio.TimeoutError as e:
                logger.warning(
                    "Storage connection timed out: backend=%s timeout=%.1fs",
                    backend.name,
                    self.timeout,
                )
                raise StorageTimeoutError(
                    f"{backend.name}: connection timed out after {self.timeout}s"
                ) from e
            except AeroWhisperError:
                raise
            except Exception as e:
                raise BackendError(f"{backend.name}: connection failed: {e}") from e

            self._connections[backend] = conn
            logger.debug("Storage connection opened: backend=%s", backend.name)
            return conn

    async def invalidate(self, backend: StorageBackend) -> None:
        """Drop and close the cached connection for `backend`, if any."""
        conn = self._connections.pop(backend, None)
        if conn is not None and not conn.closed:
            try:
                await conn.close()
            except AeroWhisperError as e:
                logger.debug("Ignoring close failure: backend=%s error=%s", backend.name, e)

    async def close(self) -> None:
        """Close every cached connection."""
        connections = list(self._connections.items())
        self._connections.clear()
        for backend, conn in connections:
            if not conn.closed:
                await conn.close()
            logger.debug("Storage connection closed: backend=%s", backend.name)
