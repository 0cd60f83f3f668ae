"""Identity storage backend interface and the in-memory implementation."""

from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Optional

from ..types import BackendError, IdentityRecord, UnsupportedEnvironmentError


class StorageConnection(ABC):
    """An open handle on a storage backend."""

    @property
    @abstractmethod
    def closed(self) -> bool:
        """True once the connection can no longer be used."""
        ...

    @abstractmethod
    async def get(self, record_id: str) -> Optional[IdentityRecord]:
        """Fetch a record, or None if absent."""
        ...

    @abstractmethod
    async def put(self, record: IdentityRecord) -> None:
        """Atomically write a record, replacing any existing one."""
        ...

    @abstractmethod
    async def delete(self, record_id: str) -> None:
        """Remove a record. Removing an absent record is not an error."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release the connection."""
        ...


class StorageBackend(ABC):
    """A place identity records can be persisted."""

    name: str = "backend"

    @abstractmethod
    async def connect(self) -> StorageConnection:
        """
        Open a connection.

        Raises:
            UnsupportedEnvironmentError: If the backend cannot exist here
            BackendError: If opening fails
        """
        ...


class InMemoryConnection(StorageConnection):
    """Connection onto an `InMemoryBackend`'s record dictionary."""

    def __init__(self, backend: "InMemoryBackend") -> None:
        self._backend = backend
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _check(self, operation: str) -> None:
        if self._closed:
            raise BackendError(f"{self._backend.name}: connection closed")
        if operation in self._backend.failing:
            raise BackendError(f"{self._backend.name}: {operation} failed")

    async def get(self, record_id: str) -> Optional[IdentityRecord]:
        self._check("get")
        record = self._backend.records.get(record_id)
        return replace(record) if record is not None else None

    async def put(self, record: IdentityRecord) -> None:
        self._check("put")
        self._backend.records[record.id] = replace(record)

    async def delete(self, record_id: str) -> None:
        self._check("delete")
        self._backend.records.pop(record_id, None)

    async def close(self) -> None:
        self._closed = True


class InMemoryBackend(StorageBackend):
    """
    In-memory implementation of StorageBackend (for testing).

    WARNING: This is NOT secure for production use. Keys are stored in memory
    without encryption and are lost when the process exits.

    `available=False` simulates an environment without this backend, and
    operation names added to `failing` ("connect", "get", "put", "delete")
    raise `BackendError`.
    """

    def __init__(self, name: str = "memory", available: bool = True) -> None:
        self.name = name
        self.available = available
        self.records: dict[str, IdentityRecord] = {}
        self.failing: set[str] = set()
        self.connect_count = 0

    async def connect(self) -> StorageConnection:
        self.connect_count += 1
        if not self.available:
            raise UnsupportedEnvironmentError(f"{self.name}: backend not supported")
        if "connect" in self.failing:
            raise BackendError(f"{self.name}: connect failed")
        return InMemoryConnection(self)
