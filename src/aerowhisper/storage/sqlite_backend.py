"""
SQLite object store for identity records.

The primary backend. Records live in a single `keypairs` table keyed by id,
with a unique index on the encoded public key and an index on creation
time. Every write runs in its own transaction.
"""

import asyncio
import sqlite3
from pathlib import Path
from typing import Optional, Union

from ..types import BackendError, IdentityRecord
from .backend import StorageBackend, StorageConnection

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS keypairs (
        id TEXT PRIMARY KEY,
        public_key BLOB NOT NULL,
        secret_key BLOB NOT NULL,
        public_key_encoded TEXT NOT NULL,
        created_at REAL NOT NULL,
        last_used REAL
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS by_public_key ON keypairs (public_key_encoded)",
    "CREATE INDEX IF NOT EXISTS by_created_at ON keypairs (created_at)",
)


def _open(path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(path, check_same_thread=False)
    try:
        with conn:
            for statement in _SCHEMA:
                conn.execute(statement)
    except sqlite3.Error:
        conn.close()
        raise
    return conn


class SQLiteConnection(StorageConnection):
    """Open SQLite database; statements run in a worker thread one at a time."""

    def __init__(self, conn: sqlite3.Connection, name: str) -> None:
        self._conn = conn
        self._name = name
        self._closed = False
        self._lock = asyncio.Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    async def _run(self, fn, *args):
        if self._closed:
            raise BackendError(f"{self._name}: connection closed")
        async with self._lock:
            try:
                return await asyncio.to_thread(fn, *args)
            except sqlite3.Error as e:
                raise BackendError(f"{self._name}: {e}") from e

    def _get(self, record_id: str) -> Optional[IdentityRecord]:
        row = self._conn.execute(
            "SELECT id, public_key, secret_key, public_key_encoded, created_at, last_used "
            "FROM keypairs WHERE id = ?",
            (record_id,),
        ).fetchone()
        if row is None:
            return None
        return IdentityRecord(
            id=row[0],
            public_key=bytes(row[1]),
            secret_key=bytes(row[2]),
            public_key_encoded=row[3],
            created_at=row[4],
            last_used=row[5],
        )

    def _put(self, record: IdentityRecord) -> None:
        with self._conn:
            self._conn.execute(
                "INSERT OR REPLACE INTO keypairs "
                "(id, public_key, secret_key, public_key_encoded, created_at, last_used) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    record.id,
                    record.public_key,
                    record.secret_key,
                    record.public_key_encoded,
                    record.created_at,
                    record.last_used,
                ),
            )

    def _delete(self, record_id: str) -> None:
        with self._conn:
            self._conn.execute("DELETE FROM keypairs WHERE id = ?", (record_id,))

    async def get(self, record_id: str) -> Optional[IdentityRecord]:
        return await self._run(self._get, record_id)

    async def put(self, record: IdentityRecord) -> None:
        await self._run(self._put, record)

    async def delete(self, record_id: str) -> None:
        await self._run(self._delete, record_id)

    async def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._conn.close()


class SQLiteBackend(StorageBackend):
    """
    Primary identity backend on a local SQLite database.

    Example usage:
        ```python
        backend = SQLiteBackend(Path.home() / ".aerowhisper" / "identity.db")
        conn = await backend.connect()
        record = await conn.get("userEd25519Keypair")
        ```
    """

    name = "sqlite"

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)

    async def connect(self) -> StorageConnection:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            conn = await asyncio.to_thread(_open, str(self.path))
        except (OSError, sqlite3.Error) as e:
            raise BackendError(f"{self.name}: cannot open {self.path}: {e}") from e
        return SQLiteConnection(conn, self.name)
