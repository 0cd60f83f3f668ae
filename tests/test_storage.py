"""Tests for identity storage backends and the connection pool."""

import asyncio
import json
import stat
import sys
import threading
import time

import pytest

from aerowhisper.keys import generate_identity
from aerowhisper.storage import (
    ConnectionPool,
    FileBackend,
    InMemoryBackend,
    SQLiteBackend,
    StorageBackend,
)
from aerowhisper.storage.backend import InMemoryConnection
from aerowhisper.storage.file_backend import record_from_dict, record_to_dict
from aerowhisper.types import (
    USER_KEYPAIR_ID,
    BackendError,
    IdentityRecord,
    StorageTimeoutError,
    UnsupportedEnvironmentError,
)

pytestmark = pytest.mark.asyncio


def _record(record_id: str = USER_KEYPAIR_ID) -> IdentityRecord:
    keypair = generate_identity()
    return IdentityRecord(
        id=record_id,
        public_key=keypair.public_key,
        secret_key=keypair.secret_key,
        public_key_encoded=keypair.public_key_encoded,
        created_at=time.time(),
    )


class _SlowBackend(StorageBackend):
    """Backend whose first `stalls` connections hang."""

    name = "slow"

    def __init__(self, stalls: int = 1) -> None:
        self.stalls = stalls
        self.attempts = 0

    async def connect(self):
        self.attempts += 1
        if self.attempts <= self.stalls:
            await asyncio.sleep(10)
        return InMemoryConnection(InMemoryBackend(self.name))


class TestInMemoryBackend:
    """Test the in-memory backend."""

    async def test_put_get_delete(self) -> None:
        """Records can be written, read and removed."""
        conn = await InMemoryBackend().connect()
        record = _record()

        await conn.put(record)
        assert await conn.get(record.id) == record

        await conn.delete(record.id)
        assert await conn.get(record.id) is None

    async def test_delete_missing(self) -> None:
        """Deleting an absent record is not an error."""
        conn = await InMemoryBackend().connect()
        await conn.delete("missing")

    async def test_returns_copies(self) -> None:
        """Mutating a fetched record doesn't change the stored one."""
        conn = await InMemoryBackend().connect()
        record = _record()
        await conn.put(record)

        fetched = await conn.get(record.id)
        fetched.last_used = 123.0

        assert (await conn.get(record.id)).last_used is None

    async def test_unavailable(self) -> None:
        """An unavailable backend can't be opened."""
        with pytest.raises(UnsupportedEnvironmentError):
            await InMemoryBackend(available=False).connect()

    @pytest.mark.parametrize("operation", ["get", "put", "delete"])
    async def test_failing_operation(self, operation: str) -> None:
        """Operations marked as failing raise BackendError."""
        backend = InMemoryBackend()
        conn = await backend.connect()
        backend.failing.add(operation)
        record = _record()

        calls = {
            "get": lambda: conn.get(record.id),
            "put": lambda: conn.put(record),
            "delete": lambda: conn.delete(record.id),
        }
        with pytest.raises(BackendError):
            await calls[operation]()

    async def test_closed_connection(self) -> None:
        """A closed connection refuses further use."""
        conn = await InMemoryBackend().connect()
        await conn.close()

        assert conn.closed
        with pytest.raises(BackendError):
            await conn.get(USER_KEYPAIR_ID)


class TestSQLiteBackend:
    """Test the SQLite object store."""

    async def test_put_get_delete(self, tmp_path) -> None:
        """Records survive a round trip through the database."""
        conn = await SQLiteBackend(tmp_path / "db.sqlite3").connect()
        record = _record()

        try:
            await conn.put(record)
            assert await conn.get(record.id) == record

            await conn.delete(record.id)
            assert await conn.get(record.id) is None
        finally:
            await conn.close()

    async def test_replace(self, tmp_path) -> None:
        """Writing the same id replaces the previous record."""
        conn = await SQLiteBackend(tmp_path / "db.sqlite3").connect()
        first = _record()
        second = _record()

        try:
            await conn.put(first)
            await conn.put(second)
            assert (await conn.get(USER_KEYPAIR_ID)).public_key == second.public_key
        finally:
            await conn.close()

    async def test_persists_across_connections(self, tmp_path) -> None:
        """A new connection sees records written by an earlier one."""
        backend = SQLiteBackend(tmp_path / "nested" / "db.sqlite3")
        record = _record()

        conn = await backend.connect()
        await conn.put(record)
        await conn.close()

        conn = await backend.connect()
        try:
            assert await conn.get(record.id) == record
        finally:
            await conn.close()

    async def test_unopenable_path(self, tmp_path) -> None:
        """A path that can't hold a database raises BackendError."""
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")

        with pytest.raises(BackendError):
            await SQLiteBackend(blocker / "db.sqlite3").connect()

    async def test_closed_connection(self, tmp_path) -> None:
        """A closed connection refuses further use."""
        conn = await SQLiteBackend(tmp_path / "db.sqlite3").connect()
        await conn.close()

        with pytest.raises(BackendError):
            await conn.get(USER_KEYPAIR_ID)


class TestFileBackend:
    """Test the file key-value fallback."""

    async def test_put_get_delete(self, tmp_path) -> None:
        """Records survive a round trip through the directory."""
        conn = await FileBackend(tmp_path / "keys").connect()
        record = _record()

        await conn.put(record)
        assert await conn.get(record.id) == record

        await conn.delete(record.id)
        assert await conn.get(record.id) is None
        await conn.delete(record.id)

    async def test_document_format(self, tmp_path) -> None:
        """Unprotected records are JSON with base58 keys."""
        backend = FileBackend(tmp_path)
        conn = await backend.connect()
        record = _record()
        await conn.put(record)

        document = json.loads(backend.record_path(record.id).read_text())

        assert document["publicKey"] == record.public_key_encoded
        assert backend.record_path(record.id).name == f"aero-keys-{record.id}.json"

    async def test_no_temp_files_left(self, tmp_path) -> None:
        """Atomic writes leave only the record file behind."""
        conn = await FileBackend(tmp_path).connect()
        await conn.put(_record())
        await conn.put(_record())

        assert [p.name for p in tmp_path.iterdir()] == [f"aero-keys-{USER_KEYPAIR_ID}.json"]

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
    async def test_file_permissions(self, tmp_path) -> None:
        """Record files are readable by the owner only."""
        backend = FileBackend(tmp_path / "keys")
        conn = await backend.connect()
        record = _record()
        await conn.put(record)

        mode = stat.S_IMODE(backend.record_path(record.id).stat().st_mode)
        assert mode == 0o600

    async def test_password_protected(self, tmp_path) -> None:
        """With a password the file doesn't contain the keys in clear."""
        backend = FileBackend(tmp_path, password="correct horse")
        conn = await backend.connect()
        record = _record()
        await conn.put(record)

        raw = backend.record_path(record.id).read_bytes()

        assert record.public_key_encoded.encode() not in raw
        assert await conn.get(record.id) == record

    async def test_wrong_password(self, tmp_path) -> None:
        """Reading with the wrong password fails."""
        writer = await FileBackend(tmp_path, password="right").connect()
        await writer.put(_record())

        reader = await FileBackend(tmp_path, password="wrong").connect()
        with pytest.raises(BackendError, match="incorrect password"):
            await reader.get(USER_KEYPAIR_ID)

    async def test_truncated_sealed_file(self, tmp_path) -> None:
        """A sealed file too short to hold a tag is rejected."""
        backend = FileBackend(tmp_path, password="pw")
        conn = await backend.connect()
        backend.record_path(USER_KEYPAIR_ID).write_bytes(b"short")

        with pytest.raises(BackendError):
            await conn.get(USER_KEYPAIR_ID)

    async def test_corrupted_record(self, tmp_path) -> None:
        """Unparseable documents raise BackendError."""
        backend = FileBackend(tmp_path)
        conn = await backend.connect()
        backend.record_path(USER_KEYPAIR_ID).write_text("{not json")

        with pytest.raises(BackendError):
            await conn.get(USER_KEYPAIR_ID)

    async def test_record_dict_missing_fields(self) -> None:
        """Documents without required fields are corrupted records."""
        document = record_to_dict(_record())
        del document["secretKey"]

        with pytest.raises(BackendError):
            record_from_dict(document)


class TestConnectionPool:
    """Test connection caching and timeouts."""

    async def test_reuses_connection(self) -> None:
        """Repeated acquires return the cached connection."""
        pool = ConnectionPool()
        backend = InMemoryBackend()

        first = await pool.acquire(backend)
        second = await pool.acquire(backend)

        assert first is second
        assert backend.connect_count == 1

    async def test_concurrent_acquire_opens_once(self) -> None:
        """Callers racing for a connection share one open."""
        pool = ConnectionPool()
        backend = InMemoryBackend()

        connections = await asyncio.gather(*(pool.acquire(backend) for _ in range(10)))

        assert all(conn is connections[0] for conn in connections)
        assert backend.connect_count == 1

    async def test_timeout(self) -> None:
        """A hanging open times out and leaves nothing cached."""
        pool = ConnectionPool(timeout=0.05)
        backend = _SlowBackend(stalls=1)

        with pytest.raises(StorageTimeoutError):
            await pool.acquire(backend)
        assert pool.cached(backend) is None

        conn = await pool.acquire(backend)
        assert conn is pool.cached(backend)
        assert backend.attempts == 2

    async def test_failed_open_not_cached(self) -> None:
        """A failed open can be retried once the backend recovers."""
        pool = ConnectionPool()
        backend = InMemoryBackend()
        backend.failing.add("connect")

        with pytest.raises(BackendError):
            await pool.acquire(backend)

        backend.failing.clear()
        await pool.acquire(backend)
        assert backend.connect_count == 2

    async def test_unsupported_passes_through(self) -> None:
        """Environment errors keep their type."""
        with pytest.raises(UnsupportedEnvironmentError):
            await ConnectionPool().acquire(InMemoryBackend(available=False))

    async def test_invalidate(self) -> None:
        """Invalidating closes the connection and forces a reopen."""
        pool = ConnectionPool()
        backend = InMemoryBackend()
        first = await pool.acquire(backend)

        await pool.invalidate(backend)
        second = await pool.acquire(backend)

        assert first.closed
        assert second is not first

    async def test_close(self) -> None:
        """Closing the pool closes every cached connection."""
        pool = ConnectionPool()
        conn = await pool.acquire(InMemoryBackend())

        await pool.close()

        assert conn.closed

    async def test_same_name_backends_kept_apart(self) -> None:
        """Backends sharing a name still get their own connections."""
        pool = ConnectionPool()
        first = InMemoryBackend()
        second = InMemoryBackend()
        record = _record()

        first_conn = await pool.acquire(first)
        second_conn = await pool.acquire(second)
        await second_conn.put(record)

        assert first_conn is not second_conn
        assert second.records and not first.records
        assert first.connect_count == 1
        assert second.connect_count == 1


class _ThreadRecordingFileBackend(FileBackend):
    """File backend that notes which threads seal and unseal records."""

    def __init__(self, directory, password=None) -> None:
        super().__init__(directory, password)
        self.threads = set()

    def seal(self, plaintext: bytes) -> bytes:
        self.threads.add(threading.get_ident())
        return super().seal(plaintext)

    def unseal(self, data: bytes) -> str:
        self.threads.add(threading.get_ident())
        return super().unseal(data)


class TestFileBackendThreading:
    """Test that file work stays off the event loop."""

    async def test_work_runs_in_worker_thread(self, tmp_path) -> None:
        """Sealing, unsealing and file I/O happen outside the loop thread."""
        backend = _ThreadRecordingFileBackend(tmp_path, password="pw")
        conn = await backend.connect()
        record = _record()

        await conn.put(record)
        assert await conn.get(record.id) == record

        assert backend.threads
        assert threading.get_ident() not in backend.threads

    async def test_loop_stays_responsive(self, tmp_path) -> None:
        """Other tasks keep running while a protected record is written."""
        conn = await FileBackend(tmp_path, password="pw").connect()
        ticks = 0

        async def ticker() -> None:
            nonlocal ticks
            while True:
                ticks += 1
                await asyncio.sleep(0)

        task = asyncio.ensure_future(ticker())
        try:
            await conn.put(_record())
        finally:
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        assert ticks > 1
