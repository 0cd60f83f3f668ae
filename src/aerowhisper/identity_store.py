"""
Durable identity keypair storage.

The IdentityStore keeps the user's Ed25519 identity in two backends: a
primary object store (SQLite) and a key-value fallback (JSON files). Reads
go to the primary and fall back to the secondary only when the primary
fails; writes and deletes are applied to both so either can serve a later
read. Only a failure of both backends surfaces as an error.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Tuple, Union

import base58

from .keys import generate_identity, validate_keypair
from .storage import (
    ConnectionPool,
    DEFAULT_CONNECT_TIMEOUT,
    FileBackend,
    SQLiteBackend,
    StorageBackend,
    StorageConnection,
)
from .types import (
    EXPORT_VERSION,
    USER_KEYPAIR_ID,
    BackendError,
    IdentityKeypair,
    IdentityRecord,
    StorageTimeoutError,
    UnsupportedEnvironmentError,
    ValidationError,
)

logger = logging.getLogger(__name__)

STORAGE_ERRORS = (UnsupportedEnvironmentError, BackendError, StorageTimeoutError)


@dataclass
class StoreConfig:
    """Configuration for an IdentityStore."""

    directory: Path = field(default_factory=lambda: Path.home() / ".aerowhisper")
    database_name: str = "AeroWhisperDB.sqlite3"
    keys_dirname: str = "keys"
    record_id: str = USER_KEYPAIR_ID
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    operation_timeout: float = DEFAULT_CONNECT_TIMEOUT
    password: Optional[str] = None

    @classmethod
    def from_directory(cls, directory: Union[str, Path], **kwargs: Any) -> "StoreConfig":
        return cls(directory=Path(directory), **kwargs)

    @property
    def database_path(self) -> Path:
        return self.directory / self.database_name

    @property
    def keys_directory(self) -> Path:
        return self.directory / self.keys_dirname


@dataclass
class PublicKeyInfo:
    """Public half of the stored identity."""
    public_key: bytes
    public_key_encoded: str


def _encode(data: bytes) -> str:
    return base58.b58encode(data).decode("ascii")


class IdentityStore:
    """
    Generates, persists and loads the user's identity keypair.

    Example usage:
        ```python
        async with IdentityStore(config=StoreConfig.from_directory(path)) as store:
            if not await store.exists():
                await store.generate()
            identity = await store.load()
        ```
    """

    def __init__(
        self,
        primary: Optional[StorageBackend] = None,
        fallback: Optional[StorageBackend] = None,
        pool: Optional[ConnectionPool] = None,
        config: Optional[StoreConfig] = None,
    ) -> None:
        self.config = config or StoreConfig()
        self.primary = primary or SQLiteBackend(self.config.database_path)
        self.fallback = fallback or FileBackend(self.config.keys_directory, self.config.password)
        if self.primary is self.fallback:
            raise ValidationError("Primary and fallback must be different backends")
        self.pool = pool or ConnectionPool(self.config.connect_timeout)

    async def __aenter__(self) -> "IdentityStore":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Close cached backend connections."""
        await self.pool.close()

    # ------------------------------------------------------------------
    # Backend plumbing
    # ------------------------------------------------------------------

    async def _call(
        self,
        backend: StorageBackend,
        operation: str,
        fn: Callable[[StorageConnection], Awaitable[Any]],
    ) -> Any:
        conn = await self.pool.acquire(backend)
        try:
            return await asyncio.wait_for(fn(conn), timeout=self.config.operation_timeout)
        except asyncio.TimeoutError as e:
            await self.pool.invalidate(backend)
            raise StorageTimeoutError(
                f"{backend.name}: {operation} timed out after {self.config.operation_timeout}s"
            ) from e
        except BackendError:
            await self.pool.invalidate(backend)
            raise

    async def _with_fallback(
        self,
        operation: str,
        fn: Callable[[StorageConnection], Awaitable[Any]],
    ) -> Tuple[StorageBackend, Any]:
        try:
            return self.primary, await self._call(self.primary, operation, fn)
        except STORAGE_ERRORS as primary_error:
            logger.warning(
                "Primary backend failed, trying fallback: operation=%s backend=%s error=%s",
                operation,
                self.primary.name,
                primary_error.code,
            )
            try:
                return self.fallback, await self._call(self.fallback, operation, fn)
            except STORAGE_ERRORS as fallback_error:
                logger.error(
                    "Both storage backends failed: operation=%s primary=%s fallback=%s",
                    operation,
                    primary_error.code,
                    fallback_error.code,
                )
                raise fallback_error from primary_error

    async def _on_each_backend(
        self,
        operation: str,
        fn: Callable[[StorageConnection], Awaitable[Any]],
    ) -> list:
        succeeded = []
        errors = []
        for backend in (self.primary, self.fallback):
            try:
                await self._call(backend, operation, fn)
                succeeded.append(backend)
            except STORAGE_ERRORS as e:
                logger.warning(
                    "Storage backend failed: operation=%s backend=%s error=%s",
                    operation,
                    backend.name,
                    e.code,
                )
                errors.append(e)

        if not succeeded:
            logger.error("Both storage backends failed: operation=%s", operation)
            raise errors[-1] from errors[0]
        return succeeded

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def exists(self) -> bool:
        """Check whether an identity is stored."""
        record_id = self.config.record_id
        _, record = await self._with_fallback("exists", lambda conn: conn.get(record_id))
        return record is not None

    async def generate(self) -> IdentityKeypair:
        """
        Generate a fresh identity and persist it, replacing any prior one.

        Returns:
            The new IdentityKeypair
        """
        logger.info("Generating new Ed25519 identity")
        keypair = generate_identity()
        await self.store(keypair)
        return keypair

    async def store(self, keypair: IdentityKeypair) -> None:
        """
        Validate and persist a keypair to both backends.

        A backend that fails the write has any older identity removed so it
        cannot later serve a stale key.

        Raises:
            ValidationError: If the keypair is invalid
            BackendError, StorageTimeoutError, UnsupportedEnvironmentError:
                If neither backend accepted the write
        """
        validate_keypair(keypair.public_key, keypair.secret_key)

        now = time.time()
        record = IdentityRecord(
            id=self.config.record_id,
            public_key=bytes(keypair.public_key),
            secret_key=bytes(keypair.secret_key),
            public_key_encoded=_encode(keypair.public_key),
            created_at=now,
            last_used=now,
        )
        written = await self._on_each_backend("store", lambda conn: conn.put(record))

        for backend in (self.primary, self.fallback):
            if backend not in written:
                await self._discard_stale(backend)

        logger.info(
            "Identity stored: public_key=%s backends=%s",
            record.public_key_encoded,
            ",".join(b.name for b in written),
        )

    async def _discard_stale(self, backend: StorageBackend) -> None:
        record_id = self.config.record_id
        try:
            await self._call(backend, "discard", lambda conn: conn.delete(record_id))
        except STORAGE_ERRORS as e:
            logger.warning(
                "Could not discard stale identity: backend=%s error=%s", backend.name, e.code
            )

    async def load(self) -> Optional[IdentityKeypair]:
        """
        Load and validate the stored identity.

        Returns:
            The IdentityKeypair, or None if no identity is stored

        Raises:
            ValidationError: If the stored record is corrupt
            BackendError, StorageTimeoutError, UnsupportedEnvironmentError:
                If both backends failed
        """
        record_id = self.config.record_id
        backend, record = await self._with_fallback("load", lambda conn: conn.get(record_id))

        if record is None:
            logger.info("No identity found in storage")
            return None

        validate_keypair(record.public_key, record.secret_key)
        public_key_encoded = _encode(record.public_key)
        if record.public_key_encoded and record.public_key_encoded != public_key_encoded:
            raise ValidationError("Stored encoded public key doesn't match the public key")

        record.last_used = time.time()
        try:
            await self._call(backend, "touch", lambda conn: conn.put(record))
        except STORAGE_ERRORS as e:
            logger.warning("Could not update last-used time: backend=%s error=%s", backend.name, e.code)

        return IdentityKeypair(
            public_key=record.public_key,
            secret_key=record.secret_key,
            public_key_encoded=public_key_encoded,
        )

    async def delete(self) -> None:
        """Remove the identity from both backends. Safe to repeat."""
        record_id = self.config.record_id
        await self._on_each_backend("delete", lambda conn: conn.delete(record_id))
        logger.info("Identity deleted")

    async def public_key_info(self) -> Optional[PublicKeyInfo]:
        """Return the stored public key without exposing the secret key."""
        keypair = await self.load()
        if keypair is None:
            return None
        return PublicKeyInfo(
            public_key=keypair.public_key,
            public_key_encoded=keypair.public_key_encoded,
        )

    async def export_encoded(self) -> Optional[str]:
        """
        Export the identity for user backup.

        Returns:
            JSON envelope `{version, timestamp, publicKey, secretKey}` with
            base58 keys, or None if no identity is stored
        """
        keypair = await self.load()
        if keypair is None:
            return None

        return json.dumps({
            "version": EXPORT_VERSION,
            "timestamp": int(time.time() * 1000),
            "publicKey": _encode(keypair.public_key),
            "secretKey": _encode(keypair.secret_key),
        })

    async def import_encoded(self, data: str) -> bool:
        """
        Import an exported identity, replacing the stored one.

        Input is fully parsed and validated before anything is written.

        Returns:
            True once the identity is persisted

        Raises:
            ValidationError: If the envelope or keys are malformed
        """
        try:
            envelope = json.loads(data)
        except (json.JSONDecodeError, TypeError) as e:
            raise ValidationError("Invalid keypair export format: not JSON") from e

        if not isinstance(envelope, dict):
            raise ValidationError("Invalid keypair export format: not an object")

        version = envelope.get("version")
        if isinstance(version, bool) or version != EXPORT_VERSION:
            raise ValidationError(f"Unsupported keypair export version: {version!r}")

        encoded_public = envelope.get("publicKey")
        encoded_secret = envelope.get("secretKey")
        if not isinstance(encoded_public, str) or not isinstance(encoded_secret, str):
            raise ValidationError("Invalid keypair export format: missing keys")

        try:
            public_key = base58.b58decode(encoded_public)
            secret_key = base58.b58decode(encoded_secret)
        except ValueError as e:
            raise ValidationError(f"Invalid base58 in keypair export: {e}") from e

        validate_keypair(public_key, secret_key)

        await self.store(IdentityKeypair(
            public_key=public_key,
            secret_key=secret_key,
            public_key_encoded=_encode(public_key),
        ))
        return True
