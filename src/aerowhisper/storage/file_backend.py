"""
File-based key-value fallback for identity records.

Each record is one JSON file under the storage directory, named
`aero-keys-<id>.json`. Key fields are base58 encoded. Writes go to a
temporary file in the same directory followed by `os.replace`, so a reader
sees either the old record or the new one, never half of either.

## Password protection

With a password set, the JSON document is sealed before it is written:

- Salt: 32 bytes (random, for PBKDF2)
- Nonce: 12 bytes (random, for AES-GCM)
- Ciphertext + tag: the JSON document

The key is derived with PBKDF2-HMAC-SHA256 (100,000 iterations). Files are
created with 600 permissions and the directory with 700, where the platform
allows it.
"""

import asyncio
import json
import os
import tempfile
from pathlib import Path
from typing import Optional, Union

import base58
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..nonce import random_bytes, secret_buffer
from ..types import BackendError, IdentityRecord
from .backend import StorageBackend, StorageConnection

STORAGE_PREFIX = "aero-keys-"


def record_to_dict(record: IdentityRecord) -> dict:
    return {
        "id": record.id,
        "publicKey": base58.b58encode(record.public_key).decode("ascii"),
        "secretKey": base58.b58encode(record.secret_key).decode("ascii"),
        "publicKeyEncoded": record.public_key_encoded,
        "createdAt": record.created_at,
        "lastUsed": record.last_used,
    }


def record_from_dict(data: dict) -> IdentityRecord:
    try:
        return IdentityRecord(
            id=data["id"],
            public_key=base58.b58decode(data["publicKey"]),
            secret_key=base58.b58decode(data["secretKey"]),
            public_key_encoded=data["publicKeyEncoded"],
            created_at=float(data["createdAt"]),
            last_used=data.get("lastUsed"),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise BackendError(f"Corrupted identity record: {e}") from e


class FileConnection(StorageConnection):
    """Handle on a `FileBackend` directory; file work runs in a worker thread."""

    def __init__(self, backend: "FileBackend") -> None:
        self._backend = backend
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def _run(self, fn, *args):
        if self._closed:
            raise BackendError(f"{self._backend.name}: connection closed")
        return await asyncio.to_thread(fn, *args)

    def _get(self, record_id: str) -> Optional[IdentityRecord]:
        path = self._backend.record_path(record_id)
        try:
            raw = path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise BackendError(f"{self._backend.name}: cannot read {path.name}: {e}") from e

        try:
            data = json.loads(self._backend.unseal(raw))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise BackendError(f"{self._backend.name}: corrupted record {path.name}") from e
        return record_from_dict(data)

    def _put(self, record: IdentityRecord) -> None:
        payload = self._backend.seal(json.dumps(record_to_dict(record)).encode("utf-8"))
        path = self._backend.record_path(record.id)

        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            _set_restrictive_permissions(Path(tmp_name), 0o600)
            os.replace(tmp_name, path)
        except OSError as e:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise BackendError(f"{self._backend.name}: cannot write {path.name}: {e}") from e

    def _delete(self, record_id: str) -> None:
        path = self._backend.record_path(record_id)
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise BackendError(f"{self._backend.name}: cannot delete {path.name}: {e}") from e

    async def get(self, record_id: str) -> Optional[IdentityRecord]:
        return await self._run(self._get, record_id)

    async def put(self, record: IdentityRecord) -> None:
        await self._run(self._put, record)

    async def delete(self, record_id: str) -> None:
        await self._run(self._delete, record_id)

    async def close(self) -> None:
        self._closed = True


class FileBackend(StorageBackend):
    """
    Secondary identity backend: one JSON file per key.

    Example usage:
        ```python
        backend = FileBackend(Path.home() / ".aerowhisper" / "keys", password="pw")
        conn = await backend.connect()
        await conn.put(record)
        ```
    """

    name = "file"

    # PBKDF2 iteration count (OWASP recommendation for SHA256)
    PBKDF2_ITERATIONS = 100_000

    SALT_SIZE = 32
    NONCE_SIZE = 12
    TAG_SIZE = 16

    def __init__(self, directory: Union[str, Path], password: Optional[str] = None) -> None:
        self.directory = Path(directory)
        self._password = password

    async def connect(self) -> StorageConnection:
        try:
            await asyncio.to_thread(self.directory.mkdir, parents=True, exist_ok=True)
        except OSError as e:
            raise BackendError(f"{self.name}: cannot create {self.directory}: {e}") from e
        _set_restrictive_permissions(self.directory, 0o700)
        return FileConnection(self)

    def record_path(self, record_id: str) -> Path:
        return self.directory / f"{STORAGE_PREFIX}{record_id}.json"

    def seal(self, plaintext: bytes) -> bytes:
        """Encrypt a record document if a password is set."""
        if not self._password:
            return plaintext
        salt = random_bytes(self.SALT_SIZE)
        nonce = random_bytes(self.NONCE_SIZE)
        with secret_buffer(self._derive_key(salt)) as key:
            ciphertext = AESGCM(bytes(key)).encrypt(nonce, plaintext, None)
        return salt + nonce + ciphertext

    def unseal(self, data: bytes) -> str:
        """Decrypt a record document if a password is set."""
        if not self._password:
            return data.decode("utf-8")

        if len(data) < self.SALT_SIZE + self.NONCE_SIZE + self.TAG_SIZE:
            raise BackendError(f"{self.name}: invalid key data format")

        salt = data[: self.SALT_SIZE]
        nonce = data[self.SALT_SIZE : self.SALT_SIZE + self.NONCE_SIZE]
        ciphertext = data[self.SALT_SIZE + self.NONCE_SIZE :]
        with secret_buffer(self._derive_key(salt)) as key:
            try:
                plaintext = AESGCM(bytes(key)).decrypt(nonce, ciphertext, None)
            except InvalidTag as e:
                raise BackendError(
                    f"{self.name}: decryption failed - incorrect password or corrupted data"
                ) from e
        return plaintext.decode("utf-8")

    def _derive_key(self, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=self.PBKDF2_ITERATIONS,
        )
        return kdf.derive(self._password.encode("utf-8"))


def _set_restrictive_permissions(path: Path, mode: int) -> None:
    try:
        path.chmod(mode)
    except OSError:
        pass  # Not supported on some platforms
