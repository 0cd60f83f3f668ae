"""Type definitions and constants for AeroWhisper."""

from dataclasses import dataclass
from typing import Optional


# Key sizes
PUBLIC_KEY_SIZE = 32
SECRET_KEY_SIZE = 64
SEED_SIZE = 32
SESSION_KEY_SIZE = 32
SHARED_SECRET_SIZE = 32
SIGNATURE_SIZE = 64

# AEAD constants
NONCE_SIZE = 12
TAG_SIZE = 16

# Key derivation
SESSION_KEY_INFO = b"AERONYX-SESSION-KEY"

# Wire constants
PACKET_TYPE_DATA = "Data"
ENCRYPTION_ALGORITHM = "aes-gcm"
LEGACY_ENCRYPTION_ALGORITHM = "aes256gcm"

# Export envelope
EXPORT_VERSION = 1

# Identity record
USER_KEYPAIR_ID = "userEd25519Keypair"


@dataclass
class IdentityKeypair:
    """Long-term Ed25519 identity.

    The secret key uses the NaCl layout: 32-byte seed followed by the
    32-byte public key.
    """
    public_key: bytes  # 32 bytes
    secret_key: bytes  # 64 bytes
    public_key_encoded: str  # base58

    def __repr__(self) -> str:
        return f"IdentityKeypair(public_key_encoded={self.public_key_encoded!r})"


@dataclass
class IdentityRecord:
    """Persisted form of an identity keypair."""
    id: str
    public_key: bytes
    secret_key: bytes
    public_key_encoded: str
    created_at: float
    last_used: Optional[float] = None

    def __repr__(self) -> str:
        return (
            f"IdentityRecord(id={self.id!r}, "
            f"public_key_encoded={self.public_key_encoded!r}, "
            f"created_at={self.created_at!r})"
        )


# Exception types
class AeroWhisperError(Exception):
    """Base exception for AeroWhisper errors."""

    code = "error"


class UnsupportedEnvironmentError(AeroWhisperError):
    """A required platform primitive or storage backend is unavailable."""

    code = "unsupported-environment"
    remediation = (
        "This environment lacks a required cryptographic or storage primitive. "
        "Update the runtime or switch to a supported platform."
    )


class BackendError(AeroWhisperError):
    """A storage backend operation failed."""

    code = "backend-error"


class StorageTimeoutError(AeroWhisperError):
    """A storage connection attempt exceeded its deadline."""

    code = "timeout"


class ValidationError(AeroWhisperError):
    """Invalid key, nonce, keypair or import data."""

    code = "validation-error"


class AuthenticationFailure(AeroWhisperError):
    """AEAD tag verification failed."""

    code = "authentication-failure"


class FormatError(AeroWhisperError):
    """Packet fields are missing or unrecognised."""

    code = "format-error"


class UnknownFormatError(AeroWhisperError):
    """No candidate wire format round-trips in this environment."""

    code = "unknown-format"
    remediation = (
        "No compatible packet format was found. Switch the encryption "
        "algorithm or try a different client runtime."
    )


class ReplayError(AeroWhisperError):
    """Packet counter was already seen for this peer."""

    code = "replay"

    def __init__(self, peer: str, counter: int, last_seen: int) -> None:
        super().__init__(
            f"Replayed counter {counter} from {peer} (last seen {last_seen})"
        )
        self.peer = peer
        self.counter = counter
        self.last_seen = last_seen
