"""
AeroWhisper - client-side cryptography core for end-to-end encrypted chat

Ed25519 identities with durable dual-backend storage, HKDF-SHA256 session
keys, AES-256-GCM payloads with replay counters, and runtime negotiation of
the packet format field name.
"""

import logging

from .types import (
    IdentityKeypair,
    IdentityRecord,
    NONCE_SIZE,
    PUBLIC_KEY_SIZE,
    SECRET_KEY_SIZE,
    SESSION_KEY_SIZE,
    SESSION_KEY_INFO,
    ENCRYPTION_ALGORITHM,
    AeroWhisperError,
    UnsupportedEnvironmentError,
    BackendError,
    StorageTimeoutError,
    ValidationError,
    AuthenticationFailure,
    FormatError,
    UnknownFormatError,
    ReplayError,
)
from .nonce import generate_nonce, random_bytes, wipe, secret_buffer
from .keys import (
    generate_identity,
    keypair_from_secret_key,
    validate_keypair,
    sign_challenge,
    verify_challenge,
    fingerprint,
    ed25519_secret_to_x25519,
    ed25519_public_to_x25519,
    derive_shared_secret,
    parse_challenge,
)
from .kdf import derive_session_key, DerivedKey
from .crypto import (
    AeadEngine,
    EncryptedPayload,
    encrypt,
    decrypt,
    is_aes_gcm_supported,
)
from .packet import (
    FormatField,
    Packet,
    DecodedPacket,
    PacketCodec,
    default_codec,
    encode_packet,
    decode_packet,
)
from .session import SessionKey, CounterState, Session
from .negotiator import (
    FormatNegotiator,
    NegotiatorConfig,
    NegotiationState,
    ProbeResult,
    ProbeReport,
)
from .storage import (
    StorageBackend,
    StorageConnection,
    InMemoryBackend,
    SQLiteBackend,
    FileBackend,
    ConnectionPool,
)
from .identity_store import IdentityStore, StoreConfig, PublicKeyInfo

logging.getLogger(__name__).addHandler(logging.NullHandler())

__version__ = "0.1.0"

__all__ = [
    # Types
    "IdentityKeypair",
    "IdentityRecord",
    # Constants
    "NONCE_SIZE",
    "PUBLIC_KEY_SIZE",
    "SECRET_KEY_SIZE",
    "SESSION_KEY_SIZE",
    "SESSION_KEY_INFO",
    "ENCRYPTION_ALGORITHM",
    # Errors
    "AeroWhisperError",
    "UnsupportedEnvironmentError",
    "BackendError",
    "StorageTimeoutError",
    "ValidationError",
    "AuthenticationFailure",
    "FormatError",
    "UnknownFormatError",
    "ReplayError",
    # Randomness
    "generate_nonce",
    "random_bytes",
    "wipe",
    "secret_buffer",
    # Keys
    "generate_identity",
    "keypair_from_secret_key",
    "validate_keypair",
    "sign_challenge",
    "verify_challenge",
    "fingerprint",
    "ed25519_secret_to_x25519",
    "ed25519_public_to_x25519",
    "derive_shared_secret",
    "parse_challenge",
    # Key derivation
    "derive_session_key",
    "DerivedKey",
    # Crypto
    "AeadEngine",
    "EncryptedPayload",
    "encrypt",
    "decrypt",
    "is_aes_gcm_supported",
    # Packet
    "FormatField",
    "Packet",
    "DecodedPacket",
    "PacketCodec",
    "default_codec",
    "encode_packet",
    "decode_packet",
    # Session
    "SessionKey",
    "CounterState",
    "Session",
    # Negotiation
    "FormatNegotiator",
    "NegotiatorConfig",
    "NegotiationState",
    "ProbeResult",
    "ProbeReport",
    # Storage
    "StorageBackend",
    "StorageConnection",
    "InMemoryBackend",
    "SQLiteBackend",
    "FileBackend",
    "ConnectionPool",
    "IdentityStore",
    "StoreConfig",
    "PublicKeyInfo",
]
