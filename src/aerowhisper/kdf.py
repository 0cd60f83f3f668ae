"""Session key derivation for AeroWhisper."""

import hashlib
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .nonce import secret_buffer
from .types import (
    SESSION_KEY_INFO,
    SESSION_KEY_SIZE,
    SHARED_SECRET_SIZE,
    UnsupportedEnvironmentError,
    ValidationError,
)

logger = logging.getLogger(__name__)


@dataclass
class DerivedKey:
    """Result of a session key derivation.

    Attributes:
        key: Mutable 32-byte key buffer, to be wiped by its owner.
        degraded: True if the non-HKDF fallback produced the key.
    """
    key: bytearray
    degraded: bool = False

    def __repr__(self) -> str:
        return f"DerivedKey(len={len(self.key)}, degraded={self.degraded})"


def _hkdf_sha256(secret: bytes, salt: bytes, info: bytes) -> bytes:
    hkdf = HKDF(algorithm=SHA256(), length=SESSION_KEY_SIZE, salt=salt, info=info)
    return hkdf.derive(secret)


def _hash_fallback(secret: bytes, salt: bytes, info: bytes) -> bytes:
    # Not RFC 5869: prk = H(salt || secret), okm = H(prk || info)
    prk = hashlib.sha256(salt + secret).digest()
    return hashlib.sha256(prk + info).digest()[:SESSION_KEY_SIZE]


def derive_session_key(
    shared_secret: bytes,
    salt: bytes = b"",
    allow_degraded: bool = False,
    hkdf: Optional[Callable[[bytes, bytes, bytes], bytes]] = None,
) -> DerivedKey:
    """
    Derive a 32-byte session key from an ECDH shared secret.

    Uses HKDF-SHA256 (extract-then-expand) with the fixed application info
    string, so keys derived here cannot collide with another application's.
    Identical inputs always yield identical output.

    If HKDF is unavailable the call fails closed unless `allow_degraded` is
    set, in which case a weaker hash-based construction is used and the
    result is flagged `degraded`.

    Args:
        shared_secret: 32-byte shared secret
        salt: Salt agreed with the server (may be empty)
        allow_degraded: Permit the non-HKDF fallback
        hkdf: Override for the HKDF primitive

    Returns:
        DerivedKey holding the session key

    Raises:
        ValidationError: If the shared secret is not 32 bytes
        UnsupportedEnvironmentError: If HKDF is unavailable and degraded
            derivation was not allowed
    """
    if shared_secret is None or len(shared_secret) != SHARED_SECRET_SIZE:
        length = None if shared_secret is None else len(shared_secret)
        raise ValidationError(
            f"Invalid shared secret for HKDF: length={length} (expected {SHARED_SECRET_SIZE} bytes)"
        )

    primitive = hkdf or _hkdf_sha256
    salt = bytes(salt or b"")

    with secret_buffer(shared_secret) as secret:
        try:
            derived = primitive(bytes(secret), salt, SESSION_KEY_INFO)
            degraded = False
        except UnsupportedAlgorithm as e:
            if not allow_degraded:
                logger.error(
                    "HKDF unavailable and degraded derivation not allowed: salt_len=%d",
                    len(salt),
                )
                raise UnsupportedEnvironmentError(f"HKDF-SHA256 unavailable: {e}") from e

            logger.warning(
                "HKDF unavailable, using degraded hash derivation: salt_len=%d",
                len(salt),
            )
            derived = _hash_fallback(bytes(secret), salt, SESSION_KEY_INFO)
            degraded = True

    logger.debug(
        "Derived session key: key_len=%d salt_len=%d degraded=%s",
        len(derived),
        len(salt),
        degraded,
    )
    return DerivedKey(key=bytearray(derived), degraded=degraded)
