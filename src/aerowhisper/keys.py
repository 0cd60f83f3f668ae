"""Ed25519 identity keys for AeroWhisper."""

import base64
import hashlib
import hmac
import logging
from typing import Union

import base58
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
)

from .nonce import secret_buffer, wipe
from .types import (
    IdentityKeypair,
    PUBLIC_KEY_SIZE,
    SECRET_KEY_SIZE,
    SEED_SIZE,
    SIGNATURE_SIZE,
    ValidationError,
)

logger = logging.getLogger(__name__)


def generate_identity() -> IdentityKeypair:
    """
    Generate a fresh Ed25519 identity keypair.

    Returns:
        Validated IdentityKeypair with a 64-byte NaCl-layout secret key
    """
    private_key = Ed25519PrivateKey.generate()
    seed = private_key.private_bytes(Encoding.Raw, PrivateFormat.Raw, NoEncryption())
    public_key = private_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)

    keypair = IdentityKeypair(
        public_key=public_key,
        secret_key=seed + public_key,
        public_key_encoded=base58.b58encode(public_key).decode("ascii"),
    )
    validate_keypair(keypair.public_key, keypair.secret_key)
    return keypair


def keypair_from_secret_key(secret_key: bytes) -> IdentityKeypair:
    """
    Rebuild an identity from a 64-byte secret key.

    Args:
        secret_key: NaCl-layout secret key (seed || public key)

    Returns:
        Validated IdentityKeypair

    Raises:
        ValidationError: If the key is malformed or its halves disagree
    """
    if len(secret_key) != SECRET_KEY_SIZE:
        raise ValidationError(
            f"Invalid secret key size: expected {SECRET_KEY_SIZE} bytes, got {len(secret_key)}"
        )
    public_key = bytes(secret_key[SEED_SIZE:])
    validate_keypair(public_key, secret_key)
    return IdentityKeypair(
        public_key=public_key,
        secret_key=bytes(secret_key),
        public_key_encoded=base58.b58encode(public_key).decode("ascii"),
    )


def validate_keypair(public_key: bytes, secret_key: bytes) -> None:
    """
    Check key sizes and the binding between public and secret halves.

    The public key embedded in `secret_key[32:]` and the public key derived
    from the seed must both equal `public_key`. Comparisons are constant-time.

    Raises:
        ValidationError: If any check fails
    """
    if public_key is None or secret_key is None:
        raise ValidationError("Keypair missing public or secret key")

    if len(public_key) != PUBLIC_KEY_SIZE:
        raise ValidationError(
            f"Invalid public key size: expected {PUBLIC_KEY_SIZE} bytes, got {len(public_key)}"
        )

    if len(secret_key) != SECRET_KEY_SIZE:
        raise ValidationError(
            f"Invalid secret key size: expected {SECRET_KEY_SIZE} bytes, got {len(secret_key)}"
        )

    if not hmac.compare_digest(bytes(secret_key[SEED_SIZE:]), bytes(public_key)):
        raise ValidationError("Public key doesn't match the one embedded in the secret key")

    with secret_buffer(secret_key[:SEED_SIZE]) as seed:
        derived = (
            Ed25519PrivateKey.from_private_bytes(bytes(seed))
            .public_key()
            .public_bytes(Encoding.Raw, PublicFormat.Raw)
        )

    if not hmac.compare_digest(derived, bytes(public_key)):
        raise ValidationError("Public key doesn't match the one derivable from the secret key")


def decode_public_key(public_key_encoded: str) -> bytes:
    """Decode a base58 public key and check its length."""
    try:
        raw = base58.b58decode(public_key_encoded)
    except ValueError as e:
        raise ValidationError(f"Invalid base58 public key: {e}") from e

    if len(raw) != PUBLIC_KEY_SIZE:
        raise ValidationError(
            f"Invalid public key size: expected {PUBLIC_KEY_SIZE} bytes, got {len(raw)}"
        )
    return raw


def sign_challenge(challenge: bytes, secret_key: bytes) -> str:
    """
    Sign an authentication challenge with the identity key.

    Args:
        challenge: Challenge bytes sent by the server
        secret_key: 64-byte identity secret key

    Returns:
        Detached Ed25519 signature, base58 encoded
    """
    if len(secret_key) != SECRET_KEY_SIZE:
        raise ValidationError(
            f"Invalid Ed25519 secret key length: {len(secret_key)} (expected {SECRET_KEY_SIZE} bytes)"
        )

    with secret_buffer(secret_key[:SEED_SIZE]) as seed:
        signature = Ed25519PrivateKey.from_private_bytes(bytes(seed)).sign(challenge)

    logger.debug("Signed challenge: challenge_len=%d", len(challenge))
    return base58.b58encode(signature).decode("ascii")


def verify_challenge(challenge: bytes, signature: str, public_key_encoded: str) -> bool:
    """
    Verify a base58 challenge signature against a base58 public key.

    Returns:
        True if the signature is valid, False otherwise

    Raises:
        ValidationError: If the public key or signature is malformed
    """
    public_key = decode_public_key(public_key_encoded)

    try:
        signature_bytes = base58.b58decode(signature)
    except ValueError as e:
        raise ValidationError(f"Invalid base58 signature: {e}") from e

    if len(signature_bytes) != SIGNATURE_SIZE:
        raise ValidationError(
            f"Signature must be {SIGNATURE_SIZE} bytes, got {len(signature_bytes)}"
        )

    try:
        Ed25519PublicKey.from_public_bytes(public_key).verify(signature_bytes, challenge)
        return True
    except InvalidSignature:
        return False


def fingerprint(public_key: bytes) -> str:
    """
    Generate a human-readable fingerprint for an identity public key.

    Returns:
        A fingerprint string like "A7B3 C9D1 E5F2 8A4B"
    """
    hash_bytes = hashlib.sha256(public_key).digest()
    hex_bytes = [f"{b:02X}" for b in hash_bytes[:8]]
    groups = [hex_bytes[i] + hex_bytes[i + 1] for i in range(0, 8, 2)]
    return " ".join(groups)


# Field prime for Curve25519 / Ed25519
_P = 2**255 - 19


def ed25519_secret_to_x25519(secret_key: bytes) -> bytearray:
    """
    Convert a 64-byte Ed25519 secret key to an X25519 private scalar.

    The scalar is the first half of SHA-512(seed), clamped, which is the
    same scalar Ed25519 signs with.

    Returns:
        32-byte mutable buffer; the caller wipes it
    """
    if len(secret_key) != SECRET_KEY_SIZE:
        raise ValidationError(
            f"Invalid Ed25519 secret key length: {len(secret_key)} (expected {SECRET_KEY_SIZE} bytes)"
        )

    with secret_buffer(secret_key[:SEED_SIZE]) as seed:
        scalar = bytearray(hashlib.sha512(bytes(seed)).digest()[:32])
    scalar[0] &= 248
    scalar[31] &= 127
    scalar[31] |= 64
    return scalar


def ed25519_public_to_x25519(public_key: bytes) -> bytes:
    """
    Map an Ed25519 public key to its X25519 (Montgomery u) form.

    u = (1 + y) / (1 - y) mod p, where y is the Edwards y-coordinate.
    """
    if len(public_key) != PUBLIC_KEY_SIZE:
        raise ValidationError(
            f"Invalid public key size: expected {PUBLIC_KEY_SIZE} bytes, got {len(public_key)}"
        )

    y = int.from_bytes(public_key, "little") & ((1 << 255) - 1)
    if y >= _P or y == 1:
        raise ValidationError("Ed25519 public key has no X25519 equivalent")

    u = (1 + y) * pow(1 - y, _P - 2, _P) % _P
    return u.to_bytes(32, "little")


def derive_shared_secret(secret_key: bytes, peer_public_key: bytes) -> bytes:
    """
    Derive the raw ECDH shared secret between our identity and a peer's.

    Both Ed25519 keys are converted to X25519 and combined, so either side
    computes the same 32 bytes. Feed the result to `derive_session_key`.

    Args:
        secret_key: Our 64-byte Ed25519 secret key
        peer_public_key: Peer's 32-byte Ed25519 public key

    Returns:
        32-byte shared secret

    Raises:
        ValidationError: If a key is malformed or the exchange yields a
            low-order result
    """
    peer = X25519PublicKey.from_public_bytes(ed25519_public_to_x25519(peer_public_key))

    scalar = ed25519_secret_to_x25519(secret_key)
    try:
        private_key = X25519PrivateKey.from_private_bytes(bytes(scalar))
    finally:
        wipe(scalar)
    try:
        shared = private_key.exchange(peer)
    except ValueError as e:
        logger.warning("ECDH rejected: peer_key_len=%d", len(peer_public_key))
        raise ValidationError(f"ECDH failed: {e}") from e

    logger.debug("Derived ECDH shared secret: secret_len=%d", len(shared))
    return shared


def parse_challenge(challenge: Union[bytes, bytearray, list, str]) -> bytes:
    """
    Normalise a server challenge to bytes.

    Servers send the challenge either as an array of ints or as a string.
    Strings are read as base58, then base64, then raw UTF-8.

    Raises:
        ValidationError: If the challenge has an unsupported type or an
            array item is not a byte
    """
    if isinstance(challenge, (bytes, bytearray)):
        return bytes(challenge)

    if isinstance(challenge, list):
        if not all(isinstance(b, int) and not isinstance(b, bool) and 0 <= b <= 255 for b in challenge):
            raise ValidationError("Challenge array must contain only byte values")
        return bytes(challenge)

    if isinstance(challenge, str):
        try:
            return base58.b58decode(challenge)
        except ValueError:
            pass
        try:
            return base64.b64decode(challenge, validate=True)
        except ValueError:
            logger.debug("Challenge is neither base58 nor base64, using UTF-8 bytes")
            return challenge.encode("utf-8")

    raise ValidationError(f"Invalid challenge data format: {type(challenge).__name__}")
