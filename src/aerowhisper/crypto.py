"""AES-256-GCM encryption and decryption for AeroWhisper payloads."""

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

from cryptography.exceptions import InvalidTag, UnsupportedAlgorithm
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .nonce import generate_nonce, random_bytes, secret_buffer
from .types import (
    NONCE_SIZE,
    SESSION_KEY_SIZE,
    TAG_SIZE,
    AuthenticationFailure,
    UnsupportedEnvironmentError,
    ValidationError,
)

logger = logging.getLogger(__name__)

OUTPUT_BYTES = "bytes"
OUTPUT_STRING = "string"
OUTPUT_JSON = "json"
_OUTPUT_KINDS = (OUTPUT_BYTES, OUTPUT_STRING, OUTPUT_JSON)

KeyBytes = Union[bytes, bytearray, memoryview]


@dataclass
class EncryptedPayload:
    """Ciphertext (with 16-byte tag appended) and the nonce used."""
    ciphertext: bytes
    nonce: bytes  # 12 bytes


def _check_key(key: Optional[KeyBytes], operation: str) -> None:
    length = None if key is None else len(key)
    if length != SESSION_KEY_SIZE:
        logger.warning("Rejected %s key: key_len=%s", operation, length)
        raise ValidationError(
            f"Invalid {operation} key: length={length} (expected {SESSION_KEY_SIZE} bytes)"
        )


class AeadEngine:
    """
    Authenticated encryption with a fresh random nonce per call.

    The cipher is created from `cipher_factory`, which defaults to
    `AESGCM`. An environment whose backend lacks AES-GCM surfaces as
    `UnsupportedEnvironmentError` rather than a raw library error.

    Example usage:
        ```python
        engine = AeadEngine()
        payload = engine.encrypt(b"hello", key)
        assert engine.decrypt(payload.ciphertext, payload.nonce, key) == b"hello"
        ```
    """

    def __init__(self, cipher_factory: Callable[[bytes], Any] = AESGCM) -> None:
        self._cipher_factory = cipher_factory

    def _cipher(self, key: bytes) -> Any:
        try:
            return self._cipher_factory(key)
        except UnsupportedAlgorithm as e:
            logger.error("AES-GCM unavailable in this environment: %s", e)
            raise UnsupportedEnvironmentError(f"AES-GCM unavailable: {e}") from e

    def is_supported(self) -> bool:
        """Check whether the cipher can be instantiated here."""
        with secret_buffer(random_bytes(SESSION_KEY_SIZE)) as probe_key:
            try:
                self._cipher(bytes(probe_key))
            except UnsupportedEnvironmentError:
                return False
        return True

    def encrypt(self, plaintext: Union[str, bytes], key: KeyBytes) -> EncryptedPayload:
        """
        Encrypt a payload under a 32-byte key.

        Args:
            plaintext: Data to encrypt; strings are UTF-8 encoded
            key: 32-byte session key

        Returns:
            EncryptedPayload with ciphertext (tag appended) and nonce

        Raises:
            ValidationError: If the key is not 32 bytes
            UnsupportedEnvironmentError: If AES-GCM is unavailable
        """
        _check_key(key, "encryption")
        data = plaintext.encode("utf-8") if isinstance(plaintext, str) else bytes(plaintext)
        nonce = generate_nonce(NONCE_SIZE)

        with secret_buffer(key) as working_key:
            cipher = self._cipher(bytes(working_key))
            ciphertext = cipher.encrypt(nonce, data, None)

        logger.debug(
            "Encrypted payload: plaintext_len=%d ciphertext_len=%d",
            len(data),
            len(ciphertext),
        )
        return EncryptedPayload(ciphertext=ciphertext, nonce=nonce)

    def decrypt(
        self,
        ciphertext: bytes,
        nonce: bytes,
        key: KeyBytes,
        output: str = OUTPUT_BYTES,
    ) -> Union[bytes, str, Any]:
        """
        Decrypt and authenticate a payload.

        Key and nonce lengths are checked before any decryption is attempted.

        Args:
            ciphertext: Ciphertext with 16-byte tag appended
            nonce: 12-byte nonce used for encryption
            key: 32-byte session key
            output: "bytes", "string" (UTF-8) or "json"

        Returns:
            Plaintext in the requested form

        Raises:
            ValidationError: If key or nonce length is wrong, or the
                plaintext cannot be rendered as `output`
            AuthenticationFailure: If the tag does not verify
        """
        if output not in _OUTPUT_KINDS:
            logger.warning("Rejected decryption output kind: %r", output)
            raise ValidationError(f"Unknown output kind: {output!r}")

        _check_key(key, "decryption")

        nonce_length = None if nonce is None else len(nonce)
        if nonce_length != NONCE_SIZE:
            logger.warning(
                "Rejected decryption nonce: nonce_len=%s ciphertext_len=%d",
                nonce_length,
                len(ciphertext),
            )
            raise ValidationError(
                f"Invalid nonce: length={nonce_length} (expected {NONCE_SIZE} bytes for AES-GCM)"
            )

        if len(ciphertext) < TAG_SIZE:
            logger.warning("Rejected truncated ciphertext: ciphertext_len=%d", len(ciphertext))
            raise AuthenticationFailure(
                f"Ciphertext too short: {len(ciphertext)} bytes (minimum {TAG_SIZE})"
            )

        with secret_buffer(key) as working_key:
            cipher = self._cipher(bytes(working_key))
            try:
                plaintext = cipher.decrypt(bytes(nonce), bytes(ciphertext), None)
            except InvalidTag as e:
                logger.warning(
                    "Decryption failed, authentication tag mismatch: ciphertext_len=%d nonce_len=%d",
                    len(ciphertext),
                    len(nonce),
                )
                raise AuthenticationFailure("Authentication tag mismatch or corrupted data") from e

        return _render(plaintext, output)


def _render(plaintext: bytes, output: str) -> Union[bytes, str, Any]:
    if output == OUTPUT_BYTES:
        return plaintext
    try:
        text = plaintext.decode("utf-8")
    except UnicodeDecodeError as e:
        raise ValidationError("Decrypted payload is not valid UTF-8") from e
    if output == OUTPUT_STRING:
        return text
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise ValidationError("Invalid JSON in decrypted message") from e


_default_engine = AeadEngine()


def encrypt(plaintext: Union[str, bytes], key: KeyBytes) -> EncryptedPayload:
    """Encrypt with the default AES-GCM engine."""
    return _default_engine.encrypt(plaintext, key)


def decrypt(
    ciphertext: bytes,
    nonce: bytes,
    key: KeyBytes,
    output: str = OUTPUT_BYTES,
) -> Union[bytes, str, Any]:
    """Decrypt with the default AES-GCM engine."""
    return _default_engine.decrypt(ciphertext, nonce, key, output)


def is_aes_gcm_supported() -> bool:
    """Check whether AES-GCM is available in this environment."""
    return _default_engine.is_supported()
