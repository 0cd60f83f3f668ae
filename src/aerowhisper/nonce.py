"""Secure randomness, nonce generation and buffer wiping."""

import os
from contextlib import contextmanager
from typing import Iterator, Union

from .types import NONCE_SIZE, ValidationError


def random_bytes(length: int) -> bytes:
    """Return `length` bytes from the operating system CSPRNG."""
    if length < 0:
        raise ValidationError(f"Random length must be non-negative, got {length}")
    return os.urandom(length)


def generate_nonce(length: int = NONCE_SIZE) -> bytes:
    """
    Generate a fresh random nonce.

    Nonces are independent random values rather than counter-derived. The
    per-packet replay counter is carried separately.

    Args:
        length: Nonce length in bytes (12 for AES-GCM)

    Returns:
        Random nonce bytes
    """
    return random_bytes(length)


def wipe(buffer: Union[bytearray, memoryview]) -> None:
    """
    Overwrite a mutable buffer with random bytes, then zero it.

    Immutable `bytes` cannot be wiped in place and are ignored.
    """
    if isinstance(buffer, memoryview):
        if buffer.readonly:
            return
        buffer = buffer.cast("B")
    elif not isinstance(buffer, bytearray):
        return
    length = len(buffer)
    if length == 0:
        return
    buffer[:] = os.urandom(length)
    buffer[:] = bytes(length)


@contextmanager
def secret_buffer(data: Union[bytes, bytearray]) -> Iterator[bytearray]:
    """
    Yield a mutable working copy of secret bytes, wiped on exit.

    Example usage:
        ```python
        with secret_buffer(key) as working_key:
            cipher = AESGCM(bytes(working_key))
        ```
    """
    working = bytearray(data)
    try:
        yield working
    finally:
        wipe(working)
