"""Per-session key ownership and replay counters."""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from .crypto import OUTPUT_JSON, AeadEngine
from .kdf import derive_session_key
from .nonce import wipe
from .packet import FormatField, Packet, PacketCodec, default_codec
from .types import SESSION_KEY_SIZE, ReplayError, ValidationError

logger = logging.getLogger(__name__)


class SessionKey:
    """
    A 32-byte symmetric key owned by one session.

    The key lives in a mutable buffer that is wiped by `wipe()` or on
    leaving a `with` block. A wiped key can no longer be used.
    """

    def __init__(self, key: Union[bytes, bytearray]) -> None:
        if len(key) != SESSION_KEY_SIZE:
            raise ValidationError(
                f"Session key must be {SESSION_KEY_SIZE} bytes, got {len(key)}"
            )
        self._key = bytearray(key)
        self._wiped = False

    @classmethod
    def derive(
        cls,
        shared_secret: bytes,
        salt: bytes = b"",
        allow_degraded: bool = False,
    ) -> "SessionKey":
        """Derive a session key from a shared secret."""
        derived = derive_session_key(shared_secret, salt, allow_degraded=allow_degraded)
        try:
            return cls(derived.key)
        finally:
            wipe(derived.key)

    @property
    def wiped(self) -> bool:
        return self._wiped

    def material(self) -> bytearray:
        """The live key buffer. Callers must not keep references."""
        if self._wiped:
            raise ValidationError("Session key has been wiped")
        return self._key

    def wipe(self) -> None:
        wipe(self._key)
        self._wiped = True

    def __enter__(self) -> "SessionKey":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.wipe()

    def __repr__(self) -> str:
        return f"SessionKey(wiped={self._wiped})"


@dataclass
class CounterState:
    """Tracks send/receive counters for replay protection.

    Attributes:
        send_counter: The next counter to use when sending.
        peer_last_counter: Highest counter accepted from each peer.
    """

    send_counter: int = 1
    peer_last_counter: dict = field(default_factory=dict)

    def next_send(self) -> int:
        """Return the counter for the next outgoing packet and advance."""
        counter = self.send_counter
        self.send_counter += 1
        return counter

    def check(self, peer: str, counter: int) -> None:
        """
        Reject counters not strictly above the highest seen from `peer`.

        Raises:
            ReplayError: If the counter was already used
        """
        last = self.peer_last_counter.get(peer, -1)
        if counter <= last:
            raise ReplayError(peer, counter, last)

    def record(self, peer: str, counter: int) -> None:
        self.peer_last_counter[peer] = max(self.peer_last_counter.get(peer, -1), counter)


class Session:
    """
    Encrypts outgoing and decrypts incoming data packets for one session.

    Example usage:
        ```python
        with Session(SessionKey.derive(shared_secret, salt)) as session:
            packet = session.seal({"type": "message", "content": "hi"})
            transport.send(packet.to_json())
        ```
    """

    def __init__(
        self,
        key: SessionKey,
        codec: Optional[PacketCodec] = None,
        engine: Optional[AeadEngine] = None,
        field: Optional[FormatField] = None,
    ) -> None:
        self._key = key
        self._codec = codec or default_codec()
        self._engine = engine or AeadEngine()
        self._field = field
        self.counters = CounterState()

    def seal(self, data: Any) -> Packet:
        """
        JSON-encode, encrypt and wrap `data` in a packet.

        Returns:
            Packet carrying the next send counter
        """
        payload = self._engine.encrypt(json.dumps(data), self._key.material())
        counter = self.counters.next_send()
        return self._codec.encode(payload.ciphertext, payload.nonce, counter, self._field)

    def open(self, packet: Any, peer: str = "server") -> Any:
        """
        Decode, replay-check and decrypt a received packet.

        The counter is recorded only after the payload authenticates, so a
        forged packet cannot advance the replay window.

        Returns:
            The decrypted JSON value

        Raises:
            FormatError: If the packet is malformed
            ReplayError: If the counter was already seen from `peer`
            AuthenticationFailure: If the payload does not authenticate
        """
        decoded = self._codec.decode(packet)
        self.counters.check(peer, decoded.counter)
        data = self._engine.decrypt(
            decoded.ciphertext, decoded.nonce, self._key.material(), OUTPUT_JSON
        )
        self.counters.record(peer, decoded.counter)
        if decoded.field is not None:
            self._codec.confirm(decoded.field)
        return data

    def close(self) -> None:
        """Wipe the session key."""
        self._key.wipe()
        logger.debug("Session closed, key wiped")

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()
