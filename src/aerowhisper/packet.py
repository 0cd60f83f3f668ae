"""Data packet encoding and decoding for the AeroWhisper wire format."""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from .types import (
    ENCRYPTION_ALGORITHM,
    LEGACY_ENCRYPTION_ALGORITHM,
    PACKET_TYPE_DATA,
    FormatError,
)

logger = logging.getLogger(__name__)

KNOWN_ALGORITHMS = (ENCRYPTION_ALGORITHM, LEGACY_ENCRYPTION_ALGORITHM)


def _rejected(operation: str, message: str, **context: Any) -> FormatError:
    """Log a rejected packet and build the error to raise."""
    details = " ".join(f"{key}={value}" for key, value in context.items())
    logger.warning("Packet %s rejected: %s %s", operation, message, details)
    return FormatError(message)


class FormatField(str, Enum):
    """Field names a server may use for the encryption indicator."""

    ENCRYPTION = "encryption"
    ENCRYPTION_ALGORITHM = "encryption_algorithm"


@dataclass
class Packet:
    """
    Encrypted data packet.

    Wire format (JSON object):
        type        "Data"
        encrypted   ciphertext + tag as an array of ints
        nonce       12-byte nonce as an array of ints
        counter     per-session send counter
        <field>     "aes-gcm", under `encryption` or `encryption_algorithm`
        padding     reserved, null
    """
    ciphertext: bytes
    nonce: bytes
    counter: int
    field: FormatField = FormatField.ENCRYPTION_ALGORITHM
    algorithm: str = ENCRYPTION_ALGORITHM
    type: str = PACKET_TYPE_DATA
    padding: Optional[Any] = None

    def to_dict(self) -> dict:
        """Render the packet as its wire dictionary."""
        return {
            "type": self.type,
            "encrypted": list(self.ciphertext),
            "nonce": list(self.nonce),
            "counter": self.counter,
            self.field.value: self.algorithm,
            "padding": self.padding,
        }

    def to_json(self) -> str:
        """Serialize the packet for transmission."""
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_json(cls, data: str) -> dict:
        """Parse a received JSON packet into its wire dictionary."""
        try:
            packet = json.loads(data)
        except (ValueError, TypeError) as e:
            raise _rejected("parse", "Packet is not valid JSON", data_len=_length(data)) from e
        if not isinstance(packet, dict):
            raise _rejected("parse", "Packet must be a JSON object", data_len=_length(data))
        return packet


def _length(data: Any) -> Optional[int]:
    try:
        return len(data)
    except TypeError:
        return None


@dataclass
class DecodedPacket:
    """Fields recovered from a received packet."""
    ciphertext: bytes
    nonce: bytes
    counter: int
    field: Optional[FormatField]
    algorithm: str


def _byte_array(packet: dict, name: str) -> Optional[bytes]:
    value = packet.get(name)
    if not isinstance(value, list):
        return None
    if not all(isinstance(b, int) and not isinstance(b, bool) and 0 <= b <= 255 for b in value):
        raise _rejected("decode", f"Packet field {name!r} is not a byte array", array_len=len(value))
    return bytes(value)


class PacketCodec:
    """
    Encodes and decodes data packets.

    Decoding looks for the encryption indicator under every `FormatField`,
    trying the most recently confirmed field first.
    """

    def __init__(self, preferred: FormatField = FormatField.ENCRYPTION_ALGORITHM) -> None:
        self._preferred = preferred

    @property
    def preferred(self) -> FormatField:
        return self._preferred

    def confirm(self, field: FormatField) -> None:
        """Record `field` as the most recently confirmed working name."""
        field = FormatField(field)
        if field is not self._preferred:
            logger.info("Preferred packet field changed: %s -> %s", self._preferred.value, field.value)
        self._preferred = field

    def field_order(self) -> list:
        """Fields in the order decode checks them."""
        return [self._preferred] + [f for f in FormatField if f is not self._preferred]

    def encode(
        self,
        ciphertext: bytes,
        nonce: bytes,
        counter: int,
        field: Optional[FormatField] = None,
    ) -> Packet:
        """
        Build a packet around ciphertext.

        Args:
            ciphertext: Ciphertext with tag appended
            nonce: Nonce used for encryption
            counter: Send counter for replay protection
            field: Indicator field name; defaults to the preferred field

        Returns:
            Packet ready for serialization
        """
        if isinstance(counter, bool) or not isinstance(counter, int) or counter < 0:
            raise _rejected("encode", f"Counter must be a non-negative integer, got {counter!r}")

        return Packet(
            ciphertext=bytes(ciphertext),
            nonce=bytes(nonce),
            counter=counter,
            field=FormatField(field) if field is not None else self._preferred,
        )

    def decode(self, packet: Any) -> DecodedPacket:
        """
        Extract ciphertext, nonce and counter from a received packet.

        Accepts a `Packet`, a wire dictionary or a JSON string.

        Raises:
            FormatError: If required fields are missing or unrecognised
        """
        if isinstance(packet, Packet):
            packet = packet.to_dict()
        elif isinstance(packet, (str, bytes)):
            packet = Packet.from_json(packet)

        if not isinstance(packet, dict):
            raise _rejected("decode", f"Invalid data packet: {type(packet).__name__}")

        if packet.get("type") != PACKET_TYPE_DATA:
            raise _rejected("decode", f"Invalid packet type: {packet.get('type')!r}")

        ciphertext = _byte_array(packet, "encrypted")
        nonce = _byte_array(packet, "nonce")
        if ciphertext is None or nonce is None:
            raise _rejected(
                "decode",
                "Packet is missing the encrypted or nonce byte array",
                ciphertext_len=_length(ciphertext),
                nonce_len=_length(nonce),
            )

        counter = packet.get("counter")
        if isinstance(counter, bool) or not isinstance(counter, int) or counter < 0:
            raise _rejected(
                "decode",
                f"Invalid packet counter: {counter!r}",
                ciphertext_len=len(ciphertext),
                nonce_len=len(nonce),
            )

        field, algorithm = self._find_indicator(packet)

        logger.debug(
            "Decoded packet: field=%s ciphertext_len=%d nonce_len=%d counter=%d",
            field.value if field else None,
            len(ciphertext),
            len(nonce),
            counter,
        )
        return DecodedPacket(
            ciphertext=ciphertext,
            nonce=nonce,
            counter=counter,
            field=field,
            algorithm=algorithm,
        )

    def _find_indicator(self, packet: dict) -> tuple:
        for field in self.field_order():
            algorithm = packet.get(field.value)
            if algorithm is None:
                continue
            if algorithm not in KNOWN_ALGORITHMS:
                raise _rejected("decode", f"Unrecognised encryption algorithm: {algorithm!r}")
            return field, algorithm

        # Older servers omit the indicator entirely
        return None, ENCRYPTION_ALGORITHM


_default_codec = PacketCodec()


def default_codec() -> PacketCodec:
    """The process-wide codec shared by sessions and the negotiator."""
    return _default_codec


def encode_packet(
    ciphertext: bytes,
    nonce: bytes,
    counter: int,
    field: Optional[FormatField] = None,
) -> Packet:
    """Encode with the default codec."""
    return _default_codec.encode(ciphertext, nonce, counter, field)


def decode_packet(packet: Any) -> DecodedPacket:
    """Decode with the default codec."""
    return _default_codec.decode(packet)
