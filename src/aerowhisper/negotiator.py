"""
Runtime selection of the packet format field name.

Servers differ on whether the encryption indicator is called `encryption`
or `encryption_algorithm`. The negotiator runs a local round trip for each
candidate (encrypt, encode, serialize, parse, decode, decrypt, compare) and
recommends the first one that survives. No peer is contacted.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from .crypto import AeadEngine
from .nonce import random_bytes, secret_buffer
from .packet import FormatField, Packet, PacketCodec, default_codec
from .types import (
    SESSION_KEY_SIZE,
    AeroWhisperError,
    UnknownFormatError,
    UnsupportedEnvironmentError,
)

logger = logging.getLogger(__name__)

UNKNOWN = "unknown"


class NegotiationState(Enum):
    """Negotiator lifecycle."""

    IDLE = "idle"
    PROBING = "probing"
    RESOLVED = "resolved"
    UNRESOLVED = "unresolved"


@dataclass
class NegotiatorConfig:
    """Configuration for format negotiation.

    Attributes:
        candidates: Field names to try, in preference order.
        probe_timeout: Seconds allowed for one full probe run.
    """

    candidates: tuple = (FormatField.ENCRYPTION, FormatField.ENCRYPTION_ALGORITHM)
    probe_timeout: float = 5.0


@dataclass
class ProbeResult:
    """Outcome of one candidate's round trip."""
    field: FormatField
    success: bool
    error: Optional[str] = None


@dataclass
class ProbeReport:
    """Outcome of a probe run."""
    results: dict = field(default_factory=dict)
    recommended: Optional[FormatField] = None

    def succeeded(self, candidate: FormatField) -> bool:
        result = self.results.get(candidate)
        return bool(result and result.success)

    @property
    def recommended_name(self) -> str:
        return self.recommended.value if self.recommended else UNKNOWN

    def to_dict(self) -> dict:
        summary = {candidate.value: result.success for candidate, result in self.results.items()}
        summary["recommended"] = self.recommended_name
        return summary


class FormatNegotiator:
    """
    Probes candidate packet formats and recommends one.

    State machine: IDLE -> PROBING -> RESOLVED | UNRESOLVED. A probe
    requested while one is running joins the running probe rather than
    starting another.

    Example usage:
        ```python
        negotiator = FormatNegotiator()
        report = await negotiator.probe_formats()
        field = negotiator.recommend()  # raises UnknownFormatError if unresolved
        ```
    """

    def __init__(
        self,
        engine: Optional[AeadEngine] = None,
        codec: Optional[PacketCodec] = None,
        config: Optional[NegotiatorConfig] = None,
    ) -> None:
        self._engine = engine or AeadEngine()
        self._codec = codec or default_codec()
        self.config = config or NegotiatorConfig()
        self.state = NegotiationState.IDLE
        self.report: Optional[ProbeReport] = None
        self._inflight: Optional[asyncio.Task] = None

    async def probe_formats(self) -> ProbeReport:
        """
        Run (or join) a probe of every candidate field name.

        Returns:
            ProbeReport with per-field success and the recommendation
        """
        if self._inflight is not None and not self._inflight.done():
            logger.debug("Probe already running, joining it")
            return await asyncio.shield(self._inflight)

        self.state = NegotiationState.PROBING
        self._inflight = asyncio.ensure_future(self._run())
        return await asyncio.shield(self._inflight)

    async def _run(self) -> ProbeReport:
        try:
            report = await asyncio.wait_for(self._probe_all(), timeout=self.config.probe_timeout)
        except asyncio.TimeoutError:
            logger.error("Format probe timed out after %.1fs", self.config.probe_timeout)
            report = ProbeReport(results={
                candidate: ProbeResult(candidate, False, "timeout")
                for candidate in self.config.candidates
            })
        except Exception:
            self.state = NegotiationState.UNRESOLVED
            raise

        self.report = report
        if report.recommended is not None:
            self.state = NegotiationState.RESOLVED
            self._codec.confirm(report.recommended)
            logger.info("Packet format resolved: field=%s", report.recommended.value)
        else:
            self.state = NegotiationState.UNRESOLVED
            logger.error(
                "No packet format round-trips: %s. %s",
                report.to_dict(),
                UnknownFormatError.remediation,
            )
        return report

    async def _probe_all(self) -> ProbeReport:
        report = ProbeReport()

        if not self._engine.is_supported():
            error = UnsupportedEnvironmentError("AES-GCM unavailable")
            logger.error("%s: %s", error.code, UnsupportedEnvironmentError.remediation)
            for candidate in self.config.candidates:
                report.results[candidate] = ProbeResult(candidate, False, error.code)
            return report

        for candidate in self.config.candidates:
            result = await self.probe(candidate)
            report.results[candidate] = result
            if result.success and report.recommended is None:
                report.recommended = candidate
        return report

    async def probe(self, candidate: FormatField) -> ProbeResult:
        """
        Round-trip a synthetic payload through one field name.

        A fresh codec preferring the *other* field decodes the packet, so a
        success proves the decoder finds `candidate` without being told.
        """
        candidate = FormatField(candidate)
        message = json.dumps({
            "type": "test",
            "content": "AES-GCM encryption test",
            "timestamp": int(time.time() * 1000),
        }).encode("utf-8")
        others = [f for f in FormatField if f is not candidate]
        decoder = PacketCodec(preferred=others[0] if others else candidate)

        with secret_buffer(random_bytes(SESSION_KEY_SIZE)) as key:
            try:
                payload = self._engine.encrypt(message, key)
                packet = self._codec.encode(payload.ciphertext, payload.nonce, 1, candidate)
                received = Packet.from_json(packet.to_json())
                decoded = decoder.decode(received)
                if decoded.field is not candidate:
                    return ProbeResult(candidate, False, f"decoded as {decoded.field}")
                plaintext = self._engine.decrypt(decoded.ciphertext, decoded.nonce, key)
            except AeroWhisperError as e:
                logger.warning("Format probe failed: field=%s error=%s", candidate.value, e.code)
                return ProbeResult(candidate, False, e.code)

        success = plaintext == message
        logger.debug(
            "Format probe: field=%s success=%s message_len=%d",
            candidate.value,
            success,
            len(message),
        )
        return ProbeResult(candidate, success, None if success else "mismatch")

    def recommend(self) -> FormatField:
        """
        Return the resolved field name.

        Raises:
            UnknownFormatError: If no probe has resolved a field
        """
        if self.state is NegotiationState.RESOLVED and self.report and self.report.recommended:
            return self.report.recommended
        raise UnknownFormatError(UnknownFormatError.remediation)
