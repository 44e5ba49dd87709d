"""Per-participant jitter buffer with loss concealment.

Packets are kept ordered by sequence number. Each flush releases one frame
slot per elapsed frame duration, starting at the expected sequence number;
a slot whose packet never arrived is filled with an encoded silence frame,
so a gap in the network stream becomes silence rather than a stall.
"""

from __future__ import annotations

import bisect
import logging
import time
from dataclasses import dataclass
from typing import Callable

from ..common.constants import (
    FRAME_DURATION_MS,
    JITTER_MAX_JITTER_MS,
    JITTER_TARGET_DELAY_MS,
    OPUS_SILENCE_FRAME,
    RTP_CLOCK_MS,
)

logger = logging.getLogger(__name__)

_SEQ_MOD = 0x10000
_SEQ_HALF = 0x8000
_TS_MOD = 0x100000000
_TS_HALF = 0x80000000


@dataclass
class JitterBufferPacket:
    data: bytes
    sequence: int
    timestamp: int
    buffered_at: float  # ms, same clock as the buffer
    concealed: bool = False


def monotonic_ms() -> float:
    return time.monotonic_ns() / 1e6


class JitterBuffer:
    """Reorders one stream's packets and conceals losses with silence."""

    def __init__(
        self,
        target_delay_ms: float = JITTER_TARGET_DELAY_MS,
        max_jitter_ms: float = JITTER_MAX_JITTER_MS,
        frame_duration_ms: float = FRAME_DURATION_MS,
        clock: Callable[[], float] = monotonic_ms,
    ) -> None:
        self.target_delay_ms = target_delay_ms
        self.max_jitter_ms = max_jitter_ms
        self.frame_duration_ms = frame_duration_ms
        self._clock = clock
        # Parallel lists sorted by unwrapped sequence number
        self._keys: list[int] = []
        self._packets: list[JitterBufferPacket] = []
        self._expected = 0
        self._last_flush_time = 0.0
        self._initialized = False
        self._emitted = False
        # RFC 3550 interarrival jitter estimate
        self._jitter_ms = 0.0
        self._last_arrival: float | None = None
        self._last_timestamp = 0
        self._jitter_warned = False

    @property
    def queue_length(self) -> int:
        return len(self._packets)

    @property
    def expected_sequence(self) -> int:
        return self._expected % _SEQ_MOD

    @property
    def jitter_ms(self) -> float:
        return self._jitter_ms

    def _unwrap(self, sequence: int) -> int:
        """Place a 16-bit sequence number on the expected counter's scale."""
        delta = ((sequence - self._expected + _SEQ_HALF) % _SEQ_MOD) - _SEQ_HALF
        return self._expected + delta

    def buffer(self, packet: JitterBufferPacket) -> bool:
        """Insert a packet in sequence order. Returns False if it was dropped."""
        if not self._initialized:
            self._expected = packet.sequence
            self._initialized = True

        key = self._unwrap(packet.sequence)
        if key < self._expected:
            if self._emitted:
                logger.debug(
                    f"Dropping late packet seq={packet.sequence} "
                    f"(expected {self.expected_sequence})"
                )
                return False
            # Nothing released yet: an earlier packet arrived second
            self._expected = key

        index = bisect.bisect_left(self._keys, key)
        if index < len(self._keys) and self._keys[index] == key:
            logger.debug(f"Dropping duplicate packet seq={packet.sequence}")
            return False

        self._keys.insert(index, key)
        self._packets.insert(index, packet)
        self._update_jitter(packet)
        return True

    def _update_jitter(self, packet: JitterBufferPacket) -> None:
        if self._last_arrival is not None:
            ts_delta = (
                (packet.timestamp - self._last_timestamp + _TS_HALF) % _TS_MOD
            ) - _TS_HALF
            arrival_delta = packet.buffered_at - self._last_arrival
            d = abs(arrival_delta - ts_delta / RTP_CLOCK_MS)
            self._jitter_ms += (d - self._jitter_ms) / 16.0
        self._last_arrival = packet.buffered_at
        self._last_timestamp = packet.timestamp

        if self._jitter_ms > self.max_jitter_ms and not self._jitter_warned:
            logger.warning(
                f"Interarrival jitter {self._jitter_ms:.1f}ms exceeds "
                f"{self.max_jitter_ms}ms tolerance"
            )
            self._jitter_warned = True
        elif self._jitter_ms <= self.max_jitter_ms:
            self._jitter_warned = False

    def should_flush(self, now: float | None = None) -> bool:
        """True once the oldest packet has waited the target delay, or a frame
        duration has passed since the last flush."""
        if not self._packets:
            return False
        if now is None:
            now = self._clock()
        buffer_delay = now - self._packets[0].buffered_at
        return (
            buffer_delay >= self.target_delay_ms
            or now - self._last_flush_time >= self.frame_duration_ms
        )

    def flush(
        self, now: float | None = None, force: bool = False
    ) -> list[JitterBufferPacket]:
        """Release due frames in sequence order, concealing missing ones.

        With force=True every buffered packet is released regardless of
        timing; used for the final pass when a stream stops.
        """
        if now is None:
            now = self._clock()
        if not self._packets:
            return []
        if not force and not self.should_flush(now):
            return []

        self._last_flush_time = now
        if force:
            slots = self._keys[-1] - self._expected + 1
        else:
            elapsed = now - self._packets[0].buffered_at
            slots = max(1, int(elapsed // self.frame_duration_ms))

        flushed: list[JitterBufferPacket] = []
        processed = 0
        while processed < slots and self._packets:
            sequence = self._expected + processed
            # Every buffered key is >= the expected counter
            if self._keys[0] == sequence:
                self._keys.pop(0)
                flushed.append(self._packets.pop(0))
            else:
                flushed.append(self.create_silence_packet(sequence % _SEQ_MOD, now))
            processed += 1

        self._expected += processed
        if flushed:
            self._emitted = True
        return flushed

    def create_silence_packet(
        self, sequence: int, now: float | None = None
    ) -> JitterBufferPacket:
        """Placeholder for a frame that never arrived; timestamp is assigned downstream."""
        return JitterBufferPacket(
            data=OPUS_SILENCE_FRAME,
            sequence=sequence,
            timestamp=0,
            buffered_at=self._clock() if now is None else now,
            concealed=True,
        )

    def clear(self) -> None:
        """Drop all buffered state."""
        self._keys.clear()
        self._packets.clear()
        self._expected = 0
        self._last_flush_time = 0.0
        self._initialized = False
        self._emitted = False
        self._jitter_ms = 0.0
        self._last_arrival = None
        self._last_timestamp = 0
        self._jitter_warned = False
