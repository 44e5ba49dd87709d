"""Arrival-time vs media-timestamp observations for one stream."""

from __future__ import annotations

from dataclasses import dataclass, field

_TS_MOD = 0x100000000
_TS_HALF = 0x80000000


@dataclass
class UserTimeline:
    user_id: str
    ssrc: int
    # (arrival ms, unwrapped media timestamp), in arrival order
    samples: list[tuple[float, int]] = field(default_factory=list)

    def add_sample(self, arrival_ms: float, timestamp: int) -> None:
        """Record one packet; the 32-bit media timestamp is unwrapped."""
        if self.samples:
            last = self.samples[-1][1]
            delta = ((timestamp - last + _TS_HALF) % _TS_MOD) - _TS_HALF
            timestamp = last + delta
        self.samples.append((arrival_ms, timestamp))

    def __len__(self) -> int:
        return len(self.samples)

    @property
    def arrival_times(self) -> list[float]:
        return [s[0] for s in self.samples]

    @property
    def timestamps(self) -> list[int]:
        return [s[1] for s in self.samples]
