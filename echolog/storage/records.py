"""Persisted track and session records.

Track sidecar (one per PCM file)::

    {
      "session_id": "1234_1700000000000",
      "user_id": "42",
      "ssrc": 305419896,
      "start_time_rtp": 1234567,
      "start_time_hr": [8123, 456789000],
      "end_time_hr": [8183, 456789000],
      "opus_sample_rate": 48000,
      "pcm_sample_rate": 48000,
      "filename": "1234_1700000000000_42_1700000000123.pcm"
    }

Session record: ``session_<session_id>.json`` with channel details and the
participants present when recording started.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from ..common.rtp import hrtime_to_ms


@dataclass(frozen=True)
class TrackMetadata:
    """Per-track origin on the session's shared timeline."""

    user_id: str
    ssrc: int
    start_time_rtp: int
    start_time_hr: tuple[int, int]
    opus_sample_rate: int
    pcm_sample_rate: int
    filename: str
    session_id: str = ""
    end_time_hr: tuple[int, int] | None = None

    @property
    def start_time_ms(self) -> float:
        return hrtime_to_ms(self.start_time_hr)

    @property
    def end_time_ms(self) -> float | None:
        if self.end_time_hr is None:
            return None
        return hrtime_to_ms(self.end_time_hr)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "ssrc": self.ssrc,
            "start_time_rtp": self.start_time_rtp,
            "start_time_hr": list(self.start_time_hr),
            "end_time_hr": list(self.end_time_hr) if self.end_time_hr else None,
            "opus_sample_rate": self.opus_sample_rate,
            "pcm_sample_rate": self.pcm_sample_rate,
            "filename": self.filename,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TrackMetadata:
        """Build from a decoded sidecar. Raises KeyError/ValueError/TypeError."""
        start = data["start_time_hr"]
        end = data.get("end_time_hr")
        return cls(
            user_id=str(data["user_id"]),
            ssrc=int(data["ssrc"]),
            start_time_rtp=int(data["start_time_rtp"]),
            start_time_hr=(int(start[0]), int(start[1])),
            opus_sample_rate=int(data["opus_sample_rate"]),
            pcm_sample_rate=int(data["pcm_sample_rate"]),
            filename=str(data["filename"]),
            session_id=str(data.get("session_id", "")),
            end_time_hr=(int(end[0]), int(end[1])) if end else None,
        )


@dataclass(frozen=True)
class Participant:
    id: str
    username: str
    display_name: str


@dataclass
class SessionMetadata:
    session_id: str
    guild_id: str
    channel_id: str
    channel_name: str
    start_time: str  # ISO-8601
    participants: list[Participant] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "guild_id": self.guild_id,
            "channel_id": self.channel_id,
            "channel_name": self.channel_name,
            "start_time": self.start_time,
            "participants": [
                {"id": p.id, "username": p.username, "display_name": p.display_name}
                for p in self.participants
            ],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionMetadata:
        return cls(
            session_id=str(data["session_id"]),
            guild_id=str(data["guild_id"]),
            channel_id=str(data["channel_id"]),
            channel_name=str(data["channel_name"]),
            start_time=str(data["start_time"]),
            participants=[
                Participant(str(p["id"]), str(p["username"]), str(p["display_name"]))
                for p in data.get("participants", [])
            ],
        )
