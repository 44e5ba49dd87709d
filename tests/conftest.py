"""Shared fixtures for echolog tests."""

from __future__ import annotations

from pathlib import Path
from typing import Callable

import pytest

from echolog.common.constants import FRAME_BYTES, OPUS_SILENCE_FRAME, SAMPLE_RATE
from echolog.common.errors import DecodeFailure, RenderFailure
from echolog.common.rtp import RtpHeader, build_rtp_packet, ms_to_hrtime
from echolog.storage.files import RecordingStorage
from echolog.storage.records import TrackMetadata

# What FakeDecoder produces for a regular frame
VOICE_PCM = b"\x01\x00" * (FRAME_BYTES // 2)


class FakeDecoder:
    """Stands in for the Opus decoder.

    Silence frames decode to zeros, ``b"bad"`` fails, anything else decodes
    to a constant non-zero frame.
    """

    def __init__(self) -> None:
        self.decoded: list[bytes] = []

    def decode(self, opus_data: bytes) -> bytes:
        self.decoded.append(opus_data)
        if opus_data == b"bad":
            raise DecodeFailure("corrupted frame")
        if opus_data == OPUS_SILENCE_FRAME:
            return bytes(FRAME_BYTES)
        return VOICE_PCM


class FakeClock:
    """Manually advanced nanosecond clock."""

    def __init__(self, start_ns: int = 1_000_000_000) -> None:
        self.now_ns = start_ns

    def __call__(self) -> int:
        return self.now_ns

    def advance_ms(self, ms: float) -> None:
        self.now_ns += int(ms * 1_000_000)


class RecordingRunner:
    """In-memory ffmpeg runner that records every invocation."""

    def __init__(self, fail: bool = False) -> None:
        self.calls: list[list[str]] = []
        self.fail = fail

    async def __call__(self, args: list[str]) -> None:
        self.calls.append(args)
        if self.fail:
            raise RenderFailure("ffmpeg exited with code 1", returncode=1, stderr="boom")
        # Leave an output file behind like ffmpeg would
        Path(args[-1]).write_bytes(b"")


def make_packet(
    sequence: int,
    timestamp: int = 0,
    ssrc: int = 1234,
    payload: bytes = b"opus",
) -> bytes:
    header = RtpHeader(
        version=2,
        padding=False,
        extension=False,
        csrc_count=0,
        marker=False,
        payload_type=120,
        sequence_number=sequence,
        timestamp=timestamp,
        ssrc=ssrc,
    )
    return build_rtp_packet(header, payload)


@pytest.fixture
def packet_factory() -> Callable[..., bytes]:
    """Builds minimal RTP packets."""
    return make_packet


@pytest.fixture
def fake_decoder() -> FakeDecoder:
    return FakeDecoder()


@pytest.fixture
def decoder_factory() -> type[FakeDecoder]:
    return FakeDecoder


@pytest.fixture
def voice_pcm() -> bytes:
    return VOICE_PCM


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def runner() -> RecordingRunner:
    return RecordingRunner()


@pytest.fixture
def failing_runner() -> RecordingRunner:
    return RecordingRunner(fail=True)


@pytest.fixture
def storage(tmp_path: Path) -> RecordingStorage:
    """Recording storage in a temporary directory."""
    return RecordingStorage(tmp_path / "recordings")


@pytest.fixture
def track_factory(storage: RecordingStorage) -> Callable[..., TrackMetadata]:
    """Writes a track's PCM file and sidecar, returning its metadata."""

    def _make(
        user_id: str,
        start_ms: float,
        session_id: str = "g1_1000",
        pcm: bytes = bytes(FRAME_BYTES * 10),
        end_ms: float | None = None,
        ssrc: int = 1,
    ) -> TrackMetadata:
        filename = storage.track_filename(session_id, user_id, int(start_ms))
        storage.path(filename).write_bytes(pcm)
        meta = TrackMetadata(
            user_id=user_id,
            ssrc=ssrc,
            start_time_rtp=0,
            start_time_hr=ms_to_hrtime(start_ms),
            opus_sample_rate=SAMPLE_RATE,
            pcm_sample_rate=SAMPLE_RATE,
            filename=filename,
            session_id=session_id,
            end_time_hr=ms_to_hrtime(end_ms) if end_ms is not None else None,
        )
        storage.write_track_metadata(meta)
        return meta

    return _make
