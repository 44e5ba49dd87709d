"""Tests for the per-participant recording worker."""

from __future__ import annotations

import asyncio
from typing import Any, Callable

import pytest

from echolog.common.constants import FRAME_BYTES
from echolog.common.rtp import ns_to_hrtime
from echolog.recorder.stream_handler import TrackState, UserStreamHandler
from echolog.storage.files import RecordingStorage

FRAME_NS = 20_000_000


class FakeCorrector:
    """Records monitor registrations instead of scheduling them."""

    def __init__(self) -> None:
        self.monitored: list[Any] = []
        self.cancelled = 0

    def monitor_drift(self, timeline: Any, callback: Callable[..., None]) -> Callable[[], None]:
        self.monitored.append((timeline, callback))

        def cancel() -> None:
            self.cancelled += 1

        return cancel


@pytest.fixture
def handler(storage: RecordingStorage, fake_decoder: Any, fake_clock: Any) -> UserStreamHandler:
    return UserStreamHandler("u1", "g1_1", storage, fake_decoder, clock_ns=fake_clock)


def _push_run(
    handler: UserStreamHandler,
    packet_factory: Callable[..., bytes],
    start_ns: int,
    sequences: list[int],
    payloads: dict[int, bytes] | None = None,
) -> None:
    payloads = payloads or {}
    for seq in sequences:
        handler.push(
            packet_factory(seq, timestamp=seq * 960, payload=payloads.get(seq, b"opus")),
            start_ns + seq * FRAME_NS,
        )


class TestIngest:
    """Tests for moving packets from the inbox into the buffer."""

    @pytest.mark.asyncio
    async def test_first_packet_captures_metadata(
        self,
        handler: UserStreamHandler,
        storage: RecordingStorage,
        packet_factory: Callable[..., bytes],
    ) -> None:
        """Test that the first valid packet fixes the track's origin."""
        assert handler.state is TrackState.CREATED
        handler.push(packet_factory(10, timestamp=48000, ssrc=777), 5_000_000_000)
        handler.ingest_pending()

        meta = handler.get_metadata()
        assert meta is not None
        assert meta.ssrc == 777
        assert meta.start_time_rtp == 48000
        assert meta.start_time_hr == (5, 0)
        assert meta.session_id == "g1_1"
        assert meta.filename == handler.filename
        assert handler.state is TrackState.METADATA_CAPTURED
        assert storage.track_metadata_path(meta).exists()
        assert handler.timeline is not None and len(handler.timeline) == 1

    @pytest.mark.asyncio
    async def test_malformed_packet_is_counted(self, handler: UserStreamHandler) -> None:
        handler.push(b"\x80\x00\x01")
        handler.ingest_pending()
        assert handler.malformed_packets == 1
        assert handler.get_metadata() is None
        assert handler.jitter_buffer.queue_length == 0

    @pytest.mark.asyncio
    async def test_full_inbox_drops_packets(
        self,
        storage: RecordingStorage,
        fake_decoder: Any,
        fake_clock: Any,
        packet_factory: Callable[..., bytes],
    ) -> None:
        """Test that push never blocks when the worker falls behind."""
        handler = UserStreamHandler(
            "u1", "g1_1", storage, fake_decoder, clock_ns=fake_clock, inbox_size=2
        )
        assert handler.push(packet_factory(1)) is True
        assert handler.push(packet_factory(2)) is True
        assert handler.push(packet_factory(3)) is False
        assert handler.dropped_packets == 1
        await handler.stop()


class TestWriting:
    """Tests for decoding and writing frames."""

    @pytest.mark.asyncio
    async def test_frames_written_in_order(
        self,
        handler: UserStreamHandler,
        storage: RecordingStorage,
        packet_factory: Callable[..., bytes],
        voice_pcm: bytes,
    ) -> None:
        start = 2_000_000_000
        _push_run(handler, packet_factory, start, [3, 1, 2, 5, 4])

        written = handler.process_tick(now_ms=(start + 10 * FRAME_NS) / 1e6)
        assert written == 5
        assert handler.state is TrackState.FLUSHING

        await handler.stop()
        data = storage.path(handler.filename).read_bytes()
        assert data == voice_pcm * 5

    @pytest.mark.asyncio
    async def test_gap_becomes_silence(
        self,
        handler: UserStreamHandler,
        storage: RecordingStorage,
        packet_factory: Callable[..., bytes],
        voice_pcm: bytes,
    ) -> None:
        """Missing packets 5 and 6 are written as silent frames."""
        _push_run(handler, packet_factory, 0, [1, 2, 3, 4, 7, 8, 9, 10])
        await handler.stop()

        data = storage.path(handler.filename).read_bytes()
        assert len(data) == 10 * FRAME_BYTES
        frames = [data[i : i + FRAME_BYTES] for i in range(0, len(data), FRAME_BYTES)]
        assert frames[4] == bytes(FRAME_BYTES)
        assert frames[5] == bytes(FRAME_BYTES)
        assert all(f == voice_pcm for i, f in enumerate(frames) if i not in (4, 5))
        assert handler.concealed_frames == 2

    @pytest.mark.asyncio
    async def test_decode_failure_writes_silence(
        self,
        handler: UserStreamHandler,
        storage: RecordingStorage,
        packet_factory: Callable[..., bytes],
        voice_pcm: bytes,
    ) -> None:
        """Test that a frame the decoder rejects keeps its slot as silence."""
        _push_run(handler, packet_factory, 0, [1, 2, 3], payloads={2: b"bad"})
        await handler.stop()

        data = storage.path(handler.filename).read_bytes()
        assert data == voice_pcm + bytes(FRAME_BYTES) + voice_pcm
        assert handler.decode_failures == 1


class TestStop:
    """Tests for the stop lifecycle."""

    @pytest.mark.asyncio
    async def test_stop_finalizes_metadata(
        self,
        handler: UserStreamHandler,
        storage: RecordingStorage,
        fake_clock: Any,
        packet_factory: Callable[..., bytes],
    ) -> None:
        _push_run(handler, packet_factory, fake_clock.now_ns, [1, 2])
        fake_clock.advance_ms(500)
        await handler.stop()

        meta = handler.get_metadata()
        assert meta is not None
        assert meta.end_time_hr == ns_to_hrtime(fake_clock.now_ns)
        on_disk = storage.read_track_metadata(storage.track_metadata_path(meta))
        assert on_disk == meta
        assert handler.state is TrackState.STOPPED

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(
        self, handler: UserStreamHandler, packet_factory: Callable[..., bytes]
    ) -> None:
        _push_run(handler, packet_factory, 0, [1, 2, 3])
        await handler.stop()
        written = handler.frames_written
        await handler.stop()

        assert handler.frames_written == written == 3
        assert handler.state is TrackState.STOPPED
        assert handler.push(packet_factory(4)) is False

    @pytest.mark.asyncio
    async def test_stop_without_audio_removes_empty_track(
        self, handler: UserStreamHandler, storage: RecordingStorage
    ) -> None:
        """A worker that never got a valid packet leaves nothing behind."""
        path = storage.path(handler.filename)
        assert path.exists()
        await handler.stop()
        assert not path.exists()
        assert handler.get_metadata() is None

    @pytest.mark.asyncio
    async def test_buffer_released_on_stop(
        self, handler: UserStreamHandler, packet_factory: Callable[..., bytes]
    ) -> None:
        _push_run(handler, packet_factory, 0, [1, 5])
        await handler.stop()
        assert handler.jitter_buffer.queue_length == 0
        assert handler.buffer_status()["is_active"] is False

    @pytest.mark.asyncio
    async def test_failed_close_still_reaches_stopped(
        self,
        handler: UserStreamHandler,
        packet_factory: Callable[..., bytes],
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """A sink that fails to close still leaves the worker fully stopped."""
        sink = handler._sink
        real_close = sink.close

        def failing_close() -> None:
            raise OSError("disk gone")

        monkeypatch.setattr(sink, "close", failing_close)
        _push_run(handler, packet_factory, 0, [1, 2, 3])

        with pytest.raises(OSError, match="disk gone"):
            await handler.stop()

        assert handler.state is TrackState.STOPPED
        assert handler.jitter_buffer.queue_length == 0
        # Already stopped: no second flush, no second close
        await handler.stop()
        assert handler.frames_written == 3
        real_close()


class TestRunLoop:
    """Tests for the periodic worker task."""

    @pytest.mark.asyncio
    async def test_ticks_release_frames(
        self,
        storage: RecordingStorage,
        fake_decoder: Any,
        packet_factory: Callable[..., bytes],
    ) -> None:
        handler = UserStreamHandler("u1", "g1_1", storage, fake_decoder)
        handler.start()
        for seq in range(3):
            handler.push(packet_factory(seq, timestamp=seq * 960))

        for _ in range(100):
            if handler.frames_written == 3:
                break
            await asyncio.sleep(0.02)

        assert handler.frames_written == 3
        await handler.stop()
        assert storage.path(handler.filename).stat().st_size == 3 * FRAME_BYTES

    @pytest.mark.asyncio
    async def test_drift_monitor_follows_track_lifetime(
        self,
        storage: RecordingStorage,
        fake_decoder: Any,
        fake_clock: Any,
        packet_factory: Callable[..., bytes],
    ) -> None:
        """The monitor starts with the first packet and is cancelled on stop."""
        corrector = FakeCorrector()
        handler = UserStreamHandler(
            "u1",
            "g1_1",
            storage,
            fake_decoder,
            drift_corrector=corrector,  # type: ignore[arg-type]
            clock_ns=fake_clock,
        )
        handler.push(packet_factory(1))
        handler.ingest_pending()
        assert len(corrector.monitored) == 1
        assert corrector.monitored[0][0] is handler.timeline

        await handler.stop()
        assert corrector.cancelled == 1
