"""Per-participant recording worker.

The packet source pushes raw RTP datagrams into a bounded inbox; the worker
task owns the other end. Every frame tick it ingests the inbox into the
jitter buffer, flushes due frames, decodes them and appends PCM to the
track file. Lifecycle: CREATED -> METADATA_CAPTURED -> FLUSHING -> STOPPED.
"""

from __future__ import annotations

import asyncio
import dataclasses
import enum
import logging
import time
from typing import TYPE_CHECKING, Any, Callable

from ..audio.pcm import fit_frame, silence_frame
from ..common.constants import FRAME_DURATION_MS, INBOX_MAX_PACKETS, SAMPLE_RATE
from ..common.errors import DecodeFailure, MalformedPacket
from ..common.rtp import RtpHeader, extract_payload, ns_to_hrtime, parse_rtp_header
from ..storage.records import TrackMetadata
from .jitter_buffer import JitterBuffer, JitterBufferPacket
from .timeline import UserTimeline

if TYPE_CHECKING:
    from ..audio.opus_codec import OpusDecoder
    from ..mixing.drift import DriftCorrector, DriftInfo
    from ..storage.files import RecordingStorage

logger = logging.getLogger(__name__)

# Log every Nth occurrence of a recurring per-packet problem
_LOG_EVERY = 50


class TrackState(enum.Enum):
    CREATED = "created"
    METADATA_CAPTURED = "metadata_captured"
    FLUSHING = "flushing"
    STOPPED = "stopped"


class UserStreamHandler:
    """Records one participant's stream to a PCM track with a JSON sidecar."""

    def __init__(
        self,
        user_id: str,
        session_id: str,
        storage: RecordingStorage,
        decoder: OpusDecoder,
        drift_corrector: DriftCorrector | None = None,
        on_drift: Callable[[str, DriftInfo], None] | None = None,
        clock_ns: Callable[[], int] = time.monotonic_ns,
        inbox_size: int = INBOX_MAX_PACKETS,
    ) -> None:
        self.user_id = user_id
        self.session_id = session_id
        self.state = TrackState.CREATED
        self._storage = storage
        self._decoder = decoder
        self._drift_corrector = drift_corrector
        self._on_drift = on_drift
        self._clock_ns = clock_ns
        self.jitter_buffer = JitterBuffer(clock=lambda: clock_ns() / 1e6)
        self._inbox: asyncio.Queue[tuple[bytes, int]] = asyncio.Queue(maxsize=inbox_size)

        self.filename = storage.track_filename(
            session_id, user_id, int(time.time() * 1000)
        )
        self._sink = storage.open_track(self.filename)
        self.metadata: TrackMetadata | None = None
        self.timeline: UserTimeline | None = None

        self._active = True
        self._task: asyncio.Task[None] | None = None
        self._cancel_monitor: Callable[[], None] | None = None

        # Stats
        self.dropped_packets = 0
        self.malformed_packets = 0
        self.decode_failures = 0
        self.concealed_frames = 0
        self.frames_written = 0

    @property
    def is_active(self) -> bool:
        return self._active

    def push(self, data: bytes, arrival_ns: int | None = None) -> bool:
        """Hand a raw packet to the worker. Never blocks; False if dropped."""
        if not self._active:
            return False
        if arrival_ns is None:
            arrival_ns = self._clock_ns()
        try:
            self._inbox.put_nowait((data, arrival_ns))
        except asyncio.QueueFull:
            self.dropped_packets += 1
            if self.dropped_packets % _LOG_EVERY == 1:
                logger.warning(
                    f"Inbox full for user {self.user_id}: "
                    f"dropped {self.dropped_packets} packets"
                )
            return False
        return True

    def ingest_pending(self) -> None:
        """Move every queued packet into the jitter buffer."""
        while True:
            try:
                data, arrival_ns = self._inbox.get_nowait()
            except asyncio.QueueEmpty:
                return
            self._handle_packet(data, arrival_ns)

    def _handle_packet(self, data: bytes, arrival_ns: int) -> None:
        try:
            header = parse_rtp_header(data)
            payload = extract_payload(data)
        except MalformedPacket as e:
            self.malformed_packets += 1
            logger.warning(f"Dropping malformed packet from user {self.user_id}: {e}")
            return

        if self.metadata is None:
            self._capture_metadata(header, arrival_ns)

        arrival_ms = arrival_ns / 1e6
        if self.timeline is not None:
            self.timeline.add_sample(arrival_ms, header.timestamp)
        self.jitter_buffer.buffer(
            JitterBufferPacket(
                data=payload,
                sequence=header.sequence_number,
                timestamp=header.timestamp,
                buffered_at=arrival_ms,
            )
        )

    def _capture_metadata(self, header: RtpHeader, arrival_ns: int) -> None:
        self.metadata = TrackMetadata(
            user_id=self.user_id,
            ssrc=header.ssrc,
            start_time_rtp=header.timestamp,
            start_time_hr=ns_to_hrtime(arrival_ns),
            opus_sample_rate=SAMPLE_RATE,
            pcm_sample_rate=SAMPLE_RATE,
            filename=self.filename,
            session_id=self.session_id,
        )
        self.timeline = UserTimeline(self.user_id, header.ssrc)
        if self.state is TrackState.CREATED:
            self.state = TrackState.METADATA_CAPTURED

        try:
            self._storage.write_track_metadata(self.metadata)
            logger.info(f"Captured metadata for user {self.user_id} (ssrc={header.ssrc})")
        except OSError as e:
            logger.error(f"Failed to write metadata for user {self.user_id}: {e}")

        if self._drift_corrector is not None and self._active:
            self._cancel_monitor = self._drift_corrector.monitor_drift(
                self.timeline, self._report_drift
            )

    def _report_drift(self, info: DriftInfo) -> None:
        logger.warning(
            f"Drift detected for user {self.user_id}: {info.drift_ms:.2f}ms/s "
            f"(confidence {info.confidence:.2f}, {info.samples_analyzed} samples)"
        )
        if self._on_drift is not None:
            self._on_drift(self.user_id, info)

    def process_tick(self, now_ms: float | None = None) -> int:
        """One worker cycle: ingest, flush, decode, write. Returns frames written."""
        self.ingest_pending()
        return self._write_frames(self.jitter_buffer.flush(now_ms))

    def _write_frames(self, packets: list[JitterBufferPacket]) -> int:
        if packets and self.state is TrackState.METADATA_CAPTURED:
            self.state = TrackState.FLUSHING

        for packet in packets:
            if packet.concealed:
                self.concealed_frames += 1
            try:
                pcm = fit_frame(self._decoder.decode(packet.data))
            except DecodeFailure as e:
                self.decode_failures += 1
                if self.decode_failures % _LOG_EVERY == 1:
                    logger.warning(
                        f"Decode error for user {self.user_id} "
                        f"(seq={packet.sequence}), writing silence: {e}"
                    )
                pcm = silence_frame()
            self._sink.write(pcm)
            self.frames_written += 1
        return len(packets)

    def start(self) -> None:
        """Start the periodic flush task on the running loop."""
        if self._task is None and self._active:
            self._task = asyncio.create_task(
                self._run(), name=f"track-{self.session_id}-{self.user_id}"
            )
            logger.info(f"Started recording user {self.user_id}")

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        frame_duration = FRAME_DURATION_MS / 1000
        # Absolute timing keeps the tick cadence from drifting
        next_tick = loop.time()
        while self._active:
            next_tick += frame_duration
            sleep_time = next_tick - loop.time()
            if sleep_time < -0.1:
                # Way behind - reset timing to catch up
                next_tick = loop.time()
            await asyncio.sleep(max(0.0, sleep_time))
            try:
                self.process_tick()
            except Exception as e:
                logger.error(
                    f"Tick failed for user {self.user_id}: {type(e).__name__}: {e}"
                )

    async def stop(self) -> None:
        """Final flush, close the track and release the buffer. Idempotent."""
        if not self._active:
            return
        self._active = False

        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        try:
            self.ingest_pending()
            self._write_frames(self.jitter_buffer.flush(force=True))

            if self._cancel_monitor is not None:
                self._cancel_monitor()
                self._cancel_monitor = None

            await asyncio.to_thread(self._sink.close)

            if self.metadata is not None:
                self.metadata = dataclasses.replace(
                    self.metadata, end_time_hr=ns_to_hrtime(self._clock_ns())
                )
                try:
                    self._storage.write_track_metadata(self.metadata)
                except OSError as e:
                    logger.error(
                        f"Failed to finalize metadata for user {self.user_id}: {e}"
                    )
            else:
                # Never received a valid packet: nothing worth keeping
                self._storage.path(self.filename).unlink(missing_ok=True)
        finally:
            self.jitter_buffer.clear()
            self.state = TrackState.STOPPED
        logger.info(
            f"Stopped recording user {self.user_id}: {self.frames_written} frames, "
            f"{self.concealed_frames} concealed, {self.decode_failures} decode errors"
        )

    def get_metadata(self) -> TrackMetadata | None:
        return self.metadata

    def buffer_status(self) -> dict[str, Any]:
        return {
            "queue_length": self.jitter_buffer.queue_length,
            "is_active": self._active,
            "state": self.state.value,
            "dropped_packets": self.dropped_packets,
            "malformed_packets": self.malformed_packets,
            "decode_failures": self.decode_failures,
            "concealed_frames": self.concealed_frames,
        }
