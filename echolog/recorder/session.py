"""Recording session coordinator and the session registry.

A session owns the set of per-participant workers. Workers are created when
a participant's first packet arrives and removed when their stream ends;
only this membership map is shared, never a worker's buffers.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable

from ..common.errors import SessionError
from ..storage.records import Participant, SessionMetadata, TrackMetadata
from .stream_handler import UserStreamHandler

if TYPE_CHECKING:
    from ..audio.opus_codec import OpusDecoder
    from ..mixing.drift import DriftCorrector
    from ..storage.files import RecordingStorage
    from .timeline import UserTimeline

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChannelInfo:
    guild_id: str
    channel_id: str
    channel_name: str


def new_session_id(guild_id: str) -> str:
    return f"{guild_id}_{int(time.time() * 1000)}"


def default_decoder() -> OpusDecoder:
    # libopus is loaded on first use, not at import
    from ..audio.opus_codec import OpusDecoder

    return OpusDecoder()


class RecordingSession:
    """Coordinates the track workers of one voice channel recording."""

    def __init__(
        self,
        channel: ChannelInfo,
        storage: RecordingStorage,
        decoder_factory: Callable[[], OpusDecoder] | None = None,
        participants: list[Participant] | None = None,
        drift_corrector: DriftCorrector | None = None,
        session_id: str | None = None,
    ) -> None:
        self.channel = channel
        self.session_id = session_id or new_session_id(channel.guild_id)
        self.participants = list(participants or [])
        self.start_time = datetime.now(timezone.utc)
        self.is_recording = False
        self._storage = storage
        self._decoder_factory = decoder_factory or default_decoder
        self._drift_corrector = drift_corrector
        self._started_at = time.monotonic()
        # user_id -> active worker
        self._streams: dict[str, UserStreamHandler] = {}
        # Workers whose streams have ended, kept for their metadata
        self._finished: list[UserStreamHandler] = []
        # track filename -> stop in progress for a stream that is ending
        self._ending: dict[str, asyncio.Task[None]] = {}
        self._stopped = False
        logger.info(
            f"Created recording session {self.session_id} "
            f"for channel {channel.channel_name}"
        )

    def start(self) -> None:
        if self._stopped:
            raise SessionError(f"Session {self.session_id} has already been stopped")
        if self.is_recording:
            logger.warning(f"Recording session {self.session_id} is already active")
            return

        self.is_recording = True
        logger.info(f"Started recording session {self.session_id}")
        self._write_session_metadata()

    def _write_session_metadata(self) -> None:
        meta = SessionMetadata(
            session_id=self.session_id,
            guild_id=self.channel.guild_id,
            channel_id=self.channel.channel_id,
            channel_name=self.channel.channel_name,
            start_time=self.start_time.isoformat(),
            participants=self.participants,
        )
        try:
            path = self._storage.write_session_metadata(meta)
            logger.info(f"Created session metadata: {path}")
        except OSError as e:
            logger.error(f"Failed to create session metadata: {e}")

    def handle_packet(
        self, user_id: str, data: bytes, arrival_ns: int | None = None
    ) -> bool:
        """Route a packet to the participant's worker, creating it on first speech."""
        if not self.is_recording:
            return False
        handler = self._streams.get(user_id)
        if handler is None:
            handler = self._start_user(user_id)
        return handler.push(data, arrival_ns)

    def _start_user(self, user_id: str) -> UserStreamHandler:
        handler = UserStreamHandler(
            user_id,
            self.session_id,
            self._storage,
            self._decoder_factory(),
            drift_corrector=self._drift_corrector,
        )
        self._streams[user_id] = handler
        handler.start()
        logger.info(
            f"Started recording user: {self._display_name(user_id)} ({user_id})"
        )
        return handler

    async def end_stream(self, user_id: str) -> None:
        """The participant's stream ended: stop and release its worker."""
        handler = self._streams.pop(user_id, None)
        if handler is None:
            return
        logger.info(f"Stream ended for user {self._display_name(user_id)} ({user_id})")
        task = asyncio.create_task(self._finish(handler))
        self._ending[handler.filename] = task
        # The worker keeps stopping even if the caller is cancelled
        await asyncio.shield(task)

    async def _finish(self, handler: UserStreamHandler) -> None:
        try:
            await handler.stop()
        finally:
            self._finished.append(handler)
            self._ending.pop(handler.filename, None)

    async def stop(self) -> list[str]:
        """Stop every worker and return the PCM filenames recorded."""
        if not self.is_recording:
            logger.warning(f"Recording session {self.session_id} is not active")
            return []

        self.is_recording = False
        self._stopped = True
        logger.info(f"Stopping recording session {self.session_id}")

        handlers = list(self._streams.values())
        self._streams.clear()
        ending = list(self._ending.values())
        results = await asyncio.gather(
            *(handler.stop() for handler in handlers),
            *ending,
            return_exceptions=True,
        )
        self._finished.extend(handlers)

        failures = [r for r in results if isinstance(r, BaseException)]
        for failure in failures:
            logger.error(f"Track worker failed to stop cleanly: {failure!r}")

        filenames = [meta.filename for meta in self.get_all_metadata()]
        logger.info(
            f"Recording session {self.session_id} stopped. "
            f"Recorded {len(filenames)} tracks."
        )
        if failures:
            raise SessionError(
                f"{len(failures)} track worker(s) failed while stopping "
                f"session {self.session_id}"
            )
        return filenames

    def _display_name(self, user_id: str) -> str:
        for participant in self.participants:
            if participant.id == user_id:
                return participant.display_name
        return user_id

    def get_session_info(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "is_recording": self.is_recording,
            "active_streams": len(self._streams),
            "channel_name": self.channel.channel_name,
            "start_time": self.start_time,
            "duration": time.monotonic() - self._started_at,
        }

    def get_active_users(self) -> list[dict[str, Any]]:
        return [
            {
                "user_id": user_id,
                "display_name": self._display_name(user_id),
                "buffer_status": handler.buffer_status(),
            }
            for user_id, handler in self._streams.items()
        ]

    def get_all_metadata(self) -> list[TrackMetadata]:
        """Metadata of every track in this session that received audio."""
        handlers = self._finished + list(self._streams.values())
        return [h.metadata for h in handlers if h.metadata is not None]

    def get_timelines(self) -> dict[str, UserTimeline]:
        """Live packet timelines keyed by track filename."""
        handlers = self._finished + list(self._streams.values())
        return {h.filename: h.timeline for h in handlers if h.timeline is not None}


class SessionRegistry:
    """Owns every active session, keyed by session id. One per guild."""

    def __init__(self) -> None:
        self._sessions: dict[str, RecordingSession] = {}

    def create(
        self, channel: ChannelInfo, storage: RecordingStorage, **kwargs: Any
    ) -> RecordingSession:
        if self.for_guild(channel.guild_id) is not None:
            raise SessionError(f"Already recording in guild {channel.guild_id}")
        session = RecordingSession(channel, storage, **kwargs)
        self._sessions[session.session_id] = session
        return session

    def get(self, session_id: str) -> RecordingSession | None:
        return self._sessions.get(session_id)

    def for_guild(self, guild_id: str) -> RecordingSession | None:
        for session in self._sessions.values():
            if session.channel.guild_id == guild_id:
                return session
        return None

    async def stop(self, session_id: str) -> list[str]:
        session = self._sessions.pop(session_id, None)
        if session is None:
            raise SessionError(f"No active session {session_id}")
        return await session.stop()

    async def stop_all(self) -> dict[str, list[str]]:
        results: dict[str, list[str]] = {}
        for session_id in list(self._sessions):
            results[session_id] = await self.stop(session_id)
        return results

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
