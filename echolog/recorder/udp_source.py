"""UDP packet source feeding RTP datagrams into a recording session.

Each datagram is attributed to a participant by its SSRC. A participant whose
packets stop arriving for longer than the idle timeout has their stream
ended; the next packet from them starts a new track.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any, Callable

from ..common.constants import STREAM_IDLE_TIMEOUT
from ..common.errors import MalformedPacket
from ..common.rtp import parse_rtp_header
from ..storage.records import Participant

if TYPE_CHECKING:
    from .session import RecordingSession

logger = logging.getLogger(__name__)

_LOG_EVERY = 50


def parse_roster(
    entries: list[dict[str, Any]],
) -> tuple[list[Participant], dict[int, str]]:
    """Split roster entries into participants and an SSRC -> user id map.

    Each entry needs an ``id``; ``username``, ``display_name`` and ``ssrc``
    are optional.
    """
    participants: list[Participant] = []
    ssrc_map: dict[int, str] = {}
    for entry in entries:
        user_id = str(entry["id"])
        username = str(entry.get("username", user_id))
        participants.append(
            Participant(
                id=user_id,
                username=username,
                display_name=str(entry.get("display_name", username)),
            )
        )
        if entry.get("ssrc") is not None:
            ssrc_map[int(entry["ssrc"])] = user_id
    return participants, ssrc_map


class RtpDatagramProtocol(asyncio.DatagramProtocol):
    """Routes received RTP datagrams to the session by participant."""

    def __init__(
        self,
        session: RecordingSession,
        ssrc_map: dict[int, str] | None = None,
        idle_timeout: float = STREAM_IDLE_TIMEOUT,
        clock_ns: Callable[[], int] = time.monotonic_ns,
    ) -> None:
        self.session = session
        self.ssrc_map = dict(ssrc_map or {})
        self.idle_timeout = idle_timeout
        self._clock_ns = clock_ns
        self.transport: asyncio.DatagramTransport | None = None
        self._last_seen: dict[str, int] = {}
        self._idle_task: asyncio.Task[None] | None = None
        self.short_datagrams = 0

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.transport = transport  # type: ignore[assignment]
        self._idle_task = asyncio.get_running_loop().create_task(self._idle_loop())
        logger.info(f"Listening for RTP on {transport.get_extra_info('sockname')}")

    def resolve_user(self, ssrc: int) -> str:
        return self.ssrc_map.get(ssrc, str(ssrc))

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        try:
            header = parse_rtp_header(data)
        except MalformedPacket:
            self.short_datagrams += 1
            if self.short_datagrams % _LOG_EVERY == 1:
                logger.warning(
                    f"Dropped {len(data)}-byte datagram from {addr[0]}:{addr[1]} "
                    f"({self.short_datagrams} short datagrams so far)"
                )
            return

        user_id = self.resolve_user(header.ssrc)
        now = self._clock_ns()
        self._last_seen[user_id] = now
        self.session.handle_packet(user_id, data, now)

    async def check_idle(self) -> list[str]:
        """End the stream of every participant silent past the idle timeout."""
        now = self._clock_ns()
        limit = int(self.idle_timeout * 1e9)
        idle = [u for u, seen in self._last_seen.items() if now - seen > limit]
        for user_id in idle:
            del self._last_seen[user_id]
            logger.debug(f"Stream idle for user {user_id}")
            await self.session.end_stream(user_id)
        return idle

    async def _idle_loop(self) -> None:
        while True:
            await asyncio.sleep(self.idle_timeout / 2)
            try:
                await self.check_idle()
            except Exception as e:
                logger.error(f"Idle check failed: {type(e).__name__}: {e}")

    def error_received(self, exc: Exception) -> None:
        logger.error(f"UDP receive error: {exc}")

    def connection_lost(self, exc: Exception | None) -> None:
        if exc:
            logger.warning(f"UDP socket closed with error: {exc}")
        if self._idle_task is not None:
            self._idle_task.cancel()
            self._idle_task = None

    def close(self) -> None:
        if self.transport is not None:
            self.transport.close()
            self.transport = None


async def start_udp_source(
    session: RecordingSession,
    host: str,
    port: int,
    ssrc_map: dict[int, str] | None = None,
) -> RtpDatagramProtocol:
    loop = asyncio.get_running_loop()
    _, protocol = await loop.create_datagram_endpoint(
        lambda: RtpDatagramProtocol(session, ssrc_map),
        local_addr=(host, port),
    )
    return protocol
