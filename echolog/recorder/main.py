"""Recorder entry point."""

import argparse
import asyncio
import json
import logging
import os
import signal

from ..common.constants import DEFAULT_HOST, DEFAULT_PORT, DEFAULT_RECORDINGS_DIR
from ..common.errors import EchologError
from ..common.log import configure_logging
from ..mixing.drift import DriftCorrector
from ..mixing.mixer import AudioMixer
from ..mixing.planner import MixOptions
from ..storage.files import RecordingStorage
from .session import ChannelInfo, SessionRegistry
from .udp_source import parse_roster, start_udp_source

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="echolog multi-track recorder")
    parser.add_argument("--host", default=DEFAULT_HOST, help="Host to bind to")
    parser.add_argument(
        "--port", type=int, default=DEFAULT_PORT, help="UDP port for RTP"
    )
    parser.add_argument(
        "--recordings-dir",
        default=os.environ.get("RECORDINGS_DIR", DEFAULT_RECORDINGS_DIR),
        help="Directory for tracks and records (default: $RECORDINGS_DIR or ./recordings)",
    )
    parser.add_argument("--guild-id", default="local", help="Guild identifier")
    parser.add_argument("--channel-id", default="0", help="Channel identifier")
    parser.add_argument("--channel-name", default="voice", help="Channel name")
    parser.add_argument(
        "--roster",
        help="JSON file listing participants: [{id, username, display_name, ssrc}]",
    )
    parser.add_argument(
        "--monitor-drift",
        action="store_true",
        help="Check each live track for clock drift every 30s",
    )
    parser.add_argument(
        "--mix-on-exit",
        action="store_true",
        help="Render a drift-corrected mix when recording stops",
    )
    parser.add_argument("--log-level", default=None, help="Log level (default: $LOG_LEVEL or INFO)")
    parser.add_argument("--log-file", help="Log to this file instead of stderr")
    return parser


def load_roster(path: str | None) -> list[dict[str, object]]:
    if not path:
        return []
    with open(path) as f:
        entries = json.load(f)
    if not isinstance(entries, list):
        raise ValueError(f"Roster {path} must be a JSON list")
    return entries


async def record(args: argparse.Namespace) -> None:
    participants, ssrc_map = parse_roster(load_roster(args.roster))
    storage = RecordingStorage(args.recordings_dir)
    corrector = DriftCorrector() if args.monitor_drift else None

    registry = SessionRegistry()
    session = registry.create(
        ChannelInfo(args.guild_id, args.channel_id, args.channel_name),
        storage,
        participants=participants,
        drift_corrector=corrector,
    )
    session.start()
    protocol = await start_udp_source(session, args.host, args.port, ssrc_map)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    try:
        await stop.wait()
    finally:
        protocol.close()
        timelines = session.get_timelines()
        try:
            filenames = await registry.stop(session.session_id)
        except EchologError as e:
            logger.error(f"Session stopped with errors: {e}")
            filenames = [meta.filename for meta in session.get_all_metadata()]
        print(f"Recorded {len(filenames)} tracks for session {session.session_id}")

    if args.mix_on_exit and filenames:
        mixer = AudioMixer(args.recordings_dir)
        try:
            output = await mixer.mix_tracks(
                session.get_all_metadata(),
                session.session_id,
                MixOptions(correct_drift=True),
                timelines=timelines,
            )
        except EchologError as e:
            logger.error(f"Mix on exit failed: {e}")
        else:
            print(f"Mixed audio saved to: {output}")


def main() -> None:
    args = build_parser().parse_args()
    configure_logging(args.log_level, args.log_file)
    try:
        asyncio.run(record(args))
    except KeyboardInterrupt:
        print("\nRecorder stopped")


if __name__ == "__main__":
    main()
