"""Mixer entry point."""

import argparse
import asyncio
import logging
import os
import sys
from datetime import datetime

from ..common.constants import DEFAULT_RECORDINGS_DIR
from ..common.errors import NoTracksFound, RenderFailure
from ..common.log import configure_logging
from .mixer import AudioMixer
from .planner import MixOptions, OutputFormat, Quality

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Mix recorded echolog tracks")
    parser.add_argument(
        "--recordings-dir",
        default=os.environ.get("RECORDINGS_DIR", DEFAULT_RECORDINGS_DIR),
        help="Directory holding tracks and records (default: $RECORDINGS_DIR or ./recordings)",
    )
    parser.add_argument(
        "--format",
        choices=[f.value for f in OutputFormat],
        default=OutputFormat.WAV.value,
        help="Output format (default: wav)",
    )
    parser.add_argument(
        "--quality",
        choices=[q.value for q in Quality],
        default=Quality.HIGH.value,
        help="Encoder quality for ogg/mp3 (default: high)",
    )
    parser.add_argument(
        "--normalize", action="store_true", help="Let amix normalize input levels"
    )
    parser.add_argument(
        "--remove-noise", action="store_true", help="Apply FFT noise reduction"
    )
    parser.add_argument(
        "--correct-drift",
        action="store_true",
        help="Tempo-correct tracks whose clock drifted",
    )
    parser.add_argument("--log-level", default=None, help="Log level (default: $LOG_LEVEL or INFO)")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("list", help="List recorded sessions")
    files = sub.add_parser("files", help="Mix specific track metadata files")
    files.add_argument("metadata_files", nargs="+")
    files.add_argument("--output-name", default=None, help="Output file stem")
    session = sub.add_parser("session", help="Mix every track of a session")
    session.add_argument("session_id")
    return parser


def _options(args: argparse.Namespace) -> MixOptions:
    return MixOptions(
        output_format=OutputFormat(args.format),
        quality=Quality(args.quality),
        normalize=args.normalize,
        remove_noise=args.remove_noise,
        correct_drift=args.correct_drift,
    )


def _print_sessions(mixer: AudioMixer) -> None:
    sessions = mixer.list_sessions()
    if not sessions:
        print("No recording sessions found.")
        return
    print("Available recording sessions:")
    for summary in sessions:
        meta = summary.metadata
        try:
            started = datetime.fromisoformat(meta.start_time).strftime("%Y-%m-%d %H:%M:%S")
        except ValueError:
            started = meta.start_time
        print(f"  {summary.session_id} - {summary.track_count} tracks - {started}")
        print(f"    Channel: {meta.channel_name} ({meta.guild_id})")


async def run(args: argparse.Namespace) -> int:
    mixer = AudioMixer(args.recordings_dir)
    if args.command == "list":
        _print_sessions(mixer)
        return 0

    try:
        if args.command == "files":
            output = await mixer.mix_files(
                args.metadata_files, args.output_name, _options(args)
            )
        else:
            output = await mixer.mix_session(args.session_id, _options(args))
    except (NoTracksFound, RenderFailure) as e:
        logger.error(f"Mixing failed: {e}")
        print(f"Mixing failed: {e}", file=sys.stderr)
        return 1

    print(f"Mixed audio saved to: {output}")
    return 0


def main() -> None:
    args = build_parser().parse_args()
    configure_logging(args.log_level)
    try:
        sys.exit(asyncio.run(run(args)))
    except KeyboardInterrupt:
        print("\nMixing cancelled")
        sys.exit(1)


if __name__ == "__main__":
    main()
