"""Aligns recorded tracks on a common timeline and plans the ffmpeg mix.

Every track is delayed by the distance between its own first packet and the
earliest first packet of the set, then all delayed tracks are summed into a
single output.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from pathlib import Path

from ..common.constants import CHANNELS
from ..common.errors import NoTracksFound
from ..storage.records import TrackMetadata


class OutputFormat(enum.Enum):
    WAV = "wav"
    OGG = "ogg"
    MP3 = "mp3"


class Quality(enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


_OGG_QUALITY = {Quality.LOW: "3", Quality.MEDIUM: "5", Quality.HIGH: "7"}
_MP3_BITRATE = {Quality.LOW: "128k", Quality.MEDIUM: "192k", Quality.HIGH: "320k"}


@dataclass
class MixOptions:
    output_format: OutputFormat = OutputFormat.WAV
    quality: Quality = Quality.HIGH
    normalize: bool = False
    remove_noise: bool = False
    correct_drift: bool = False


@dataclass
class MixInput:
    path: Path
    sample_rate: int
    channels: int = CHANNELS

    def ffmpeg_args(self) -> list[str]:
        return [
            "-f", "s16le",
            "-ar", str(self.sample_rate),
            "-ac", str(self.channels),
            "-i", str(self.path),
        ]  # fmt: skip


@dataclass
class MixSpec:
    inputs: list[MixInput]
    delays_ms: list[int]
    filters: list[str]
    codec_args: list[str] = field(default_factory=list)

    def filter_complex(self) -> str:
        return "; ".join(self.filters)

    def ffmpeg_args(self, output_path: Path | str) -> list[str]:
        args: list[str] = []
        for mix_input in self.inputs:
            args.extend(mix_input.ffmpeg_args())
        args += ["-filter_complex", self.filter_complex(), "-map", "[final]"]
        args += self.codec_args
        args += ["-y", str(output_path)]
        return args


def global_start_time(tracks: list[TrackMetadata]) -> float:
    """Earliest first-packet instant across tracks, in ms. 0 for no tracks."""
    if not tracks:
        return 0.0
    return min(track.start_time_ms for track in tracks)


def track_delay(track: TrackMetadata, global_start: float) -> int:
    return max(0, round(track.start_time_ms - global_start))


def calculate_track_delays(
    tracks: list[TrackMetadata], global_start: float
) -> list[int]:
    """Whole-ms delay for each track, in track order."""
    return [track_delay(track, global_start) for track in tracks]


def codec_args(output_format: OutputFormat, quality: Quality) -> list[str]:
    if output_format is OutputFormat.OGG:
        return ["-c:a", "libvorbis", "-q:a", _OGG_QUALITY[quality]]
    if output_format is OutputFormat.MP3:
        return ["-c:a", "libmp3lame", "-b:a", _MP3_BITRATE[quality]]
    return ["-c:a", "pcm_s16le"]


def build_filters(delays_ms: list[int], normalize: bool, remove_noise: bool) -> list[str]:
    filters = [
        f"[{i}:a]adelay=delays={delay}:all=true[delayed{i}]"
        for i, delay in enumerate(delays_ms)
    ]

    labels = "".join(f"[delayed{i}]" for i in range(len(delays_ms)))
    mix = f"{labels}amix=inputs={len(delays_ms)}:duration=longest:dropout_transition=0"
    if not normalize:
        mix += ":normalize=0"
    filters.append(mix + "[mixed]")

    last = "mixed"
    if remove_noise:
        filters.append("[mixed]afftdn=nr=20:nf=-25[denoised]")
        last = "denoised"
    filters.append(f"[{last}]aresample=async=1:first_pts=0[final]")
    return filters


def plan_mix(
    tracks: list[TrackMetadata],
    recordings_dir: Path | str,
    options: MixOptions,
    paths: dict[str, Path] | None = None,
) -> MixSpec:
    """Build the mix for tracks.

    Args:
        tracks: Tracks to mix, in input order.
        recordings_dir: Directory holding the track PCM files.
        options: Output format and filter switches.
        paths: Replacement input file per track filename (drift-corrected
            renders). Tracks not listed use their recorded file.

    Raises:
        NoTracksFound: tracks is empty.
    """
    if not tracks:
        raise NoTracksFound("No tracks to mix")

    recordings_dir = Path(recordings_dir)
    paths = paths or {}
    delays = calculate_track_delays(tracks, global_start_time(tracks))
    inputs = [
        MixInput(
            path=paths.get(track.filename, recordings_dir / track.filename),
            sample_rate=track.pcm_sample_rate,
        )
        for track in tracks
    ]
    return MixSpec(
        inputs=inputs,
        delays_ms=delays,
        filters=build_filters(delays, options.normalize, options.remove_noise),
        codec_args=codec_args(options.output_format, options.quality),
    )
