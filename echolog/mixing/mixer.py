"""Offline mixer: loads track records, corrects drift and renders one file."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from ..common.errors import NoTracksFound, RenderFailure
from ..recorder.timeline import UserTimeline
from ..storage.files import RecordingStorage
from ..storage.records import SessionMetadata, TrackMetadata
from .drift import DriftCorrector
from .ffmpeg import FfmpegRunner, run_ffmpeg, validate_audio_file
from .planner import MixOptions, plan_mix

logger = logging.getLogger(__name__)

# Reasons a record on disk cannot be used
_UNREADABLE = (OSError, json.JSONDecodeError, KeyError, ValueError, TypeError)


@dataclass
class SessionSummary:
    session_id: str
    track_count: int
    metadata: SessionMetadata


class AudioMixer:
    def __init__(
        self,
        recordings_dir: Path | str,
        runner: FfmpegRunner = run_ffmpeg,
        drift_corrector: DriftCorrector | None = None,
        validate_output: bool = True,
    ) -> None:
        self.storage = RecordingStorage(recordings_dir)
        self.recordings_dir = self.storage.recordings_dir
        self._runner = runner
        self._drift_corrector = drift_corrector or DriftCorrector(runner=runner)
        self._validate_output = validate_output

    def _load_track(self, path: Path | str) -> TrackMetadata | None:
        """Read a sidecar; None when unreadable or its PCM file is gone."""
        try:
            track = self.storage.read_track_metadata(path)
        except _UNREADABLE as e:
            logger.warning(f"Skipping invalid metadata file {path}: {e}")
            return None
        if not self.storage.path(track.filename).exists():
            logger.warning(f"Skipping {path}: PCM file {track.filename} is missing")
            return None
        return track

    def load_session_tracks(self, session_id: str) -> list[TrackMetadata]:
        tracks = []
        for path in self.storage.iter_track_metadata_files():
            track = self._load_track(path)
            if track is not None and track.session_id == session_id:
                tracks.append(track)
        return tracks

    async def mix_session(
        self, session_id: str, options: MixOptions | None = None
    ) -> Path:
        logger.info(f"Starting mix for session: {session_id}")
        tracks = self.load_session_tracks(session_id)
        if not tracks:
            raise NoTracksFound(f"No tracks found for session {session_id}")
        return await self.mix_tracks(tracks, session_id, options)

    async def mix_files(
        self,
        metadata_files: list[Path | str],
        output_name: str | None = None,
        options: MixOptions | None = None,
    ) -> Path:
        tracks = [
            track
            for track in (self._load_track(path) for path in metadata_files)
            if track is not None
        ]
        if not tracks:
            raise NoTracksFound("No valid tracks among the given metadata files")
        name = output_name or f"manual_mix_{int(time.time() * 1000)}"
        return await self.mix_tracks(tracks, name, options)

    async def mix_tracks(
        self,
        tracks: list[TrackMetadata],
        name: str,
        options: MixOptions | None = None,
        timelines: Mapping[str, UserTimeline] | None = None,
    ) -> Path:
        """Render tracks into ``{name}_mixed.{format}`` in the recordings dir.

        Raises:
            NoTracksFound: tracks is empty.
            RenderFailure: ffmpeg failed or produced an unreadable file.
        """
        options = options or MixOptions()
        if not tracks:
            raise NoTracksFound(f"No tracks to mix for {name}")
        logger.info(f"Mixing {len(tracks)} tracks for {name}")

        paths: dict[str, Path] | None = None
        if options.correct_drift:
            paths = await self._drift_corrector.analyze_and_correct_session(
                tracks, self.recordings_dir, timelines
            )

        spec = plan_mix(tracks, self.recordings_dir, options, paths)
        for track, delay in zip(tracks, spec.delays_ms):
            logger.debug(f"Track {track.filename}: delay {delay}ms")

        output_path = (
            self.recordings_dir / f"{name}_mixed.{options.output_format.value}"
        )
        await self._runner(spec.ffmpeg_args(output_path))

        if self._validate_output:
            info = validate_audio_file(output_path)
            if not info.is_valid:
                raise RenderFailure(f"Rendered file {output_path} is not readable")
            logger.info(
                f"Mixed {info.duration:.1f}s at {info.sample_rate}Hz, "
                f"{info.channels} channels"
            )

        logger.info(f"Mix completed: {output_path}")
        return output_path

    def list_sessions(self) -> list[SessionSummary]:
        summaries = []
        for path in self.storage.iter_session_metadata_files():
            try:
                meta = self.storage.read_session_metadata(path)
            except _UNREADABLE as e:
                logger.warning(f"Failed to process session file {path}: {e}")
                continue
            summaries.append(
                SessionSummary(
                    session_id=meta.session_id,
                    track_count=len(self.load_session_tracks(meta.session_id)),
                    metadata=meta,
                )
            )
        return summaries
