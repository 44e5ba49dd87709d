"""Clock drift detection and tempo correction for recorded tracks.

A sender's media clock and the receiver's wall clock diverge slowly over a
long session. The regression estimator fits media time (ms) against arrival
time (ms): a slope of exactly 1.0 means no drift, and ``(slope - 1) * 1000``
is the divergence in ms per second. Correction re-renders the PCM with
ffmpeg's ``atempo`` filter, clamped to +/-5% of the original duration.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

import numpy as np

from ..audio.pcm import pcm_duration_ms
from ..common.constants import (
    CHANNELS,
    DRIFT_BATCH_CONFIDENCE,
    DRIFT_MAX_DISCREPANCY_MS,
    DRIFT_MIN_SAMPLES,
    DRIFT_MONITOR_CONFIDENCE,
    DRIFT_MONITOR_INTERVAL,
    DRIFT_THRESHOLD_MS,
    FRAME_DURATION_MS,
    RTP_CLOCK_MS,
    SAMPLE_RATE,
    STRETCH_MAX,
    STRETCH_MIN,
)
from ..common.errors import EchologError, TrackAnalysisFailure
from ..recorder.timeline import UserTimeline
from ..storage.records import TrackMetadata
from .ffmpeg import FfmpegRunner, run_ffmpeg

logger = logging.getLogger(__name__)


@dataclass
class DriftInfo:
    drift_ms: float  # ms of divergence per second of observation
    confidence: float  # R^2 of the fit, 0..1
    samples_analyzed: int

    @classmethod
    def insufficient(cls, samples: int) -> DriftInfo:
        """Too little data to say anything: zero drift, zero confidence."""
        return cls(drift_ms=0.0, confidence=0.0, samples_analyzed=samples)


def calculate_linear_regression(
    x_values: list[float] | np.ndarray, y_values: list[float] | np.ndarray
) -> tuple[float, float, float]:
    """Ordinary least squares fit of y on x.

    Returns:
        (slope, intercept, r2). Fewer than two points, or no spread in x,
        gives slope 1.0 with r2 0.0. No spread in y gives r2 1.0.
    """
    xs = np.asarray(x_values, dtype=np.float64)
    ys = np.asarray(y_values, dtype=np.float64)
    if len(xs) < 2:
        return 1.0, 0.0, 0.0

    # Center first: arrival times are large monotonic values
    x_mean = float(xs.mean())
    y_mean = float(ys.mean())
    dx = xs - x_mean
    dy = ys - y_mean
    ss_xx = float(np.dot(dx, dx))
    if ss_xx == 0.0:
        return 1.0, y_mean, 0.0

    slope = float(np.dot(dx, dy)) / ss_xx
    intercept = y_mean - slope * x_mean

    residuals = dy - slope * dx
    ss_res = float(np.dot(residuals, residuals))
    ss_tot = float(np.dot(dy, dy))
    r2 = 1.0 if ss_tot == 0.0 else 1.0 - ss_res / ss_tot
    return slope, intercept, min(1.0, max(0.0, r2))


def clamp_stretch_factor(factor: float) -> float:
    return max(STRETCH_MIN, min(STRETCH_MAX, factor))


class DriftCorrector:
    """Estimates per-track drift and renders tempo-corrected tracks."""

    def __init__(
        self,
        runner: FfmpegRunner = run_ffmpeg,
        threshold_ms: float = DRIFT_THRESHOLD_MS,
        min_samples: int = DRIFT_MIN_SAMPLES,
    ) -> None:
        self._runner = runner
        self.threshold_ms = threshold_ms
        self.min_samples = min_samples

    def detect_drift(self, timeline: UserTimeline) -> DriftInfo:
        samples = timeline.samples
        if len(samples) < self.min_samples:
            return DriftInfo.insufficient(len(samples))

        data = np.asarray(samples, dtype=np.float64)
        slope, _, r2 = calculate_linear_regression(
            data[:, 0], data[:, 1] / RTP_CLOCK_MS
        )
        return DriftInfo(
            drift_ms=(slope - 1.0) * 1000.0,
            confidence=r2,
            samples_analyzed=len(samples),
        )

    def stretch_factor(self, drift_ms: float) -> float:
        factor = 1.0 - drift_ms / 1000.0
        clamped = clamp_stretch_factor(factor)
        if clamped != factor:
            logger.warning(f"Stretch factor {factor:.4f} clamped to {clamped}")
        return clamped

    async def correct_drift(
        self,
        input_file: Path,
        drift_ms: float,
        output_dir: Path,
        sample_rate: int = SAMPLE_RATE,
    ) -> Path:
        """Render a tempo-adjusted copy; returns input_file when below threshold."""
        if abs(drift_ms) < self.threshold_ms:
            logger.info(
                f"Drift {drift_ms:.2f}ms/s is below threshold, no correction needed"
            )
            return input_file

        factor = self.stretch_factor(drift_ms)
        output_file = (
            Path(output_dir)
            / f"corrected_{Path(input_file).stem}_{int(time.time() * 1000)}.pcm"
        )
        logger.info(
            f"Correcting drift of {drift_ms:.2f}ms/s for {input_file} (atempo={factor:.4f})"
        )
        await self._runner(
            [
                "-f", "s16le",
                "-ar", str(sample_rate),
                "-ac", str(CHANNELS),
                "-i", str(input_file),
                "-filter:a", f"atempo={factor:.6f}",
                "-f", "s16le",
                "-y", str(output_file),
            ]
        )  # fmt: skip
        logger.info(f"Drift correction completed: {output_file}")
        return output_file

    def estimate_drift_from_file(
        self, track: TrackMetadata, recordings_dir: Path
    ) -> DriftInfo:
        """Coarse fallback: PCM duration against the recorded wall-clock span.

        Decode gaps and concealed frames count as drift here too, so this
        is only a stand-in when no packet timeline is available.
        """
        path = Path(recordings_dir) / track.filename
        actual_ms = pcm_duration_ms(path.stat().st_size, track.pcm_sample_rate)
        frames = int(actual_ms // FRAME_DURATION_MS)

        end_ms = track.end_time_ms
        if end_ms is None:
            return DriftInfo.insufficient(frames)
        expected_ms = end_ms - track.start_time_ms
        if expected_ms <= 0:
            return DriftInfo.insufficient(frames)

        discrepancy = actual_ms - expected_ms
        if abs(discrepancy) > DRIFT_MAX_DISCREPANCY_MS:
            logger.warning(
                f"Ignoring {discrepancy:.0f}ms duration discrepancy for {track.filename}"
            )
            return DriftInfo.insufficient(frames)

        return DriftInfo(
            drift_ms=discrepancy / (expected_ms / 1000.0),
            confidence=min(1.0, abs(discrepancy) / 100.0),
            samples_analyzed=frames,
        )

    async def analyze_and_correct_session(
        self,
        tracks: list[TrackMetadata],
        recordings_dir: Path,
        timelines: Mapping[str, UserTimeline] | None = None,
    ) -> dict[str, Path]:
        """Pick the file to mix for every track, keyed by track filename.

        Uses the packet timeline when one is supplied for the track (timelines
        are keyed by track filename too), the file-size estimator otherwise.
        A failure on one track falls back to its uncorrected file and the
        batch continues.
        """
        recordings_dir = Path(recordings_dir)
        results: dict[str, Path] = {}
        logger.info(f"Analyzing drift for {len(tracks)} tracks...")

        for track in tracks:
            original = recordings_dir / track.filename
            try:
                if not original.exists():
                    raise TrackAnalysisFailure(
                        track.user_id, f"PCM file {original} is missing"
                    )
                timeline = timelines.get(track.filename) if timelines else None
                if timeline is not None:
                    info = self.detect_drift(timeline)
                else:
                    info = self.estimate_drift_from_file(track, recordings_dir)

                if (
                    abs(info.drift_ms) >= self.threshold_ms
                    and info.confidence > DRIFT_BATCH_CONFIDENCE
                ):
                    logger.info(
                        f"Detected drift for user {track.user_id}: "
                        f"{info.drift_ms:.2f}ms/s (confidence {info.confidence:.2f})"
                    )
                    results[track.filename] = await self.correct_drift(
                        original, info.drift_ms, recordings_dir, track.pcm_sample_rate
                    )
                else:
                    logger.info(f"No significant drift detected for user {track.user_id}")
                    results[track.filename] = original
            except (EchologError, OSError, ValueError) as e:
                logger.error(f"Failed to analyze drift for user {track.user_id}: {e}")
                results[track.filename] = original

        return results

    def monitor_drift(
        self,
        timeline: UserTimeline,
        callback: Callable[[DriftInfo], None],
        interval: float = DRIFT_MONITOR_INTERVAL,
    ) -> Callable[[], None]:
        """Recheck a live timeline every interval seconds.

        The callback only fires for drift at or above threshold with
        confidence above 0.5. Must be called from a running event loop.
        Returns a function that cancels the monitor.
        """

        async def _monitor() -> None:
            while True:
                await asyncio.sleep(interval)
                if len(timeline) < self.min_samples:
                    continue
                info = self.detect_drift(timeline)
                if (
                    abs(info.drift_ms) >= self.threshold_ms
                    and info.confidence > DRIFT_MONITOR_CONFIDENCE
                ):
                    try:
                        callback(info)
                    except Exception as e:
                        logger.error(f"Drift monitor callback failed: {e}")

        task = asyncio.get_running_loop().create_task(_monitor())

        def cancel() -> None:
            task.cancel()

        return cancel
