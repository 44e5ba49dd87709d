"""Tests for drift detection and correction."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Callable

import pytest

from echolog.audio.pcm import BYTES_PER_SECOND
from echolog.common.errors import RenderFailure
from echolog.mixing.drift import (
    DriftCorrector,
    DriftInfo,
    calculate_linear_regression,
    clamp_stretch_factor,
)
from echolog.recorder.timeline import UserTimeline
from echolog.storage.records import TrackMetadata

TrackFactory = Callable[..., TrackMetadata]


def _timeline(samples: int, ticks_per_frame: float = 960.0, start_ts: int = 0) -> UserTimeline:
    """A stream arriving every 20ms, stamping ticks_per_frame per packet."""
    timeline = UserTimeline("u1", 1)
    for i in range(samples):
        timestamp = (start_ts + round(i * ticks_per_frame)) & 0xFFFFFFFF
        timeline.add_sample(1_000_000.0 + i * 20.0, timestamp)
    return timeline


class TestRegression:
    """Tests for the least squares fit."""

    def test_perfect_line(self) -> None:
        slope, intercept, r2 = calculate_linear_regression([0, 1, 2, 3], [1, 3, 5, 7])
        assert slope == pytest.approx(2.0)
        assert intercept == pytest.approx(1.0)
        assert r2 == pytest.approx(1.0)

    def test_too_few_points(self) -> None:
        assert calculate_linear_regression([1.0], [2.0]) == (1.0, 0.0, 0.0)

    def test_no_spread_in_x(self) -> None:
        slope, _, r2 = calculate_linear_regression([5, 5, 5], [1, 2, 3])
        assert slope == 1.0
        assert r2 == 0.0

    def test_noisy_fit_lowers_confidence(self) -> None:
        xs = list(range(10))
        ys = [0, 5, -3, 8, 1, 9, -2, 4, 12, 0]
        _, _, r2 = calculate_linear_regression(xs, ys)
        assert 0.0 <= r2 < 0.5


class TestDetectDrift:
    """Tests for timeline-based drift detection."""

    def test_no_drift(self) -> None:
        """A sender clocked exactly right shows zero drift with full confidence."""
        info = DriftCorrector().detect_drift(_timeline(200))
        assert info.drift_ms == pytest.approx(0.0, abs=1e-6)
        assert info.confidence == pytest.approx(1.0)
        assert info.samples_analyzed == 200

    def test_fast_sender(self) -> None:
        """Media timestamps advancing 5% faster than wall time is 50ms/s."""
        info = DriftCorrector().detect_drift(_timeline(200, ticks_per_frame=1008.0))
        assert info.drift_ms == pytest.approx(50.0, rel=1e-6)
        assert info.confidence > 0.99

    def test_drift_across_timestamp_wrap(self) -> None:
        info = DriftCorrector().detect_drift(_timeline(200, start_ts=0xFFFFFFFF - 50_000))
        assert info.drift_ms == pytest.approx(0.0, abs=1e-6)

    def test_insufficient_samples(self) -> None:
        info = DriftCorrector().detect_drift(_timeline(99))
        assert info == DriftInfo(drift_ms=0.0, confidence=0.0, samples_analyzed=99)

    def test_custom_minimum(self) -> None:
        info = DriftCorrector(min_samples=10).detect_drift(_timeline(20))
        assert info.samples_analyzed == 20
        assert info.confidence == pytest.approx(1.0)


class TestStretch:
    """Tests for the tempo factor."""

    def test_clamp(self) -> None:
        assert clamp_stretch_factor(1.2) == 1.05
        assert clamp_stretch_factor(0.8) == 0.95
        assert clamp_stretch_factor(1.01) == 1.01

    def test_factor_from_drift(self) -> None:
        corrector = DriftCorrector()
        assert corrector.stretch_factor(20.0) == pytest.approx(0.98)
        assert corrector.stretch_factor(-20.0) == pytest.approx(1.02)

    def test_large_drift_clamped(self, caplog: pytest.LogCaptureFixture) -> None:
        corrector = DriftCorrector()
        assert corrector.stretch_factor(200.0) == 0.95
        assert corrector.stretch_factor(-200.0) == 1.05
        assert "clamped" in caplog.text


class TestCorrectDrift:
    """Tests for rendering corrected tracks."""

    @pytest.mark.asyncio
    async def test_below_threshold_returns_input(self, runner: Any, tmp_path: Path) -> None:
        corrector = DriftCorrector(runner=runner)
        source = tmp_path / "track.pcm"
        assert await corrector.correct_drift(source, 9.9, tmp_path) == source
        assert runner.calls == []

    @pytest.mark.asyncio
    async def test_renders_atempo(self, runner: Any, tmp_path: Path) -> None:
        corrector = DriftCorrector(runner=runner)
        source = tmp_path / "track.pcm"
        output = await corrector.correct_drift(source, 20.0, tmp_path)

        assert output.name.startswith("corrected_track_")
        assert output.suffix == ".pcm"
        [args] = runner.calls
        assert args[args.index("-filter:a") + 1] == "atempo=0.980000"
        assert args[args.index("-i") + 1] == str(source)
        assert args[-1] == str(output)

    @pytest.mark.asyncio
    async def test_render_failure_propagates(
        self, failing_runner: Any, tmp_path: Path
    ) -> None:
        corrector = DriftCorrector(runner=failing_runner)
        with pytest.raises(RenderFailure):
            await corrector.correct_drift(tmp_path / "t.pcm", 30.0, tmp_path)


class TestFileEstimate:
    """Tests for the duration-based fallback estimator."""

    def test_longer_file_than_wall_clock(self, track_factory: TrackFactory, storage: Any) -> None:
        """1050ms of audio recorded over 1000ms is 50ms/s at half confidence."""
        track = track_factory(
            "u1", 0.0, pcm=bytes(int(BYTES_PER_SECOND * 1.05)), end_ms=1000.0
        )
        info = DriftCorrector().estimate_drift_from_file(track, storage.recordings_dir)
        assert info.drift_ms == pytest.approx(50.0)
        assert info.confidence == pytest.approx(0.5)

    def test_without_stop_time(self, track_factory: TrackFactory, storage: Any) -> None:
        track = track_factory("u1", 0.0)
        info = DriftCorrector().estimate_drift_from_file(track, storage.recordings_dir)
        assert info.confidence == 0.0
        assert info.drift_ms == 0.0

    def test_large_discrepancy_ignored(self, track_factory: TrackFactory, storage: Any) -> None:
        track = track_factory("u1", 0.0, pcm=bytes(BYTES_PER_SECOND * 3), end_ms=1000.0)
        info = DriftCorrector().estimate_drift_from_file(track, storage.recordings_dir)
        assert info.confidence == 0.0


class TestAnalyzeSession:
    """Tests for batch analysis over a session's tracks."""

    @pytest.mark.asyncio
    async def test_corrects_only_drifting_tracks(
        self, track_factory: TrackFactory, storage: Any, runner: Any
    ) -> None:
        steady = track_factory("u1", 0.0)
        drifting = track_factory("u2", 0.0)
        timelines = {
            steady.filename: _timeline(200),
            drifting.filename: _timeline(200, ticks_per_frame=1008.0),
        }

        results = await DriftCorrector(runner=runner).analyze_and_correct_session(
            [steady, drifting], storage.recordings_dir, timelines
        )

        assert results[steady.filename] == storage.path(steady.filename)
        assert results[drifting.filename].name.startswith("corrected_")
        assert len(runner.calls) == 1

    @pytest.mark.asyncio
    async def test_missing_file_falls_back(
        self, track_factory: TrackFactory, storage: Any, runner: Any
    ) -> None:
        """One bad track does not stop the batch."""
        gone = track_factory("u1", 0.0)
        storage.path(gone.filename).unlink()
        ok = track_factory("u2", 0.0)

        results = await DriftCorrector(runner=runner).analyze_and_correct_session(
            [gone, ok], storage.recordings_dir
        )
        assert results == {
            gone.filename: storage.path(gone.filename),
            ok.filename: storage.path(ok.filename),
        }

    @pytest.mark.asyncio
    async def test_render_failure_falls_back(
        self, track_factory: TrackFactory, storage: Any, failing_runner: Any
    ) -> None:
        track = track_factory("u1", 0.0)
        results = await DriftCorrector(runner=failing_runner).analyze_and_correct_session(
            [track], storage.recordings_dir, {track.filename: _timeline(200, 1008.0)}
        )
        assert results[track.filename] == storage.path(track.filename)


class TestMonitor:
    """Tests for live drift monitoring."""

    @pytest.mark.asyncio
    async def test_reports_drift(self) -> None:
        reports: list[DriftInfo] = []
        cancel = DriftCorrector().monitor_drift(
            _timeline(200, ticks_per_frame=1008.0), reports.append, interval=0.01
        )
        try:
            for _ in range(100):
                if reports:
                    break
                await asyncio.sleep(0.01)
        finally:
            cancel()

        assert reports
        assert reports[0].drift_ms == pytest.approx(50.0, rel=1e-6)

    @pytest.mark.asyncio
    async def test_quiet_when_in_sync(self) -> None:
        reports: list[DriftInfo] = []
        cancel = DriftCorrector().monitor_drift(_timeline(200), reports.append, interval=0.01)
        await asyncio.sleep(0.05)
        cancel()
        assert reports == []

    @pytest.mark.asyncio
    async def test_callback_error_does_not_stop_monitor(self) -> None:
        calls = 0

        def callback(info: DriftInfo) -> None:
            nonlocal calls
            calls += 1
            raise RuntimeError("consumer failed")

        cancel = DriftCorrector().monitor_drift(
            _timeline(200, ticks_per_frame=1008.0), callback, interval=0.005
        )
        try:
            for _ in range(200):
                if calls >= 2:
                    break
                await asyncio.sleep(0.005)
        finally:
            cancel()
        assert calls >= 2
