"""ffmpeg process handoff and output probing."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable

import av

from ..common.errors import RenderFailure

logger = logging.getLogger(__name__)

# Runner signature shared by the mixer and the drift corrector
FfmpegRunner = Callable[[list[str]], Awaitable[None]]

STDERR_TAIL = 2000


@dataclass
class AudioFileInfo:
    is_valid: bool
    duration: float  # seconds
    sample_rate: int
    channels: int


def ffmpeg_executable() -> str:
    return os.environ.get("FFMPEG_PATH") or "ffmpeg"


async def run_ffmpeg(args: list[str], ffmpeg_path: str | None = None) -> None:
    """Run ffmpeg to completion. Raises RenderFailure on any failure; never retries."""
    executable = ffmpeg_path or ffmpeg_executable()
    logger.debug(f"Executing: {executable} {' '.join(args)}")

    try:
        process = await asyncio.create_subprocess_exec(
            executable,
            "-hide_banner",
            *args,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise RenderFailure(f"Could not start {executable}: {e}") from e

    _, stderr = await process.communicate()
    if process.returncode != 0:
        tail = stderr.decode(errors="ignore")[-STDERR_TAIL:]
        logger.error(f"ffmpeg exited with code {process.returncode}: {tail}")
        raise RenderFailure(
            f"ffmpeg exited with code {process.returncode}",
            returncode=process.returncode,
            stderr=tail,
        )


def validate_audio_file(path: Path | str) -> AudioFileInfo:
    """Probe a rendered file for duration, sample rate and channel count."""
    try:
        with av.open(str(path)) as container:
            stream = container.streams.audio[0]
            duration = 0.0
            if container.duration is not None:
                duration = container.duration / av.time_base
            elif stream.duration is not None and stream.time_base is not None:
                duration = float(stream.duration * stream.time_base)
            return AudioFileInfo(
                is_valid=True,
                duration=float(duration),
                sample_rate=int(stream.codec_context.sample_rate),
                channels=int(stream.codec_context.channels),
            )
    except (av.error.FFmpegError, IndexError, OSError) as e:
        logger.warning(f"Could not probe {path}: {e}")
        return AudioFileInfo(is_valid=False, duration=0.0, sample_rate=0, channels=0)
