"""PCM frame helpers for s16le interleaved stereo."""

import numpy as np
import numpy.typing as npt

from ..common.constants import CHANNELS, FRAME_BYTES, SAMPLE_RATE, SAMPLE_WIDTH

BYTES_PER_SECOND = SAMPLE_RATE * CHANNELS * SAMPLE_WIDTH

_SILENCE = bytes(FRAME_BYTES)


def silence_frame() -> bytes:
    """One frame of digital silence."""
    return _SILENCE


def fit_frame(pcm: bytes) -> bytes:
    """Pad or truncate decoded PCM to exactly one frame."""
    if len(pcm) < FRAME_BYTES:
        return pcm + bytes(FRAME_BYTES - len(pcm))
    if len(pcm) > FRAME_BYTES:
        return pcm[:FRAME_BYTES]
    return pcm


def float32_to_int16(pcm: npt.NDArray[np.float32]) -> npt.NDArray[np.int16]:
    """Convert float32 [-1.0, 1.0] samples to int16."""
    clipped = np.clip(pcm, -1.0, 1.0)
    return (clipped * 32767).astype(np.int16)


def pcm_duration_ms(num_bytes: int, sample_rate: int = SAMPLE_RATE) -> float:
    """Duration of a stereo s16le buffer of num_bytes."""
    return num_bytes / (sample_rate * CHANNELS * SAMPLE_WIDTH) * 1000.0
