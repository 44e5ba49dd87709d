"""Opus encoder/decoder wrapper."""

from typing import Any

import numpy as np
import numpy.typing as npt
import opuslib_next as opuslib

from ..common.constants import CHANNELS, FRAME_SIZE, SAMPLE_RATE
from ..common.errors import DecodeFailure
from .pcm import float32_to_int16


class OpusEncoder:
    """Encodes interleaved PCM frames; used by the synthetic speaker tool."""

    encoder: Any

    def __init__(self, bitrate: int = 64000) -> None:
        self.encoder = opuslib.Encoder(SAMPLE_RATE, CHANNELS, opuslib.APPLICATION_VOIP)
        self.encoder.bitrate = bitrate

    def encode(self, pcm_data: npt.NDArray[np.float32]) -> bytes:
        """Encode one interleaved float32 frame (FRAME_SIZE * CHANNELS samples)."""
        pcm_int16 = float32_to_int16(pcm_data)
        result: bytes = self.encoder.encode(pcm_int16.tobytes(), FRAME_SIZE)
        return result


class OpusDecoder:
    """Decode capability for one participant stream.

    Opus decoders are stateful, so every stream owns its own instance.
    """

    decoder: Any

    def __init__(self) -> None:
        self.decoder = opuslib.Decoder(SAMPLE_RATE, CHANNELS)

    def decode(self, opus_data: bytes) -> bytes:
        """Decode one Opus frame to interleaved s16le PCM."""
        try:
            pcm_bytes: bytes = self.decoder.decode(opus_data, FRAME_SIZE)
        except Exception as e:
            raise DecodeFailure(f"{type(e).__name__}: {e}") from e
        return pcm_bytes
