#!/usr/bin/env python3
"""Example speaker that streams a sine tone to a running recorder.

The speaker:
- Encodes a tone with Opus in 20ms frames
- Sends each frame as an RTP datagram to the recorder's UDP port
- Can skew its media clock and drop packets to exercise drift correction
  and silence concealment

Usage:
    python examples/synthetic_speaker.py [--host HOST] [--port PORT] [--ssrc SSRC]
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import random
import socket

import numpy as np

from echolog.audio.opus_codec import OpusEncoder
from echolog.common.constants import (
    CHANNELS,
    DEFAULT_HOST,
    DEFAULT_PORT,
    FRAME_DURATION_MS,
    FRAME_SIZE,
    SAMPLE_RATE,
)
from echolog.common.rtp import RtpHeader, build_rtp_packet

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("synthetic_speaker")

OPUS_PAYLOAD_TYPE = 120


def tone_frame(frequency: float, frame_index: int) -> np.ndarray:
    """One interleaved stereo float32 frame of a sine tone."""
    start = frame_index * FRAME_SIZE
    t = (np.arange(start, start + FRAME_SIZE) / SAMPLE_RATE).astype(np.float32)
    mono = 0.3 * np.sin(2 * np.pi * frequency * t).astype(np.float32)
    return np.repeat(mono, CHANNELS)


async def main() -> None:
    parser = argparse.ArgumentParser(description="Stream a test tone as RTP")
    parser.add_argument("--host", default=DEFAULT_HOST, help="Recorder host")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT, help="Recorder port")
    parser.add_argument("--ssrc", type=int, default=1234, help="RTP SSRC")
    parser.add_argument("--frequency", type=float, default=440.0, help="Tone in Hz")
    parser.add_argument("--duration", type=float, default=10.0, help="Seconds to send")
    parser.add_argument(
        "--clock-skew",
        type=float,
        default=0.0,
        help="Media clock error in percent (2.0 stamps 2%% more samples per frame)",
    )
    parser.add_argument(
        "--loss", type=float, default=0.0, help="Packet loss in percent"
    )
    args = parser.parse_args()

    encoder = OpusEncoder()
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    loop = asyncio.get_running_loop()

    ts_step = round(FRAME_SIZE * (1 + args.clock_skew / 100))
    frames = int(args.duration * 1000 / FRAME_DURATION_MS)
    sequence = random.randrange(0x10000)
    timestamp = random.randrange(0x100000000)
    sent = 0

    logger.info(
        f"Sending {frames} frames to {args.host}:{args.port} as ssrc {args.ssrc}"
    )
    frame_duration = FRAME_DURATION_MS / 1000
    next_send = loop.time()
    try:
        for i in range(frames):
            payload = encoder.encode(tone_frame(args.frequency, i))
            header = RtpHeader(
                version=2,
                padding=False,
                extension=False,
                csrc_count=0,
                marker=i == 0,
                payload_type=OPUS_PAYLOAD_TYPE,
                sequence_number=sequence,
                timestamp=timestamp,
                ssrc=args.ssrc,
            )
            if random.random() * 100 >= args.loss:
                sock.sendto(build_rtp_packet(header, payload), (args.host, args.port))
                sent += 1
            sequence = (sequence + 1) & 0xFFFF
            timestamp = (timestamp + ts_step) & 0xFFFFFFFF

            next_send += frame_duration
            sleep_time = next_send - loop.time()
            if sleep_time < -0.1:
                next_send = loop.time()
            await asyncio.sleep(max(0.0, sleep_time))
    finally:
        sock.close()
    logger.info(f"Done: sent {sent} of {frames} frames")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
