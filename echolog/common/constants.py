"""Shared constants for capture, buffering, drift and mixing."""

# Audio parameters
SAMPLE_RATE = 48000  # Hz (Opus native, also the PCM storage rate)
CHANNELS = 2  # Voice platform delivers stereo Opus
SAMPLE_WIDTH = 2  # bytes, s16le
FRAME_DURATION_MS = 20
FRAME_SIZE = 960  # 20ms at 48kHz, per channel
FRAME_BYTES = FRAME_SIZE * CHANNELS * SAMPLE_WIDTH  # 3840
RTP_CLOCK_MS = SAMPLE_RATE // 1000  # media timestamp ticks per millisecond

# Minimal Opus frame that decodes to 20ms of silence
OPUS_SILENCE_FRAME = b"\xf8\xff\xfe"

# Jitter buffer policy
JITTER_TARGET_DELAY_MS = 150
JITTER_MAX_JITTER_MS = 60

# Per-participant inbox (bounded channel between packet source and worker)
INBOX_MAX_PACKETS = 500  # 10s of audio

# Packet source ends a participant's stream after this much silence
STREAM_IDLE_TIMEOUT = 1.0  # seconds

# Drift analysis
DRIFT_THRESHOLD_MS = 10.0  # ms of divergence per second
DRIFT_MIN_SAMPLES = 100
DRIFT_MONITOR_INTERVAL = 30.0  # seconds
DRIFT_BATCH_CONFIDENCE = 0.7
DRIFT_MONITOR_CONFIDENCE = 0.5
STRETCH_MIN = 0.95
STRETCH_MAX = 1.05
# File-size estimator ignores discrepancies larger than this
DRIFT_MAX_DISCREPANCY_MS = 1000.0

# Storage
DEFAULT_RECORDINGS_DIR = "./recordings"

# Network
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 5004
