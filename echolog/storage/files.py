"""File-based recording storage.

Directory structure:
    recordings/
      session_<session_id>.json            # session record
      <session_id>_<user_id>_<ms>.pcm      # raw s16le stereo track
      <session_id>_<user_id>_<ms>.json     # track sidecar
      <session_id>_mixed.wav               # mixer output
"""

from __future__ import annotations

import json
import logging
import queue
import threading
from collections.abc import Iterator
from pathlib import Path

from .records import SessionMetadata, TrackMetadata

logger = logging.getLogger(__name__)

SESSION_PREFIX = "session_"


class TrackSink:
    """Append-only PCM file fed from a writer thread.

    write() only enqueues, so a slow disk never holds up the caller's timing loop.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self.bytes_written = 0
        self._file = open(path, "ab")
        self._queue: queue.Queue[bytes | None] = queue.Queue()
        self._closed = False
        self._thread = threading.Thread(
            target=self._write_loop, name=f"sink-{path.name}", daemon=True
        )
        self._thread.start()

    @property
    def closed(self) -> bool:
        return self._closed

    def write(self, data: bytes) -> None:
        if self._closed:
            raise ValueError(f"Track sink {self.path.name} is closed")
        self._queue.put_nowait(data)

    def _write_loop(self) -> None:
        while True:
            data = self._queue.get()
            if data is None:
                break
            try:
                self._file.write(data)
                self.bytes_written += len(data)
            except OSError as e:
                logger.error(f"Failed writing {len(data)} bytes to {self.path}: {e}")
        try:
            self._file.close()
        except OSError as e:
            logger.error(f"Failed closing {self.path}: {e}")

    def close(self) -> None:
        """Drain pending writes and close the file. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        self._queue.put(None)
        self._thread.join()


class RecordingStorage:
    """Durable storage for PCM tracks and their JSON records."""

    def __init__(self, recordings_dir: Path | str) -> None:
        self.recordings_dir = Path(recordings_dir)
        self.recordings_dir.mkdir(parents=True, exist_ok=True)

    def path(self, filename: str) -> Path:
        return self.recordings_dir / filename

    @staticmethod
    def track_filename(session_id: str, user_id: str, epoch_ms: int) -> str:
        return f"{session_id}_{user_id}_{epoch_ms}.pcm"

    @staticmethod
    def session_filename(session_id: str) -> str:
        return f"{SESSION_PREFIX}{session_id}.json"

    def open_track(self, filename: str) -> TrackSink:
        return TrackSink(self.path(filename))

    def track_metadata_path(self, meta: TrackMetadata) -> Path:
        return self.path(meta.filename).with_suffix(".json")

    def write_track_metadata(self, meta: TrackMetadata) -> Path:
        path = self.track_metadata_path(meta)
        path.write_text(json.dumps(meta.to_dict(), indent=2))
        return path

    def read_track_metadata(self, path: Path | str) -> TrackMetadata:
        """Load a track sidecar.

        Raises OSError, json.JSONDecodeError, KeyError, ValueError or
        TypeError for unreadable records.
        """
        data = json.loads(self._resolve(path).read_text())
        return TrackMetadata.from_dict(data)

    def write_session_metadata(self, meta: SessionMetadata) -> Path:
        path = self.path(self.session_filename(meta.session_id))
        path.write_text(json.dumps(meta.to_dict(), indent=2))
        return path

    def read_session_metadata(self, path: Path | str) -> SessionMetadata:
        data = json.loads(self._resolve(path).read_text())
        return SessionMetadata.from_dict(data)

    def iter_track_metadata_files(self) -> Iterator[Path]:
        for path in sorted(self.recordings_dir.glob("*.json")):
            if not path.name.startswith(SESSION_PREFIX):
                yield path

    def iter_session_metadata_files(self) -> Iterator[Path]:
        yield from sorted(self.recordings_dir.glob(f"{SESSION_PREFIX}*.json"))

    def _resolve(self, path: Path | str) -> Path:
        path = Path(path)
        return path if path.is_absolute() else self.recordings_dir / path
