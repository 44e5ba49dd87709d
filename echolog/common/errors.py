"""Exception hierarchy for the recorder and mixer.

Packet and frame level errors (MalformedPacket, DecodeFailure) are always
recovered where they happen. Track analysis errors are logged and the batch
continues. Session and mix level errors reach the caller.
"""


class EchologError(Exception):
    """Base exception for all echolog errors."""


class MalformedPacket(EchologError, ValueError):
    """RTP header or extension fields exceed the buffer bounds."""


class DecodeFailure(EchologError):
    """A single encoded frame could not be decoded."""


class TrackAnalysisFailure(EchologError):
    """Drift analysis or correction failed for one track."""

    def __init__(self, user_id: str, message: str) -> None:
        super().__init__(f"{user_id}: {message}")
        self.user_id = user_id


class NoTracksFound(EchologError):
    """A mix request resolved to zero eligible tracks."""


class RenderFailure(EchologError):
    """The external mixing engine failed to render a file."""

    def __init__(
        self, message: str, returncode: int | None = None, stderr: str = ""
    ) -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class SessionError(EchologError):
    """Invalid session lifecycle request."""
