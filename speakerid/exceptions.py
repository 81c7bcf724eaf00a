"""Speaker verification exceptions.

Every error carries a ``kind`` tag and a ``recoverable`` flag. Load paths
raise recoverable errors and heal locally (delete and treat as absent, or
rebuild from the cluster); write paths raise fatal ones.
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Error taxonomy."""

    STATE = "state"
    FORMAT = "format"
    IO = "io"
    VALIDATION = "validation"
    EMBEDDING = "embedding"
    VAD = "vad"
    AUDIO = "audio"


class SpeakerIdError(Exception):
    """Base exception for speaker verification."""

    kind: ErrorKind = ErrorKind.STATE

    def __init__(self, message: str, *, recoverable: bool = False) -> None:
        super().__init__(message)
        self.recoverable = recoverable


class StateError(SpeakerIdError):
    """Operation attempted in the wrong state."""

    kind = ErrorKind.STATE


class NotEnrolledError(StateError):
    """No speaker model is enrolled."""

    pass


class SegmentTooShortError(StateError):
    """Voiced segment is shorter than the minimum embeddable duration."""

    pass


class EnrollmentError(StateError):
    """Enrollment produced no voiced segment or no embedding."""

    pass


class UnknownClusterError(StateError):
    """Cluster id is not registered."""

    pass


class FormatError(SpeakerIdError):
    """Bad magic, version, shape or truncation in a file or blob."""

    kind = ErrorKind.FORMAT


class StorageError(SpeakerIdError):
    """Underlying storage failure."""

    kind = ErrorKind.IO


class ValidationError(SpeakerIdError):
    """Non-finite values or shape mismatch."""

    kind = ErrorKind.VALIDATION


class SpeakerEmbeddingError(SpeakerIdError):
    """Speaker embedding extraction error."""

    kind = ErrorKind.EMBEDDING


class VADError(SpeakerIdError):
    """Voice Activity Detection error."""

    kind = ErrorKind.VAD


class AudioConversionError(SpeakerIdError):
    """Failed to load or convert audio."""

    kind = ErrorKind.AUDIO
