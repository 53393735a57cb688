"""
Exception hierarchy for log stream management.

Storage failures are not wrapped: they surface as the ``IOError``/``OSError``
raised by the failing file operation.
"""

from pathlib import Path
from typing import Optional


class LogKeeperError(Exception):
    """Base class for all LogKeeper errors."""
    pass


class RotationError(LogKeeperError):
    """
    Raised when a rotation could not complete atomically.

    The stream is left in its pre-rotation state. When raised from a write,
    ``bytes_written`` holds the size of the append that preceded the failed
    rotation (the data is on disk in the still-active segment).
    """

    def __init__(self, message: str, bytes_written: int = 0):
        super().__init__(message)
        self.bytes_written = bytes_written


class CompressionError(LogKeeperError):
    """Raised when a rotated segment could not be compressed."""

    def __init__(self, message: str, segment_id: Optional[int] = None):
        super().__init__(message)
        self.segment_id = segment_id


class CompressionCancelled(CompressionError):
    """Raised inside the compression loop when the worker is cancelled."""
    pass


class RetentionError(LogKeeperError):
    """Raised for a single segment that retention failed to delete."""

    def __init__(
        self,
        message: str,
        segment_id: Optional[int] = None,
        path: Optional[Path] = None,
    ):
        super().__init__(message)
        self.segment_id = segment_id
        self.path = path


class InvalidConfigError(LogKeeperError, ValueError):
    """Raised when a retention configuration fails validation."""
    pass


class UnknownStreamError(LogKeeperError, LookupError):
    """Raised when an operation names a stream that is not registered."""

    def __init__(self, stream_id: str):
        super().__init__(f"Unknown stream: {stream_id!r}")
        self.stream_id = stream_id


class StreamExistsError(LogKeeperError):
    """Raised when registering a stream id twice."""

    def __init__(self, stream_id: str):
        super().__init__(f"Stream already registered: {stream_id!r}")
        self.stream_id = stream_id
