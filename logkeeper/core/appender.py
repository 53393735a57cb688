"""
Append-only writer for a stream's active segment.
"""

import os
import time
from pathlib import Path
from typing import Optional

from logkeeper.core.segment import open_segment_file
from logkeeper.utils.logging import get_logger

logger = get_logger(__name__)


class WriteAppender:
    """
    Appends raw log bytes to the active segment file.

    The appender does no locking of its own. Callers serialize appends against
    rotation of the same stream; ``size()`` may be read concurrently and
    returns the last completed size.

    Attributes:
        path: Path the file was opened at (the file may since have been renamed)
        created_at: Unix time the segment was opened
    """

    def __init__(
        self,
        path: Path,
        fd: Optional[int] = None,
        fsync_on_append: bool = False,
        created_at: Optional[float] = None,
    ):
        """
        Initialize an appender.

        Args:
            path: Active segment path
            fd: Already-open descriptor (opened with O_APPEND); opened from path if None
            fsync_on_append: Whether to fsync after each append
            created_at: Creation time to report; defaults to now
        """
        self.path = Path(path)
        self.fsync_on_append = fsync_on_append
        self.created_at = created_at if created_at is not None else time.time()

        self._fd: Optional[int] = fd if fd is not None else open_segment_file(self.path)
        self._size: int = os.fstat(self._fd).st_size

    def append(self, data: bytes) -> int:
        """
        Append bytes to the segment.

        Args:
            data: Bytes to write

        Returns:
            Number of bytes written

        Raises:
            IOError: If the write fails or is partial
            ValueError: If the appender is closed
        """
        if self._fd is None:
            raise ValueError("Cannot append to closed segment")

        if not data:
            return 0

        bytes_written = os.write(self._fd, data)
        self._size += bytes_written

        if bytes_written != len(data):
            raise IOError(
                f"Partial write: expected {len(data)} bytes, wrote {bytes_written} bytes"
            )

        if self.fsync_on_append:
            os.fsync(self._fd)

        logger.debug(
            "Appended to segment",
            path=str(self.path),
            size=bytes_written,
            total_size=self._size,
        )

        return bytes_written

    def flush(self) -> None:
        """Force written data to stable storage."""
        if self._fd is not None:
            os.fsync(self._fd)

    def size(self) -> int:
        return self._size

    def age(self, now: Optional[float] = None) -> float:
        """Seconds since the segment was opened."""
        return (now if now is not None else time.time()) - self.created_at

    @property
    def closed(self) -> bool:
        return self._fd is None

    def close(self) -> None:
        """Flush and close the file descriptor."""
        if self._fd is None:
            return

        try:
            self.flush()
        finally:
            os.close(self._fd)
            self._fd = None

    def __enter__(self) -> "WriteAppender":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"WriteAppender(path={str(self.path)!r}, size={self._size})"
