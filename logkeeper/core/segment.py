"""
Segment descriptors and the on-disk naming convention.

A stream ``wiki`` stored under ``/var/log/stack`` uses:

    wiki.log            active segment (sequence 0)
    wiki.log.1          newest rotated segment
    wiki.log.2.gz       older rotated segment, compressed

Descriptors are immutable. Renumbering a segment produces a new descriptor
with the same ``segment_id``.
"""

import os
import re
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional, Tuple

ACTIVE_SEQUENCE = 0
SEGMENT_FILE_SUFFIX = ".log"
COMPRESSED_EXTENSIONS = (".gz", ".lz4")
STAGING_SUFFIX = ".tmp"


@dataclass(frozen=True)
class Segment:
    """
    Descriptor of one segment file.

    Attributes:
        stream_id: Owning stream
        segment_id: Identity within the stream, stable across renumbering
        sequence: 0 for the active segment, 1.. for rotated segments (1 = newest)
        path: Current file path
        size: Size in bytes (compressed size once compressed)
        compressed: Whether the file holds a compressed artifact
        created_at: Unix time the segment was opened
        closed_at: Unix time the segment was rotated, None while active
        pending_compression: Rotated while compression was enabled and not yet compressed
        compression: Codec in effect when the segment was rotated, None if compression was off
    """
    stream_id: str
    segment_id: int
    sequence: int
    path: Path
    size: int = 0
    compressed: bool = False
    created_at: float = 0.0
    closed_at: Optional[float] = None
    pending_compression: bool = False
    compression: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.sequence == ACTIVE_SEQUENCE

    def age(self, now: Optional[float] = None) -> float:
        """Seconds since the segment was closed (or created, while active)."""
        reference = self.closed_at if self.closed_at is not None else self.created_at
        return (now if now is not None else time.time()) - reference

    def renumbered(self, sequence: int, directory: Path, extension: str = "") -> "Segment":
        """Return this descriptor moved to a new sequence number."""
        return replace(
            self,
            sequence=sequence,
            path=segment_path(directory, self.stream_id, sequence, extension),
        )

    def extension(self) -> str:
        """The compressed extension of the current file, or an empty string."""
        suffix = self.path.suffix
        return suffix if suffix in COMPRESSED_EXTENSIONS else ""

    def to_dict(self) -> dict:
        return {
            "segment_id": self.segment_id,
            "sequence": self.sequence,
            "path": str(self.path),
            "size": self.size,
            "compressed": self.compressed,
            "compression": self.compression,
            "created_at": self.created_at,
            "closed_at": self.closed_at,
        }


def segment_path(directory: Path, stream_id: str, sequence: int, extension: str = "") -> Path:
    """
    Build the file path for a segment.

    Args:
        directory: Stream base directory
        stream_id: Stream identifier
        sequence: Segment sequence number (0 = active)
        extension: Compressed extension, e.g. ``.gz``

    Returns:
        Path to the segment file
    """
    name = f"{stream_id}{SEGMENT_FILE_SUFFIX}"
    if sequence != ACTIVE_SEQUENCE:
        name = f"{name}.{sequence}{extension}"
    return Path(directory) / name


def staging_path(directory: Path, stream_id: str, tag: str) -> Path:
    """Path of a temporary file that is outside the naming convention."""
    return Path(directory) / f"{stream_id}{SEGMENT_FILE_SUFFIX}.{tag}{STAGING_SUFFIX}"


def parse_segment_name(stream_id: str, filename: str) -> Optional[Tuple[int, str]]:
    """
    Parse a file name against a stream's naming convention.

    Args:
        stream_id: Stream identifier
        filename: Bare file name

    Returns:
        ``(sequence, extension)`` or None if the file is not one of the stream's segments
    """
    base = f"{stream_id}{SEGMENT_FILE_SUFFIX}"
    if filename == base:
        return ACTIVE_SEQUENCE, ""

    pattern = re.escape(base) + r"\.(\d+)(" + "|".join(
        re.escape(ext) for ext in COMPRESSED_EXTENSIONS
    ) + r")?"
    match = re.fullmatch(pattern, filename)
    if not match:
        return None

    sequence = int(match.group(1))
    if sequence == ACTIVE_SEQUENCE:
        return None
    return sequence, match.group(2) or ""


def create_segment_file(path: Path) -> int:
    """
    Create a new, empty segment file opened for appending.

    Fails if the file already exists.

    Args:
        path: File to create

    Returns:
        Open file descriptor
    """
    flags = os.O_WRONLY | os.O_CREAT | os.O_EXCL | os.O_APPEND
    return os.open(path, flags, 0o644)


def open_segment_file(path: Path) -> int:
    """Open an existing (or new) segment file for appending."""
    flags = os.O_WRONLY | os.O_CREAT | os.O_APPEND
    return os.open(path, flags, 0o644)
