"""
Segment reconciliation for streams registered over existing files.

A crash can interrupt a rotation or a compression between two single-file
operations. The reconciliation pass repairs every state those interruptions
can leave behind:

- a staged new active segment that was never promoted
- partial compressed output
- the same sequence present both compressed and uncompressed
- gaps in the rotated sequence numbers
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List

from logkeeper.core.config import CompressionType
from logkeeper.core.segment import (
    ACTIVE_SEQUENCE,
    COMPRESSED_EXTENSIONS,
    STAGING_SUFFIX,
    SEGMENT_FILE_SUFFIX,
    Segment,
    parse_segment_name,
    segment_path,
    staging_path,
)
from logkeeper.utils.logging import get_logger

logger = get_logger(__name__)

STAGED_ACTIVE_TAG = "next"

_CODEC_BY_EXTENSION = {codec.extension: codec.value for codec in CompressionType}


@dataclass
class RecoveredStream:
    """
    Segment state rebuilt from disk.

    Attributes:
        active_path: Path of the active segment (may not exist yet)
        rotated: Rotated segments, newest first, sequences 1..n
        next_segment_id: First unused segment id
        repairs: Human-readable list of repairs applied
    """
    active_path: Path
    rotated: List[Segment] = field(default_factory=list)
    next_segment_id: int = 1
    repairs: List[str] = field(default_factory=list)


class SegmentRecovery:
    """Rebuilds a stream's segment descriptors from its directory."""

    def __init__(self, stream_id: str, directory: Path):
        """
        Initialize recovery.

        Args:
            stream_id: Stream identifier
            directory: Stream base directory
        """
        self.stream_id = stream_id
        self.directory = Path(directory)

    def reconcile(self) -> RecoveredStream:
        """
        Repair the directory and describe the surviving segments.

        Returns:
            Recovered stream state
        """
        result = RecoveredStream(active_path=segment_path(self.directory, self.stream_id, 0))

        self._resolve_staged_active(result)
        self._remove_partial_output(result)

        by_sequence = self._scan()
        rotated_files = self._resolve_duplicates(by_sequence, result)
        rotated_files = self._close_gaps(rotated_files, result)

        # Oldest segment gets the lowest id; the active segment takes the next one
        segment_id = 1
        for sequence, path in reversed(rotated_files):
            stat = path.stat()
            result.rotated.insert(
                0,
                Segment(
                    stream_id=self.stream_id,
                    segment_id=segment_id,
                    sequence=sequence,
                    path=path,
                    size=stat.st_size,
                    compressed=path.suffix in COMPRESSED_EXTENSIONS,
                    compression=_CODEC_BY_EXTENSION.get(path.suffix),
                    created_at=stat.st_mtime,
                    closed_at=stat.st_mtime,
                ),
            )
            segment_id += 1

        result.next_segment_id = segment_id

        if result.repairs or result.rotated:
            logger.info(
                "Recovered stream segments",
                stream_id=self.stream_id,
                rotated=len(result.rotated),
                repairs=result.repairs,
            )

        return result

    def _resolve_staged_active(self, result: RecoveredStream) -> None:
        staged = staging_path(self.directory, self.stream_id, STAGED_ACTIVE_TAG)
        if not staged.exists():
            return

        if result.active_path.exists():
            staged.unlink()
            result.repairs.append(f"removed unpromoted {staged.name}")
        else:
            os.rename(staged, result.active_path)
            result.repairs.append(f"promoted {staged.name} to {result.active_path.name}")

    def _remove_partial_output(self, result: RecoveredStream) -> None:
        prefix = f"{self.stream_id}{SEGMENT_FILE_SUFFIX}."
        # Stream ids may contain glob metacharacters, so match names directly
        for path in self.directory.iterdir():
            if not path.name.startswith(prefix) or not path.name.endswith(STAGING_SUFFIX):
                continue
            path.unlink(missing_ok=True)
            result.repairs.append(f"removed partial {path.name}")

    def _scan(self) -> Dict[int, List[Path]]:
        by_sequence: Dict[int, List[Path]] = {}

        for path in self.directory.iterdir():
            if not path.is_file():
                continue

            parsed = parse_segment_name(self.stream_id, path.name)
            if parsed is None:
                continue

            sequence, _ = parsed
            if sequence == ACTIVE_SEQUENCE:
                continue

            by_sequence.setdefault(sequence, []).append(path)

        return by_sequence

    def _resolve_duplicates(
        self,
        by_sequence: Dict[int, List[Path]],
        result: RecoveredStream,
    ) -> List[tuple]:
        """Keep one file per sequence, preferring a committed compressed artifact."""
        files = []

        for sequence in sorted(by_sequence):
            candidates = by_sequence[sequence]

            if len(candidates) > 1:
                # A compressed artifact only appears by atomic rename, so it is complete
                candidates.sort(
                    key=lambda p: (p.suffix in COMPRESSED_EXTENSIONS, p.stat().st_mtime),
                    reverse=True,
                )
                for duplicate in candidates[1:]:
                    duplicate.unlink()
                    result.repairs.append(f"removed duplicate {duplicate.name}")

            files.append((sequence, candidates[0]))

        return files

    def _close_gaps(self, files: List[tuple], result: RecoveredStream) -> List[tuple]:
        """Renumber rotated files to 1..n, moving lowest first."""
        renumbered = []

        for expected, (sequence, path) in enumerate(files, start=1):
            if sequence == expected:
                renumbered.append((sequence, path))
                continue

            extension = path.suffix if path.suffix in COMPRESSED_EXTENSIONS else ""
            target = segment_path(self.directory, self.stream_id, expected, extension)
            os.rename(path, target)
            result.repairs.append(f"renumbered {path.name} to {target.name}")
            renumbered.append((expected, target))

        return renumbered
