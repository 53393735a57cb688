"""
Segment manager for one log stream.

Owns the stream's segment descriptors and performs every multi-file operation
on them: rotation with renumbering, compression commits and retention deletes.
All of these run under a single segments lock, so a reader listing segments
sees either the state before or after an operation, never a partial one.

File renames are applied highest sequence first, so an interruption leaves at
most a gap in the numbering, which SegmentRecovery closes on the next start.
"""

import os
import threading
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import BinaryIO, List, Optional, Tuple

from logkeeper.core.appender import WriteAppender
from logkeeper.core.config import RetentionConfig
from logkeeper.core.errors import CompressionError, RetentionError, RotationError
from logkeeper.core.events import RotationEvent
from logkeeper.core.recovery import STAGED_ACTIVE_TAG, SegmentRecovery
from logkeeper.core.segment import (
    ACTIVE_SEQUENCE,
    Segment,
    create_segment_file,
    segment_path,
    staging_path,
)
from logkeeper.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class SegmentLease:
    """
    A compression worker's claim on a rotated segment.

    While leased, the segment is never deleted by retention. It may still be
    renumbered; the open ``source`` handle stays valid across renames.
    """
    segment: Segment
    source: BinaryIO

    @property
    def segment_id(self) -> int:
        return self.segment.segment_id


class SegmentManager:
    """
    Manages the active and rotated segments of one stream.

    Callers serialize ``rotate`` against appends to the active segment (the
    owning LogStream holds its write lock around both). Compression and
    retention calls are safe from any thread.

    Attributes:
        stream_id: Stream identifier
        directory: Directory holding the stream's segment files
    """

    def __init__(
        self,
        stream_id: str,
        directory: Path,
        fsync_on_append: bool = False,
    ):
        """
        Initialize a segment manager, recovering any existing segments.

        Args:
            stream_id: Stream identifier
            directory: Directory for segment files
            fsync_on_append: Whether appenders fsync after each write
        """
        self.stream_id = stream_id
        self.directory = Path(directory)
        self.fsync_on_append = fsync_on_append

        self.directory.mkdir(parents=True, exist_ok=True)

        self._segments_lock = threading.RLock()
        self._leased: set = set()

        recovered = SegmentRecovery(stream_id, self.directory).reconcile()

        self._rotated: Tuple[Segment, ...] = tuple(recovered.rotated)
        self._next_segment_id = recovered.next_segment_id

        self._appender = WriteAppender(
            recovered.active_path,
            fsync_on_append=fsync_on_append,
        )
        self._active = Segment(
            stream_id=stream_id,
            segment_id=self._allocate_id(),
            sequence=ACTIVE_SEQUENCE,
            path=recovered.active_path,
            created_at=self._appender.created_at,
        )

        logger.info(
            "Initialized segment manager",
            stream_id=stream_id,
            directory=str(self.directory),
            active_size=self._appender.size(),
            rotated=len(self._rotated),
        )

    def _allocate_id(self) -> int:
        segment_id = self._next_segment_id
        self._next_segment_id += 1
        return segment_id

    @property
    def appender(self) -> WriteAppender:
        """Appender for the current active segment."""
        return self._appender

    def active_segment(self) -> Segment:
        """Descriptor of the active segment with its current size."""
        return replace(self._active, size=self._appender.size())

    def list_segments(self, include_active: bool = False) -> List[Segment]:
        """
        Snapshot the stream's segments.

        Args:
            include_active: Prepend the active segment (sequence 0)

        Returns:
            Segments ordered newest first
        """
        with self._segments_lock:
            segments = list(self._rotated)
            if include_active:
                segments.insert(0, self.active_segment())
        return segments

    def total_size(self) -> int:
        """
        Bytes used by all segments of the stream.

        Reads without locking; a concurrent append or rotation may or may not
        be reflected.
        """
        rotated = self._rotated
        return self._appender.size() + sum(segment.size for segment in rotated)

    def rotate(self, config: RetentionConfig) -> RotationEvent:
        """
        Rotate the active segment.

        The new active file is staged first, then existing rotated files are
        shifted up one sequence (highest first), the active file becomes
        sequence 1 and the staged file is promoted. A failure at any step
        undoes the renames already applied.

        Args:
            config: Configuration in effect for this rotation

        Returns:
            The rotation event

        Raises:
            RotationError: If the rotation could not complete; the stream is unchanged
        """
        with self._segments_lock:
            staged = staging_path(self.directory, self.stream_id, STAGED_ACTIVE_TAG)

            try:
                new_fd = create_segment_file(staged)
            except OSError as e:
                logger.error(
                    "Cannot create new active segment",
                    stream_id=self.stream_id,
                    error=str(e),
                )
                raise RotationError(f"Cannot create new active segment: {e}") from e

            old_appender = self._appender
            applied: List[Tuple[Path, Path]] = []

            try:
                old_appender.flush()

                for segment in reversed(self._rotated):
                    target = segment_path(
                        self.directory,
                        self.stream_id,
                        segment.sequence + 1,
                        segment.extension(),
                    )
                    self._rename_file(segment.path, target)
                    applied.append((segment.path, target))

                rotated_path = segment_path(self.directory, self.stream_id, 1)
                self._rename_file(self._active.path, rotated_path)
                applied.append((self._active.path, rotated_path))

                self._rename_file(staged, self._active.path)

            except OSError as e:
                self._undo_renames(applied)
                os.close(new_fd)
                staged.unlink(missing_ok=True)

                logger.error(
                    "Rotation aborted",
                    stream_id=self.stream_id,
                    error=str(e),
                    renames_undone=len(applied),
                )
                raise RotationError(f"Rotation aborted: {e}") from e

            now = time.time()

            rotated = Segment(
                stream_id=self.stream_id,
                segment_id=self._active.segment_id,
                sequence=1,
                path=rotated_path,
                size=old_appender.size(),
                created_at=self._active.created_at,
                closed_at=now,
                pending_compression=config.compress,
                compression=config.compression if config.compress else None,
            )
            shifted = tuple(
                segment.renumbered(segment.sequence + 1, self.directory, segment.extension())
                for segment in self._rotated
            )

            self._appender = WriteAppender(
                self._active.path,
                fd=new_fd,
                fsync_on_append=self.fsync_on_append,
                created_at=now,
            )
            self._active = Segment(
                stream_id=self.stream_id,
                segment_id=self._allocate_id(),
                sequence=ACTIVE_SEQUENCE,
                path=self._active.path,
                created_at=now,
            )
            self._rotated = (rotated,) + shifted

            try:
                old_appender.close()
            except OSError as e:
                logger.warning(
                    "Failed to close rotated segment",
                    stream_id=self.stream_id,
                    segment_id=rotated.segment_id,
                    error=str(e),
                )

            logger.info(
                "Rotated segment",
                stream_id=self.stream_id,
                segment_id=rotated.segment_id,
                size=rotated.size,
                rotated_segments=len(self._rotated),
            )

            return RotationEvent(
                stream_id=self.stream_id,
                rotated=rotated,
                active=self._active,
                config=config,
                timestamp=now,
            )

    def force_rotate(self, config: RetentionConfig) -> RotationEvent:
        """Rotate regardless of size or age, even if the active segment is empty."""
        logger.info("Forced rotation", stream_id=self.stream_id)
        return self.rotate(config)

    def _rename_file(self, source: Path, target: Path) -> None:
        os.rename(source, target)

    def _undo_renames(self, applied: List[Tuple[Path, Path]]) -> None:
        for source, target in reversed(applied):
            try:
                os.rename(target, source)
            except OSError as e:
                # Left for SegmentRecovery to renumber on the next start
                logger.error(
                    "Failed to undo rename",
                    stream_id=self.stream_id,
                    source=str(target),
                    target=str(source),
                    error=str(e),
                )

    def _find(self, segment_id: int) -> Optional[Segment]:
        for segment in self._rotated:
            if segment.segment_id == segment_id:
                return segment
        return None

    def pending_compression(self) -> List[int]:
        """
        Ids of rotated segments waiting to be compressed, newest first.

        Leased segments are excluded.
        """
        with self._segments_lock:
            return [
                segment.segment_id
                for segment in self._rotated
                if segment.pending_compression
                and not segment.compressed
                and segment.segment_id not in self._leased
            ]

    def lease(self, segment_id: int) -> Optional[SegmentLease]:
        """
        Claim a rotated segment for compression.

        Args:
            segment_id: Segment to claim

        Returns:
            A lease holding an open read handle, or None if the segment is gone,
            already compressed or already leased

        Raises:
            OSError: If the segment file cannot be opened
        """
        with self._segments_lock:
            segment = self._find(segment_id)

            if segment is None or segment.compressed or segment_id in self._leased:
                return None

            source = open(segment.path, "rb")
            self._leased.add(segment_id)

            return SegmentLease(segment=segment, source=source)

    def commit_compression(self, lease: SegmentLease, staged: Path, extension: str) -> Segment:
        """
        Replace a leased segment's file with its compressed artifact.

        The artifact takes the segment's current sequence number, which may
        differ from the one at lease time if rotations happened meanwhile.

        Args:
            lease: Lease on the segment
            staged: Complete compressed artifact outside the naming convention
            extension: Compressed extension, e.g. ``.gz``

        Returns:
            Updated descriptor

        Raises:
            CompressionError: If the segment no longer exists or its uncompressed
                file cannot be removed; the segment stays uncompressed
            OSError: If the artifact cannot be moved into place
        """
        with self._segments_lock:
            segment = self._find(lease.segment_id)

            if segment is None:
                staged.unlink(missing_ok=True)
                raise CompressionError(
                    "Segment no longer exists",
                    segment_id=lease.segment_id,
                )

            target = segment_path(self.directory, self.stream_id, segment.sequence, extension)
            os.replace(staged, target)

            try:
                self._delete_file(segment.path)
            except FileNotFoundError:
                pass
            except OSError as e:
                # Keep the tracked uncompressed file; the segment stays pending
                try:
                    self._delete_file(target)
                except OSError as cleanup_error:
                    # SegmentRecovery keeps the compressed copy on the next start
                    logger.error(
                        "Failed to remove compressed artifact",
                        stream_id=self.stream_id,
                        path=str(target),
                        error=str(cleanup_error),
                    )
                raise CompressionError(
                    f"Failed to remove uncompressed segment: {e}",
                    segment_id=segment.segment_id,
                ) from e

            updated = replace(
                segment,
                path=target,
                size=target.stat().st_size,
                compressed=True,
                pending_compression=False,
            )
            self._rotated = tuple(
                updated if s.segment_id == updated.segment_id else s
                for s in self._rotated
            )

            return updated

    def release(self, lease: SegmentLease) -> None:
        """Close a lease's handle and drop the claim."""
        try:
            lease.source.close()
        finally:
            with self._segments_lock:
                self._leased.discard(lease.segment_id)

    def delete_excess(
        self,
        max_count: int,
        max_age: Optional[float] = None,
        now: Optional[float] = None,
    ) -> Tuple[List[Segment], List[RetentionError]]:
        """
        Delete rotated segments beyond the retention limits.

        Segments are deleted highest sequence first. Leased segments are
        skipped, and a segment that fails to delete is reported and kept.
        Survivors are then renumbered to close any gaps.

        Args:
            max_count: Number of rotated segments to keep
            max_age: Delete segments closed longer ago than this many seconds
            now: Reference time for age checks

        Returns:
            Deleted descriptors and per-segment errors
        """
        now = now if now is not None else time.time()
        deleted: List[Segment] = []
        errors: List[RetentionError] = []

        with self._segments_lock:
            candidates = [
                segment
                for segment in self._rotated
                if segment.sequence > max_count
                or (max_age is not None and segment.age(now) >= max_age)
            ]

            for segment in sorted(candidates, key=lambda s: s.sequence, reverse=True):
                if segment.segment_id in self._leased:
                    logger.debug(
                        "Skipping segment under compression",
                        stream_id=self.stream_id,
                        segment_id=segment.segment_id,
                    )
                    continue

                try:
                    self._delete_file(segment.path)
                except FileNotFoundError:
                    logger.warning(
                        "Segment file already missing",
                        stream_id=self.stream_id,
                        path=str(segment.path),
                    )
                except OSError as e:
                    errors.append(
                        RetentionError(
                            f"Failed to delete segment: {e}",
                            segment_id=segment.segment_id,
                            path=segment.path,
                        )
                    )
                    logger.error(
                        "Failed to delete segment",
                        stream_id=self.stream_id,
                        segment_id=segment.segment_id,
                        error=str(e),
                    )
                    continue

                deleted.append(segment)
                logger.info(
                    "Deleted segment",
                    stream_id=self.stream_id,
                    segment_id=segment.segment_id,
                    sequence=segment.sequence,
                    path=str(segment.path),
                )

            if deleted:
                deleted_ids = {segment.segment_id for segment in deleted}
                survivors = [s for s in self._rotated if s.segment_id not in deleted_ids]
                self._rotated = tuple(self._renumber(survivors, errors))

        return deleted, errors

    def _delete_file(self, path: Path) -> None:
        path.unlink()

    def _renumber(self, survivors: List[Segment], errors: List[RetentionError]) -> List[Segment]:
        """Move survivors down to sequences 1..n, lowest first."""
        result = []

        for index, segment in enumerate(survivors):
            expected = index + 1

            if segment.sequence != expected:
                moved = segment.renumbered(expected, self.directory, segment.extension())
                try:
                    self._rename_file(segment.path, moved.path)
                except OSError as e:
                    errors.append(
                        RetentionError(
                            f"Failed to renumber segment: {e}",
                            segment_id=segment.segment_id,
                            path=segment.path,
                        )
                    )
                    logger.error(
                        "Failed to renumber segment",
                        stream_id=self.stream_id,
                        segment_id=segment.segment_id,
                        error=str(e),
                    )
                    result.extend(survivors[index:])
                    break
                segment = moved

            result.append(segment)

        return result

    def close(self) -> None:
        """Close the active segment."""
        with self._segments_lock:
            self._appender.close()

        logger.info(
            "Closed segment manager",
            stream_id=self.stream_id,
            active_size=self._appender.size(),
            rotated=len(self._rotated),
        )

    def __repr__(self) -> str:
        return (
            f"SegmentManager(stream_id={self.stream_id!r}, "
            f"active_size={self._appender.size()}, "
            f"rotated={len(self._rotated)})"
        )
