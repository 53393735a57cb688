"""
Background compression of rotated segments.

Each stream runs one CompressionWorker thread fed with RotationEvents. The
worker compresses every rotated segment waiting for compression, so a segment
whose compression failed is retried on the next rotation.

Supports gzip and lz4. gzip gives the better ratio; lz4 is much faster on
busy streams.
"""

import gzip
import queue
import threading
import time
from pathlib import Path
from typing import BinaryIO, Callable, List, Optional, Tuple

import crc32c
import lz4.frame

from logkeeper.core.config import CompressionType
from logkeeper.core.errors import CompressionCancelled, CompressionError
from logkeeper.core.events import CompressionResult, EventBus, RotationEvent
from logkeeper.core.manager import SegmentManager
from logkeeper.core.segment import staging_path
from logkeeper.utils.logging import bind_worker_context, get_logger

logger = get_logger(__name__)

DEFAULT_CHUNK_SIZE = 1024 * 1024


class Compressor:
    """
    Streams segment files through a compression codec.

    Every chunk read is folded into a CRC32C checksum, and the artifact is
    verified by decompressing it and comparing checksums before it replaces
    the original.
    """

    def __init__(
        self,
        compression_type: CompressionType = CompressionType.GZIP,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        compresslevel: int = 6,
    ):
        """
        Initialize compressor.

        Args:
            compression_type: Codec to use
            chunk_size: Bytes read per iteration
            compresslevel: gzip compression level
        """
        self.compression_type = CompressionType(compression_type)
        self.chunk_size = chunk_size
        self.compresslevel = compresslevel

    def _writer(self, dest: BinaryIO) -> BinaryIO:
        if self.compression_type == CompressionType.GZIP:
            return gzip.GzipFile(fileobj=dest, mode="wb", compresslevel=self.compresslevel)
        return lz4.frame.LZ4FrameFile(dest, mode="wb")

    def _reader(self, source: BinaryIO) -> BinaryIO:
        if self.compression_type == CompressionType.GZIP:
            return gzip.GzipFile(fileobj=source, mode="rb")
        return lz4.frame.LZ4FrameFile(source, mode="rb")

    def compress_file(
        self,
        source: BinaryIO,
        dest_path: Path,
        check: Optional[Callable[[], None]] = None,
    ) -> Tuple[int, int]:
        """
        Compress an open file into a new file.

        Args:
            source: Readable binary file positioned at the start
            dest_path: File to write (replaced if present)
            check: Called between chunks; raises to abort

        Returns:
            (bytes read, CRC32C of the bytes read)
        """
        bytes_read = 0
        checksum = 0

        with open(dest_path, "wb") as dest:
            with self._writer(dest) as writer:
                while True:
                    if check is not None:
                        check()

                    chunk = source.read(self.chunk_size)
                    if not chunk:
                        break

                    writer.write(chunk)
                    bytes_read += len(chunk)
                    checksum = crc32c.crc32c(chunk, value=checksum)

            dest.flush()

        return bytes_read, checksum

    def verify(self, path: Path, expected_size: int, expected_checksum: int) -> None:
        """
        Check that a compressed file decompresses to the expected content.

        Raises:
            CompressionError: If size or checksum differ
        """
        size = 0
        checksum = 0

        with open(path, "rb") as raw, self._reader(raw) as reader:
            while True:
                chunk = reader.read(self.chunk_size)
                if not chunk:
                    break
                size += len(chunk)
                checksum = crc32c.crc32c(chunk, value=checksum)

        if size != expected_size or checksum != expected_checksum:
            raise CompressionError(
                f"Verification failed for {path.name}: "
                f"expected {expected_size} bytes crc={expected_checksum:#010x}, "
                f"got {size} bytes crc={checksum:#010x}"
            )


class CompressionWorker:
    """
    Compresses a stream's rotated segments off the append path.

    Failures never propagate to writers: they are logged, published as a
    CompressionResult carrying the error, and the uncompressed segment is kept.
    """

    def __init__(
        self,
        manager: SegmentManager,
        event_bus: Optional[EventBus] = None,
        on_compressed: Optional[Callable[[], None]] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        """
        Initialize compression worker.

        Args:
            manager: Segment manager of the stream
            event_bus: Receives a CompressionResult per attempted segment
            on_compressed: Called after a batch that attempted at least one segment
            chunk_size: Bytes compressed between cancellation and timeout checks
        """
        self.manager = manager
        self.stream_id = manager.stream_id
        self.event_bus = event_bus
        self.on_compressed = on_compressed
        self.chunk_size = chunk_size

        self._queue: queue.Queue = queue.Queue()
        self._cancelled = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self._idle = threading.Condition()
        self._pending = 0

    def start(self) -> None:
        """Start the worker thread."""
        if self._thread is not None:
            return

        self._thread = threading.Thread(
            target=self._run,
            name=f"compression-{self.stream_id}",
            daemon=True,
        )
        self._thread.start()

        logger.debug("Compression worker started", stream_id=self.stream_id)

    def stop(self, cancel_pending: bool = True, timeout: Optional[float] = None) -> None:
        """
        Stop the worker thread.

        Args:
            cancel_pending: Abort the segment in progress and drop queued events
            timeout: Seconds to wait for the thread to exit
        """
        if cancel_pending:
            self._cancelled.set()

        if self._thread is None:
            return

        self._queue.put(None)
        self._thread.join(timeout)

        if self._thread.is_alive():
            logger.warning("Compression worker did not stop in time", stream_id=self.stream_id)
        else:
            self._thread = None

        logger.debug(
            "Compression worker stopped",
            stream_id=self.stream_id,
            cancelled=cancel_pending,
        )

    def submit(self, event: RotationEvent) -> bool:
        """
        Queue a rotation event.

        Args:
            event: Rotation to react to

        Returns:
            True if queued, False if the event's config has compression disabled
        """
        if not event.config.compress or self._cancelled.is_set():
            return False

        with self._idle:
            self._pending += 1

        self._queue.put(event)
        return True

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until every submitted event has been processed.

        Returns:
            True if idle, False on timeout
        """
        with self._idle:
            return self._idle.wait_for(lambda: self._pending == 0, timeout)

    def _run(self) -> None:
        bind_worker_context(self.stream_id, "compression")

        while True:
            event = self._queue.get()
            if event is None:
                break

            try:
                if not self._cancelled.is_set():
                    self.process(event)
            except Exception as e:
                logger.error(
                    "Unexpected error in compression worker",
                    stream_id=self.stream_id,
                    error=str(e),
                    exc_info=True,
                )
            finally:
                with self._idle:
                    self._pending -= 1
                    self._idle.notify_all()

        # Events left behind by a cancelled stop
        with self._idle:
            self._pending = 0
            self._idle.notify_all()

    def process(self, event: RotationEvent) -> List[CompressionResult]:
        """
        Compress every rotated segment waiting for compression.

        Args:
            event: Rotation event supplying the codec and timeout

        Returns:
            One result per segment attempted
        """
        results = []

        for segment_id in self.manager.pending_compression():
            if self._cancelled.is_set():
                break

            result = self.compress_segment(segment_id, event)
            if result is None:
                continue

            results.append(result)

            if self.event_bus is not None:
                self.event_bus.publish(result)

        # Any attempt released a lease, so a sweep that skipped it can now finish
        if self.on_compressed is not None and results:
            self.on_compressed()

        return results

    def compress_segment(self, segment_id: int, event: RotationEvent) -> Optional[CompressionResult]:
        """
        Compress one rotated segment in place.

        Args:
            segment_id: Segment to compress
            event: Rotation event supplying the timeout (and the codec for
                segments rotated without one recorded)

        Returns:
            The result, or None if the segment was already compressed, leased or gone
        """
        config = event.config

        try:
            lease = self.manager.lease(segment_id)
        except OSError as e:
            return self._failed(segment_id, 0, CompressionError(str(e), segment_id=segment_id))

        if lease is None:
            return None

        # The codec is the one in effect when the segment was rotated
        codec = CompressionType(lease.segment.compression or config.compression)
        compressor = Compressor(codec, chunk_size=self.chunk_size)
        staged = staging_path(self.manager.directory, self.stream_id, f"{segment_id}.z")
        deadline = time.monotonic() + config.compression_timeout
        original_size = lease.segment.size

        def check() -> None:
            if self._cancelled.is_set():
                raise CompressionCancelled("Compression cancelled", segment_id=segment_id)
            if time.monotonic() > deadline:
                raise CompressionError(
                    f"Compression timed out after {config.compression_timeout}s",
                    segment_id=segment_id,
                )

        try:
            bytes_read, checksum = compressor.compress_file(lease.source, staged, check)
            check()
            compressor.verify(staged, bytes_read, checksum)
            updated = self.manager.commit_compression(lease, staged, codec.extension)

        except CompressionError as e:
            staged.unlink(missing_ok=True)
            e.segment_id = segment_id
            return self._failed(segment_id, original_size, e)

        except (OSError, EOFError, RuntimeError) as e:
            staged.unlink(missing_ok=True)
            return self._failed(
                segment_id,
                original_size,
                CompressionError(str(e), segment_id=segment_id),
            )

        finally:
            self.manager.release(lease)

        logger.info(
            "Compressed segment",
            stream_id=self.stream_id,
            segment_id=segment_id,
            compression_type=codec.value,
            original_size=bytes_read,
            compressed_size=updated.size,
        )

        return CompressionResult(
            stream_id=self.stream_id,
            segment_id=segment_id,
            original_size=bytes_read,
            compressed_size=updated.size,
        )

    def _failed(self, segment_id: int, original_size: int, error: CompressionError) -> CompressionResult:
        if isinstance(error, CompressionCancelled):
            logger.info("Compression cancelled", stream_id=self.stream_id, segment_id=segment_id)
        else:
            logger.error(
                "Compression failed, keeping uncompressed segment",
                stream_id=self.stream_id,
                segment_id=segment_id,
                error=str(error),
            )

        return CompressionResult(
            stream_id=self.stream_id,
            segment_id=segment_id,
            original_size=original_size,
            error=error,
        )
