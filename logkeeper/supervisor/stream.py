"""
A single managed log stream.

Composes the appender, rotation policy, segment manager and the two
background workers for one service's log.
"""

import threading
from pathlib import Path
from typing import List, Optional

from logkeeper.core.config import RetentionConfig
from logkeeper.core.errors import RotationError
from logkeeper.core.events import EventBus, RotationEvent
from logkeeper.core.manager import SegmentManager
from logkeeper.core.policy import RotationPolicy
from logkeeper.core.segment import Segment
from logkeeper.utils.logging import get_logger
from logkeeper.workers.compression import CompressionWorker
from logkeeper.workers.retention import RetentionSweeper

logger = get_logger(__name__)


class LogStream:
    """
    One logical log, belonging to one monitored service.

    Appends and rotations serialize on the stream's write lock. Compression and
    retention run on their own threads and never take it.

    Attributes:
        stream_id: Stream identifier
        base_path: Directory holding the stream's segment files
    """

    def __init__(
        self,
        stream_id: str,
        base_path: Path,
        config: RetentionConfig,
        event_bus: Optional[EventBus] = None,
    ):
        """
        Initialize a log stream and start its workers.

        Args:
            stream_id: Stream identifier
            base_path: Directory for segment files
            config: Validated retention configuration
            event_bus: Observability channel
        """
        self.stream_id = stream_id
        self.base_path = Path(base_path)
        self.event_bus = event_bus or EventBus()

        self._config = config
        self._write_lock = threading.RLock()
        self._policy = RotationPolicy()

        self.manager = SegmentManager(
            stream_id=stream_id,
            directory=self.base_path,
            fsync_on_append=config.fsync_on_append,
        )

        self.sweeper = RetentionSweeper(
            self.manager,
            config_provider=lambda: self._config,
            event_bus=self.event_bus,
        )
        self.compressor = CompressionWorker(
            self.manager,
            event_bus=self.event_bus,
            on_compressed=lambda: self.sweeper.request("compression"),
        )

        self.sweeper.start()
        self.compressor.start()

        # Recovered segments may already exceed the limits
        self.sweeper.request("startup")

    @property
    def config(self) -> RetentionConfig:
        return self._config

    def update_config(self, config: RetentionConfig) -> None:
        """
        Replace the configuration.

        Takes effect from the next append: the new size limit applies to the
        next rotation check, and compression is decided per rotation.
        Existing segments are never resized or recompressed. Retention limits
        apply at the next sweep, which is requested here so the sweeper also
        picks up a new sweep interval.
        """
        with self._write_lock:
            previous = self._config
            self._config = config

        self.sweeper.request("config")

        logger.info(
            "Updated stream configuration",
            stream_id=self.stream_id,
            previous=previous.to_dict(),
            current=config.to_dict(),
        )

    def _acquire(self, timeout: float) -> bool:
        return self._write_lock.acquire(timeout=timeout)

    def write(self, data: bytes) -> int:
        """
        Append bytes and rotate if the size or age limit is reached.

        Args:
            data: Log bytes to append

        Returns:
            Number of bytes written

        Raises:
            IOError: If the append fails or the write lock cannot be acquired in time
            RotationError: If the append succeeded but the rotation that followed
                failed; ``bytes_written`` holds the appended size
        """
        config = self._config

        if not self._acquire(config.rotation_timeout):
            raise IOError(
                f"Timed out after {config.rotation_timeout}s waiting for stream {self.stream_id!r}"
            )

        try:
            config = self._config
            appender = self.manager.appender
            bytes_written = appender.append(data)

            event = None
            if self._policy.should_rotate(appender.size(), appender.age(), config):
                try:
                    event = self.manager.rotate(config)
                except RotationError as e:
                    e.bytes_written = bytes_written
                    raise
        finally:
            self._write_lock.release()

        if event is not None:
            self._dispatch(event)

        return bytes_written

    def force_rotate(self) -> RotationEvent:
        """
        Rotate the active segment now.

        Raises:
            RotationError: If the rotation failed or timed out waiting for the write lock
        """
        config = self._config

        if not self._acquire(config.rotation_timeout):
            raise RotationError(
                f"Timed out after {config.rotation_timeout}s waiting for stream {self.stream_id!r}"
            )

        try:
            event = self.manager.force_rotate(self._config)
        finally:
            self._write_lock.release()

        self._dispatch(event)
        return event

    def _dispatch(self, event: RotationEvent) -> None:
        self.event_bus.publish(event)
        self.sweeper.request("rotation")
        self.compressor.submit(event)

    def total_space_used(self) -> int:
        """Best-effort total size of all segments in bytes."""
        return self.manager.total_size()

    def list_segments(self, include_active: bool = False) -> List[Segment]:
        return self.manager.list_segments(include_active=include_active)

    def sweep(self) -> List[int]:
        """Run a retention sweep on the calling thread."""
        return self.sweeper.sweep("manual")

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for queued compression and sweeps to finish.

        Compression can request a further sweep, so the sweeper is waited on
        after the compressor.
        """
        return self.compressor.wait_idle(timeout) and self.sweeper.wait_idle(timeout)

    def close(self, cancel_pending: bool = True, timeout: Optional[float] = 10.0) -> None:
        """
        Stop the workers and close the active segment.

        Args:
            cancel_pending: Abort in-flight compression (its partial output is removed)
            timeout: Seconds to wait for each worker thread
        """
        self.compressor.stop(cancel_pending=cancel_pending, timeout=timeout)
        self.sweeper.stop(timeout=timeout)

        with self._write_lock:
            self.manager.close()

        logger.info("Closed stream", stream_id=self.stream_id)

    def __repr__(self) -> str:
        return f"LogStream(stream_id={self.stream_id!r}, base_path={str(self.base_path)!r})"
