"""
Top-level coordinator for all managed log streams.

The orchestrator creates one LogStreamSupervisor per process, registers a
stream per service and routes each service's log output through ``write``.
"""

import threading
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from logkeeper.core.config import RetentionConfig
from logkeeper.core.errors import InvalidConfigError, StreamExistsError, UnknownStreamError
from logkeeper.core.events import EventBus, RotationEvent, Subscriber
from logkeeper.core.segment import Segment
from logkeeper.supervisor.stream import LogStream
from logkeeper.utils.logging import get_logger

logger = get_logger(__name__)

ConfigLike = Union[RetentionConfig, Mapping[str, Any], None]


def _coerce_config(config: ConfigLike) -> RetentionConfig:
    if config is None:
        return RetentionConfig().validate()
    if isinstance(config, RetentionConfig):
        return config.validate()
    return RetentionConfig.from_dict(config)


class LogStreamSupervisor:
    """
    Owns every registered LogStream.

    Streams are independent: each has its own locks and worker threads, so
    a slow or failing stream does not affect the others.

    Lifecycle: ``register`` each stream, ``write`` to it, ``deregister`` it (or
    ``close`` the supervisor to deregister everything).

    Attributes:
        data_dir: Default parent directory for stream base paths
        event_bus: Observability channel shared by all streams
    """

    def __init__(self, data_dir: Union[str, Path] = "./logs", event_bus: Optional[EventBus] = None):
        """
        Initialize supervisor.

        Args:
            data_dir: Directory under which streams without an explicit base path are stored
            event_bus: Observability channel; a new one is created if None
        """
        self.data_dir = Path(data_dir)
        self.event_bus = event_bus or EventBus()

        self._streams: Dict[str, LogStream] = {}
        self._lock = threading.Lock()

        logger.info("LogStreamSupervisor initialized", data_dir=str(self.data_dir))

    def register(
        self,
        stream_id: str,
        config: ConfigLike = None,
        base_path: Optional[Union[str, Path]] = None,
    ) -> LogStream:
        """
        Register a stream and start its workers.

        Existing segment files under the base path are recovered.

        Args:
            stream_id: Stream identifier, used as the segment file prefix
            config: RetentionConfig or option mapping; defaults if None
            base_path: Directory for the stream's segments; ``data_dir/<stream_id>`` if None

        Returns:
            The registered stream

        Raises:
            InvalidConfigError: If the configuration is invalid
            StreamExistsError: If the id is already registered
            ValueError: If the stream id cannot be used as a file name
        """
        if not stream_id or "/" in stream_id or stream_id in (".", ".."):
            raise ValueError(f"Invalid stream id: {stream_id!r}")

        retention = _coerce_config(config)
        directory = Path(base_path) if base_path is not None else self.data_dir / stream_id

        with self._lock:
            if stream_id in self._streams:
                raise StreamExistsError(stream_id)

            stream = LogStream(
                stream_id=stream_id,
                base_path=directory,
                config=retention,
                event_bus=self.event_bus,
            )
            self._streams[stream_id] = stream

        logger.info(
            "Registered stream",
            stream_id=stream_id,
            base_path=str(directory),
            max_segment_size=retention.max_segment_size,
            max_segment_count=retention.max_segment_count,
            compress=retention.compress,
        )

        return stream

    def deregister(self, stream_id: str, cancel_pending: bool = True) -> None:
        """
        Stop managing a stream.

        Args:
            stream_id: Stream identifier
            cancel_pending: Cancel in-flight compression and queued sweeps

        Raises:
            UnknownStreamError: If the stream is not registered
        """
        with self._lock:
            stream = self._streams.pop(stream_id, None)

        if stream is None:
            raise UnknownStreamError(stream_id)

        stream.close(cancel_pending=cancel_pending)

        logger.info("Deregistered stream", stream_id=stream_id)

    def _get(self, stream_id: str) -> LogStream:
        try:
            return self._streams[stream_id]
        except KeyError:
            raise UnknownStreamError(stream_id) from None

    def streams(self) -> List[str]:
        """Ids of all registered streams."""
        return sorted(self._streams)

    def write(self, stream_id: str, data: bytes) -> int:
        """
        Append bytes to a stream.

        Args:
            stream_id: Stream identifier
            data: Log bytes

        Returns:
            Number of bytes written

        Raises:
            UnknownStreamError: If the stream is not registered
            IOError: If the append fails
            RotationError: If a rotation triggered by this write failed
        """
        return self._get(stream_id).write(data)

    def update_config(self, stream_id: str, config: ConfigLike) -> RetentionConfig:
        """
        Replace a stream's configuration.

        Args:
            stream_id: Stream identifier
            config: RetentionConfig or option mapping

        Returns:
            The configuration now in effect

        Raises:
            UnknownStreamError: If the stream is not registered
            InvalidConfigError: If the configuration is invalid; the prior one stays in effect
        """
        stream = self._get(stream_id)

        try:
            retention = _coerce_config(config)
        except InvalidConfigError as e:
            logger.warning(
                "Rejected configuration update",
                stream_id=stream_id,
                error=str(e),
            )
            raise

        stream.update_config(retention)
        return retention

    def total_space_used(self, stream_id: str) -> int:
        """
        Best-effort total size of a stream's segments in bytes.

        Raises:
            UnknownStreamError: If the stream is not registered
        """
        return self._get(stream_id).total_space_used()

    def force_rotate(self, stream_id: str) -> RotationEvent:
        """
        Rotate a stream's active segment now.

        Raises:
            UnknownStreamError: If the stream is not registered
            RotationError: If the rotation failed
        """
        return self._get(stream_id).force_rotate()

    def list_segments(self, stream_id: str, include_active: bool = False) -> List[Segment]:
        """Segments of a stream, newest first."""
        return self._get(stream_id).list_segments(include_active=include_active)

    def sweep(self, stream_id: str) -> List[int]:
        """Run a retention sweep on a stream and return the deleted segment ids."""
        return self._get(stream_id).sweep()

    def wait_idle(self, stream_id: str, timeout: Optional[float] = None) -> bool:
        """Wait for a stream's background compression and sweeps to finish."""
        return self._get(stream_id).wait_idle(timeout)

    def subscribe(self, callback: Subscriber):
        """
        Subscribe to rotation, compression and sweep events of all streams.

        Returns:
            A function that removes the subscription
        """
        return self.event_bus.subscribe(callback)

    def status(self) -> Dict[str, Any]:
        """Snapshot of every stream's segments and space usage."""
        report = {}

        for stream_id in self.streams():
            stream = self._get(stream_id)
            report[stream_id] = {
                "base_path": str(stream.base_path),
                "total_space_used": stream.total_space_used(),
                "config": stream.config.to_dict(),
                "segments": [s.to_dict() for s in stream.list_segments(include_active=True)],
            }

        return report

    def close(self, cancel_pending: bool = True) -> None:
        """Deregister every stream."""
        for stream_id in self.streams():
            try:
                self.deregister(stream_id, cancel_pending=cancel_pending)
            except UnknownStreamError:
                pass

        logger.info("LogStreamSupervisor closed")

    def __enter__(self) -> "LogStreamSupervisor":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
