"""
Events emitted by log streams and the bus that delivers them.

Subscribers are fire-and-forget: they run synchronously on the thread that
published the event, and an exception raised by one subscriber is logged and
does not reach the publisher or other subscribers.
"""

import threading
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Union

from logkeeper.core.config import RetentionConfig
from logkeeper.core.errors import CompressionError, RetentionError
from logkeeper.core.segment import Segment
from logkeeper.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class RotationEvent:
    """
    Emitted when an active segment becomes rotated segment 1.

    Attributes:
        stream_id: Stream that rotated
        rotated: The old active segment, now sequence 1
        active: The new, empty active segment
        config: Configuration in effect when the rotation happened
        timestamp: Unix time of the rotation
    """
    stream_id: str
    rotated: Segment
    active: Segment
    config: RetentionConfig
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class CompressionResult:
    """Outcome of compressing one rotated segment."""
    stream_id: str
    segment_id: int
    original_size: int = 0
    compressed_size: int = 0
    error: Optional[CompressionError] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class SweepResult:
    """
    Outcome of one retention sweep.

    Attributes:
        stream_id: Swept stream
        deleted: Deleted segment descriptors, in deletion order
        errors: Per-segment deletion failures
        trigger: What requested the sweep (rotation, compression, config, startup, timer, manual)
    """
    stream_id: str
    deleted: List[Segment] = field(default_factory=list)
    errors: List[RetentionError] = field(default_factory=list)
    trigger: str = "manual"

    @property
    def deleted_ids(self) -> List[int]:
        return [segment.segment_id for segment in self.deleted]


StreamEvent = Union[RotationEvent, CompressionResult, SweepResult]
Subscriber = Callable[[StreamEvent], None]


class EventBus:
    """Delivers stream events to registered subscribers."""

    def __init__(self):
        self._subscribers: List[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """
        Register a subscriber.

        Args:
            callback: Called with every published event

        Returns:
            A function that removes the subscription
        """
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event: StreamEvent) -> None:
        """Deliver an event to every subscriber."""
        with self._lock:
            subscribers = list(self._subscribers)

        for callback in subscribers:
            try:
                callback(event)
            except Exception as e:
                logger.warning(
                    "Event subscriber failed",
                    event_type=type(event).__name__,
                    stream_id=event.stream_id,
                    error=str(e),
                )
