"""
Retention sweeping for rotated segments.

Deletes rotated segments beyond the configured count (and, when configured,
older than the retained age), oldest first. Sweeps run on the stream's sweeper
thread after each rotation, after each completed compression and, optionally,
on a timer.
"""

import queue
import threading
import time
from typing import Callable, List, Optional

from logkeeper.core.config import RetentionConfig
from logkeeper.core.events import EventBus, SweepResult
from logkeeper.core.manager import SegmentManager
from logkeeper.utils.logging import bind_worker_context, get_logger

logger = get_logger(__name__)


class RetentionSweeper:
    """
    Enforces a stream's retention limits.

    Deletion failures are per segment: they are collected into the
    SweepResult, logged and published, and never stop the sweep or reach a
    writer.
    """

    def __init__(
        self,
        manager: SegmentManager,
        config_provider: Callable[[], RetentionConfig],
        event_bus: Optional[EventBus] = None,
    ):
        """
        Initialize retention sweeper.

        Args:
            manager: Segment manager of the stream
            config_provider: Returns the configuration in effect
            event_bus: Receives a SweepResult for every sweep that deleted or failed
        """
        self.manager = manager
        self.stream_id = manager.stream_id
        self.config_provider = config_provider
        self.event_bus = event_bus

        self._queue: queue.Queue = queue.Queue()
        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._sweep_lock = threading.Lock()

        self._idle = threading.Condition()
        self._pending = 0

        self.last_sweep_time: Optional[float] = None

    def start(self) -> None:
        """Start the sweeper thread."""
        if self._thread is not None:
            return

        self._running = True
        self._thread = threading.Thread(
            target=self._run,
            name=f"retention-{self.stream_id}",
            daemon=True,
        )
        self._thread.start()

        logger.debug("Retention sweeper started", stream_id=self.stream_id)

    def stop(self, timeout: Optional[float] = None) -> None:
        """
        Stop the sweeper thread, dropping queued sweep requests.

        Args:
            timeout: Seconds to wait for the thread to exit
        """
        self._running = False

        if self._thread is None:
            return

        self._queue.put(None)
        self._thread.join(timeout)

        if self._thread.is_alive():
            logger.warning("Retention sweeper did not stop in time", stream_id=self.stream_id)
        else:
            self._thread = None

        logger.debug("Retention sweeper stopped", stream_id=self.stream_id)

    def request(self, trigger: str = "rotation") -> None:
        """
        Ask the sweeper thread for a sweep.

        Args:
            trigger: Reason recorded in the SweepResult
        """
        if not self._running:
            return

        with self._idle:
            self._pending += 1

        self._queue.put(trigger)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until every requested sweep has run.

        Returns:
            True if idle, False on timeout
        """
        with self._idle:
            return self._idle.wait_for(lambda: self._pending == 0, timeout)

    def _run(self) -> None:
        bind_worker_context(self.stream_id, "retention")

        while self._running:
            interval = self.config_provider().sweep_interval

            try:
                trigger = self._queue.get(timeout=interval)
            except queue.Empty:
                trigger = "timer"
                timed = True
            else:
                timed = False

            if trigger is None:
                break

            try:
                if self._running:
                    self.sweep(trigger)
            except Exception as e:
                logger.error(
                    "Unexpected error in retention sweeper",
                    stream_id=self.stream_id,
                    error=str(e),
                    exc_info=True,
                )
            finally:
                if not timed:
                    with self._idle:
                        self._pending -= 1
                        self._idle.notify_all()

        with self._idle:
            self._pending = 0
            self._idle.notify_all()

    def sweep(self, trigger: str = "manual") -> List[int]:
        """
        Delete rotated segments beyond the retention limits.

        Never deletes the active segment or a segment being compressed.

        Args:
            trigger: Reason recorded in the SweepResult

        Returns:
            Ids of deleted segments, oldest (highest sequence) first
        """
        config = self.config_provider()

        with self._sweep_lock:
            deleted, errors = self.manager.delete_excess(
                max_count=config.max_segment_count,
                max_age=config.max_retained_age,
            )
            self.last_sweep_time = time.time()

        result = SweepResult(
            stream_id=self.stream_id,
            deleted=deleted,
            errors=errors,
            trigger=trigger,
        )

        if deleted or errors:
            logger.info(
                "Retention sweep complete",
                stream_id=self.stream_id,
                trigger=trigger,
                deleted=result.deleted_ids,
                failed=len(errors),
                remaining=len(self.manager.list_segments()),
            )

            if self.event_bus is not None:
                self.event_bus.publish(result)

        return result.deleted_ids
