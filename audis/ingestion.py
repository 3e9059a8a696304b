"""
Background delegation of event logging.

A common pattern is to give a single thread the job of shunting events
into Redis, so that producers are not slowed down by momentary hiccups
in the auditing layer. BackgroundLogger is a bounded queue with exactly
one consumer thread:

- send() blocks once the queue is full (backpressure)
- close() lets the worker drain what is queued, then stops it
- a failed log is reported and the worker moves on to the next event
"""

import queue
import threading
from typing import Any, Callable, Optional
import structlog

from audis.config import DEFAULT_QUEUE_CAPACITY
from audis.errors import ChannelClosed
from audis.events import Event

logger = structlog.get_logger(__name__)

# Queued after the last event to tell the worker to stop
_STOP = object()


class BackgroundLogger:
    """
    Bounded producer/consumer channel in front of a log function.

    Usage:
        with audit.background(50) as channel:
            channel.send(Event(data="...", subjects=["system"]))
        # leaving the block drains the queue and joins the worker
    """

    def __init__(
        self,
        sink: Callable[[Event], Any],
        capacity: int = 0,
    ):
        """
        Args:
            sink: Called once per event on the worker thread (e.g. AuditLog.log)
            capacity: Maximum queued events; 0 means the default of 100
        """
        if capacity < 0:
            raise ValueError(f"capacity must be non-negative, got {capacity}")

        self.sink = sink
        self.capacity = capacity or DEFAULT_QUEUE_CAPACITY
        self._queue: queue.Queue = queue.Queue(maxsize=self.capacity)
        self._lock = threading.Lock()
        self._closed = False
        self._thread: Optional[threading.Thread] = None

        self.processed = 0
        self.failed = 0

    def start(self) -> None:
        """Start the consumer thread."""
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._run,
            name="audis-background",
            daemon=True,
        )
        self._thread.start()
        logger.info("background_logger_started", capacity=self.capacity)

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, event: Event, timeout: Optional[float] = None) -> None:
        """
        Queue an event for logging.

        Blocks while the queue is full. With a timeout, raises queue.Full
        if no room appeared in time.

        Raises:
            ChannelClosed: if close() was already called
        """
        with self._lock:
            if self._closed:
                raise ChannelClosed(
                    f"cannot send event '{getattr(event, 'id', None)}': channel is closed"
                )
            self._queue.put(event, timeout=timeout)

    def close(self, timeout: Optional[float] = None) -> None:
        """
        Close the producer side and wait for the worker to drain the queue.

        Args:
            timeout: Maximum seconds to wait for the worker (None waits forever)
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._queue.put(_STOP)

        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning("background_logger_still_draining", pending=self._queue.qsize())
                return

        logger.info(
            "background_logger_stopped",
            processed=self.processed,
            failed=self.failed,
        )

    def __enter__(self) -> "BackgroundLogger":
        self.start()
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _run(self) -> None:
        """Worker loop: log events in queue order until told to stop."""
        while True:
            event = self._queue.get()
            try:
                if event is _STOP:
                    break
                try:
                    self.sink(event)
                    self.processed += 1
                except Exception as e:
                    self.failed += 1
                    logger.error(
                        "background_log_failed",
                        event_id=getattr(event, "id", None),
                        error=str(e),
                        error_type=type(e).__name__,
                    )
            finally:
                self._queue.task_done()
