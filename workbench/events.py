"""Event sink: the single path from background workers to the front end."""

from __future__ import annotations

import logging
import queue
import threading
from collections import deque
from typing import Callable

from workbench.schemas import (
    ComponentLog,
    ComponentProgress,
    Event,
    EventType,
    ProgressStatus,
)

logger = logging.getLogger(__name__)

# Number of recent events kept for polling clients
DEFAULT_HISTORY = 500

Subscriber = Callable[[Event], None]


class EventSink:
    """Unbounded queue drained by one dispatcher thread.

    Producers never block on subscribers: emit() only enqueues, and a
    subscriber that raises is logged and skipped.
    """

    def __init__(self, history: int = DEFAULT_HISTORY):
        self._queue: queue.Queue[Event | None] = queue.Queue()
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()
        self._history: deque[Event] = deque(maxlen=history)
        self._thread: threading.Thread | None = None
        self._closed = False

    def start(self) -> None:
        """Start the dispatcher thread if it is not running."""
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._closed = False
            self._thread = threading.Thread(
                target=self._dispatch_loop,
                name="event-sink",
                daemon=True,
            )
            self._thread.start()

    def close(self, timeout: float = 2.0) -> None:
        """Deliver what is queued, then stop the dispatcher."""
        with self._lock:
            thread = self._thread
            self._closed = True
        if thread is not None and thread.is_alive():
            self._queue.put(None)
            thread.join(timeout)

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """Register a subscriber; returns a function that unregisters it."""
        with self._lock:
            self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            with self._lock:
                if subscriber in self._subscribers:
                    self._subscribers.remove(subscriber)

        return unsubscribe

    def emit(self, event: Event) -> None:
        """Queue an event for delivery. Never raises, never blocks."""
        if self._closed:
            logger.debug(f"Sink closed, dropping {event.type.value} event")
            return
        self._queue.put(event)

    def log(self, component: str, message: str) -> None:
        """Emit a component-log event."""
        self.emit(Event(
            type=EventType.COMPONENT_LOG,
            data=ComponentLog(component=component, message=message),
        ))

    def progress(
        self,
        component: str,
        percent: int,
        status: ProgressStatus,
        message: str,
        eta_seconds: int | None = None,
    ) -> None:
        """Emit a component-progress event, clamping percent to 0..100."""
        self.emit(Event(
            type=EventType.COMPONENT_PROGRESS,
            data=ComponentProgress(
                component=component,
                percent=max(0, min(100, int(percent))),
                status=status,
                message=message,
                eta_seconds=eta_seconds,
            ),
        ))

    def recent(self, limit: int | None = None) -> list[Event]:
        """Return delivered events, oldest first."""
        with self._lock:
            events = list(self._history)
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return events

    def flush(self) -> None:
        """Block until every queued event has been dispatched."""
        if self._thread is None or not self._thread.is_alive():
            return
        self._queue.join()

    def _dispatch_loop(self) -> None:
        while True:
            event = self._queue.get()
            try:
                if event is None:
                    return
                self._deliver(event)
            finally:
                self._queue.task_done()

    def _deliver(self, event: Event) -> None:
        with self._lock:
            self._history.append(event)
            subscribers = list(self._subscribers)

        logger.debug(f"{event.type.value}: {event.data.component}: {getattr(event.data, 'message', '')}")
        for subscriber in subscribers:
            try:
                subscriber(event)
            except Exception as e:
                logger.debug(f"Event subscriber failed: {e}")
