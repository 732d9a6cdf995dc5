"""Bounded hand-off between the feed reader and the batch indexer."""

import queue
import threading
from typing import Optional

# How long a blocked put/take waits before re-checking the stop event
STOP_CHECK_INTERVAL = 0.1


class BoundedEventQueue:
    """
    Fixed-capacity FIFO of raw feed lines.

    ``put`` blocks while the queue is full and ``take`` while it is empty, in
    both cases waking every STOP_CHECK_INTERVAL to observe the stop event.
    """

    def __init__(self, capacity: int, stop_event: threading.Event):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self.stop_event = stop_event
        self._queue: "queue.Queue[str]" = queue.Queue(maxsize=capacity)

    def put(self, line: str) -> bool:
        """Enqueue ``line``, blocking while full. Returns False if stopped first."""
        while not self.stop_event.is_set():
            try:
                self._queue.put(line, timeout=STOP_CHECK_INTERVAL)
                return True
            except queue.Full:
                continue
        return False

    def take(self) -> Optional[str]:
        """Dequeue the next line, blocking while empty. Returns None if stopped."""
        while not self.stop_event.is_set():
            try:
                return self._queue.get(timeout=STOP_CHECK_INTERVAL)
            except queue.Empty:
                continue
        return None

    def poll(self, timeout: float) -> Optional[str]:
        """Dequeue the next line, waiting at most ``timeout`` seconds."""
        try:
            return self._queue.get(timeout=timeout) if timeout > 0 else self._queue.get_nowait()
        except queue.Empty:
            return None

    def qsize(self) -> int:
        return self._queue.qsize()

    def __len__(self) -> int:
        return self._queue.qsize()
