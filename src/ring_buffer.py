"""Bounded in-memory view of the most recent envelopes, with live listeners."""

import collections
import logging
import threading
from typing import Callable

from src.models import Envelope

logger = logging.getLogger(__name__)

Listener = Callable[[Envelope], None]


class RingBuffer:
    """Thread-safe most-recent-N buffer backed by a bounded deque.

    Listeners are called after each append, outside the lock. A failing
    listener never affects the buffer or the other listeners.
    """

    def __init__(self, max_size: int = 500):
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self._entries: collections.deque = collections.deque(maxlen=max_size)
        self._lock = threading.Lock()
        self._listeners: list[Listener] = []
        self._total_count = 0

    def append(self, envelope: Envelope) -> None:
        with self._lock:
            self._entries.append(envelope)
            self._total_count += 1
            listeners = list(self._listeners)

        for listener in listeners:
            try:
                listener(envelope)
            except Exception:
                logger.debug("Ring buffer listener %r failed", listener, exc_info=True)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener* and return a callable that unsubscribes it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                try:
                    self._listeners.remove(listener)
                except ValueError:
                    pass

        return unsubscribe

    def snapshot(self) -> list[Envelope]:
        """All retained envelopes, oldest first."""
        with self._lock:
            return list(self._entries)

    def get_recent(self, count: int = 50) -> list[Envelope]:
        """The last *count* envelopes, most recent first."""
        if count <= 0:
            return []
        with self._lock:
            return list(self._entries)[-count:][::-1]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    @property
    def max_size(self) -> int:
        return self._entries.maxlen

    @property
    def total_count(self) -> int:
        """Number of envelopes ever appended."""
        return self._total_count

    @property
    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
