"""Metrics collector: thread-safe counters for the telemetry pipeline."""

import threading
import time
import logging

logger = logging.getLogger(__name__)


class PipelineMetrics:
    """Collects counters about emission, upload, and retention activity."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._emitted: dict[str, int] = {"debug": 0, "info": 0, "warn": 0, "error": 0}
        self._local_write_failures: int = 0
        self._enqueued: int = 0
        self._uploaded: int = 0
        self._flush_attempts: int = 0
        self._flush_failures: int = 0
        self._requeued: int = 0
        self._flush_triggers: dict[str, int] = {}
        self._sweeps: int = 0
        self._sweep_failures: int = 0
        self._sessions_deleted: int = 0
        self._local_deleted: int = 0
        self._start_time = time.monotonic()

    def record_emit(self, level: str) -> None:
        with self._lock:
            self._emitted[level] = self._emitted.get(level, 0) + 1

    def record_local_failure(self) -> None:
        with self._lock:
            self._local_write_failures += 1

    def record_enqueue(self) -> None:
        with self._lock:
            self._enqueued += 1

    def record_flush(self, uploaded: int, requeued: int, trigger: str) -> None:
        """Record the outcome of one flush attempt.

        Args:
            uploaded: Items confirmed written by the remote store.
            requeued: Items pushed back to the front of the queue.
            trigger: What caused the flush, e.g. "size", "timer",
                "periodic", "explicit", "reconnect", "background", "unload"
                or "stop".
        """
        with self._lock:
            self._flush_attempts += 1
            self._uploaded += uploaded
            self._requeued += requeued
            if requeued:
                self._flush_failures += 1
            self._flush_triggers[trigger] = self._flush_triggers.get(trigger, 0) + 1

    def record_sweep(self, sessions_deleted: int, local_deleted: int, failed: bool = False) -> None:
        with self._lock:
            self._sweeps += 1
            self._sessions_deleted += sessions_deleted
            self._local_deleted += local_deleted
            if failed:
                self._sweep_failures += 1

    def snapshot(self) -> dict:
        """Return a point-in-time snapshot of all collected metrics."""
        with self._lock:
            return {
                "emitted": dict(self._emitted),
                "total_emitted": sum(self._emitted.values()),
                "local_write_failures": self._local_write_failures,
                "enqueued": self._enqueued,
                "uploaded": self._uploaded,
                "flush_attempts": self._flush_attempts,
                "flush_failures": self._flush_failures,
                "requeued": self._requeued,
                "flush_triggers": dict(self._flush_triggers),
                "sweeps": self._sweeps,
                "sweep_failures": self._sweep_failures,
                "sessions_deleted": self._sessions_deleted,
                "local_deleted": self._local_deleted,
                "uptime_seconds": time.monotonic() - self._start_time,
            }
