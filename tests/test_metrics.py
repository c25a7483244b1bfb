"""Tests for the pipeline metrics collector."""

import threading

from src.metrics import PipelineMetrics


def test_initial_snapshot():
    snap = PipelineMetrics().snapshot()
    assert snap["total_emitted"] == 0
    assert snap["emitted"] == {"debug": 0, "info": 0, "warn": 0, "error": 0}
    assert snap["flush_triggers"] == {}
    assert snap["uptime_seconds"] >= 0


def test_record_flush_counts_failures():
    metrics = PipelineMetrics()
    metrics.record_flush(5, 0, "size")
    metrics.record_flush(2, 3, "timer")
    snap = metrics.snapshot()
    assert snap["uploaded"] == 7
    assert snap["requeued"] == 3
    assert snap["flush_attempts"] == 2
    assert snap["flush_failures"] == 1
    assert snap["flush_triggers"] == {"size": 1, "timer": 1}


def test_record_sweep():
    metrics = PipelineMetrics()
    metrics.record_sweep(2, 10)
    metrics.record_sweep(0, 0, failed=True)
    snap = metrics.snapshot()
    assert snap["sweeps"] == 2
    assert snap["sweep_failures"] == 1
    assert snap["sessions_deleted"] == 2
    assert snap["local_deleted"] == 10


def test_thread_safety():
    metrics = PipelineMetrics()

    def worker():
        for _ in range(1000):
            metrics.record_emit("info")
            metrics.record_enqueue()

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    snap = metrics.snapshot()
    assert snap["emitted"]["info"] == 4000
    assert snap["enqueued"] == 4000
