"""Tests for the in-memory ring buffer."""

import pytest

from src.models import create_envelope
from src.ring_buffer import RingBuffer


def _env(i: int):
    return create_envelope("info", "App", f"log-{i}", timestamp=i)


class TestCapacity:
    def test_rejects_non_positive_size(self):
        with pytest.raises(ValueError):
            RingBuffer(0)

    @pytest.mark.parametrize("appended", [0, 1, 4, 5, 6, 50])
    def test_keeps_last_n(self, appended):
        """After any number of appends the buffer holds min(N, count) newest entries."""
        buf = RingBuffer(max_size=5)
        for i in range(appended):
            buf.append(_env(i))

        kept = buf.snapshot()
        assert len(kept) == min(5, appended)
        assert [e.timestamp for e in kept] == list(range(max(0, appended - 5), appended))
        assert buf.total_count == appended

    def test_default_size(self):
        assert RingBuffer().max_size == 500


class TestViews:
    def test_get_recent_is_newest_first(self):
        buf = RingBuffer(10)
        for i in range(4):
            buf.append(_env(i))
        assert [e.timestamp for e in buf.get_recent(2)] == [3, 2]

    def test_get_recent_non_positive_count(self):
        buf = RingBuffer(10)
        buf.append(_env(1))
        assert buf.get_recent(0) == []

    def test_clear(self):
        buf = RingBuffer(10)
        buf.append(_env(1))
        buf.clear()
        assert len(buf) == 0
        assert buf.total_count == 1


class TestListeners:
    def test_listener_receives_each_append(self):
        buf = RingBuffer(3)
        seen = []
        buf.subscribe(seen.append)
        buf.append(_env(1))
        buf.append(_env(2))
        assert [e.timestamp for e in seen] == [1, 2]

    def test_unsubscribe(self):
        buf = RingBuffer(3)
        seen = []
        unsubscribe = buf.subscribe(seen.append)
        unsubscribe()
        unsubscribe()
        buf.append(_env(1))
        assert seen == []
        assert buf.listener_count == 0

    def test_failing_listener_is_isolated(self):
        buf = RingBuffer(3)
        seen = []

        def broken(_):
            raise RuntimeError("boom")

        buf.subscribe(broken)
        buf.subscribe(seen.append)
        buf.append(_env(1))

        assert len(seen) == 1
        assert len(buf) == 1
