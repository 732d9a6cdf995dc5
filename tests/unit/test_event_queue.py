"""Unit tests for the bounded queue between reader and indexer."""

import pytest
import threading
import time

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../../'))

from couchriver.connectors.cdc.event_queue import BoundedEventQueue


@pytest.fixture
def stop_event():
    return threading.Event()


class TestBoundedEventQueue:
    """Test BoundedEventQueue."""

    def test_invalid_capacity(self, stop_event):
        with pytest.raises(ValueError, match="capacity must be positive"):
            BoundedEventQueue(0, stop_event)

    def test_fifo_order(self, stop_event):
        q = BoundedEventQueue(10, stop_event)
        for i in range(5):
            assert q.put(f"line-{i}")

        assert [q.take() for _ in range(5)] == [f"line-{i}" for i in range(5)]

    def test_full_queue_blocks_producer(self, stop_event):
        """The K+1th put blocks until a consumer takes, and nothing is dropped."""
        q = BoundedEventQueue(2, stop_event)
        q.put("a")
        q.put("b")

        done = threading.Event()

        def produce():
            q.put("c")
            done.set()

        producer = threading.Thread(target=produce, daemon=True)
        producer.start()

        assert not done.wait(0.3)
        assert producer.is_alive()
        assert len(q) == 2

        assert q.take() == "a"
        assert done.wait(2)
        assert [q.take(), q.take()] == ["b", "c"]

    def test_blocked_put_returns_false_on_stop(self, stop_event):
        q = BoundedEventQueue(1, stop_event)
        q.put("a")
        result = []

        producer = threading.Thread(target=lambda: result.append(q.put("b")), daemon=True)
        producer.start()
        time.sleep(0.2)
        stop_event.set()
        producer.join(timeout=2)

        assert result == [False]
        assert len(q) == 1

    def test_put_after_stop_is_refused(self, stop_event):
        q = BoundedEventQueue(5, stop_event)
        stop_event.set()
        assert q.put("a") is False
        assert len(q) == 0

    def test_blocked_take_returns_none_on_stop(self, stop_event):
        q = BoundedEventQueue(1, stop_event)
        result = []

        consumer = threading.Thread(target=lambda: result.append(q.take()), daemon=True)
        consumer.start()
        time.sleep(0.2)
        stop_event.set()
        consumer.join(timeout=2)

        assert result == [None]

    def test_poll_times_out(self, stop_event):
        q = BoundedEventQueue(1, stop_event)
        started = time.time()
        assert q.poll(0.05) is None
        assert time.time() - started >= 0.04

    def test_poll_returns_available_line(self, stop_event):
        q = BoundedEventQueue(1, stop_event)
        q.put("a")
        assert q.poll(0) == "a"
        assert q.poll(0) is None
