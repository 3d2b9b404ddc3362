"""
Tests for the de-duplicating ReconcileQueue
"""

# Standard
from datetime import timedelta
import time

# First Party
import alog

# Local
from apim_operator.test_helpers.helpers import configure_logging
from apim_operator.work_queue import ReconcileQueue, ReconcileRequest

configure_logging()
log = alog.use_channel("TEST")

KEY_A = ReconcileRequest("a", "test")
KEY_B = ReconcileRequest("b", "test")


def test_request_str():
    assert str(KEY_A) == "test/a"
    assert ReconcileRequest("a", "test") == KEY_A


def test_add_collapses_duplicates():
    queue = ReconcileQueue()
    queue.add(KEY_A)
    queue.add(KEY_A)
    queue.add(KEY_B)
    assert len(queue) == 2
    assert queue.get(timeout=0.1) == KEY_A
    assert queue.get(timeout=0.1) == KEY_B
    assert queue.get(timeout=0.01) is None


def test_in_flight_key_not_handed_out_twice():
    """A key added while in flight is re-queued only once it is done"""
    queue = ReconcileQueue()
    queue.add(KEY_A)
    key = queue.get(timeout=0.1)
    queue.add(KEY_A)
    assert queue.get(timeout=0.01) is None
    queue.done(key)
    assert queue.get(timeout=0.1) == KEY_A


def test_done_without_readd():
    queue = ReconcileQueue()
    queue.add(KEY_A)
    queue.done(queue.get(timeout=0.1))
    assert len(queue) == 0


def test_add_after():
    """Delayed keys appear once the delay passed"""
    queue = ReconcileQueue()
    try:
        queue.add_after(KEY_A, timedelta(seconds=0.05))
        assert queue.get(timeout=0.01) is None
        assert queue.get(timeout=2) == KEY_A
    finally:
        queue.shutdown()


def test_add_after_zero_is_immediate():
    queue = ReconcileQueue()
    queue.add_after(KEY_A, 0)
    assert len(queue) == 1


def test_shutdown():
    """After shutdown no keys are handed out or accepted"""
    queue = ReconcileQueue()
    queue.add_after(KEY_B, 60)
    queue.shutdown()
    assert queue.shutting_down
    queue.add(KEY_A)
    assert len(queue) == 0
    start = time.time()
    assert queue.get(timeout=5) is None
    assert time.time() - start < 1
