"""
Tests for the rate-limited work queue
"""

import random
import threading
import time

from postgres_controller.workqueue import RetryPolicy, WorkQueue, exponential_backoff


def _immediate_queue(max_retries: int = 3) -> WorkQueue:
    return WorkQueue("test", RetryPolicy(max_retries=max_retries, backoff=lambda failures: 0))


def test_duplicate_adds_are_collapsed():
    """Two adds before get deliver the key once"""
    print("🧪 Testing WorkQueue dedup...")

    queue = _immediate_queue()
    queue.add("default/pg1")
    queue.add("default/pg1")
    assert len(queue) == 1, "Key should be pending once"

    key, shutdown = queue.get()
    assert (key, shutdown) == ("default/pg1", False)
    assert len(queue) == 0, "Nothing else should be pending"

    queue.done(key)
    queue.shut_down()
    assert queue.get() == (None, True), "No second delivery expected"

    print("✅ WorkQueue dedup tests passed!")


def test_add_while_processing_is_deferred():
    queue = _immediate_queue()
    queue.add("a")
    key, _ = queue.get()

    queue.add("a")
    queue.add("a")
    assert len(queue) == 0, "In-flight key must not be handed out again"

    queue.done(key)
    assert len(queue) == 1, "Deferred add should be delivered after done"
    assert queue.get() == ("a", False)


def test_fifo_order():
    queue = _immediate_queue()
    for key in ["a", "b", "c", "a"]:
        queue.add(key)
    assert [queue.get()[0] for _ in range(3)] == ["a", "b", "c"]


def test_get_blocks_until_add():
    queue = _immediate_queue()
    results = []

    consumer = threading.Thread(target=lambda: results.append(queue.get()))
    consumer.start()
    time.sleep(0.05)
    assert results == [], "get should block on an empty queue"

    queue.add("late")
    consumer.join(timeout=2)
    assert results == [("late", False)]


def test_shut_down_drains_then_reports():
    queue = _immediate_queue()
    queue.add("a")
    queue.shut_down()
    queue.add("b")

    assert queue.shutting_down
    assert queue.get() == ("a", False), "Pending items are drained after shutdown"
    assert queue.get() == (None, True)


def test_shut_down_wakes_blocked_getters():
    queue = _immediate_queue()
    results = []
    getters = [threading.Thread(target=lambda: results.append(queue.get())) for _ in range(3)]
    for getter in getters:
        getter.start()
    time.sleep(0.05)

    queue.shut_down()
    for getter in getters:
        getter.join(timeout=2)
    assert results == [(None, True)] * 3


def test_rate_limited_requeue_and_forget():
    queue = _immediate_queue()
    queue.add_rate_limited("a")
    queue.add_rate_limited("a")
    assert queue.num_requeues("a") == 2
    assert len(queue) == 1, "Zero backoff requeues right away, still deduplicated"

    queue.forget("a")
    assert queue.num_requeues("a") == 0


def test_rate_limited_delay():
    queue = WorkQueue("test", RetryPolicy(backoff=lambda failures: 0.05))
    started = time.monotonic()
    queue.add_rate_limited("slow")
    assert len(queue) == 0, "Key should wait for its backoff"

    assert queue.get() == ("slow", False)
    assert time.monotonic() - started >= 0.04


def test_shut_down_cancels_delayed_adds():
    queue = WorkQueue("test", RetryPolicy(backoff=lambda failures: 10))
    queue.add_rate_limited("never")
    queue.shut_down()
    assert queue.get() == (None, True)


def test_exponential_backoff():
    backoff = exponential_backoff(base=0.005, cap=1.0)
    assert backoff(0) == 0.005
    assert backoff(1) == 0.01
    assert backoff(3) == 0.04
    assert backoff(20) == 1.0, "Delay should be capped"
    assert backoff(5000) == 1.0, "Huge failure counts should not overflow"

    default = RetryPolicy()
    assert default.max_retries == 15
    assert default.backoff(0) == 0.005


def test_no_key_held_by_two_workers():
    """Concurrent workers never process the same key at the same time"""
    print("\n🧪 Testing WorkQueue mutual exclusion...")

    queue = _immediate_queue()
    keys = [f"ns/pg{i}" for i in range(4)]
    in_flight = set()
    violations = []
    processed = []
    lock = threading.Lock()

    def worker():
        while True:
            key, shutdown = queue.get()
            if shutdown:
                return
            with lock:
                if key in in_flight:
                    violations.append(key)
                in_flight.add(key)
            time.sleep(0.001)
            with lock:
                in_flight.discard(key)
                processed.append(key)
            queue.done(key)

    workers = [threading.Thread(target=worker) for _ in range(4)]
    for w in workers:
        w.start()

    for _ in range(300):
        queue.add(random.choice(keys))
        if random.random() < 0.3:
            time.sleep(0.0005)

    queue.shut_down()
    for w in workers:
        w.join(timeout=10)

    assert not violations, f"Keys processed concurrently: {violations}"
    assert processed, "Workers should have processed keys"

    print("✅ WorkQueue mutual exclusion tests passed!")
