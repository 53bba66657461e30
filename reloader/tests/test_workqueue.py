from __future__ import annotations

import threading

from reloader.src.workqueue import WorkQueue


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def test_duplicate_adds_collapse() -> None:
    queue = WorkQueue()

    queue.add("a")
    queue.add("a")
    queue.add("b")

    assert len(queue) == 2
    assert queue.get(timeout=0) == "a"
    assert queue.get(timeout=0) == "b"
    assert queue.get(timeout=0) is None


def test_key_added_while_processing_is_redelivered_after_done() -> None:
    queue = WorkQueue()
    queue.add("a")
    key = queue.get(timeout=0)

    queue.add("a")
    assert queue.get(timeout=0) is None

    queue.done(key)
    assert queue.get(timeout=0) == "a"


def test_done_without_new_add_does_not_requeue() -> None:
    queue = WorkQueue()
    queue.add("a")
    queue.done(queue.get(timeout=0))

    assert queue.get(timeout=0) is None


def test_rate_limited_delay_doubles_and_caps() -> None:
    queue = WorkQueue(base_delay_seconds=1.0, max_delay_seconds=5.0, clock=FakeClock())

    delays = [queue.add_rate_limited("a") for _ in range(5)]

    assert delays == [1.0, 2.0, 4.0, 5.0, 5.0]
    assert queue.failures("a") == 5


def test_forget_resets_backoff() -> None:
    queue = WorkQueue(base_delay_seconds=1.0, max_delay_seconds=30.0, clock=FakeClock())
    queue.add_rate_limited("a")
    queue.add_rate_limited("a")

    queue.forget("a")

    assert queue.failures("a") == 0
    assert queue.next_delay("a") == 1.0


def test_delayed_key_becomes_available_when_due() -> None:
    clock = FakeClock()
    queue = WorkQueue(clock=clock)

    queue.add_after("a", 2.0)
    assert queue.get(timeout=0) is None

    clock.now += 2.0
    assert queue.get(timeout=0) == "a"


def test_add_after_without_delay_adds_immediately() -> None:
    queue = WorkQueue(clock=FakeClock())

    queue.add_after("a", 0)

    assert queue.get(timeout=0) == "a"


def test_shutdown_unblocks_waiting_workers() -> None:
    queue = WorkQueue()
    results: list[object] = []
    worker = threading.Thread(target=lambda: results.append(queue.get()))
    worker.start()

    queue.shut_down()
    worker.join(timeout=2)

    assert not worker.is_alive()
    assert results == [None]
    assert queue.shutting_down


def test_adds_after_shutdown_are_ignored() -> None:
    queue = WorkQueue()
    queue.shut_down()

    queue.add("a")
    queue.add_after("b", 1.0)

    assert len(queue) == 0
