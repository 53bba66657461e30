from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import deque
from collections.abc import Callable, Hashable

from reloader.src.metrics import METRICS


class WorkQueue:
    """De-duplicating work queue with per-key exponential retry backoff.

    Guarantees:

    * a key is queued at most once however often it is added;
    * a key is handed to at most one worker at a time.  Adding a key while
      it is being processed parks it as *dirty*; :meth:`done` re-queues it;
    * :meth:`add_rate_limited` delays a key by
      ``base_delay * 2 ** (failures - 1)`` seconds, capped at ``max_delay``,
      until :meth:`forget` resets its failure count.
    """

    def __init__(
        self,
        base_delay_seconds: float = 1.0,
        max_delay_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._delayed: list[tuple[float, int, Hashable]] = []
        self._sequence = itertools.count()
        self._failures: dict[Hashable, int] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def _publish_depth(self) -> None:
        METRICS.queue_depth.set(len(self._queue))

    def _add_locked(self, key: Hashable) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._publish_depth()
        self._cond.notify()

    def add(self, key: Hashable) -> None:
        with self._cond:
            self._add_locked(key)

    def add_after(self, key: Hashable, delay_seconds: float) -> None:
        if delay_seconds <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            due_at = self._clock() + delay_seconds
            heapq.heappush(self._delayed, (due_at, next(self._sequence), key))
            self._cond.notify()

    def next_delay(self, key: Hashable) -> float:
        """Record one more failure for *key* and return its backoff delay."""
        with self._cond:
            failures = self._failures.get(key, 0) + 1
            self._failures[key] = failures
        return min(self.max_delay_seconds, self.base_delay_seconds * 2 ** (failures - 1))

    def add_rate_limited(self, key: Hashable) -> float:
        delay = self.next_delay(key)
        self.add_after(key, delay)
        return delay

    def failures(self, key: Hashable) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def forget(self, key: Hashable) -> None:
        with self._cond:
            self._failures.pop(key, None)

    def _promote_due_locked(self) -> float | None:
        """Move due delayed keys onto the queue; return seconds until the next one."""
        now = self._clock()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, key = heapq.heappop(self._delayed)
            self._add_locked(key)
        if self._delayed:
            return max(0.0, self._delayed[0][0] - now)
        return None

    def get(self, timeout: float | None = None) -> Hashable | None:
        """Block until a key is available and mark it as processing.

        Returns ``None`` on shutdown or when *timeout* elapses.
        """
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                if self._shutting_down:
                    return None
                wait_for = self._promote_due_locked()
                if self._queue:
                    key = self._queue.popleft()
                    self._dirty.discard(key)
                    self._processing.add(key)
                    self._publish_depth()
                    return key
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        return None
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._cond.wait(timeout=wait_for)

    def done(self, key: Hashable) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty and not self._shutting_down:
                self._queue.append(key)
                self._publish_depth()
                self._cond.notify()

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()
