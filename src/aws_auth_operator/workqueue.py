"""Deduplicating, rate limited work queue for reconcile keys.

Semantics follow the Kubernetes controller work queue:

* a key is queued at most once, no matter how often it is added;
* a key is never handed to two workers at the same time; adding a key
  that is being processed marks it dirty and it is queued again when
  the worker calls ``done``;
* delayed adds wait in a heap until due;
* per-key failure counts drive exponential backoff until ``forget``.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from typing import Callable, Hashable

from . import metrics

logger = logging.getLogger(__name__)


class ExponentialBackoff:
    """Per-key exponential backoff: ``base * 2**failures``, capped."""

    def __init__(self, base: float = 1.0, cap: float = 300.0) -> None:
        self.base = base
        self.cap = cap
        self._failures: dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def when(self, key: Hashable) -> float:
        """Record a failure for the key and return the delay before its next attempt."""
        with self._lock:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        # Cap the exponent so huge failure counts don't overflow
        return min(self.base * (2 ** min(failures, 32)), self.cap)

    def forget(self, key: Hashable) -> None:
        """Reset the failure count of a key."""
        with self._lock:
            self._failures.pop(key, None)

    def failures(self, key: Hashable) -> int:
        with self._lock:
            return self._failures.get(key, 0)


class WorkQueue:
    """Thread-safe work queue with deduplication and delayed adds."""

    def __init__(
        self,
        backoff: ExponentialBackoff | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the queue.

        Args:
            backoff: Backoff used by ``add_rate_limited``
            clock: Monotonic clock (tests)
        """
        self.backoff = backoff or ExponentialBackoff()
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._waiting: list[tuple[float, int, Hashable]] = []
        self._waiting_due: dict[Hashable, float] = {}
        self._sequence = itertools.count()
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def _update_depth(self) -> None:
        metrics.queue_depth.set(len(self._queue))

    def _add_locked(self, key: Hashable) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._update_depth()
        self._cond.notify()

    def add(self, key: Hashable) -> None:
        """Queue a key for processing now."""
        with self._cond:
            self._add_locked(key)

    def add_after(self, key: Hashable, delay: float) -> None:
        """Queue a key once ``delay`` seconds have passed.

        If the key is already waiting, the earlier deadline wins.
        """
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            due = self._clock() + delay
            current = self._waiting_due.get(key)
            if current is not None and current <= due:
                return
            self._waiting_due[key] = due
            heapq.heappush(self._waiting, (due, next(self._sequence), key))
            self._cond.notify()

    def add_rate_limited(self, key: Hashable) -> float:
        """Queue a key after its backoff delay and return that delay."""
        delay = self.backoff.when(key)
        metrics.queue_requeues_total.labels(reason="backoff").inc()
        self.add_after(key, delay)
        return delay

    def forget(self, key: Hashable) -> None:
        """Clear the failure history of a key."""
        self.backoff.forget(key)

    def num_requeues(self, key: Hashable) -> int:
        return self.backoff.failures(key)

    def _promote_due_locked(self) -> float | None:
        """Move due delayed keys into the queue; return seconds until the next one."""
        now = self._clock()
        while self._waiting:
            due, _, key = self._waiting[0]
            if self._waiting_due.get(key) != due:
                # Superseded by an earlier deadline
                heapq.heappop(self._waiting)
                continue
            if due > now:
                return due - now
            heapq.heappop(self._waiting)
            del self._waiting_due[key]
            self._add_locked(key)
        return None

    def get(self, timeout: float | None = None) -> Hashable | None:
        """Block until a key is available and mark it as processing.

        Args:
            timeout: Maximum seconds to wait, or None to wait indefinitely

        Returns:
            The key, or None on shutdown or timeout
        """
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                if self._shutting_down:
                    return None
                next_due = self._promote_due_locked()
                if self._queue:
                    key = self._queue.popleft()
                    self._dirty.discard(key)
                    self._processing.add(key)
                    self._update_depth()
                    return key

                wait = next_due
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(timeout=wait)

    def done(self, key: Hashable) -> None:
        """Mark a key as no longer processing; requeue it if it was added meanwhile."""
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty and not self._shutting_down:
                self._queue.append(key)
                self._update_depth()
                self._cond.notify()

    def shut_down(self) -> None:
        """Stop handing out keys and wake all waiting workers."""
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()
        logger.info("Work queue shut down")

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down
