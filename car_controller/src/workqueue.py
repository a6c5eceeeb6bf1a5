from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import deque
from collections.abc import Callable, Hashable
from typing import Generic, TypeVar

K = TypeVar("K", bound=Hashable)


class WorkQueue(Generic[K]):
    """De-duplicating, delay-capable queue of reconcile keys.

    Semantics follow the level-triggered controller model:

    - A key added several times before it is dequeued is a single pending
      entry (``_dirty`` tracks what is pending).
    - A key re-added while a worker holds it (``_processing``) is not handed
      to a second worker.  It stays dirty and is queued again exactly once
      when :meth:`done` is called, so one key is never reconciled
      concurrently.
    - :meth:`add_after` parks the key in a min-heap keyed by its ready time.
      Only the earliest ready time per key is kept; :meth:`get` promotes due
      keys and sleeps until the nearest one otherwise.

    After :meth:`shut_down`, adds are ignored and :meth:`get` returns
    ``None`` so workers exit; keys still pending are dropped and picked up by
    the next list on restart.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: deque[K] = deque()
        self._dirty: set[K] = set()
        self._processing: set[K] = set()
        self._waiting: list[tuple[float, int, K]] = []
        self._ready_at: dict[K, float] = {}
        self._sequence = itertools.count()
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def add(self, key: K) -> None:
        with self._cond:
            self._add_locked(key)

    def _add_locked(self, key: K) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._cond.notify()

    def add_after(self, key: K, delay_seconds: float) -> None:
        """Add *key* once *delay_seconds* have elapsed."""
        if delay_seconds <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            ready_at = self._clock() + delay_seconds
            existing = self._ready_at.get(key)
            if existing is not None and existing <= ready_at:
                return
            self._ready_at[key] = ready_at
            heapq.heappush(self._waiting, (ready_at, next(self._sequence), key))
            # Wake a sleeping getter so it recomputes its wait.
            self._cond.notify_all()

    def _promote_due_locked(self) -> float | None:
        """Move due delayed keys into the queue; return seconds until the next one."""
        now = self._clock()
        while self._waiting:
            ready_at, _, key = self._waiting[0]
            if self._ready_at.get(key) != ready_at:
                # Superseded by an earlier add_after for the same key.
                heapq.heappop(self._waiting)
                continue
            if ready_at > now:
                return ready_at - now
            heapq.heappop(self._waiting)
            del self._ready_at[key]
            self._add_locked(key)
        return None

    def get(self) -> K | None:
        """Block until a key is ready and mark it as processing.

        Returns ``None`` once the queue has been shut down.
        """
        with self._cond:
            while True:
                if self._shutting_down:
                    return None
                wait_seconds = self._promote_due_locked()
                if self._queue:
                    break
                self._cond.wait(timeout=wait_seconds)
            key = self._queue.popleft()
            self._processing.add(key)
            self._dirty.discard(key)
            return key

    def done(self, key: K) -> None:
        """Release *key*; requeue it if it was re-added while processing."""
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty and not self._shutting_down:
                self._queue.append(key)
                self._cond.notify()

    def is_processing(self, key: K) -> bool:
        with self._cond:
            return key in self._processing

    def pending_delayed(self) -> int:
        with self._cond:
            return len(self._ready_at)

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()


class ExponentialBackoff(Generic[K]):
    """Per-key exponential retry delay: ``base * 2**failures``, capped at ``max_delay``.

    :meth:`forget` resets the failure count once a key reconciles cleanly.
    """

    def __init__(self, base_delay: float = 1.0, max_delay: float = 30.0) -> None:
        if base_delay <= 0:
            raise ValueError("base_delay must be > 0")
        if max_delay < base_delay:
            raise ValueError("max_delay must be >= base_delay")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: dict[K, int] = {}
        self._lock = threading.Lock()

    def when(self, key: K) -> float:
        """Record a failure for *key* and return the delay before its retry."""
        with self._lock:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        # Cap the exponent; 2**1024 overflows a float.
        exponent = min(failures, 64)
        return min(self.max_delay, self.base_delay * float(2**exponent))

    def retries(self, key: K) -> int:
        with self._lock:
            return self._failures.get(key, 0)

    def forget(self, key: K) -> None:
        with self._lock:
            self._failures.pop(key, None)
