from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import deque
from collections.abc import Callable, Hashable
from typing import Generic, TypeVar

from foo_controller.src.metrics import METRICS

K = TypeVar("K", bound=Hashable)


class WorkQueue(Generic[K]):
    """Deduplicating, delaying work queue with per-key in-flight tracking.

    Guarantees that a key is handed to at most one worker at a time.  Adding a
    key that is already queued is a no-op; adding a key that is being
    processed marks it dirty so it is queued again as soon as ``done`` is
    called.  Delayed keys live in a heap keyed by a due-at timestamp and are
    promoted by ``get`` once due.

    Key internal state:
        ``_ready``
            FIFO of keys waiting for a worker.
        ``_dirty``
            Keys that need processing (queued, or re-added while in flight).
        ``_processing``
            Keys currently handed out to a worker.
        ``_waiting``
            Maps delayed keys to their earliest due-at timestamp.  Heap
            entries that no longer match are stale and skipped.
        ``_forgotten``
            Keys of deleted objects that were queued or in flight when
            forgotten; delayed re-adds are ignored until a fresh ``add``
            arrives or the key is released by ``done``.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._cond = threading.Condition(threading.Lock())
        self._ready: deque[K] = deque()
        self._dirty: set[K] = set()
        self._processing: set[K] = set()
        self._waiting: dict[K, float] = {}
        self._heap: list[tuple[float, int, K]] = []
        self._sequence = itertools.count()
        self._forgotten: set[K] = set()
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._ready)

    def pending_delayed(self) -> int:
        with self._cond:
            return len(self._waiting)

    def is_shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def _enqueue_locked(self, key: K) -> None:
        if key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._ready.append(key)
        METRICS.workqueue_depth.set(len(self._ready))
        self._cond.notify()

    def add(self, key: K) -> None:
        with self._cond:
            if self._shutting_down:
                return
            self._forgotten.discard(key)
            self._enqueue_locked(key)

    def add_after(self, key: K, delay: float | None) -> None:
        """Queue *key* no sooner than *delay* seconds from now.

        If the key is already waiting, the earlier of the two due times wins.
        """
        if delay is None:
            return
        with self._cond:
            if self._shutting_down or key in self._forgotten:
                return
            if delay <= 0:
                self._enqueue_locked(key)
                return
            due_at = self._clock() + delay
            existing = self._waiting.get(key)
            if existing is not None and existing <= due_at:
                return
            self._waiting[key] = due_at
            heapq.heappush(self._heap, (due_at, next(self._sequence), key))
            self._cond.notify()

    def forget(self, key: K) -> None:
        """Drop any delayed entry for *key*.

        A key that is queued or in flight is tombstoned so the requeue its
        worker schedules is ignored.  The tombstone is cleared by the next
        ``add`` or by the ``done`` that releases the key.
        """
        with self._cond:
            self._waiting.pop(key, None)
            if key in self._processing or key in self._dirty:
                self._forgotten.add(key)

    def _promote_due_locked(self) -> float | None:
        """Move due delayed keys to the ready queue; return seconds until the next one."""
        now = self._clock()
        while self._heap:
            due_at, _, key = self._heap[0]
            if self._waiting.get(key) != due_at:
                heapq.heappop(self._heap)
                continue
            if due_at > now:
                return due_at - now
            heapq.heappop(self._heap)
            del self._waiting[key]
            self._enqueue_locked(key)
        return None

    def get(self, timeout: float | None = None) -> K | None:
        """Block until a key is ready and mark it in flight.

        Returns ``None`` on shutdown or when *timeout* elapses first.
        """
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while not self._shutting_down:
                next_due = self._promote_due_locked()
                if self._ready:
                    key = self._ready.popleft()
                    METRICS.workqueue_depth.set(len(self._ready))
                    self._processing.add(key)
                    self._dirty.discard(key)
                    return key

                wait_for = next_due
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        return None
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._cond.wait(timeout=wait_for)
            return None

    def done(self, key: K) -> None:
        """Release *key*; re-queue it if it was added again while in flight."""
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty and not self._shutting_down:
                self._ready.append(key)
                METRICS.workqueue_depth.set(len(self._ready))
                self._cond.notify()
            else:
                self._forgotten.discard(key)

    def shut_down(self) -> None:
        """Stop handing out keys.  Keys already in flight may still call ``done``."""
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()
