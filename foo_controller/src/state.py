from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any


def utc_now() -> datetime:
    return datetime.now(UTC)


def format_rfc3339(value: datetime) -> str:
    """Render an aware datetime as RFC 3339 with a ``Z`` suffix (e.g. ``2024-01-15T08:30:00.123456Z``)."""
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


class ReadWriteLock:
    """Writer-preferring read-write lock built on a single condition variable.

    Any number of readers may hold the lock together; a writer holds it
    alone.  Once a writer is waiting, new readers queue behind it so a
    steady stream of status scrapes cannot starve reconcile updates.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


@dataclass(frozen=True)
class RuntimeState:
    """Point-in-time copy of controller health served on ``GET /``."""

    last_event: datetime
    handled_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "last_event": format_rfc3339(self.last_event),
            "handled_count": self.handled_count,
        }


class SharedRuntimeState:
    """In-memory controller state shared by every reconcile attempt.

    Holds the time of the most recent reconcile attempt and the number of
    successful ones.  Writers take the lock exclusively and only for the
    assignment itself; ``snapshot`` captures both fields under one shared
    acquisition so readers never see a torn pair.
    """

    def __init__(self, now_fn: Callable[[], datetime] = utc_now) -> None:
        self._lock = ReadWriteLock()
        self._last_event = now_fn()
        self._handled_count = 0

    def record_event(self, when: datetime) -> None:
        # Interleaved reconciles may report slightly out of order; keep the newest.
        with self._lock.write():
            if when > self._last_event:
                self._last_event = when

    def record_success(self) -> None:
        with self._lock.write():
            self._handled_count += 1

    def snapshot(self) -> RuntimeState:
        with self._lock.read():
            return RuntimeState(last_event=self._last_event, handled_count=self._handled_count)
