"""Cancellation and bounded hand-off primitives used between pipeline stages."""

from __future__ import annotations

import queue
import threading
from typing import Final, Generic, TypeVar

T = TypeVar("T")

POLL_INTERVAL_S: Final[float] = 0.2


class CancellationToken:
    """Cooperative cancellation flag shared by every worker of one job.

    ``cancel()`` is graceful: no new items are admitted but admitted items
    drain to persistence. ``abort()`` is used for job-fatal errors and makes
    every acquisition point drop what it holds.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._aborted = False
        self._reason: str | None = None

    def cancel(self, reason: str = "canceled") -> None:
        with self._lock:
            if self._reason is None:
                self._reason = reason
        self._event.set()

    def abort(self, reason: str) -> None:
        with self._lock:
            self._aborted = True
            self._reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def reason(self) -> str | None:
        return self._reason

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or ``timeout`` elapses; return the flag."""

        return self._event.wait(timeout)


class _Closed:
    __slots__ = ()

    def __repr__(self) -> str:
        return "CLOSED"


CLOSED: Final = _Closed()


class StageQueue(Generic[T]):
    """Bounded queue feeding one stage.

    ``put`` blocks while the queue is full, which is what throttles upstream
    stages, and wakes every :data:`POLL_INTERVAL_S` to observe the
    cancellation token. ``get`` wakes on the same interval to notice that the
    queue was closed; the consuming worker decides whether to drop an item.
    """

    def __init__(self, name: str, capacity: int) -> None:
        if capacity < 1:
            raise ValueError(f"queue capacity must be positive, got {capacity}")
        self.name = name
        self.capacity = capacity
        self._queue: queue.Queue[T] = queue.Queue(maxsize=capacity)
        self._closed = threading.Event()

    def put(self, item: T, token: CancellationToken, *, admitted: bool = True) -> bool:
        """Hand ``item`` to the stage, blocking while the queue is full.

        Returns ``False`` when the item was dropped instead: the job was
        aborted, or it was cancelled and the item had not been admitted yet.
        """

        while True:
            if token.aborted or (token.cancelled and not admitted):
                return False
            try:
                self._queue.put(item, timeout=POLL_INTERVAL_S)
                return True
            except queue.Full:
                continue

    def get(self) -> T | _Closed:
        """Return the next item, or :data:`CLOSED` once producers are done and the queue is drained."""

        while True:
            try:
                return self._queue.get(timeout=POLL_INTERVAL_S)
            except queue.Empty:
                if self._closed.is_set() and self._queue.empty():
                    return CLOSED

    def close(self) -> None:
        """Signal that no producer will put further items."""

        self._closed.set()

    def qsize(self) -> int:
        return self._queue.qsize()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()


__all__ = ["CLOSED", "CancellationToken", "POLL_INTERVAL_S", "StageQueue"]
