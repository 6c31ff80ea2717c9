"""Per-stage counters, aggregate import progress and the throttled progress reporter."""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Final

from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "progress"})

JOB_RUNNING: Final[str] = "running"
JOB_COMPLETED: Final[str] = "completed"
JOB_CANCELED: Final[str] = "canceled"
JOB_FAILED: Final[str] = "failed"


@dataclass(frozen=True)
class StageSnapshot:
    """Point-in-time view of one stage's counters."""

    name: str
    pending: int
    in_progress: int
    completed: int
    failed: int
    items_per_sec: float


@dataclass(frozen=True)
class ImportProgress:
    """Aggregate progress of one import job. This is what listeners observe."""

    job_id: str | None
    state: str
    stages: tuple[StageSnapshot, ...] = ()
    discovered: int = 0
    processed: int = 0
    errors: int = 0
    skipped: int = 0
    canceled: int = 0
    current_file: str | None = None
    current_stage: str | None = None
    error_message: str | None = None

    def stage(self, name: str) -> StageSnapshot | None:
        for snapshot in self.stages:
            if snapshot.name == name:
                return snapshot
        return None

    @property
    def finished(self) -> bool:
        return self.state != JOB_RUNNING


IDLE_PROGRESS: Final[ImportProgress] = ImportProgress(job_id=None, state="idle")


class StageProgress:
    """Counters owned by one stage's workers.

    ``pending`` is read from the stage's input queue through ``pending_fn`` so
    it always reflects the real queue depth. Throughput is the number of
    completions inside the trailing window divided by the window length, or by
    the elapsed time while the stage is younger than the window.
    """

    def __init__(
        self,
        name: str,
        *,
        pending_fn: Callable[[], int] | None = None,
        window_s: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self._pending_fn = pending_fn or (lambda: 0)
        self._window_s = max(window_s, 1e-3)
        self._clock = clock
        self._started_at = clock()
        self._lock = threading.Lock()
        self._in_progress = 0
        self._completed = 0
        self._failed = 0
        self._recent: deque[float] = deque()

    def begin(self) -> None:
        with self._lock:
            self._in_progress += 1

    def complete(self) -> None:
        now = self._clock()
        with self._lock:
            self._in_progress = max(0, self._in_progress - 1)
            self._completed += 1
            self._recent.append(now)
            self._trim(now)

    def fail(self) -> None:
        with self._lock:
            self._in_progress = max(0, self._in_progress - 1)
            self._failed += 1

    def discard(self) -> None:
        with self._lock:
            self._in_progress = max(0, self._in_progress - 1)

    def _trim(self, now: float) -> None:
        cutoff = now - self._window_s
        while self._recent and self._recent[0] < cutoff:
            self._recent.popleft()

    def snapshot(self) -> StageSnapshot:
        now = self._clock()
        with self._lock:
            self._trim(now)
            span = min(self._window_s, max(now - self._started_at, 1e-3))
            rate = len(self._recent) / span if self._recent else 0.0
            return StageSnapshot(
                name=self.name,
                pending=max(0, self._pending_fn()),
                in_progress=self._in_progress,
                completed=self._completed,
                failed=self._failed,
                items_per_sec=rate,
            )


def dominant_stage(stages: Sequence[StageSnapshot]) -> str | None:
    """Return the stage holding the most work, preferring earlier stages on ties."""

    best: StageSnapshot | None = None
    for snapshot in stages:
        load = snapshot.pending + snapshot.in_progress
        if load == 0:
            continue
        if best is None or load > best.pending + best.in_progress:
            best = snapshot
    return best.name if best is not None else None


ProgressListener = Callable[[ImportProgress], None]


class ProgressReporter:
    """Background thread delivering progress snapshots to listeners.

    Snapshots are emitted at most once per ``interval_s`` and only when they
    changed, so workers never wait on a slow listener. :meth:`stop` always
    emits one final snapshot.
    """

    def __init__(
        self,
        snapshot_fn: Callable[[], ImportProgress],
        listeners: Sequence[ProgressListener],
        interval_s: float = 0.2,
    ) -> None:
        self._snapshot_fn = snapshot_fn
        self._listeners = list(listeners)
        self._interval_s = max(interval_s, 0.01)
        self._stop = threading.Event()
        self._last: ImportProgress | None = None
        self._thread = threading.Thread(target=self._run, name="progress-reporter", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread.is_alive():
            self._thread.join()
        self._emit(force=True)

    def _run(self) -> None:
        while not self._stop.wait(self._interval_s):
            self._emit(force=False)

    def _emit(self, *, force: bool) -> None:
        snapshot = self._snapshot_fn()
        if not force and snapshot == self._last:
            return
        self._last = snapshot
        for listener in self._listeners:
            try:
                listener(snapshot)
            except Exception as exc:
                LOGGER.error("progress_listener_error", extra={"error": str(exc)})


__all__ = [
    "IDLE_PROGRESS",
    "ImportProgress",
    "JOB_CANCELED",
    "JOB_COMPLETED",
    "JOB_FAILED",
    "JOB_RUNNING",
    "ProgressListener",
    "ProgressReporter",
    "StageProgress",
    "StageSnapshot",
    "dominant_stage",
]
