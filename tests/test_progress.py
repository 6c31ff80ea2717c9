from __future__ import annotations

import threading

from photo_tagger.progress import (
    ImportProgress,
    ProgressReporter,
    StageProgress,
    StageSnapshot,
    dominant_stage,
)


class _FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def test_stage_counters_and_sliding_window_throughput() -> None:
    clock = _FakeClock()
    pending = [3]
    stage = StageProgress("thumbnail", pending_fn=lambda: pending[0], window_s=10.0, clock=clock)

    for _ in range(4):
        stage.begin()
    clock.now = 102.0
    stage.complete()
    stage.complete()
    stage.fail()

    snapshot = stage.snapshot()
    assert snapshot.pending == 3
    assert snapshot.in_progress == 1
    assert snapshot.completed == 2
    assert snapshot.failed == 1
    # Younger than the window: two completions over two seconds.
    assert snapshot.items_per_sec == 1.0

    clock.now = 113.0
    pending[0] = 0
    later = stage.snapshot()
    assert later.items_per_sec == 0.0
    assert later.completed == 2


def test_dominant_stage_prefers_earlier_stage_on_ties() -> None:
    stages = (
        StageSnapshot("extract", pending=0, in_progress=0, completed=5, failed=0, items_per_sec=0.0),
        StageSnapshot("thumbnail", pending=3, in_progress=1, completed=1, failed=0, items_per_sec=0.0),
        StageSnapshot("hash", pending=4, in_progress=0, completed=0, failed=0, items_per_sec=0.0),
    )

    assert dominant_stage(stages) == "thumbnail"
    assert dominant_stage(stages[:1]) is None


def test_reporter_emits_changes_and_a_final_snapshot() -> None:
    state = {"processed": 0}
    received: list[ImportProgress] = []
    seen = threading.Event()

    def _snapshot() -> ImportProgress:
        return ImportProgress(job_id="job", state="running", processed=state["processed"])

    def _listener(progress: ImportProgress) -> None:
        received.append(progress)
        seen.set()

    def _broken_listener(_progress: ImportProgress) -> None:
        raise RuntimeError("listener failure")

    reporter = ProgressReporter(_snapshot, [_broken_listener, _listener], interval_s=0.02)
    reporter.start()
    assert seen.wait(2.0)
    state["processed"] = 5
    reporter.stop()

    assert received[-1].processed == 5
    # Unchanged snapshots are not re-emitted while running.
    assert len(received) <= 3
