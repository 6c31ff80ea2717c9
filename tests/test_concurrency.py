from __future__ import annotations

import threading
import time

import pytest

from photo_tagger.concurrency import CLOSED, CancellationToken, StageQueue


def test_get_returns_closed_only_after_draining() -> None:
    stage_queue: StageQueue[int] = StageQueue("hash", capacity=4)
    token = CancellationToken()

    assert stage_queue.put(1, token)
    assert stage_queue.put(2, token)
    stage_queue.close()

    assert stage_queue.get() == 1
    assert stage_queue.get() == 2
    assert stage_queue.get() is CLOSED


def test_put_blocks_while_full_until_consumer_frees_a_slot() -> None:
    stage_queue: StageQueue[int] = StageQueue("extract", capacity=1)
    token = CancellationToken()
    stage_queue.put(0, token)
    finished = threading.Event()

    def _producer() -> None:
        stage_queue.put(1, token)
        finished.set()

    thread = threading.Thread(target=_producer)
    thread.start()
    assert not finished.wait(0.3)

    assert stage_queue.get() == 0
    assert finished.wait(2.0)
    thread.join()
    assert stage_queue.qsize() == 1


def test_cancel_drops_only_items_not_yet_admitted() -> None:
    stage_queue: StageQueue[str] = StageQueue("extract", capacity=1)
    token = CancellationToken()
    stage_queue.put("occupying", token)

    token.cancel("user request")
    started = time.monotonic()

    assert stage_queue.put("queued", token, admitted=False) is False
    assert time.monotonic() - started < 1.0
    assert token.cancelled
    assert not token.aborted
    assert token.reason == "user request"

    assert stage_queue.get() == "occupying"
    assert stage_queue.put("admitted", token, admitted=True) is True


def test_abort_drops_everything_and_keeps_reason() -> None:
    stage_queue: StageQueue[str] = StageQueue("persist", capacity=2)
    token = CancellationToken()
    token.cancel("first")
    token.abort("database gone")

    assert stage_queue.put("admitted", token, admitted=True) is False
    assert token.aborted
    assert token.reason == "database gone"
    assert token.wait(0)


def test_capacity_must_be_positive() -> None:
    with pytest.raises(ValueError):
        StageQueue("tag", capacity=0)
