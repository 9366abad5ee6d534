from __future__ import annotations

import threading
import time
from collections.abc import Iterator

import pytest

from replicator.src.workqueue import (
    BucketRateLimiter,
    ItemExponentialFailureRateLimiter,
    MaxOfRateLimiter,
    RateLimitingQueue,
    WorkQueue,
)


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _get_in_thread(queue: WorkQueue) -> tuple[threading.Thread, dict[str, object]]:
    result: dict[str, object] = {}

    def _get() -> None:
        result["item"], result["shutdown"] = queue.get()

    thread = threading.Thread(target=_get, daemon=True)
    thread.start()
    return thread, result


@pytest.fixture
def queue() -> Iterator[RateLimitingQueue]:
    q = RateLimitingQueue(
        rate_limiter=ItemExponentialFailureRateLimiter(base_delay=0.01, max_delay=0.05),
        name="test",
    )
    yield q
    q.shut_down()


# ---------------------------------------------------------------------------
# Deduplication and in-flight tracking
# ---------------------------------------------------------------------------


def test_duplicate_adds_before_get_collapse_into_one_entry(queue: RateLimitingQueue) -> None:
    queue.add("team-a/settings")
    queue.add("team-a/settings")

    assert len(queue) == 1
    item, shutdown = queue.get()
    assert (item, shutdown) == ("team-a/settings", False)
    queue.done("team-a/settings")
    assert len(queue) == 0


def test_distinct_keys_are_handed_out_in_fifo_order(queue: RateLimitingQueue) -> None:
    for key in ("team-a/one", "team-a/two", "team-b/one"):
        queue.add(key)

    assert [queue.get()[0] for _ in range(3)] == ["team-a/one", "team-a/two", "team-b/one"]


def test_readds_during_processing_yield_exactly_one_more_pass(queue: RateLimitingQueue) -> None:
    queue.add("team-a/settings")
    item, _ = queue.get()

    queue.add("team-a/settings")
    queue.add("team-a/settings")
    assert len(queue) == 0

    queue.done(item)
    assert len(queue) == 1

    again, _ = queue.get()
    assert again == "team-a/settings"
    queue.done(again)
    assert len(queue) == 0


def test_key_in_flight_is_not_handed_to_a_second_worker(queue: RateLimitingQueue) -> None:
    queue.add("team-a/settings")
    item, _ = queue.get()
    queue.add("team-a/settings")

    thread, result = _get_in_thread(queue)
    thread.join(timeout=0.2)
    assert thread.is_alive()

    queue.done(item)
    thread.join(timeout=2)
    assert not thread.is_alive()
    assert result == {"item": "team-a/settings", "shutdown": False}


def test_get_blocks_until_an_item_is_added(queue: RateLimitingQueue) -> None:
    thread, result = _get_in_thread(queue)
    thread.join(timeout=0.1)
    assert thread.is_alive()

    queue.add("team-b/settings")
    thread.join(timeout=2)

    assert result == {"item": "team-b/settings", "shutdown": False}


def test_shut_down_unblocks_every_waiting_get(queue: RateLimitingQueue) -> None:
    waiters = [_get_in_thread(queue) for _ in range(3)]
    time.sleep(0.05)

    queue.shut_down()

    for thread, result in waiters:
        thread.join(timeout=2)
        assert not thread.is_alive()
        assert result == {"item": None, "shutdown": True}


def test_shut_down_rejects_further_work(queue: RateLimitingQueue) -> None:
    queue.add("team-a/pending")
    queue.shut_down()
    queue.add("team-a/late")

    assert queue.get() == (None, True)
    assert queue.shutting_down


def test_done_after_shut_down_does_not_requeue(queue: RateLimitingQueue) -> None:
    queue.add("team-a/settings")
    item, _ = queue.get()
    queue.add("team-a/settings")

    queue.shut_down()
    queue.done(item)

    assert len(queue) == 0


# ---------------------------------------------------------------------------
# Delays and rate limiting
# ---------------------------------------------------------------------------


def test_add_after_delivers_item_once_delay_elapses(queue: RateLimitingQueue) -> None:
    queue.add_after("team-a/settings", 0.05)
    assert len(queue) == 0

    thread, result = _get_in_thread(queue)
    thread.join(timeout=2)

    assert result == {"item": "team-a/settings", "shutdown": False}


def test_add_after_keeps_the_earlier_ready_time(queue: RateLimitingQueue) -> None:
    queue.add_after("team-a/settings", 30)
    queue.add_after("team-a/settings", 0.02)

    thread, result = _get_in_thread(queue)
    thread.join(timeout=2)

    assert result["item"] == "team-a/settings"


def test_add_after_with_non_positive_delay_adds_immediately(queue: RateLimitingQueue) -> None:
    queue.add_after("team-a/settings", 0)
    assert len(queue) == 1


def test_add_rate_limited_requeues_with_growing_delay(queue: RateLimitingQueue) -> None:
    first = queue.add_rate_limited("team-a/settings")
    second = queue.add_rate_limited("team-a/settings")

    assert first == pytest.approx(0.01)
    assert second == pytest.approx(0.02)
    assert queue.num_requeues("team-a/settings") == 2

    item, _ = queue.get()
    assert item == "team-a/settings"

    queue.forget("team-a/settings")
    assert queue.num_requeues("team-a/settings") == 0


def test_exponential_limiter_delays_never_decrease_and_respect_cap() -> None:
    limiter = ItemExponentialFailureRateLimiter(base_delay=0.005, max_delay=1.0)

    delays = [limiter.when("team-a/settings") for _ in range(20)]

    assert delays[:4] == pytest.approx([0.005, 0.01, 0.02, 0.04])
    assert all(later >= earlier for earlier, later in zip(delays, delays[1:]))
    assert max(delays) == 1.0
    assert delays[-1] == 1.0


def test_exponential_limiter_tracks_keys_independently() -> None:
    limiter = ItemExponentialFailureRateLimiter(base_delay=1.0, max_delay=100.0)
    limiter.when("team-a/one")
    limiter.when("team-a/one")

    assert limiter.when("team-a/two") == 1.0
    assert limiter.when("team-a/one") == 4.0


def test_exponential_limiter_forget_restores_base_delay() -> None:
    limiter = ItemExponentialFailureRateLimiter(base_delay=1.0, max_delay=100.0)
    for _ in range(5):
        limiter.when("team-a/settings")

    limiter.forget("team-a/settings")

    assert limiter.num_requeues("team-a/settings") == 0
    assert limiter.when("team-a/settings") == 1.0


def test_exponential_limiter_survives_very_long_failure_streaks() -> None:
    limiter = ItemExponentialFailureRateLimiter(base_delay=0.005, max_delay=1000.0)

    for _ in range(2000):
        delay = limiter.when("team-a/settings")

    assert delay == 1000.0


@pytest.mark.parametrize(
    ("base_delay", "max_delay"),
    [(0.0, 1.0), (-1.0, 1.0), (2.0, 1.0)],
)
def test_exponential_limiter_rejects_invalid_bounds(base_delay: float, max_delay: float) -> None:
    with pytest.raises(ValueError):
        ItemExponentialFailureRateLimiter(base_delay=base_delay, max_delay=max_delay)


def test_bucket_limiter_allows_burst_then_spaces_requests() -> None:
    clock = FakeClock()
    limiter = BucketRateLimiter(qps=10, burst=2, clock=clock)

    assert limiter.when("a") == 0.0
    assert limiter.when("b") == 0.0
    assert limiter.when("c") == pytest.approx(0.1)
    assert limiter.when("d") == pytest.approx(0.2)

    clock.now += 10
    assert limiter.when("e") == 0.0


def test_max_of_limiter_returns_largest_delay_and_forgets_everywhere() -> None:
    clock = FakeClock()
    exponential = ItemExponentialFailureRateLimiter(base_delay=1.0, max_delay=60.0)
    bucket = BucketRateLimiter(qps=1, burst=1, clock=clock)
    limiter = MaxOfRateLimiter(exponential, bucket)

    assert limiter.when("team-a/settings") == 1.0
    assert limiter.when("team-a/settings") == 2.0
    assert limiter.num_requeues("team-a/settings") == 2

    limiter.forget("team-a/settings")
    assert limiter.num_requeues("team-a/settings") == 0


def test_default_rate_limiter_is_used_when_none_given() -> None:
    q = RateLimitingQueue(name="default")
    try:
        assert q.rate_limiter.when("team-a/settings") == pytest.approx(0.005)
    finally:
        q.shut_down()
