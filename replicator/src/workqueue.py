from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from typing import Protocol

from replicator.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class RateLimiter(Protocol):
    def when(self, item: str) -> float: ...

    def forget(self, item: str) -> None: ...

    def num_requeues(self, item: str) -> int: ...


class ItemExponentialFailureRateLimiter:
    """Per-key exponential backoff: ``base_delay * 2**failures``, capped at ``max_delay``.

    Every call to :meth:`when` counts as one more failure for the key, so the
    returned delays never decrease until :meth:`forget` resets the history.
    """

    def __init__(self, base_delay: float = 0.005, max_delay: float = 1000.0) -> None:
        if base_delay <= 0:
            raise ValueError("base_delay must be > 0")
        if max_delay < base_delay:
            raise ValueError("max_delay must be >= base_delay")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: dict[str, int] = {}
        self._lock = threading.Lock()

    def when(self, item: str) -> float:
        with self._lock:
            exponent = self._failures.get(item, 0)
            self._failures[item] = exponent + 1

        # 2**64 times any sane base is already far beyond the cap.
        if exponent >= 64:
            return self.max_delay
        return min(self.base_delay * (2**exponent), self.max_delay)

    def forget(self, item: str) -> None:
        with self._lock:
            self._failures.pop(item, None)

    def num_requeues(self, item: str) -> int:
        with self._lock:
            return self._failures.get(item, 0)


class BucketRateLimiter:
    """Overall token bucket shared by every key.

    Protects the API server from a burst of simultaneous retries: once the
    ``burst`` tokens are spent, each further requeue waits for a token to be
    refilled at ``qps`` per second.
    """

    def __init__(
        self,
        qps: float = 10.0,
        burst: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if qps <= 0:
            raise ValueError("qps must be > 0")
        if burst < 1:
            raise ValueError("burst must be >= 1")
        self.qps = qps
        self.burst = burst
        self._clock = clock
        self._tokens = float(burst)
        self._last = clock()
        self._lock = threading.Lock()

    def when(self, item: str) -> float:
        with self._lock:
            now = self._clock()
            self._tokens = min(float(self.burst), self._tokens + (now - self._last) * self.qps)
            self._last = now
            self._tokens -= 1.0
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.qps

    def forget(self, item: str) -> None:
        return None

    def num_requeues(self, item: str) -> int:
        return 0


class MaxOfRateLimiter:
    """Return the longest delay requested by any of the wrapped limiters."""

    def __init__(self, *limiters: RateLimiter) -> None:
        if not limiters:
            raise ValueError("at least one rate limiter is required")
        self.limiters = limiters

    def when(self, item: str) -> float:
        return max(limiter.when(item) for limiter in self.limiters)

    def forget(self, item: str) -> None:
        for limiter in self.limiters:
            limiter.forget(item)

    def num_requeues(self, item: str) -> int:
        return max(limiter.num_requeues(item) for limiter in self.limiters)


def default_controller_rate_limiter(
    base_delay: float = 0.005,
    max_delay: float = 1000.0,
    qps: float = 10.0,
    burst: int = 100,
) -> MaxOfRateLimiter:
    return MaxOfRateLimiter(
        ItemExponentialFailureRateLimiter(base_delay=base_delay, max_delay=max_delay),
        BucketRateLimiter(qps=qps, burst=burst),
    )


class WorkQueue:
    """Deduplicating FIFO of string keys with in-flight tracking.

    Three pieces of state, all guarded by one condition variable:

    ``_queue``
        Keys ready to be handed out by :meth:`get`, in FIFO order.
    ``_dirty``
        Keys that need processing.  A key added while already dirty is
        coalesced into the pending request.
    ``_processing``
        Keys currently handed out and not yet :meth:`done`.  A key added while
        processing stays dirty but is only put back on ``_queue`` by
        :meth:`done`, so one key is never processed by two workers at once and
        any number of re-adds during a pass collapse into one more pass.
    """

    def __init__(self, name: str = "", clock: Callable[[], float] = time.monotonic) -> None:
        self.name = name
        self._clock = clock
        self._queue: deque[str] = deque()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._added_at: dict[str, float] = {}
        self._started_at: dict[str, float] = {}
        self._cond = threading.Condition()
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def _publish_depth(self) -> None:
        METRICS.queue_depth.labels(name=self.name).set(len(self._queue))

    def add(self, item: str) -> None:
        with self._cond:
            if self._shutting_down or item in self._dirty:
                return

            METRICS.queue_adds_total.labels(name=self.name).inc()
            self._dirty.add(item)
            if item in self._processing:
                return

            self._queue.append(item)
            self._added_at[item] = self._clock()
            self._publish_depth()
            self._cond.notify()

    def get(self) -> tuple[str | None, bool]:
        """Block until a key is available; return ``(key, False)`` or ``(None, True)`` on shutdown."""
        with self._cond:
            while not self._queue and not self._shutting_down:
                self._cond.wait()
            if self._shutting_down:
                return None, True

            item = self._queue.popleft()
            now = self._clock()
            added_at = self._added_at.pop(item, None)
            if added_at is not None:
                METRICS.queue_latency_seconds.labels(name=self.name).observe(now - added_at)
            self._started_at[item] = now
            self._processing.add(item)
            self._dirty.discard(item)
            self._publish_depth()
            return item, False

    def done(self, item: str) -> None:
        with self._cond:
            self._processing.discard(item)
            started_at = self._started_at.pop(item, None)
            if started_at is not None:
                METRICS.work_duration_seconds.labels(name=self.name).observe(
                    self._clock() - started_at
                )
            if item in self._dirty and not self._shutting_down:
                self._queue.append(item)
                self._added_at[item] = self._clock()
                self._publish_depth()
                self._cond.notify()

    def shut_down(self) -> None:
        """Wake every blocked :meth:`get` and refuse further work."""
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()


class DelayingQueue(WorkQueue):
    """Work queue that can also add a key after a delay.

    Delayed keys wait in a heap drained by a daemon thread.  A key that is
    already waiting keeps whichever ready time is earlier.
    """

    def __init__(self, name: str = "", clock: Callable[[], float] = time.monotonic) -> None:
        super().__init__(name=name, clock=clock)
        self._waiting: list[tuple[float, int, str]] = []
        self._ready_at: dict[str, float] = {}
        self._sequence = itertools.count()
        self._waiting_cond = threading.Condition()
        self._waiter = threading.Thread(
            target=self._waiting_loop,
            name=f"{name or 'workqueue'}-delay",
            daemon=True,
        )
        self._waiter.start()

    def add_after(self, item: str, delay_seconds: float) -> None:
        if self.shutting_down:
            return
        if delay_seconds <= 0:
            self.add(item)
            return

        ready_at = self._clock() + delay_seconds
        with self._waiting_cond:
            existing = self._ready_at.get(item)
            if existing is not None and existing <= ready_at:
                return
            self._ready_at[item] = ready_at
            heapq.heappush(self._waiting, (ready_at, next(self._sequence), item))
            self._waiting_cond.notify()

    def shut_down(self) -> None:
        super().shut_down()
        with self._waiting_cond:
            self._waiting_cond.notify_all()

    def _waiting_loop(self) -> None:
        with self._waiting_cond:
            while not self.shutting_down:
                now = self._clock()
                while self._waiting and self._waiting[0][0] <= now:
                    ready_at, _, item = heapq.heappop(self._waiting)
                    # Superseded by an earlier ready time for the same key.
                    if self._ready_at.get(item) != ready_at:
                        continue
                    del self._ready_at[item]
                    self.add(item)

                timeout = self._waiting[0][0] - now if self._waiting else None
                self._waiting_cond.wait(timeout=timeout)


class RateLimitingQueue(DelayingQueue):
    """Delaying queue whose retries are spaced out by a :class:`RateLimiter`."""

    def __init__(
        self,
        rate_limiter: RateLimiter | None = None,
        name: str = "",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(name=name, clock=clock)
        self.rate_limiter = rate_limiter or default_controller_rate_limiter()

    def add_rate_limited(self, item: str) -> float:
        """Requeue ``item`` after its backoff delay and return that delay."""
        delay_seconds = self.rate_limiter.when(item)
        METRICS.queue_retries_total.labels(name=self.name).inc()
        LOGGER.debug("Requeueing %s in %.3fs", item, delay_seconds)
        self.add_after(item, delay_seconds)
        return delay_seconds

    def forget(self, item: str) -> None:
        self.rate_limiter.forget(item)

    def num_requeues(self, item: str) -> int:
        return self.rate_limiter.num_requeues(item)
