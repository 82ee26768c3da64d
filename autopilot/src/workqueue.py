from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Callable

from autopilot.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class ExponentialFailureRateLimiter:
    """Per-key exponential backoff: ``min(base * factor**failures, max)``.

    The failure counter is keyed by identity, not by queue entry, so repeated
    failures compound across unrelated successes of other keys and are only
    reset by :meth:`forget`.
    """

    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 1000.0,
        factor: float = 2.0,
    ) -> None:
        if base_delay <= 0:
            raise ValueError(f"base_delay must be > 0, got: {base_delay}")
        if factor < 1:
            raise ValueError(f"factor must be >= 1, got: {factor}")
        if max_delay < base_delay:
            raise ValueError(
                f"max_delay must be >= base_delay ({base_delay}), got: {max_delay}"
            )
        self.base_delay = float(base_delay)
        self.max_delay = float(max_delay)
        self.factor = float(factor)
        self._failures: dict[str, int] = {}
        self._lock = threading.Lock()

    def when(self, key: str) -> float:
        """Record one more failure for *key* and return the delay before its retry."""
        with self._lock:
            exponent = self._failures.get(key, 0)
            self._failures[key] = exponent + 1

        try:
            delay = self.base_delay * self.factor**exponent
        except OverflowError:
            return self.max_delay
        return min(delay, self.max_delay)

    def forget(self, key: str) -> None:
        with self._lock:
            self._failures.pop(key, None)

    def num_requeues(self, key: str) -> int:
        with self._lock:
            return self._failures.get(key, 0)


class RateLimitingQueue:
    """Deduplicating work queue with per-key processing locks and delayed retries.

    Every key is in at most one of three sets:

    ``pending``
        Waiting for a worker, served in the order keys first became pending.
    ``processing``
        Handed out by :meth:`get` and not yet released by :meth:`done`.  A
        key re-added while processing only gets a *dirty* mark; it re-enters
        the back of ``pending`` when :meth:`done` releases it, so one key is
        never handed to two workers at once.  A delayed re-add made while
        processing keeps its delay and enters ``delayed`` on release instead.
    ``delayed``
        Scheduled by :meth:`add_rate_limited` or :meth:`add_after`.  Plain
        :meth:`add` calls leave a delayed key alone so a burst of events
        cannot collapse its backoff.

    All state lives behind a single :class:`threading.Condition`.  A timer
    thread, alive only while delayed keys exist, takes the same lock to move
    keys whose fire time has passed into ``pending``.

    After :meth:`shut_down`, new work is rejected but everything already
    pending, delayed, or marked dirty is still delivered; :meth:`get` returns
    ``(None, True)`` only once none of that is left.
    """

    def __init__(
        self,
        rate_limiter: ExponentialFailureRateLimiter | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.rate_limiter = rate_limiter or ExponentialFailureRateLimiter()
        self._clock = clock
        self._cond = threading.Condition()

        self._pending_order: deque[str] = deque()
        # key -> clock() at the time it became pending
        self._pending: dict[str, float] = {}
        # key -> clock() at the time a worker picked it up
        self._processing: dict[str, float] = {}
        self._dirty: set[str] = set()
        # dirty key -> retry delay to apply once done() releases it
        self._dirty_delay: dict[str, float] = {}
        # key -> fire time; the heap may hold superseded entries
        self._delayed: dict[str, float] = {}
        self._delayed_heap: list[tuple[float, int, str]] = []
        self._sequence = itertools.count()

        self._shutting_down = False
        self._timer: threading.Thread | None = None

    def __len__(self) -> int:
        with self._cond:
            return len(self._pending)

    def num_requeues(self, key: str) -> int:
        return self.rate_limiter.num_requeues(key)

    # -- producer side -----------------------------------------------------

    def add(self, key: str) -> None:
        """Mark *key* as needing work.  Coalesces with any outstanding entry."""
        with self._cond:
            if self._shutting_down:
                return
            self._add_locked(key)

    def add_after(self, key: str, delay: float) -> None:
        """Schedule *key* to become pending after *delay* seconds."""
        with self._cond:
            if self._shutting_down:
                return
            self._add_after_locked(key, delay)

    def add_rate_limited(self, key: str) -> float | None:
        """Schedule a retry of *key* after its next backoff delay.

        Returns the delay in seconds, or ``None`` when the queue is shutting
        down and the retry was rejected.
        """
        with self._cond:
            if self._shutting_down:
                return None
            delay = self.rate_limiter.when(key)
            METRICS.queue_retries_total.inc()
            self._add_after_locked(key, delay)
            return delay

    def forget(self, key: str) -> None:
        """Clear the failure history of *key* so its next backoff starts from the base delay."""
        self.rate_limiter.forget(key)

    # -- consumer side -----------------------------------------------------

    def get(self) -> tuple[str | None, bool]:
        """Block until a key is available; return ``(key, False)`` or ``(None, True)`` on shutdown."""
        with self._cond:
            while not self._pending_order and not self._drained_locked():
                self._cond.wait()

            if not self._pending_order:
                return None, True

            key = self._pending_order.popleft()
            became_pending_at = self._pending.pop(key)
            now = self._clock()
            self._processing[key] = now
            METRICS.queue_depth.set(len(self._pending))
            METRICS.queue_latency_seconds.observe(max(0.0, now - became_pending_at))
            return key, False

    def done(self, key: str) -> None:
        """Release *key* after a processing attempt, flushing any re-add made meanwhile."""
        with self._cond:
            started_at = self._processing.pop(key, None)
            if started_at is None:
                raise ValueError(f"done() called for key {key!r} that is not processing")
            METRICS.work_duration_seconds.observe(max(0.0, self._clock() - started_at))

            if key in self._dirty:
                self._dirty.discard(key)
                delay = self._dirty_delay.pop(key, None)
                if delay is None:
                    self._push_pending_locked(key)
                else:
                    self._add_after_locked(key, delay)
            # A released key may be the last thing a draining get() waits on.
            self._cond.notify_all()

    # -- shutdown ----------------------------------------------------------

    def shut_down(self) -> None:
        """Reject new work and let :meth:`get` drain what is already queued."""
        with self._cond:
            if not self._shutting_down:
                LOGGER.info(
                    "Work queue shutting down (pending=%d, delayed=%d, processing=%d)",
                    len(self._pending),
                    len(self._delayed),
                    len(self._processing),
                )
            self._shutting_down = True
            self._cond.notify_all()

    def shut_down_now(self) -> None:
        """Reject new work and discard everything not already processing."""
        with self._cond:
            discarded = len(self._pending) + len(self._delayed) + len(self._dirty)
            self._shutting_down = True
            self._pending_order.clear()
            self._pending.clear()
            self._delayed.clear()
            self._delayed_heap.clear()
            self._dirty.clear()
            self._dirty_delay.clear()
            METRICS.queue_depth.set(0)
            METRICS.queue_delayed.set(0)
            if discarded:
                LOGGER.warning("Work queue aborted; discarded %d queued key(s)", discarded)
            self._cond.notify_all()

    # -- internals (callers hold self._cond) --------------------------------

    def _drained_locked(self) -> bool:
        return self._shutting_down and not self._delayed and not self._dirty

    def _push_pending_locked(self, key: str) -> None:
        self._pending_order.append(key)
        self._pending[key] = self._clock()
        METRICS.queue_adds_total.inc()
        METRICS.queue_depth.set(len(self._pending))
        self._cond.notify_all()

    def _add_locked(self, key: str) -> None:
        if key in self._delayed:
            return
        if key in self._processing:
            self._dirty.add(key)
            return
        if key in self._pending:
            return
        self._push_pending_locked(key)

    def _add_after_locked(self, key: str, delay: float) -> None:
        if delay <= 0:
            self._add_locked(key)
            return
        if key in self._processing:
            self._dirty.add(key)
            previous = self._dirty_delay.get(key)
            self._dirty_delay[key] = delay if previous is None else min(previous, delay)
            return
        if key in self._pending:
            return

        fire_at = self._clock() + delay
        existing = self._delayed.get(key)
        if existing is not None and existing <= fire_at:
            return

        self._delayed[key] = fire_at
        heapq.heappush(self._delayed_heap, (fire_at, next(self._sequence), key))
        METRICS.queue_delayed.set(len(self._delayed))
        if self._timer is None:
            self._timer = threading.Thread(
                target=self._run_timer, name="workqueue-delay", daemon=True
            )
            self._timer.start()
        self._cond.notify_all()

    def _promote_due_locked(self) -> None:
        now = self._clock()
        while self._delayed_heap and self._delayed_heap[0][0] <= now:
            fire_at, _, key = heapq.heappop(self._delayed_heap)
            if self._delayed.get(key) != fire_at:
                continue
            del self._delayed[key]
            self._add_locked(key)
        METRICS.queue_delayed.set(len(self._delayed))

    def _run_timer(self) -> None:
        with self._cond:
            while True:
                self._promote_due_locked()
                if not self._delayed:
                    self._delayed_heap.clear()
                    self._timer = None
                    # Drained waiters re-check once the last delayed key is gone.
                    self._cond.notify_all()
                    return
                timeout = max(0.0, self._delayed_heap[0][0] - self._clock())
                self._cond.wait(timeout=timeout)
