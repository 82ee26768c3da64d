from __future__ import annotations

import enum
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from autopilot.src.config import ControllerConfig
from autopilot.src.handlers import QueueingEventHandler, ResourceEventHandler
from autopilot.src.informer import Informer
from autopilot.src.keys import object_key
from autopilot.src.metrics import METRICS
from autopilot.src.workqueue import ExponentialFailureRateLimiter, RateLimitingQueue

SOURCE_STOP_TIMEOUT_SECONDS = 5.0


class WatchSourceError(RuntimeError):
    """Raised when the watch source stops delivering notifications."""


class CacheSyncError(WatchSourceError):
    """Raised when the watch source cannot complete its initial sync."""


class ControllerState(enum.Enum):
    NOT_STARTED = "NotStarted"
    SYNCING_CACHE = "SyncingCache"
    RUNNING = "Running"
    SHUTTING_DOWN = "ShuttingDown"
    STOPPED = "Stopped"


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of one reconcile attempt.  ``reason`` explains a failure."""

    success: bool
    reason: str | None = None

    @classmethod
    def ok(cls) -> ReconcileResult:
        return cls(success=True)

    @classmethod
    def failed(cls, reason: str) -> ReconcileResult:
        return cls(success=False, reason=reason)


ReconcileFunc = Callable[[str], ReconcileResult]


class WatchSource(Protocol):
    def run(self, stop_event: threading.Event) -> None: ...

    def has_synced(self) -> bool: ...

    def has_failed(self) -> bool: ...

    def add_event_handler(self, handler: ResourceEventHandler) -> None: ...

    def request_stop(self) -> None: ...


class Controller:
    """Drives resources toward desired state through a pool of reconcile workers.

    Lifecycle: ``NotStarted -> SyncingCache -> Running -> ShuttingDown ->
    Stopped``.  Workers only start once the watch source reports its cache
    synced; a stop request that arrives earlier skips straight to
    ``Stopped`` without reconciling anything.

    Each worker loops ``get -> reconcile -> done`` and then either
    ``forget`` (success) or ``add_rate_limited`` (failure).  ``done`` always
    runs first so the key's processing lock is released and any re-add that
    arrived during the reconcile is flushed before the retry is scheduled.
    Exceptions raised by the reconcile function are contained per worker and
    treated as failures of that key.
    """

    def __init__(
        self,
        source: WatchSource,
        reconcile: ReconcileFunc,
        queue: RateLimitingQueue | None = None,
        *,
        workers: int = 2,
        cache_sync_timeout: float | None = None,
        key_func: Callable[[Any], str] = object_key,
        logger: logging.Logger | None = None,
    ) -> None:
        if workers < 1:
            raise ValueError(f"workers must be >= 1, got: {workers}")
        self.source = source
        self.reconcile = reconcile
        self.queue = queue if queue is not None else RateLimitingQueue()
        self.workers = workers
        self.cache_sync_timeout = cache_sync_timeout or None
        self.logger = logger or logging.getLogger(__name__)

        self.ready = threading.Event()
        self.stopped = threading.Event()
        self._state = ControllerState.NOT_STARTED
        self._state_lock = threading.Lock()
        self._worker_threads: list[threading.Thread] = []
        self._source_thread: threading.Thread | None = None
        self._set_state(ControllerState.NOT_STARTED)

        self.source.add_event_handler(
            QueueingEventHandler(self.queue, key_func=key_func, logger=self.logger)
        )

    @property
    def state(self) -> ControllerState:
        with self._state_lock:
            return self._state

    def _set_state(self, state: ControllerState) -> None:
        with self._state_lock:
            previous = self._state
            self._state = state
        METRICS.controller_state.labels(state=previous.value).set(0)
        METRICS.controller_state.labels(state=state.value).set(1)
        if previous is not state:
            self.logger.info("Controller state %s -> %s", previous.value, state.value)

    def abort(self) -> None:
        """Discard queued work so workers exit after their current reconcile."""
        self.queue.shut_down_now()

    def _wait_for_cache_sync(self, stop_event: threading.Event) -> bool:
        deadline = (
            None if self.cache_sync_timeout is None else time.monotonic() + self.cache_sync_timeout
        )
        while not self.source.has_synced():
            if stop_event.is_set():
                return False
            if self.source.has_failed():
                raise CacheSyncError("watch source failed before completing its initial sync")
            if self._source_thread is not None and not self._source_thread.is_alive():
                raise CacheSyncError("watch source exited before completing its initial sync")
            if deadline is not None and time.monotonic() >= deadline:
                raise CacheSyncError(
                    f"watch source did not sync within {self.cache_sync_timeout:g}s"
                )
            stop_event.wait(timeout=0.1)
        return True

    def _process_next_item(self) -> bool:
        key, shutdown = self.queue.get()
        if shutdown or key is None:
            return False

        started = time.monotonic()
        try:
            result = self.reconcile(key)
            if not isinstance(result, ReconcileResult):
                result = ReconcileResult.failed(
                    f"reconcile returned {type(result).__name__}, expected ReconcileResult"
                )
        except Exception as exc:
            self.logger.exception("Reconcile of %s raised", key)
            result = ReconcileResult.failed(f"{type(exc).__name__}: {exc}")
        finally:
            METRICS.reconcile_duration_seconds.observe(time.monotonic() - started)

        self.queue.done(key)
        if result.success:
            METRICS.reconcile_total.labels(result="success").inc()
            self.queue.forget(key)
            return True

        METRICS.reconcile_total.labels(result="failure").inc()
        delay = self.queue.add_rate_limited(key)
        if delay is None:
            self.logger.warning(
                "Reconcile of %s failed (%s); not retrying because the queue is shutting down",
                key,
                result.reason,
            )
        else:
            self.logger.warning(
                "Reconcile of %s failed (%s); scheduling retry attempt %d in %.1fs",
                key,
                result.reason,
                self.queue.num_requeues(key),
                delay,
            )
        return True

    def _run_worker(self) -> None:
        while self._process_next_item():
            pass

    def _join_source(self) -> None:
        if self._source_thread is None:
            return
        self._source_thread.join(timeout=SOURCE_STOP_TIMEOUT_SECONDS)
        if self._source_thread.is_alive():
            self.logger.warning(
                "Watch source did not stop within %.0fs; leaving it to exit on its own",
                SOURCE_STOP_TIMEOUT_SECONDS,
            )

    def run(self, stop_event: threading.Event) -> None:
        """Run the controller until *stop_event* is set.

        1. Starts the watch source on a background thread and blocks until
           its cache is synced.  A stop request first ends the run with zero
           reconciles; a failed or timed-out sync raises
           :class:`CacheSyncError`.
        2. Starts ``workers`` reconcile threads.
        3. On stop, shuts the queue down (queued keys are still drained),
           stops the watch source, and joins every worker.  The watch source
           thread is joined too, bounded by ``SOURCE_STOP_TIMEOUT_SECONDS``,
           so ``Stopped`` means its stream has closed.

        If the watch source exits on its own while running, the controller
        shuts down the same way and raises :class:`WatchSourceError`.
        """
        self.stopped.clear()
        source_error: WatchSourceError | None = None
        self._set_state(ControllerState.SYNCING_CACHE)
        self._source_thread = threading.Thread(
            target=self.source.run, args=(stop_event,), name="watch-source", daemon=True
        )
        self._source_thread.start()

        try:
            try:
                synced = self._wait_for_cache_sync(stop_event)
            except CacheSyncError:
                self.logger.error("Failed to sync cache; controller cannot start")
                self.queue.shut_down()
                self.source.request_stop()
                raise

            if not synced:
                self.logger.info("Stop requested before cache sync; exiting without processing")
                self.queue.shut_down()
                self.source.request_stop()
                return

            self._set_state(ControllerState.RUNNING)
            self.ready.set()
            self._worker_threads = [
                threading.Thread(target=self._run_worker, name=f"worker-{index}", daemon=True)
                for index in range(self.workers)
            ]
            for thread in self._worker_threads:
                thread.start()
            self.logger.info("Started %d reconcile worker(s)", self.workers)

            while not stop_event.wait(timeout=1.0):
                if not self._source_thread.is_alive():
                    self.logger.error("Watch source exited without a stop signal; shutting down")
                    source_error = WatchSourceError("watch source exited unexpectedly")
                    break

            self.ready.clear()
            self._set_state(ControllerState.SHUTTING_DOWN)
            self.queue.shut_down()
            self.source.request_stop()
            for thread in self._worker_threads:
                thread.join()
            self._worker_threads = []
        finally:
            self.ready.clear()
            self._join_source()
            self._set_state(ControllerState.STOPPED)
            self.stopped.set()

        if source_error is not None:
            raise source_error


def make_cache_reconciler(
    informer: Informer, logger: logging.Logger | None = None
) -> ReconcileFunc:
    """Return a reconcile function that reports the cached state of each key.

    A key missing from the cache is a deleted resource, which is a valid
    terminal state rather than an error.
    """
    log = logger or logging.getLogger(__name__)

    def reconcile(key: str) -> ReconcileResult:
        if informer.get_by_key(key) is None:
            log.info("Resource deleted: %s", key)
        else:
            log.info("Managing resource: %s", key)
        return ReconcileResult.ok()

    return reconcile


def build_controller(
    config: ControllerConfig,
    informer: Informer,
    reconcile: ReconcileFunc | None = None,
) -> Controller:
    """Construct a :class:`Controller` wired to *informer* from *config*."""
    queue = RateLimitingQueue(
        ExponentialFailureRateLimiter(
            base_delay=config.base_delay_seconds,
            max_delay=config.max_delay_seconds,
            factor=config.backoff_factor,
        )
    )
    return Controller(
        source=informer,
        reconcile=reconcile or make_cache_reconciler(informer),
        queue=queue,
        workers=config.workers,
        cache_sync_timeout=config.cache_sync_timeout_seconds,
        key_func=informer.key_for,
    )
