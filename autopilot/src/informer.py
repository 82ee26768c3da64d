from __future__ import annotations

import logging
import math
import random
import threading
import time
from collections.abc import Callable
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from autopilot.src.handlers import ResourceEventHandler
from autopilot.src.keys import DeletedFinalStateUnknown, MalformedNotificationError, object_key
from autopilot.src.metrics import METRICS

MAX_BACKOFF_SECONDS = 30
DEFAULT_WATCH_TIMEOUT_SECONDS = 300


def _resource_version(obj: Any) -> str | None:
    metadata = obj.get("metadata") if isinstance(obj, dict) else getattr(obj, "metadata", None)
    if metadata is None:
        return None
    if isinstance(metadata, dict):
        return metadata.get("resourceVersion") or metadata.get("resource_version")
    return getattr(metadata, "resource_version", None)


class Informer:
    """Locally synchronized mirror of one Kubernetes resource collection.

    The informer lists the collection once, dispatches an ``on_add`` for
    every item, flags itself as synced, and then follows a watch stream from
    the list's ``resourceVersion``.  Key internal state:

    ``_store``
        Maps object key to the last observed object.  Reconcile functions
        read it through :meth:`get_by_key` instead of trusting event payloads.
    ``_synced``
        Set once the initial list has been dispatched to every handler.
    ``_failed``
        Set when the API rejects our credentials (401/403).  Retrying would
        never succeed, so the informer stops and the controller treats it as
        fatal.

    On ``410 Gone`` the collection is re-listed and diffed against the store
    so that changes missed while disconnected are still delivered, with
    vanished objects reported as :class:`DeletedFinalStateUnknown`.  Every
    ``resync_period`` seconds all cached objects are re-dispatched as updates
    so that reconciliation converges even without new events.
    """

    def __init__(
        self,
        list_func: Callable[..., Any],
        kind: str,
        *,
        list_kwargs: dict[str, Any] | None = None,
        label_selector: str | None = None,
        resync_period: float = 600,
        logger: logging.Logger | None = None,
    ) -> None:
        self.list_func = list_func
        self.kind = kind
        self.list_kwargs = dict(list_kwargs or {})
        self.label_selector = label_selector or None
        self.resync_period = resync_period
        self.logger = logger or logging.getLogger(__name__)

        self._store: dict[str, Any] = {}
        self._store_lock = threading.Lock()
        self._handlers: list[ResourceEventHandler] = []
        self._synced = threading.Event()
        self._failed = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()
        self._next_resync: float | None = None

    def key_for(self, obj: Any) -> str:
        return object_key(obj, default_kind=self.kind)

    def add_event_handler(self, handler: ResourceEventHandler) -> None:
        self._handlers.append(handler)

    def has_synced(self) -> bool:
        return self._synced.is_set()

    def has_failed(self) -> bool:
        return self._failed.is_set()

    def get_by_key(self, key: str) -> Any | None:
        with self._store_lock:
            return self._store.get(key)

    def list_keys(self) -> list[str]:
        with self._store_lock:
            return list(self._store)

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _list_kwargs(self) -> dict[str, Any]:
        kwargs = dict(self.list_kwargs)
        if self.label_selector:
            kwargs["label_selector"] = self.label_selector
        return kwargs

    # -- dispatch ----------------------------------------------------------

    def _dispatch(self, event: str, *args: Any) -> None:
        for handler in self._handlers:
            try:
                getattr(handler, event)(*args)
            except Exception:
                self.logger.exception("Event handler %r failed on %s", handler, event)

    def _key_or_none(self, obj: Any) -> str | None:
        try:
            return self.key_for(obj)
        except MalformedNotificationError:
            return None

    def _replace_from_list(self, listing: Any, *, initial: bool) -> None:
        """Load a full listing into the store and dispatch the differences.

        The initial listing dispatches ``on_add`` for every item.  A re-list
        dispatches adds for new keys, updates for keys whose
        ``resourceVersion`` moved, and tombstoned deletes for keys that are
        gone.
        """
        items = getattr(listing, "items", None) or []
        fresh: dict[str, Any] = {}
        unkeyed: list[Any] = []
        for item in items:
            key = self._key_or_none(item)
            if key is None:
                unkeyed.append(item)
            else:
                fresh[key] = item

        with self._store_lock:
            previous = self._store
            self._store = dict(fresh)

        for item in unkeyed:
            self._dispatch("on_add", item)

        for key, item in fresh.items():
            old = previous.get(key)
            if initial or old is None:
                self._dispatch("on_add", item)
            elif _resource_version(old) != _resource_version(item):
                self._dispatch("on_update", old, item)

        if not initial:
            for key, old in previous.items():
                if key not in fresh:
                    self._dispatch("on_delete", DeletedFinalStateUnknown(key=key, obj=old))

    def _handle_watch_event(self, event_type: str, obj: Any) -> None:
        key = self._key_or_none(obj)
        if event_type in {"ADDED", "MODIFIED"}:
            old = None
            if key is not None:
                with self._store_lock:
                    old = self._store.get(key)
                    self._store[key] = obj
            if old is None:
                self._dispatch("on_add", obj)
            else:
                self._dispatch("on_update", old, obj)
        elif event_type == "DELETED":
            if key is not None:
                with self._store_lock:
                    self._store.pop(key, None)
            self._dispatch("on_delete", obj)

    def _resync(self) -> None:
        with self._store_lock:
            cached = list(self._store.values())
        METRICS.resyncs_total.inc()
        self.logger.info("Resyncing %d cached %s object(s)", len(cached), self.kind)
        for obj in cached:
            self._dispatch("on_update", obj, obj)

    def _maybe_resync(self, now_monotonic: float) -> None:
        if self._next_resync is None or now_monotonic < self._next_resync:
            return
        self._resync()
        self._next_resync = now_monotonic + self.resync_period

    def _next_watch_timeout_seconds(self, now_monotonic: float) -> int:
        """Return the next watch timeout, shortened so the loop wakes for the next resync."""
        if self._next_resync is None:
            return DEFAULT_WATCH_TIMEOUT_SECONDS
        remaining = max(1.0, self._next_resync - now_monotonic)
        return min(DEFAULT_WATCH_TIMEOUT_SECONDS, max(1, math.ceil(remaining)))

    # -- main loop ---------------------------------------------------------

    def run(self, stop_event: threading.Event) -> None:
        """List then watch the collection until stopped.

        1. Retries the initial list with exponential backoff and jitter so
           transient API startup failures do not abort the controller.
        2. Seeds the store, dispatches adds, and marks the informer synced.
        3. Opens a watch stream from the list's ``resourceVersion``.
        4. On ``410 Gone``, re-lists, diffs, and resumes from the fresh version.
        5. On transient errors, backs off with jitter (capped at 30 s).
        6. Re-dispatches the whole store every ``resync_period`` seconds.

        ``401`` / ``403`` responses mark the informer failed and return
        immediately instead of retrying forever.
        """
        self._external_stop.clear()

        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop_event):
            try:
                initial = self.list_func(**self._list_kwargs())
                resource_version = getattr(
                    getattr(initial, "metadata", None), "resource_version", None
                )
                self._replace_from_list(initial, initial=True)
                self._synced.set()
                self.logger.info(
                    "Synced %d %s object(s); watching from resourceVersion %s",
                    len(self.list_keys()),
                    self.kind,
                    resource_version,
                )
                break
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied during initial %s list (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        self.kind,
                        exc.status,
                    )
                    self._failed.set()
                    return
                self.logger.exception("Initial Kubernetes %s list failed", self.kind)
                METRICS.watch_errors_total.inc()
            except Exception:
                self.logger.exception("Unexpected error during initial %s list", self.kind)
                METRICS.watch_errors_total.inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop_event.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, MAX_BACKOFF_SECONDS)

        if self._should_stop(stop_event):
            return

        if self.resync_period > 0:
            self._next_resync = time.monotonic() + self.resync_period

        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop_event):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self.list_func,
                    resource_version=resource_version,
                    timeout_seconds=self._next_watch_timeout_seconds(time.monotonic()),
                    **self._list_kwargs(),
                )

                for event in stream:
                    if self._should_stop(stop_event):
                        break

                    event_type = str(event.get("type", ""))
                    obj = event.get("object")
                    if event_type == "ERROR":
                        code = obj.get("code") if isinstance(obj, dict) else None
                        raise ApiException(status=code or 500, reason="watch error event")
                    if obj is None:
                        continue

                    version = _resource_version(obj)
                    if version:
                        resource_version = version

                    self._handle_watch_event(event_type, obj)
                    self._maybe_resync(time.monotonic())

                backoff_seconds = 1
                self._maybe_resync(time.monotonic())
            except ApiException as exc:
                # 410 Gone means etcd compacted past our resourceVersion.
                if exc.status == 410:
                    self.logger.warning("Watch resource version expired, re-listing")
                    METRICS.relists_total.inc()
                    try:
                        fresh = self.list_func(**self._list_kwargs())
                        resource_version = getattr(
                            getattr(fresh, "metadata", None), "resource_version", None
                        )
                        self._replace_from_list(fresh, initial=False)
                    except ApiException as relist_exc:
                        if relist_exc.status in {401, 403}:
                            self.logger.error(
                                "Kubernetes API access denied during 410 re-list (status=%s). "
                                "Check controller RBAC and service account permissions.",
                                relist_exc.status,
                            )
                            self._failed.set()
                            return
                        # Keep the expired version so the next watch 410s and re-lists again.
                        self.logger.exception("Failed to re-list after 410")
                        METRICS.watch_errors_total.inc()
                        jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                        stop_event.wait(timeout=jittered)
                        backoff_seconds = min(backoff_seconds * 2, MAX_BACKOFF_SECONDS)
                    continue

                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API watch denied (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        exc.status,
                    )
                    METRICS.watch_errors_total.inc()
                    self._failed.set()
                    return

                self.logger.exception("Kubernetes API watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop_event.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, MAX_BACKOFF_SECONDS)
            except Exception:
                self.logger.exception("Unexpected watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop_event.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, MAX_BACKOFF_SECONDS)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None
