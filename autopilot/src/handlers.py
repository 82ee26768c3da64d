from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, Protocol

from autopilot.src.keys import MalformedNotificationError, object_key
from autopilot.src.metrics import METRICS
from autopilot.src.workqueue import RateLimitingQueue


class ResourceEventHandler(Protocol):
    """Observer registered with a watch source."""

    def on_add(self, obj: Any) -> None: ...

    def on_update(self, old_obj: Any, new_obj: Any) -> None: ...

    def on_delete(self, obj: Any) -> None: ...


class QueueingEventHandler:
    """Translate watch notifications into work-queue keys.

    Deletes are enqueued exactly like adds and updates: only the identity
    travels through the queue, and the reconcile function decides that a
    key missing from the cache means the resource is gone.
    """

    def __init__(
        self,
        queue: RateLimitingQueue,
        key_func: Callable[[Any], str] = object_key,
        logger: logging.Logger | None = None,
    ) -> None:
        self.queue = queue
        self.key_func = key_func
        self.logger = logger or logging.getLogger(__name__)

    def _enqueue(self, event: str, obj: Any) -> None:
        METRICS.events_total.labels(event=event).inc()
        try:
            key = self.key_func(obj)
        except MalformedNotificationError as exc:
            METRICS.malformed_events_total.inc()
            self.logger.warning("Dropping malformed %s notification: %s", event, exc)
            return
        self.queue.add(key)

    def on_add(self, obj: Any) -> None:
        self._enqueue("add", obj)

    def on_update(self, old_obj: Any, new_obj: Any) -> None:
        self._enqueue("update", new_obj)

    def on_delete(self, obj: Any) -> None:
        self._enqueue("delete", obj)
