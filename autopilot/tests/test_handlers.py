from __future__ import annotations

import logging
from types import SimpleNamespace

import pytest

from autopilot.src.handlers import QueueingEventHandler
from autopilot.src.keys import DeletedFinalStateUnknown, object_key
from autopilot.src.workqueue import RateLimitingQueue


def make_pod(name: str, namespace: str = "default", resource_version: str = "1") -> SimpleNamespace:
    return SimpleNamespace(
        kind="Pod",
        metadata=SimpleNamespace(name=name, namespace=namespace, resource_version=resource_version),
    )


def _drain(queue: RateLimitingQueue) -> list[str]:
    queue.shut_down()
    keys: list[str] = []
    while True:
        key, shutdown = queue.get()
        if shutdown:
            return keys
        assert key is not None
        keys.append(key)
        queue.done(key)


def test_add_update_delete_enqueue_the_same_key() -> None:
    queue = RateLimitingQueue()
    handler = QueueingEventHandler(queue)

    handler.on_add(make_pod("web-0"))
    handler.on_update(make_pod("web-0"), make_pod("web-0", resource_version="2"))
    handler.on_delete(make_pod("web-0", resource_version="3"))

    assert _drain(queue) == ["Pod/default/web-0"]


def test_update_uses_new_object_identity() -> None:
    queue = RateLimitingQueue()
    handler = QueueingEventHandler(queue)

    handler.on_update(SimpleNamespace(kind="Pod"), make_pod("web-1"))

    assert _drain(queue) == ["Pod/default/web-1"]


def test_delete_tombstone_enqueues_last_known_key() -> None:
    queue = RateLimitingQueue()
    handler = QueueingEventHandler(queue)

    handler.on_delete(DeletedFinalStateUnknown(key="Pod/default/gone", obj=make_pod("gone")))

    assert _drain(queue) == ["Pod/default/gone"]


def test_malformed_notification_is_dropped_and_logged(caplog: pytest.LogCaptureFixture) -> None:
    queue = RateLimitingQueue()
    handler = QueueingEventHandler(queue)

    with caplog.at_level(logging.WARNING):
        handler.on_add(SimpleNamespace(kind="Pod", metadata=SimpleNamespace(name=None)))

    assert len(queue) == 0
    assert "Dropping malformed add notification" in caplog.text


def test_custom_key_func_is_used() -> None:
    queue = RateLimitingQueue()
    handler = QueueingEventHandler(
        queue, key_func=lambda obj: object_key(obj, default_kind="ConfigMap")
    )

    handler.on_add(SimpleNamespace(metadata=SimpleNamespace(name="settings", namespace="prod")))

    assert _drain(queue) == ["ConfigMap/prod/settings"]


def test_distinct_resources_are_enqueued_separately() -> None:
    queue = RateLimitingQueue()
    handler = QueueingEventHandler(queue)

    handler.on_add(make_pod("web-0"))
    handler.on_add(make_pod("web-0", namespace="staging"))
    handler.on_add(make_pod("web-1"))

    assert _drain(queue) == [
        "Pod/default/web-0",
        "Pod/staging/web-0",
        "Pod/default/web-1",
    ]
