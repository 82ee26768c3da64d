from __future__ import annotations

from types import SimpleNamespace

import pytest

from autopilot.src.keys import (
    DeletedFinalStateUnknown,
    MalformedNotificationError,
    object_key,
)


def make_pod(
    name: str | None = "web-0", namespace: str | None = "default", kind: str | None = "Pod"
) -> SimpleNamespace:
    return SimpleNamespace(kind=kind, metadata=SimpleNamespace(name=name, namespace=namespace))


def test_namespaced_object_key() -> None:
    assert object_key(make_pod()) == "Pod/default/web-0"


def test_cluster_scoped_object_key_omits_namespace() -> None:
    assert object_key(make_pod(name="node-a", namespace=None, kind="Node")) == "Node/node-a"


def test_default_kind_fills_in_for_list_items() -> None:
    assert object_key(make_pod(kind=None), default_kind="Pod") == "Pod/default/web-0"


def test_object_kind_takes_precedence_over_default_kind() -> None:
    assert object_key(make_pod(kind="ConfigMap"), default_kind="Pod") == "ConfigMap/default/web-0"


def test_dict_objects_are_supported() -> None:
    obj = {"kind": "Deployment", "metadata": {"name": "api", "namespace": "prod"}}

    assert object_key(obj) == "Deployment/prod/api"


def test_key_is_stable_across_updates() -> None:
    before = make_pod()
    after = SimpleNamespace(
        kind="Pod",
        metadata=SimpleNamespace(name="web-0", namespace="default", resource_version="99"),
        status=SimpleNamespace(phase="Running"),
    )

    assert object_key(before) == object_key(after)


def test_distinct_namespaces_do_not_collide() -> None:
    assert object_key(make_pod(namespace="a")) != object_key(make_pod(namespace="b"))


def test_tombstone_yields_stored_key() -> None:
    tombstone = DeletedFinalStateUnknown(key="Pod/default/gone", obj=None)

    assert object_key(tombstone) == "Pod/default/gone"


@pytest.mark.parametrize(
    ("obj", "message"),
    [
        (SimpleNamespace(kind="Pod"), "no metadata"),
        (make_pod(name=None), "no name"),
        (make_pod(name=""), "no name"),
        (make_pod(kind=None), "has no kind"),
        ({"metadata": {"name": "x"}}, "has no kind"),
        (None, "no metadata"),
    ],
)
def test_malformed_notifications_raise(obj: object, message: str) -> None:
    with pytest.raises(MalformedNotificationError, match=message):
        object_key(obj)

