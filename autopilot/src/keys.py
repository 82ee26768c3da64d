from __future__ import annotations

from dataclasses import dataclass
from typing import Any


class MalformedNotificationError(ValueError):
    """Raised when a notification carries no usable identity."""


@dataclass(frozen=True)
class DeletedFinalStateUnknown:
    """Tombstone for an object whose delete event was missed.

    Emitted by the watch source when a re-list shows that a cached object
    vanished while the watch was disconnected.  ``key`` is the identity the
    object had in the local store; ``obj`` is its last known state.
    """

    key: str
    obj: Any


def _field(source: Any, name: str) -> Any:
    if isinstance(source, dict):
        return source.get(name)
    return getattr(source, name, None)


def object_key(obj: Any, default_kind: str | None = None) -> str:
    """Return the stable identity of a resource notification.

    Keys have the form ``Kind/namespace/name`` for namespaced objects and
    ``Kind/name`` for cluster-scoped ones.  ``obj`` may be a Kubernetes
    client model or a plain dict as returned by the dynamic client.  List
    responses omit ``kind`` on their items, so callers watching a single
    kind pass it as ``default_kind``.
    """
    if isinstance(obj, DeletedFinalStateUnknown):
        return obj.key

    metadata = _field(obj, "metadata")
    if metadata is None:
        raise MalformedNotificationError("object has no metadata")

    name = _field(metadata, "name")
    if not isinstance(name, str) or not name:
        raise MalformedNotificationError("object metadata has no name")

    kind = _field(obj, "kind") or default_kind
    if not isinstance(kind, str) or not kind:
        raise MalformedNotificationError(f"object {name!r} has no kind")

    namespace = _field(metadata, "namespace")
    if namespace:
        return f"{kind}/{namespace}/{name}"
    return f"{kind}/{name}"

