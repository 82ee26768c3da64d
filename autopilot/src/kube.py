from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from kubernetes import client, config
from kubernetes.client import AppsV1Api, CoreV1Api
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)

# kind -> (API group, namespaced list method, all-namespaces list method)
_LIST_METHODS: dict[str, tuple[str, str, str]] = {
    "Pod": ("core", "list_namespaced_pod", "list_pod_for_all_namespaces"),
    "ConfigMap": ("core", "list_namespaced_config_map", "list_config_map_for_all_namespaces"),
    "Secret": ("core", "list_namespaced_secret", "list_secret_for_all_namespaces"),
    "Service": ("core", "list_namespaced_service", "list_service_for_all_namespaces"),
    "Deployment": ("apps", "list_namespaced_deployment", "list_deployment_for_all_namespaces"),
    "StatefulSet": (
        "apps",
        "list_namespaced_stateful_set",
        "list_stateful_set_for_all_namespaces",
    ),
    "DaemonSet": ("apps", "list_namespaced_daemon_set", "list_daemon_set_for_all_namespaces"),
}

SUPPORTED_KINDS: tuple[str, ...] = tuple(_LIST_METHODS)


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, AppsV1Api]:
    """Return CoreV1 and AppsV1 API clients using the active kube configuration."""
    return client.CoreV1Api(), client.AppsV1Api()


def resolve_list_function(
    kind: str,
    core_api: CoreV1Api,
    apps_api: AppsV1Api,
    namespace: str | None = None,
) -> tuple[Callable[..., Any], dict[str, Any]]:
    """Return the list callable for *kind* and the kwargs it needs.

    An empty *namespace* selects the cluster-wide variant.  The bound method
    is returned as-is, not wrapped in a partial, because ``kubernetes.watch``
    reads its docstring to deserialize events into model objects.
    """
    try:
        group, namespaced_method, cluster_method = _LIST_METHODS[kind]
    except KeyError:
        raise ValueError(
            f"unsupported resource kind {kind!r}; expected one of {', '.join(SUPPORTED_KINDS)}"
        ) from None

    api = core_api if group == "core" else apps_api
    if namespace:
        return getattr(api, namespaced_method), {"namespace": namespace}
    return getattr(api, cluster_method), {}
