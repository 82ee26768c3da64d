from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import patch

import pytest

from autopilot.src.kube import (
    SUPPORTED_KINDS,
    build_clients,
    load_kube_configuration,
    resolve_list_function,
)


class FakeCoreApi:
    def list_namespaced_pod(self, namespace: str, **kwargs: object) -> None: ...

    def list_pod_for_all_namespaces(self, **kwargs: object) -> None: ...

    def list_namespaced_config_map(self, namespace: str, **kwargs: object) -> None: ...


class FakeAppsApi:
    def list_namespaced_deployment(self, namespace: str, **kwargs: object) -> None: ...

    def list_deployment_for_all_namespaces(self, **kwargs: object) -> None: ...


def test_load_kube_configuration_in_cluster() -> None:
    with (
        patch("autopilot.src.kube.config.load_incluster_config") as mock_incluster,
        patch("autopilot.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_incluster.assert_called_once()
    mock_kubeconfig.assert_not_called()


def test_load_kube_configuration_local_fallback() -> None:
    from kubernetes.config.config_exception import ConfigException

    with (
        patch(
            "autopilot.src.kube.config.load_incluster_config",
            side_effect=ConfigException("not in cluster"),
        ),
        patch("autopilot.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_kubeconfig.assert_called_once()


def test_build_clients_returns_tuple() -> None:
    with patch("autopilot.src.kube.client") as mock_client:
        mock_client.CoreV1Api.return_value = SimpleNamespace(name="core")
        mock_client.AppsV1Api.return_value = SimpleNamespace(name="apps")
        core, apps = build_clients()

    assert core.name == "core"
    assert apps.name == "apps"


def test_namespaced_kind_resolves_namespaced_list_method() -> None:
    core = FakeCoreApi()

    list_func, kwargs = resolve_list_function("Pod", core, FakeAppsApi(), namespace="prod")  # type: ignore[arg-type]

    assert list_func == core.list_namespaced_pod
    assert kwargs == {"namespace": "prod"}


def test_missing_namespace_resolves_cluster_wide_list_method() -> None:
    core = FakeCoreApi()

    list_func, kwargs = resolve_list_function("Pod", core, FakeAppsApi())  # type: ignore[arg-type]

    assert list_func == core.list_pod_for_all_namespaces
    assert kwargs == {}


def test_apps_kinds_use_apps_api() -> None:
    apps = FakeAppsApi()

    list_func, kwargs = resolve_list_function(
        "Deployment", FakeCoreApi(), apps, namespace="prod"  # type: ignore[arg-type]
    )

    assert list_func == apps.list_namespaced_deployment
    assert kwargs == {"namespace": "prod"}


def test_unsupported_kind_is_rejected() -> None:
    with pytest.raises(ValueError, match="unsupported resource kind 'Node'"):
        resolve_list_function("Node", FakeCoreApi(), FakeAppsApi())  # type: ignore[arg-type]


def test_supported_kinds_cover_core_and_apps_workloads() -> None:
    assert set(SUPPORTED_KINDS) == {
        "Pod",
        "ConfigMap",
        "Secret",
        "Service",
        "Deployment",
        "StatefulSet",
        "DaemonSet",
    }
