from __future__ import annotations

from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import ApiException
from urllib3.exceptions import ProtocolError

from reconciler.src.errors import ConflictError, PermanentAPIError, TransientAPIError
from reconciler.src.kube import (
    ClusterClient,
    build_clients,
    load_kube_configuration,
    patch_deployment_restart,
)


def test_load_kube_configuration_in_cluster() -> None:
    with (
        patch("reconciler.src.kube.config.load_incluster_config") as mock_incluster,
        patch("reconciler.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_incluster.assert_called_once()
    mock_kubeconfig.assert_not_called()


def test_load_kube_configuration_local_fallback() -> None:
    from kubernetes.config.config_exception import ConfigException

    with (
        patch(
            "reconciler.src.kube.config.load_incluster_config",
            side_effect=ConfigException("not in cluster"),
        ),
        patch("reconciler.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_kubeconfig.assert_called_once()


def test_build_clients_returns_all_api_groups() -> None:
    with patch("reconciler.src.kube.client") as mock_client:
        mock_client.CoreV1Api.return_value = SimpleNamespace(name="core")
        mock_client.AppsV1Api.return_value = SimpleNamespace(name="apps")
        mock_client.RbacAuthorizationV1Api.return_value = SimpleNamespace(name="rbac")
        clients = build_clients()

    assert clients.core.name == "core"
    assert clients.apps.name == "apps"
    assert clients.rbac.name == "rbac"


def test_patch_deployment_restart_sends_annotations_in_pod_template() -> None:
    mock_apps_api = MagicMock()

    patch_deployment_restart(
        apps_api=mock_apps_api,
        namespace="ns1",
        deployment_name="web",
        annotations={
            "reconciler.io/restartedAt": "2026-01-01T00:00:00Z",
            "reconciler.io/config-hash-cfg1": "abc123",
        },
        request_timeout_seconds=5,
    )

    call_kwargs = mock_apps_api.patch_namespaced_deployment.call_args.kwargs
    assert call_kwargs["name"] == "web"
    assert call_kwargs["namespace"] == "ns1"
    assert call_kwargs["_request_timeout"] == 5
    body: dict[str, Any] = call_kwargs["body"]
    annotations = body["spec"]["template"]["metadata"]["annotations"]
    assert annotations == {
        "reconciler.io/restartedAt": "2026-01-01T00:00:00Z",
        "reconciler.io/config-hash-cfg1": "abc123",
    }


def test_patch_deployment_restart_omits_timeout_when_unset() -> None:
    mock_apps_api = MagicMock()

    patch_deployment_restart(
        apps_api=mock_apps_api,
        namespace="ns1",
        deployment_name="web",
        annotations={"a": "b"},
    )

    assert "_request_timeout" not in mock_apps_api.patch_namespaced_deployment.call_args.kwargs


def _client(apps_api: Any = None, rbac_api: Any = None) -> ClusterClient:
    return ClusterClient(
        apps_api=apps_api or MagicMock(),
        rbac_api=rbac_api or MagicMock(),
        request_timeout_seconds=7,
    )


def test_create_binding_passes_body_and_timeout() -> None:
    rbac_api = MagicMock()
    body = {"metadata": {"name": "ad-kubernetes-ns1"}}

    _client(rbac_api=rbac_api).create_binding("ns1", body)

    rbac_api.create_namespaced_role_binding.assert_called_once_with(
        namespace="ns1", body=body, _request_timeout=7
    )


def test_create_binding_reports_already_exists_as_conflict() -> None:
    rbac_api = MagicMock()
    rbac_api.create_namespaced_role_binding.side_effect = ApiException(
        status=409, reason="AlreadyExists"
    )

    with pytest.raises(ConflictError):
        _client(rbac_api=rbac_api).create_binding("ns1", {})


def test_create_binding_reports_forbidden_as_permanent() -> None:
    rbac_api = MagicMock()
    rbac_api.create_namespaced_role_binding.side_effect = ApiException(
        status=403, reason="Forbidden"
    )

    with pytest.raises(PermanentAPIError, match="create RoleBinding in ns1"):
        _client(rbac_api=rbac_api).create_binding("ns1", {})


def test_list_workloads_returns_items() -> None:
    apps_api = MagicMock()
    apps_api.list_namespaced_deployment.return_value = SimpleNamespace(items=["a", "b"])

    assert _client(apps_api=apps_api).list_workloads("ns1") == ["a", "b"]
    apps_api.list_namespaced_deployment.assert_called_once_with(
        namespace="ns1", _request_timeout=7
    )


def test_list_workloads_handles_empty_listing() -> None:
    apps_api = MagicMock()
    apps_api.list_namespaced_deployment.return_value = SimpleNamespace(items=None)

    assert _client(apps_api=apps_api).list_workloads("ns1") == []


def test_list_workloads_reports_connection_failure_as_transient() -> None:
    apps_api = MagicMock()
    apps_api.list_namespaced_deployment.side_effect = ProtocolError("Connection aborted")

    with pytest.raises(TransientAPIError):
        _client(apps_api=apps_api).list_workloads("ns1")


def test_trigger_rollout_patches_restart_and_hash_annotations() -> None:
    apps_api = MagicMock()

    _client(apps_api=apps_api).trigger_rollout(
        "ns1",
        "web",
        "abc123",
        annotation_key="reconciler.io/restartedAt",
        hash_annotation_key="reconciler.io/config-hash-cfg1",
        timestamp="2026-01-01T00:00:00Z",
    )

    body = apps_api.patch_namespaced_deployment.call_args.kwargs["body"]
    annotations = body["spec"]["template"]["metadata"]["annotations"]
    assert annotations == {
        "reconciler.io/restartedAt": "2026-01-01T00:00:00Z",
        "reconciler.io/config-hash-cfg1": "abc123",
    }


@pytest.mark.parametrize("status", [409, 429])
def test_trigger_rollout_reports_conflict_and_throttling_as_transient(status: int) -> None:
    apps_api = MagicMock()
    apps_api.patch_namespaced_deployment.side_effect = ApiException(status=status, reason="x")

    with pytest.raises(TransientAPIError, match="patch Deployment ns1/web") as excinfo:
        _client(apps_api=apps_api).trigger_rollout(
            "ns1",
            "web",
            "abc123",
            annotation_key="a",
            hash_annotation_key="b",
            timestamp="t",
        )

    assert excinfo.value.retryable is True


def test_list_workloads_reports_conflict_as_transient() -> None:
    apps_api = MagicMock()
    apps_api.list_namespaced_deployment.side_effect = ApiException(status=409, reason="Conflict")

    with pytest.raises(TransientAPIError):
        _client(apps_api=apps_api).list_workloads("ns1")
