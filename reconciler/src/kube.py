from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from kubernetes import client, config
from kubernetes.client import AppsV1Api, CoreV1Api, RbacAuthorizationV1Api
from kubernetes.config.config_exception import ConfigException

from reconciler.src.errors import classify_error

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class KubeClients:
    core: CoreV1Api
    apps: AppsV1Api
    rbac: RbacAuthorizationV1Api


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


def build_clients() -> KubeClients:
    """Return the API groups the reconciler talks to, using the active kube configuration."""
    return KubeClients(
        core=client.CoreV1Api(),
        apps=client.AppsV1Api(),
        rbac=client.RbacAuthorizationV1Api(),
    )


def patch_deployment_restart(
    apps_api: AppsV1Api,
    namespace: str,
    deployment_name: str,
    annotations: dict[str, str],
    request_timeout_seconds: int | None = None,
) -> None:
    """Patch a Deployment's pod template annotations to trigger a rolling restart.

    This is the same mechanism used by ``kubectl rollout restart``: changing a
    pod template annotation causes the ReplicaSet controller to roll new pods.
    """
    body = {
        "spec": {
            "template": {
                "metadata": {
                    "annotations": annotations
                }
            }
        }
    }

    kwargs: dict[str, Any] = {}
    if request_timeout_seconds is not None:
        kwargs["_request_timeout"] = request_timeout_seconds
    apps_api.patch_namespaced_deployment(
        name=deployment_name,
        namespace=namespace,
        body=body,
        **kwargs,
    )


class ClusterClient:
    """Thin facade over the Kubernetes API calls issued by reconcile actions.

    Every failure leaves this class already classified (see
    :mod:`reconciler.src.errors`), so actions never look at raw
    ``ApiException`` objects.  The underlying generated clients are safe to
    share between worker threads.
    """

    def __init__(
        self,
        apps_api: AppsV1Api,
        rbac_api: RbacAuthorizationV1Api,
        request_timeout_seconds: int = 30,
    ) -> None:
        self.apps_api = apps_api
        self.rbac_api = rbac_api
        self.request_timeout_seconds = request_timeout_seconds

    def create_binding(self, namespace: str, binding: dict[str, Any]) -> None:
        """Create a RoleBinding; raises ``ConflictError`` if it already exists."""
        try:
            self.rbac_api.create_namespaced_role_binding(
                namespace=namespace,
                body=binding,
                _request_timeout=self.request_timeout_seconds,
            )
        except Exception as exc:
            raise classify_error(
                exc, action=f"create RoleBinding in {namespace}", conflict_means_exists=True
            ) from exc

    def list_workloads(self, namespace: str) -> list[Any]:
        """Return every Deployment in *namespace*."""
        try:
            deployments = self.apps_api.list_namespaced_deployment(
                namespace=namespace,
                _request_timeout=self.request_timeout_seconds,
            )
        except Exception as exc:
            raise classify_error(exc, action=f"list Deployments in {namespace}") from exc
        return list(getattr(deployments, "items", None) or [])

    def trigger_rollout(
        self,
        namespace: str,
        workload_name: str,
        config_hash: str,
        *,
        annotation_key: str,
        hash_annotation_key: str,
        timestamp: str,
    ) -> None:
        """Force a rolling update of one Deployment, stamping the ConfigMap data hash.

        A ``409`` here is a write conflict on the Deployment, not an
        already-exists condition, so it surfaces as a retryable error.
        """
        try:
            patch_deployment_restart(
                apps_api=self.apps_api,
                namespace=namespace,
                deployment_name=workload_name,
                annotations={
                    annotation_key: timestamp,
                    hash_annotation_key: config_hash,
                },
                request_timeout_seconds=self.request_timeout_seconds,
            )
        except Exception as exc:
            raise classify_error(
                exc, action=f"patch Deployment {namespace}/{workload_name}"
            ) from exc
