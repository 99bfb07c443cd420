from __future__ import annotations

import json
import logging
import re
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from hashlib import sha256
from typing import Any, Protocol

from reconciler.src.config import ControllerSettings
from reconciler.src.errors import (
    AggregateActionError,
    ConflictError,
    InvalidObjectError,
    ReconcileError,
)
from reconciler.src.keys import ConfigObject, ReconcileKey, extract_key
from reconciler.src.kube import ClusterClient
from reconciler.src.metrics import METRICS


@dataclass(frozen=True)
class ActionResult:
    """Outcome of applying one reconcile action to one ConfigMap.

    ``matched``, ``triggered``, ``skipped`` and ``failed`` count workloads
    and stay zero for the binding variant.
    """

    action: str
    outcome: str
    matched: int = 0
    triggered: int = 0
    skipped: int = 0
    failed: int = 0


class ReconcileAction(Protocol):
    name: str

    def record_baseline(self, obj: ConfigObject) -> None: ...

    def apply(self, obj: ConfigObject) -> ActionResult: ...


def utc_now_rfc3339() -> str:
    """Return the current UTC time as a compact RFC 3339 string (e.g. ``2024-01-15T08:30:00Z``)."""
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


# ---------------------------------------------------------------------------
# Access binding variant
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AccessBinding:
    """RoleBinding granting one external identity group a fixed ClusterRole in a namespace."""

    name: str
    namespace: str
    group: str
    cluster_role: str

    def to_manifest(self) -> dict[str, Any]:
        return {
            "apiVersion": "rbac.authorization.k8s.io/v1",
            "kind": "RoleBinding",
            "metadata": {
                "name": self.name,
                "namespace": self.namespace,
            },
            "subjects": [
                {
                    "apiGroup": "rbac.authorization.k8s.io",
                    "kind": "Group",
                    "name": self.group,
                }
            ],
            "roleRef": {
                "apiGroup": "rbac.authorization.k8s.io",
                "kind": "ClusterRole",
                "name": self.cluster_role,
            },
        }


def binding_for_namespace(
    namespace: str,
    prefix: str = "ad-kubernetes-",
    cluster_role: str = "edit",
) -> AccessBinding:
    """Return the binding owned by *namespace*; binding and group share the name."""
    name = f"{prefix}{namespace}"
    return AccessBinding(name=name, namespace=namespace, group=name, cluster_role=cluster_role)


class BindingAction:
    """Ensure every namespace holding a watched ConfigMap has its access binding.

    The desired postcondition is that the binding exists, so an
    already-exists conflict counts as success.
    """

    name = "binding"

    def __init__(
        self,
        client: ClusterClient,
        name_prefix: str = "ad-kubernetes-",
        cluster_role: str = "edit",
        logger: logging.Logger | None = None,
    ) -> None:
        self.client = client
        self.name_prefix = name_prefix
        self.cluster_role = cluster_role
        self.logger = logger or logging.getLogger(__name__)

    def record_baseline(self, obj: ConfigObject) -> None:
        """Bindings depend only on the namespace; there is no baseline to keep."""

    def apply(self, obj: ConfigObject) -> ActionResult:
        binding = binding_for_namespace(
            obj.namespace, prefix=self.name_prefix, cluster_role=self.cluster_role
        )
        try:
            self.client.create_binding(obj.namespace, binding.to_manifest())
        except ConflictError:
            self.logger.info(
                "RoleBinding %s already exists in namespace %s", binding.name, obj.namespace
            )
            return ActionResult(action=self.name, outcome="exists")

        METRICS.bindings_created_total.inc()
        self.logger.info("Created RoleBinding %s in namespace %s", binding.name, obj.namespace)
        return ActionResult(action=self.name, outcome="created")


# ---------------------------------------------------------------------------
# Rollout trigger variant
# ---------------------------------------------------------------------------


def _ref_name(ref: Any) -> str | None:
    return getattr(ref, "name", None) if ref is not None else None


def _pod_spec(workload: Any) -> Any:
    spec = getattr(workload, "spec", None)
    template = getattr(spec, "template", None)
    return getattr(template, "spec", None)


def references_config_map(workload: Any, config_map_name: str) -> bool:
    """Return True if the workload's pod template consumes ConfigMap *config_map_name*.

    A reference is any of:

    * a ``configMap`` volume,
    * a ``configMap`` source inside a ``projected`` volume,
    * an ``envFrom.configMapRef`` on a container or init container,
    * an ``env[].valueFrom.configMapKeyRef`` on a container or init container.

    Optional references count too; the workload still reads the ConfigMap
    whenever it exists.
    """
    pod_spec = _pod_spec(workload)
    if pod_spec is None or not config_map_name:
        return False

    for volume in getattr(pod_spec, "volumes", None) or []:
        if _ref_name(getattr(volume, "config_map", None)) == config_map_name:
            return True
        projected = getattr(volume, "projected", None)
        for source in getattr(projected, "sources", None) or []:
            if _ref_name(getattr(source, "config_map", None)) == config_map_name:
                return True

    containers = [
        *(getattr(pod_spec, "init_containers", None) or []),
        *(getattr(pod_spec, "containers", None) or []),
    ]
    for container in containers:
        for env_from in getattr(container, "env_from", None) or []:
            if _ref_name(getattr(env_from, "config_map_ref", None)) == config_map_name:
                return True
        for env_var in getattr(container, "env", None) or []:
            value_from = getattr(env_var, "value_from", None)
            if _ref_name(getattr(value_from, "config_map_key_ref", None)) == config_map_name:
                return True
    return False


def hash_config_data(data: dict[str, str]) -> str:
    """Return a SHA-256 hex digest of the ConfigMap data.

    Only ``data`` is hashed: label or annotation edits bump
    ``resourceVersion`` but do not change what the workload reads.
    """
    stable_payload = json.dumps(data, sort_keys=True, separators=(",", ":"))
    return sha256(stable_payload.encode("utf-8")).hexdigest()


def config_hash_annotation_key(annotation_key: str, config_map_name: str) -> str:
    """Return the pod template annotation storing the data hash of one ConfigMap.

    The key reuses the prefix of *annotation_key* and keeps the name part
    within the 63 character annotation name limit.
    """
    prefix, separator, _ = annotation_key.partition("/")

    normalized_name = re.sub(r"[^A-Za-z0-9_.-]+", "-", config_map_name).strip("-.")
    if not normalized_name:
        normalized_name = "configmap"

    annotation_name = f"config-hash-{normalized_name}"
    if len(annotation_name) > 63:
        suffix = sha256(config_map_name.encode("utf-8")).hexdigest()[:10]
        max_prefix_length = 63 - len("config-hash--") - len(suffix)
        trimmed = normalized_name[: max(1, max_prefix_length)].rstrip("-.")
        annotation_name = f"config-hash-{trimmed or 'configmap'}-{suffix}"

    if separator:
        return f"{prefix}/{annotation_name}"
    return annotation_name


def _template_annotations(workload: Any) -> dict[str, str]:
    spec = getattr(workload, "spec", None)
    template = getattr(spec, "template", None)
    metadata = getattr(template, "metadata", None)
    annotations = getattr(metadata, "annotations", None)
    if not isinstance(annotations, dict):
        return {}
    return {k: "" if v is None else str(v) for k, v in annotations.items() if isinstance(k, str)}


class RolloutAction:
    """Trigger a rolling update of every Deployment that consumes the changed ConfigMap.

    The referencing set is recomputed from a fresh listing on every call.
    Each trigger stamps the ConfigMap's data hash into a pod template
    annotation keyed by the ConfigMap's name, so a Deployment consuming
    several ConfigMaps tracks each one separately.

    Per Deployment:

    * stamped with the current hash: already rolled, skipped;
    * stamped with another hash: the data changed, rolled;
    * never stamped: rolled only if the ConfigMap's data differs from the
      baseline recorded from the startup listing (or it appeared after
      startup), so a restart of the controller does not roll the cluster.

    Per-workload failures are collected: the action fails only when every
    attempted trigger failed, otherwise partial failures are logged and the
    reconcile counts as done.
    """

    name = "rollout"

    def __init__(
        self,
        client: ClusterClient,
        annotation_key: str = "reconciler.io/restartedAt",
        logger: logging.Logger | None = None,
        now_fn: Callable[[], str] = utc_now_rfc3339,
    ) -> None:
        self.client = client
        self.annotation_key = annotation_key
        self.logger = logger or logging.getLogger(__name__)
        self.now_fn = now_fn
        self._baselines: dict[ReconcileKey, str] = {}
        self._baselines_lock = threading.Lock()

    def record_baseline(self, obj: ConfigObject) -> None:
        """Remember the data hash of a ConfigMap seen in the startup listing."""
        with self._baselines_lock:
            self._baselines[extract_key(obj)] = hash_config_data(obj.data)

    def _changed_since_startup(self, obj: ConfigObject, config_hash: str) -> bool:
        with self._baselines_lock:
            baseline = self._baselines.get(extract_key(obj))
        return baseline != config_hash

    def apply(self, obj: ConfigObject) -> ActionResult:
        workloads = self.client.list_workloads(obj.namespace)
        referencing = [w for w in workloads if references_config_map(w, obj.name)]
        if not referencing:
            self.logger.info(
                "ConfigMap %s/%s changed, but no Deployment references it",
                obj.namespace,
                obj.name,
            )
            return ActionResult(action=self.name, outcome="no_references")

        config_hash = hash_config_data(obj.data)
        hash_key = config_hash_annotation_key(self.annotation_key, obj.name)
        changed_since_startup = self._changed_since_startup(obj, config_hash)
        timestamp = self.now_fn()
        triggered = 0
        skipped = 0
        failures: list[tuple[str, ReconcileError]] = []

        for workload in referencing:
            workload_name = getattr(getattr(workload, "metadata", None), "name", None)
            if not workload_name:
                failures.append(
                    ("<unknown>", InvalidObjectError("Deployment without metadata.name"))
                )
                continue

            stamped_hash = _template_annotations(workload).get(hash_key)
            if stamped_hash == config_hash:
                skipped += 1
                self.logger.info(
                    "Deployment %s/%s already rolled for the current data of ConfigMap %s",
                    obj.namespace,
                    workload_name,
                    obj.name,
                )
                continue
            if stamped_hash is None and not changed_since_startup:
                skipped += 1
                self.logger.debug(
                    "Deployment %s/%s was never rolled for ConfigMap %s and its data is "
                    "unchanged since startup; skipping",
                    obj.namespace,
                    workload_name,
                    obj.name,
                )
                continue

            try:
                self.client.trigger_rollout(
                    obj.namespace,
                    workload_name,
                    config_hash,
                    annotation_key=self.annotation_key,
                    hash_annotation_key=hash_key,
                    timestamp=timestamp,
                )
            except ReconcileError as exc:
                failures.append((workload_name, exc))
                self.logger.warning(
                    "Failed to trigger rollout of %s/%s (%s): %s",
                    obj.namespace,
                    workload_name,
                    exc.kind.value,
                    exc,
                )
                continue

            triggered += 1
            METRICS.rollouts_triggered_total.inc()
            self.logger.info(
                "Triggered rolling update of %s/%s for ConfigMap %s",
                obj.namespace,
                workload_name,
                obj.name,
            )

        failed_names = ", ".join(name for name, _ in failures)
        if failures and triggered == 0:
            raise AggregateActionError(
                f"All {len(failures)} rollout trigger(s) for ConfigMap "
                f"{obj.namespace}/{obj.name} failed: {failed_names}",
                [error for _, error in failures],
            )
        if failures:
            self.logger.warning(
                "Rollout for ConfigMap %s/%s partially failed (%d triggered, %d failed: %s); "
                "not retrying already-triggered workloads",
                obj.namespace,
                obj.name,
                triggered,
                len(failures),
                failed_names,
            )

        if failures:
            outcome = "partial"
        elif triggered:
            outcome = "triggered"
        else:
            outcome = "up_to_date"
        return ActionResult(
            action=self.name,
            outcome=outcome,
            matched=len(referencing),
            triggered=triggered,
            skipped=skipped,
            failed=len(failures),
        )


def build_action(settings: ControllerSettings, client: ClusterClient) -> ReconcileAction:
    """Select the reconcile action variant named by the deployment configuration."""
    if settings.reconcile_action == "binding":
        return BindingAction(
            client,
            name_prefix=settings.binding_name_prefix,
            cluster_role=settings.binding_cluster_role,
        )
    if settings.reconcile_action == "rollout":
        return RolloutAction(client, annotation_key=settings.rollout_annotation_key)
    raise ValueError(f"Unknown reconcile action {settings.reconcile_action!r}")
