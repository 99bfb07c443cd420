from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

RECONCILE_ACTIONS = ("binding", "rollout")


class ConfigError(ValueError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class ControllerSettings:
    """Immutable controller configuration loaded once at startup.

    Attributes:
        watch_namespace: Namespace to watch; ``None`` watches all namespaces.
        configmap_selector: Optional label selector narrowing the watch.
        reconcile_action: ``binding`` or ``rollout``.
        binding_name_prefix: Prefix of the RoleBinding and Group names.
        binding_cluster_role: ClusterRole every binding references.
        rollout_annotation_key: Pod template annotation carrying the restart
            time; its prefix also namespaces the per-ConfigMap data hash
            annotations.
        workers: Number of worker threads.
        max_retries: Retryable failures tolerated per key before giving up.
        backoff_base_seconds: Delay before the first retry.
        backoff_max_seconds: Upper bound on the retry delay.
        cache_sync_timeout_seconds: How long startup waits for the initial list.
        resync_seconds: Informer resync period, ``0`` disables it.
        api_request_timeout_seconds: Timeout applied to each cluster API call.
        health_port: Port of the health/metrics server.
    """

    watch_namespace: str | None = None
    configmap_selector: str | None = None
    reconcile_action: str = "binding"
    binding_name_prefix: str = "ad-kubernetes-"
    binding_cluster_role: str = "edit"
    rollout_annotation_key: str = "reconciler.io/restartedAt"
    workers: int = 2
    max_retries: int = 5
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 30.0
    cache_sync_timeout_seconds: int = 60
    resync_seconds: int = 180
    api_request_timeout_seconds: int = 30
    health_port: int = 8080


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def env_float(
    name: str,
    default: float,
    *,
    minimum: float | None = None,
    env: Mapping[str, str] | None = None,
) -> float:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = float(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be a number") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    return value


def _optional(values: Mapping[str, str], name: str) -> str | None:
    raw = values.get(name)
    if raw is None or not raw.strip():
        return None
    return raw.strip()


def load_settings(env: Mapping[str, str] | None = None) -> ControllerSettings:
    """Load :class:`ControllerSettings` from environment variables.

    Unset variables fall back to the dataclass defaults.  Any invalid value
    raises :class:`ConfigError` naming the offending variable, so a
    misconfigured deployment fails at startup instead of mid-reconcile.
    """
    values = env if env is not None else os.environ
    defaults = ControllerSettings()

    reconcile_action = values.get("RECONCILE_ACTION", defaults.reconcile_action).strip().lower()
    if reconcile_action not in RECONCILE_ACTIONS:
        raise ConfigError(
            f"RECONCILE_ACTION must be one of {', '.join(RECONCILE_ACTIONS)}, "
            f"got: {reconcile_action!r}"
        )

    binding_name_prefix = values.get("BINDING_NAME_PREFIX", defaults.binding_name_prefix)
    if not binding_name_prefix.strip():
        raise ConfigError("BINDING_NAME_PREFIX must be a non-empty string")
    binding_cluster_role = values.get("BINDING_CLUSTER_ROLE", defaults.binding_cluster_role)
    if not binding_cluster_role.strip():
        raise ConfigError("BINDING_CLUSTER_ROLE must be a non-empty string")

    rollout_annotation_key = values.get(
        "ROLLOUT_ANNOTATION_KEY", defaults.rollout_annotation_key
    ).strip()
    if not rollout_annotation_key:
        raise ConfigError("ROLLOUT_ANNOTATION_KEY must be a non-empty string")

    backoff_base_seconds = env_float(
        "BACKOFF_BASE_SECONDS", defaults.backoff_base_seconds, minimum=0.001, env=values
    )
    backoff_max_seconds = env_float(
        "BACKOFF_MAX_SECONDS", defaults.backoff_max_seconds, minimum=0.001, env=values
    )
    if backoff_max_seconds < backoff_base_seconds:
        raise ConfigError("BACKOFF_MAX_SECONDS must be >= BACKOFF_BASE_SECONDS")

    return ControllerSettings(
        watch_namespace=_optional(values, "WATCH_NAMESPACE"),
        configmap_selector=_optional(values, "CONFIGMAP_SELECTOR"),
        reconcile_action=reconcile_action,
        binding_name_prefix=binding_name_prefix.strip(),
        binding_cluster_role=binding_cluster_role.strip(),
        rollout_annotation_key=rollout_annotation_key,
        workers=env_int("WORKERS", defaults.workers, minimum=1, maximum=64, env=values),
        max_retries=env_int("MAX_RETRIES", defaults.max_retries, minimum=0, env=values),
        backoff_base_seconds=backoff_base_seconds,
        backoff_max_seconds=backoff_max_seconds,
        cache_sync_timeout_seconds=env_int(
            "CACHE_SYNC_TIMEOUT_SECONDS", defaults.cache_sync_timeout_seconds, minimum=1, env=values
        ),
        resync_seconds=env_int("RESYNC_SECONDS", defaults.resync_seconds, minimum=0, env=values),
        api_request_timeout_seconds=env_int(
            "API_REQUEST_TIMEOUT_SECONDS",
            defaults.api_request_timeout_seconds,
            minimum=1,
            env=values,
        ),
        health_port=env_int(
            "HEALTH_PORT", defaults.health_port, minimum=1, maximum=65535, env=values
        ),
    )
