from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the reconciler on ``/metrics``.

    Queue metrics carry a ``queue`` label so several queues can share one
    registry; reconcile metrics are labelled by action variant.
    """

    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "configmap_reconciler_queue_depth",
            "Current number of keys waiting in the work queue",
            ["queue"],
        )
    )
    queue_adds_total: Counter = field(
        default_factory=lambda: Counter(
            "configmap_reconciler_queue_adds_total",
            "Total keys accepted by the work queue",
            ["queue"],
        )
    )
    queue_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "configmap_reconciler_queue_retries_total",
            "Total rate-limited re-adds after failed reconciles",
            ["queue"],
        )
    )
    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "configmap_reconciler_reconcile_total",
            "Total reconciles by action and outcome",
            ["action", "outcome"],
        )
    )
    reconcile_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "configmap_reconciler_reconcile_errors_total",
            "Total failed reconciles by error kind",
            ["kind"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "configmap_reconciler_reconcile_duration_seconds",
            "Seconds spent in a single reconcile",
            ["action"],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, float("inf")),
        )
    )
    dropped_keys_total: Counter = field(
        default_factory=lambda: Counter(
            "configmap_reconciler_dropped_keys_total",
            "Total keys forgotten after exhausting the retry budget",
        )
    )
    invalid_objects_total: Counter = field(
        default_factory=lambda: Counter(
            "configmap_reconciler_invalid_objects_total",
            "Total notifications rejected because the object was malformed",
        )
    )
    rollouts_triggered_total: Counter = field(
        default_factory=lambda: Counter(
            "configmap_reconciler_rollouts_triggered_total",
            "Total workload rolling updates triggered",
        )
    )
    bindings_created_total: Counter = field(
        default_factory=lambda: Counter(
            "configmap_reconciler_bindings_created_total",
            "Total access bindings created",
        )
    )
    busy_workers: Gauge = field(
        default_factory=lambda: Gauge(
            "configmap_reconciler_busy_workers",
            "Workers currently processing a key",
        )
    )
    cache_synced: Gauge = field(
        default_factory=lambda: Gauge(
            "configmap_reconciler_cache_synced",
            "Whether the local ConfigMap cache completed its initial list (1=yes, 0=no)",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "configmap_reconciler_watch_errors_total",
            "Total Kubernetes list/watch errors",
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "configmap_reconciler_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "configmap_reconciler",
            "Build information for the reconciler",
        )
    )


METRICS = ControllerMetrics()
