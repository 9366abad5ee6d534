from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the replicator on ``/metrics``.

    Work queue series carry a ``name`` label so several queues can share one
    registry; sync series are split by ``result`` so operators can alert on a
    growing retry rate.
    """

    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "replicator_workqueue_depth",
            "Current number of keys waiting in the work queue",
            ["name"],
        )
    )
    queue_adds_total: Counter = field(
        default_factory=lambda: Counter(
            "replicator_workqueue_adds_total",
            "Total keys accepted by the work queue",
            ["name"],
        )
    )
    queue_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "replicator_workqueue_retries_total",
            "Total rate-limited requeues",
            ["name"],
        )
    )
    queue_latency_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "replicator_workqueue_queue_duration_seconds",
            "Seconds a key waits in the queue before being picked up",
            ["name"],
            buckets=(0.001, 0.01, 0.1, 0.5, 1, 5, 10, 60, float("inf")),
        )
    )
    work_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "replicator_workqueue_work_duration_seconds",
            "Seconds spent processing a key",
            ["name"],
            buckets=(0.01, 0.05, 0.1, 0.5, 1, 2, 5, 10, 30, float("inf")),
        )
    )
    sync_total: Counter = field(
        default_factory=lambda: Counter(
            "replicator_sync_total",
            "Total reconciliation passes by outcome",
            ["result"],
        )
    )
    replica_writes_total: Counter = field(
        default_factory=lambda: Counter(
            "replicator_replica_writes_total",
            "Total replica ConfigMap writes",
            ["action"],
        )
    )
    cache_objects: Gauge = field(
        default_factory=lambda: Gauge(
            "replicator_cache_objects",
            "Number of ConfigMaps held in the local cache",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "replicator_watch_errors_total",
            "Total Kubernetes watch errors",
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "replicator_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "replicator",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
