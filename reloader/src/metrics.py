from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ReloaderMetrics:
    """Prometheus metrics exported on ``/metrics``.

    Rollout counters carry a ``kind`` label (Deployment, StatefulSet,
    DaemonSet); watch and filter counters carry the ConfigSource kind.
    """

    rollouts_total: Counter = field(
        default_factory=lambda: Counter(
            "config_reloader_rollouts_total",
            "Total workload rollouts triggered by ConfigMap/Secret changes",
            ["kind"],
        )
    )
    rollout_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "config_reloader_rollout_errors_total",
            "Total failed workload rollout attempts",
            ["kind", "reason"],
        )
    )
    filtered_events_total: Counter = field(
        default_factory=lambda: Counter(
            "config_reloader_update_events_total",
            "ConfigMap/Secret update events by filter decision",
            ["kind", "result"],
        )
    )
    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "config_reloader_reconcile_total",
            "Total reconciliations by outcome",
            ["kind", "result"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "config_reloader_reconcile_duration_seconds",
            "Seconds spent in one reconciliation",
            ["kind"],
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "config_reloader_queue_depth",
            "Reconcile requests waiting in the work queue",
        )
    )
    retry_total: Counter = field(
        default_factory=lambda: Counter(
            "config_reloader_retry_total",
            "Total reconcile retries scheduled after failures",
            ["kind"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "config_reloader_watch_errors_total",
            "Total Kubernetes watch errors",
            ["kind"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "config_reloader_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["kind"],
        )
    )
    leader_transitions_total: Counter = field(
        default_factory=lambda: Counter(
            "config_reloader_leader_transitions_total",
            "Total leadership state transitions",
            ["transition"],
        )
    )
    leader_state: Gauge = field(
        default_factory=lambda: Gauge(
            "config_reloader_leader_state",
            "Whether this replica is currently leader (1=yes, 0=no)",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "config_reloader",
            "Build information for the controller",
        )
    )


METRICS = ReloaderMetrics()
