from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class OperatorMetrics:
    """Prometheus metrics exported by the operator on ``/metrics``.

    Reconcile series carry a ``kind`` label (``PulseProDeployment`` or
    ``PulseProRollout``) so deployment and rollout error budgets can be
    alerted on independently.
    """

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "pulsepro_reconcile_total",
            "Total reconcile passes by outcome",
            ["kind", "result"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "pulsepro_reconcile_duration_seconds",
            "Seconds spent in one reconcile pass",
            ["kind"],
            buckets=(0.5, 1, 5, 15, 30, 60, 120, 300, 600, float("inf")),
        )
    )
    deployment_status_total: Counter = field(
        default_factory=lambda: Counter(
            "pulsepro_deployment_status_total",
            "Deployment status values written by the reconciler",
            ["status"],
        )
    )
    connectivity_failures_total: Counter = field(
        default_factory=lambda: Counter(
            "pulsepro_connectivity_failures_total",
            "Preflight connectivity checks that failed",
            ["service"],
        )
    )
    rollout_updates_total: Counter = field(
        default_factory=lambda: Counter(
            "pulsepro_rollout_updates_total",
            "Deployments visited by rollout sweeps by outcome",
            ["result"],
        )
    )
    retry_total: Counter = field(
        default_factory=lambda: Counter(
            "pulsepro_retry_total",
            "Reconcile retries scheduled after a failed pass",
            ["kind"],
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "pulsepro_queue_depth",
            "Keys waiting in the work queue, including delayed requeues",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "pulsepro_watch_errors_total",
            "Total Kubernetes watch errors",
            ["kind"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "pulsepro_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["kind"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "pulsepro_operator",
            "Build information for the operator",
        )
    )


METRICS = OperatorMetrics()
