from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics recorded by the advanced deployment controller.

    ``reconcile_total`` is labelled by terminal outcome so operators can tell
    unmanaged, canary-owned and misconfigured Deployments apart from the ones
    actually dispatched to the sync engine.
    """

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "advanced_deployment_reconcile_total",
            "Total reconciliations by terminal outcome",
            ["outcome"],
        )
    )
    reconcile_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "advanced_deployment_reconcile_errors_total",
            "Total retryable reconcile failures",
            ["stage"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "advanced_deployment_reconcile_duration_seconds",
            "Seconds spent in a single reconciliation",
            buckets=(0.005, 0.01, 0.05, 0.1, 0.5, 1, 2, 5, 10, float("inf")),
        )
    )
    enqueued_total: Counter = field(
        default_factory=lambda: Counter(
            "advanced_deployment_enqueued_total",
            "Total reconcile requests enqueued from watch events",
            ["kind", "event"],
        )
    )
    filtered_updates_total: Counter = field(
        default_factory=lambda: Counter(
            "advanced_deployment_filtered_updates_total",
            "Total Deployment update events suppressed by the event filter",
        )
    )
    busy_workers: Gauge = field(
        default_factory=lambda: Gauge(
            "advanced_deployment_busy_workers",
            "Current number of workers inside a reconciliation",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "advanced_deployment",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
