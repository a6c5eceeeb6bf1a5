from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Reconcile outcomes are labelled by ``result`` (``created``, ``updated``,
    ``unchanged``, ``deleted``, ``missing-attribute``, ``identity-mismatch``,
    ``requeue`` or ``error``) so operators can tell convergence work apart
    from configuration anomalies.
    """

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "car_controller_reconcile_total",
            "Total reconcile calls by outcome",
            ["result"],
        )
    )
    reconcile_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "car_controller_reconcile_errors_total",
            "Total failed reconcile calls by error type",
            ["error"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "car_controller_reconcile_duration_seconds",
            "Seconds spent in a single reconcile call",
            buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, float("inf")),
        )
    )
    retry_total: Counter = field(
        default_factory=lambda: Counter(
            "car_controller_retry_total",
            "Total keys requeued with backoff after a failed reconcile",
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "car_controller_queue_depth",
            "Current number of keys ready to be reconciled",
        )
    )
    active_workers: Gauge = field(
        default_factory=lambda: Gauge(
            "car_controller_active_workers",
            "Current number of workers running a reconcile",
        )
    )
    events_total: Counter = field(
        default_factory=lambda: Counter(
            "car_controller_events_total",
            "Total watch events received by kind and admission decision",
            ["kind", "decision"],
        )
    )
    owned_writes_total: Counter = field(
        default_factory=lambda: Counter(
            "car_controller_owned_writes_total",
            "Total ConfigMap writes issued by the reconciler",
            ["operation"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "car_controller_watch_errors_total",
            "Total Kubernetes watch errors",
            ["kind"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "car_controller_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["kind"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "car_controller",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
