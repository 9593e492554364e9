from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    ``handled_events`` counts successful reconciles.  The client library
    appends the counter suffix, so the series is scraped as
    ``handled_events_total`` (with ``handled_events_created``).  Failures are broken
    down by error kind so operators can tell patch rejections from objects
    that disappeared mid-reconcile.
    """

    handled_events: Counter = field(
        default_factory=lambda: Counter(
            "handled_events",
            "handled events",
        )
    )
    reconcile_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "foo_reconcile_errors_total",
            "Total failed reconcile attempts",
            ["kind"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "foo_reconcile_duration_seconds",
            "Seconds spent in a single reconcile attempt",
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, float("inf")),
        )
    )
    workqueue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "foo_workqueue_depth",
            "Current number of object keys ready for reconciliation",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "foo_watch_errors_total",
            "Total Kubernetes watch errors",
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "foo_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "foo_controller",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
