from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Queue metrics are unlabelled because a process runs exactly one queue;
    reconcile and event counters carry a ``result`` or ``event`` label so
    operators can alert on failure ratios without joining series.
    """

    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "autopilot_workqueue_depth",
            "Current number of keys waiting in the pending set",
        )
    )
    queue_adds_total: Counter = field(
        default_factory=lambda: Counter(
            "autopilot_workqueue_adds_total",
            "Total keys that became pending (coalesced adds are not counted)",
        )
    )
    queue_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "autopilot_workqueue_retries_total",
            "Total rate-limited re-adds scheduled after reconcile failures",
        )
    )
    queue_delayed: Gauge = field(
        default_factory=lambda: Gauge(
            "autopilot_workqueue_delayed",
            "Current number of keys waiting for a backoff delay to elapse",
        )
    )
    queue_latency_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "autopilot_workqueue_queue_duration_seconds",
            "Seconds a key spent pending before a worker picked it up",
            buckets=(0.001, 0.01, 0.1, 0.5, 1, 5, 10, 60, float("inf")),
        )
    )
    work_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "autopilot_workqueue_work_duration_seconds",
            "Seconds a key spent processing between get and done",
            buckets=(0.001, 0.01, 0.1, 0.5, 1, 5, 10, 60, float("inf")),
        )
    )
    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "autopilot_reconcile_total",
            "Total reconcile attempts by outcome",
            ["result"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "autopilot_reconcile_duration_seconds",
            "Seconds spent inside the reconcile function",
            buckets=(0.005, 0.05, 0.25, 1, 2.5, 10, 30, float("inf")),
        )
    )
    events_total: Counter = field(
        default_factory=lambda: Counter(
            "autopilot_events_total",
            "Total resource notifications received from the watch source",
            ["event"],
        )
    )
    malformed_events_total: Counter = field(
        default_factory=lambda: Counter(
            "autopilot_malformed_events_total",
            "Total notifications dropped because no key could be extracted",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "autopilot_watch_errors_total",
            "Total Kubernetes list/watch errors",
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "autopilot_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
        )
    )
    relists_total: Counter = field(
        default_factory=lambda: Counter(
            "autopilot_relists_total",
            "Total full re-lists after the watch resource version expired",
        )
    )
    resyncs_total: Counter = field(
        default_factory=lambda: Counter(
            "autopilot_resyncs_total",
            "Total periodic resyncs that re-dispatched the cached objects",
        )
    )
    controller_state: Gauge = field(
        default_factory=lambda: Gauge(
            "autopilot_controller_state",
            "Current controller lifecycle state (1 for the active state)",
            ["state"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "autopilot",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
