from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Info


@dataclass(frozen=True)
class WatchMetrics:
    """Prometheus metrics exported on ``/metrics``.

    Almost every series carries a ``kind`` label so a single misbehaving
    resource kind can be spotted without the others masking it.
    """

    events_total: Counter = field(
        default_factory=lambda: Counter(
            "kubewatch_events_total",
            "Total lifecycle events delivered to the handler",
            ["kind", "event"],
        )
    )
    suppressed_total: Counter = field(
        default_factory=lambda: Counter(
            "kubewatch_suppressed_records_total",
            "Total watch records suppressed as duplicate, stale or unknown",
            ["kind", "reason"],
        )
    )
    resyncs_total: Counter = field(
        default_factory=lambda: Counter(
            "kubewatch_resyncs_total",
            "Total full re-lists performed",
            ["kind", "trigger"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "kubewatch_watch_errors_total",
            "Total Kubernetes list/watch errors",
            ["kind"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "kubewatch_watch_reconnects_total",
            "Total watch streams opened after the first one",
            ["kind"],
        )
    )
    handler_failures_total: Counter = field(
        default_factory=lambda: Counter(
            "kubewatch_handler_failures_total",
            "Total failed handler invocations, including retried ones",
            ["kind"],
        )
    )
    dropped_events_total: Counter = field(
        default_factory=lambda: Counter(
            "kubewatch_dropped_events_total",
            "Total events dropped after exhausting handler retries",
            ["kind"],
        )
    )
    mirror_objects: Gauge = field(
        default_factory=lambda: Gauge(
            "kubewatch_mirror_objects",
            "Current number of objects held in the local mirror",
            ["kind"],
        )
    )
    loop_ready: Gauge = field(
        default_factory=lambda: Gauge(
            "kubewatch_loop_ready",
            "Whether the reconciliation loop finished its initial list (1=yes, 0=no)",
            ["kind"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "kubewatch",
            "Build information for kubewatch",
        )
    )


METRICS = WatchMetrics()
