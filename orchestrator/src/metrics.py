from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Info


@dataclass
class OrchestratorMetrics:
    """Prometheus metrics for the identity cache, feature gates and watch feeds.

    Every metric is registered once in the default registry via
    ``default_factory`` when the module-level :data:`METRICS` is created.
    """

    watch_events_total: Counter = field(
        default_factory=lambda: Counter(
            "csi_orchestrator_watch_events_total",
            "Total events delivered by watch feeds",
            ["kind", "event"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "csi_orchestrator_watch_errors_total",
            "Total Kubernetes list/watch errors",
            ["kind"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "csi_orchestrator_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["kind"],
        )
    )
    handler_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "csi_orchestrator_handler_errors_total",
            "Total events dropped because their handler raised",
            ["kind"],
        )
    )
    cache_entries: Gauge = field(
        default_factory=lambda: Gauge(
            "csi_orchestrator_cache_entries",
            "Current number of entries per identity map",
            ["map"],
        )
    )
    feature_table_reloads_total: Counter = field(
        default_factory=lambda: Counter(
            "csi_orchestrator_feature_table_reloads_total",
            "Total wholesale feature table replacements",
            ["table", "source"],
        )
    )
    feature_gate_checks_total: Counter = field(
        default_factory=lambda: Counter(
            "csi_orchestrator_feature_gate_checks_total",
            "Total feature gate evaluations",
            ["result"],
        )
    )
    capability_polls_total: Counter = field(
        default_factory=lambda: Counter(
            "csi_orchestrator_capability_polls_total",
            "Total capability resource fetches",
            ["outcome"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "csi_orchestrator",
            "Build information for the orchestrator",
        )
    )


METRICS = OrchestratorMetrics()
