"""Operator metrics on prometheus_client.

Every metric lives in a ``CollectorRegistry`` owned by the
``MetricsRegistry`` instance, so two engines in one process (or two
tests) never share series. ``GET /metrics`` serves the registry in the
Prometheus text format.
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest

NAMESPACE = "rewardlink"

# Metric names
ENTRY_OUTCOMES = "entry_outcomes"
PIPELINE_INTERNAL_ERRORS = "pipeline_internal_errors"
INVARIANT_VIOLATIONS = "invariant_violations"
RECONCILE_SUCCESS = "reconcile_success"
RECONCILE_FAILURE = "reconcile_failure"
RECONCILE_EDITS = "reconcile_edits"
CHAT_GATEWAY_ERRORS = "chat_gateway_errors"
RECONCILE_MAX_LAG_SECONDS = "reconcile_max_lag_seconds"
RECONCILE_FAILING_CONNECTIONS = "reconcile_failing_connections"

# name -> (help text, label names)
COUNTERS: dict[str, tuple[str, tuple[str, ...]]] = {
    ENTRY_OUTCOMES: ("Entry pipeline runs by outcome", ("outcome",)),
    PIPELINE_INTERNAL_ERRORS: ("Unexpected errors inside the entry pipeline", ()),
    INVARIANT_VIOLATIONS: ("Duplicate accepted entries detected", ()),
    RECONCILE_SUCCESS: ("Successful connection reconciles", ()),
    RECONCILE_FAILURE: ("Failed connection reconciles", ()),
    RECONCILE_EDITS: ("Post edits made by the reconciler", ()),
    CHAT_GATEWAY_ERRORS: ("Chat platform errors by kind", ("kind",)),
}

GAUGES: dict[str, tuple[str, tuple[str, ...]]] = {
    RECONCILE_MAX_LAG_SECONDS: ("Largest overdue time among active connections", ()),
    RECONCILE_FAILING_CONNECTIONS: ("Connections failing longer than the failure cap", ()),
}


class MetricsRegistry:
    """Counters and gauges bound to a private CollectorRegistry."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry()
        self._counters = {
            name: Counter(name, doc, labels, namespace=NAMESPACE, registry=self.registry)
            for name, (doc, labels) in COUNTERS.items()
        }
        self._gauges = {
            name: Gauge(name, doc, labels, namespace=NAMESPACE, registry=self.registry)
            for name, (doc, labels) in GAUGES.items()
        }

    @staticmethod
    def _series(metric, labels: dict[str, str]):
        return metric.labels(**{k: str(v) for k, v in labels.items()}) if labels else metric

    def inc(self, name: str, amount: float = 1, **labels: str) -> None:
        self._series(self._counters[name], labels).inc(amount)

    def set_gauge(self, name: str, value: float, **labels: str) -> None:
        self._series(self._gauges[name], labels).set(value)

    def counter(self, name: str, **labels: str) -> float:
        """Current value of a counter series (0 when never incremented)."""
        value = self.registry.get_sample_value(f"{NAMESPACE}_{name}_total", labels or None)
        return value or 0.0

    def gauge(self, name: str, **labels: str) -> float | None:
        return self.registry.get_sample_value(f"{NAMESPACE}_{name}", labels or None)

    def exposition(self) -> bytes:
        """Registry in the Prometheus text format."""
        return generate_latest(self.registry)
