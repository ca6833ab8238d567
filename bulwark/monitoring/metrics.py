"""Prometheus-style metrics for Bulwark.

Lightweight implementation without a prometheus_client dependency. A
MetricsRegistry owns one instance of every metric so that separate runtimes
(and tests) never share counters.

Metrics:
- Resilience: retries_total, operation_failures_total, circuit_transitions_total, circuit_state
- Cache: cache_lookups_total
- Health: health_check_duration_seconds, service_health
- Security: rate_limit_denials_total, blocked_identifiers
- Errors: errors_reported_total
"""

import logging
import threading
from typing import Optional

logger = logging.getLogger(__name__)


def _format_labels(names: list[str], values: tuple, extra: str = "") -> str:
    parts = [f'{n}="{v}"' for n, v in zip(names, values)]
    if extra:
        parts.append(extra)
    return "{" + ",".join(parts) + "}" if parts else ""


class _Metric:
    """Shared label handling for all metric types."""

    TYPE = ""

    def __init__(self, name: str, description: str, labels: Optional[list[str]] = None):
        self.name = name
        self.description = description
        self._label_names = labels or []
        self._lock = threading.Lock()

    def _key(self, labels: dict[str, str]) -> tuple:
        return tuple(str(labels.get(n, "")) for n in self._label_names)

    def _header(self) -> list[str]:
        return [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} {self.TYPE}"]


class Counter(_Metric):
    """A counter metric that can only increase."""

    TYPE = "counter"

    def __init__(self, name: str, description: str, labels: Optional[list[str]] = None):
        super().__init__(name, description, labels)
        self._values: dict[tuple, float] = {}

    def labels(self, **kwargs) -> "_BoundCounter":
        """Return a counter with specific labels."""
        return _BoundCounter(self, self._key(kwargs))

    def inc(self, value: float = 1.0) -> None:
        """Increment the unlabelled counter."""
        self._inc(self._key({}), value)

    def _inc(self, key: tuple, value: float) -> None:
        if value < 0:
            raise ValueError("Counters can only increase")
        with self._lock:
            self._values[key] = self._values.get(key, 0) + value

    def get(self, **kwargs) -> float:
        """Current value for a label set."""
        with self._lock:
            return self._values.get(self._key(kwargs), 0)

    def get_all(self) -> dict[tuple, float]:
        """Get all values."""
        with self._lock:
            return self._values.copy()

    def to_prometheus(self) -> str:
        """Format as Prometheus text."""
        lines = self._header()
        for key, value in self.get_all().items():
            lines.append(f"{self.name}{_format_labels(self._label_names, key)} {value}")
        return "\n".join(lines)


class _BoundCounter:
    def __init__(self, parent: Counter, key: tuple):
        self._parent = parent
        self._key = key

    def inc(self, value: float = 1.0) -> None:
        self._parent._inc(self._key, value)


class Gauge(_Metric):
    """A gauge metric that can increase or decrease."""

    TYPE = "gauge"

    def __init__(self, name: str, description: str, labels: Optional[list[str]] = None):
        super().__init__(name, description, labels)
        self._values: dict[tuple, float] = {}

    def labels(self, **kwargs) -> "_BoundGauge":
        """Return a gauge with specific labels."""
        return _BoundGauge(self, self._key(kwargs))

    def set(self, value: float) -> None:
        self._set(self._key({}), value)

    def inc(self, value: float = 1.0) -> None:
        self._add(self._key({}), value)

    def dec(self, value: float = 1.0) -> None:
        self._add(self._key({}), -value)

    def _set(self, key: tuple, value: float) -> None:
        with self._lock:
            self._values[key] = value

    def _add(self, key: tuple, value: float) -> None:
        with self._lock:
            self._values[key] = self._values.get(key, 0) + value

    def get(self, **kwargs) -> float:
        """Current value for a label set."""
        with self._lock:
            return self._values.get(self._key(kwargs), 0)

    def get_all(self) -> dict[tuple, float]:
        """Get all values."""
        with self._lock:
            return self._values.copy()

    def to_prometheus(self) -> str:
        """Format as Prometheus text."""
        lines = self._header()
        for key, value in self.get_all().items():
            lines.append(f"{self.name}{_format_labels(self._label_names, key)} {value}")
        return "\n".join(lines)


class _BoundGauge:
    def __init__(self, parent: Gauge, key: tuple):
        self._parent = parent
        self._key = key

    def set(self, value: float) -> None:
        self._parent._set(self._key, value)

    def inc(self, value: float = 1.0) -> None:
        self._parent._add(self._key, value)

    def dec(self, value: float = 1.0) -> None:
        self._parent._add(self._key, -value)


class Histogram(_Metric):
    """A histogram metric with cumulative buckets."""

    TYPE = "histogram"
    DEFAULT_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)

    def __init__(
        self,
        name: str,
        description: str,
        labels: Optional[list[str]] = None,
        buckets: Optional[tuple] = None,
    ):
        super().__init__(name, description, labels)
        self.buckets = tuple(sorted(buckets or self.DEFAULT_BUCKETS))
        # key -> (bucket counts, sum, count)
        self._series: dict[tuple, tuple[list[int], float, int]] = {}

    def labels(self, **kwargs) -> "_BoundHistogram":
        """Return a histogram with specific labels."""
        return _BoundHistogram(self, self._key(kwargs))

    def observe(self, value: float) -> None:
        self._observe(self._key({}), value)

    def _observe(self, key: tuple, value: float) -> None:
        with self._lock:
            counts, total, count = self._series.get(key, ([0] * len(self.buckets), 0.0, 0))
            for i, bound in enumerate(self.buckets):
                if value <= bound:
                    counts[i] += 1
            self._series[key] = (counts, total + value, count + 1)

    def get_count(self, **kwargs) -> int:
        """Number of observations for a label set."""
        with self._lock:
            series = self._series.get(self._key(kwargs))
            return series[2] if series else 0

    def to_prometheus(self) -> str:
        """Format as Prometheus text."""
        lines = self._header()
        with self._lock:
            series = {k: (list(c), s, n) for k, (c, s, n) in self._series.items()}

        for key, (counts, total, count) in series.items():
            for bound, bucket_count in zip(self.buckets, counts):
                labels = _format_labels(self._label_names, key, f'le="{bound}"')
                lines.append(f"{self.name}_bucket{labels} {bucket_count}")
            labels = _format_labels(self._label_names, key, 'le="+Inf"')
            lines.append(f"{self.name}_bucket{labels} {count}")
            plain = _format_labels(self._label_names, key)
            lines.append(f"{self.name}_sum{plain} {total}")
            lines.append(f"{self.name}_count{plain} {count}")
        return "\n".join(lines)


class _BoundHistogram:
    def __init__(self, parent: Histogram, key: tuple):
        self._parent = parent
        self._key = key

    def observe(self, value: float) -> None:
        self._parent._observe(self._key, value)


class MetricsRegistry:
    """Every metric Bulwark exports, scoped to one runtime."""

    def __init__(self, namespace: str = "bulwark"):
        ns = namespace

        # Resilience
        self.retries = Counter(f"{ns}_retries_total", "Retries scheduled after a retryable failure", ["operation"])
        self.operation_failures = Counter(
            f"{ns}_operation_failures_total", "Operations that failed permanently", ["kind"]
        )
        self.circuit_transitions = Counter(
            f"{ns}_circuit_transitions_total", "Circuit breaker state transitions", ["breaker", "state"]
        )
        self.circuit_state = Gauge(
            f"{ns}_circuit_state", "Circuit state (0=closed, 1=half-open, 2=open)", ["breaker"]
        )

        # Cache
        self.cache_lookups = Counter(f"{ns}_cache_lookups_total", "Fallback cache results by source", ["source"])

        # Health
        self.health_check_duration = Histogram(
            f"{ns}_health_check_duration_seconds",
            "Health check latency in seconds",
            ["service"],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )
        self.service_health = Gauge(
            f"{ns}_service_health", "Service health (1=healthy, 0.5=degraded, 0=unhealthy)", ["service"]
        )

        # Security
        self.rate_limit_denials = Counter(
            f"{ns}_rate_limit_denials_total", "Requests denied by the abuse guard", ["type"]
        )
        self.blocked_identifiers = Gauge(f"{ns}_blocked_identifiers", "Identifiers currently blocked")

        # Errors
        self.errors_reported = Counter(
            f"{ns}_errors_reported_total", "Errors written to the error log", ["kind", "severity"]
        )

    def all(self) -> list[_Metric]:
        return [m for m in vars(self).values() if isinstance(m, _Metric)]

    def generate(self) -> str:
        """Generate all metrics in Prometheus text format."""
        return "\n\n".join(metric.to_prometheus() for metric in self.all()) + "\n"
