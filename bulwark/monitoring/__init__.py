"""Monitoring module for Bulwark.

This module provides:
- Service health probes, history and aggregate health
- The error log behind the error reporting endpoint
- Prometheus-style metrics
"""

from .error_log import ErrorLog, ErrorLogEntry, ErrorMetrics
from .health import (
    HealthCheckConfig,
    HealthCheckResult,
    HealthMonitor,
    HealthStatus,
    ServiceMetrics,
    SystemHealth,
    aggregate_status,
    probe_from_callable,
)
from .metrics import Counter, Gauge, Histogram, MetricsRegistry

__all__ = [
    "HealthMonitor",
    "HealthCheckConfig",
    "HealthCheckResult",
    "HealthStatus",
    "ServiceMetrics",
    "SystemHealth",
    "aggregate_status",
    "probe_from_callable",
    "ErrorLog",
    "ErrorLogEntry",
    "ErrorMetrics",
    "MetricsRegistry",
    "Counter",
    "Gauge",
    "Histogram",
]
