"""Health monitoring for the services behind the dashboard.

Provides:
- A registry of named async probes with per-probe timeout and retries
- Bounded per-service result history
- Aggregate system health and per-service metrics
- Continuous monitoring on a fixed interval
"""

import asyncio
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from ..resilience.errors import ErrorKind
from ..resilience.timeout import ProbeTimeoutError, with_async_timeout

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    """Health of a single service or of the whole system."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"

    @property
    def gauge_value(self) -> float:
        return {"healthy": 1.0, "degraded": 0.5, "unhealthy": 0.0}[self.value]


def _iso(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


@dataclass
class HealthCheckResult:
    """Outcome of one health check."""

    service_name: str
    status: HealthStatus
    observed_at: float
    response_time_ms: Optional[float] = None
    error: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"service": self.service_name, "status": self.status.value}
        if self.response_time_ms is not None:
            data["responseTimeMs"] = self.response_time_ms
        if self.error is not None:
            data["error"] = self.error
        if self.details:
            data["details"] = self.details
        data["timestamp"] = _iso(self.observed_at)
        return data


@dataclass
class SystemHealth:
    """Aggregate health of every registered service."""

    overall: HealthStatus
    services: list[HealthCheckResult]
    timestamp: float
    uptime_seconds: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "overall": self.overall.value,
            "services": [result.to_dict() for result in self.services],
            "timestamp": _iso(self.timestamp),
            "uptimeSeconds": self.uptime_seconds,
        }


@dataclass
class ServiceMetrics:
    """Statistics derived from a service's history."""

    uptime_pct: float = 0.0
    avg_response_time_ms: float = 0.0
    error_rate_pct: float = 0.0
    sample_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "uptimePct": self.uptime_pct,
            "avgResponseTimeMs": self.avg_response_time_ms,
            "errorRatePct": self.error_rate_pct,
            "sampleCount": self.sample_count,
        }


@dataclass
class HealthCheckConfig:
    """Configuration for a health probe."""

    timeout: float = 5.0  # Seconds before a probe attempt is abandoned
    retries: int = 2  # Additional attempts after a failed one
    interval: float = 30.0  # Seconds between monitoring rounds
    retry_delay: float = 1.0  # Multiplied by the attempt number


Probe = Callable[[], Awaitable[HealthCheckResult]]


@dataclass
class _Registration:
    probe: Probe
    config: HealthCheckConfig


def aggregate_status(results: list[HealthCheckResult]) -> HealthStatus:
    """Derive overall health from individual results.

    Any unhealthy service makes the system unhealthy. More than half
    degraded, or any mix short of all healthy, makes it degraded. An empty
    result set counts as unhealthy.
    """
    if not results:
        return HealthStatus.UNHEALTHY

    healthy = sum(1 for r in results if r.status == HealthStatus.HEALTHY)
    degraded = sum(1 for r in results if r.status == HealthStatus.DEGRADED)

    if any(r.status == HealthStatus.UNHEALTHY for r in results):
        return HealthStatus.UNHEALTHY
    if degraded > len(results) / 2:
        return HealthStatus.DEGRADED
    if healthy == len(results):
        return HealthStatus.HEALTHY
    return HealthStatus.DEGRADED


def probe_from_callable(
    name: str,
    check: Callable[[], Awaitable[Any]],
    failure_status: HealthStatus = HealthStatus.UNHEALTHY,
    clock: Callable[[], float] = time.time,
) -> Probe:
    """Build a probe around a plain async check.

    The check is healthy unless it raises or returns False, in which case
    the result carries ``failure_status``. Response time is always recorded.

    Usage:
        monitor.register_service("cache", probe_from_callable("cache", ping, HealthStatus.DEGRADED))
    """

    async def probe() -> HealthCheckResult:
        start = time.perf_counter()
        try:
            outcome = await check()
        except Exception as e:
            return HealthCheckResult(
                service_name=name,
                status=failure_status,
                observed_at=clock(),
                response_time_ms=(time.perf_counter() - start) * 1000,
                error=str(e) or type(e).__name__,
            )

        elapsed_ms = (time.perf_counter() - start) * 1000
        if outcome is False:
            return HealthCheckResult(
                service_name=name,
                status=failure_status,
                observed_at=clock(),
                response_time_ms=elapsed_ms,
                error="Check reported failure",
            )
        return HealthCheckResult(
            service_name=name,
            status=HealthStatus.HEALTHY,
            observed_at=clock(),
            response_time_ms=elapsed_ms,
        )

    return probe


class HealthMonitor:
    """Registry of service probes with history and continuous monitoring.

    Usage:
        monitor = HealthMonitor(error_log=error_log)
        monitor.register_service("backend", probe)
        health = await monitor.check_all_services()
        monitor.start_monitoring()
    """

    def __init__(
        self,
        default_config: Optional[HealthCheckConfig] = None,
        history_size: int = 100,
        error_log: Optional[Any] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        metrics: Optional[Any] = None,
    ):
        """Initialize health monitor.

        Args:
            default_config: Config for probes registered without one
            history_size: Results kept per service
            error_log: ErrorLog that receives unhealthy system reports
            clock: Time source returning epoch seconds
            sleep: Coroutine used for the delay between probe retries
            metrics: Optional MetricsRegistry
        """
        self.default_config = default_config or HealthCheckConfig()
        self.history_size = history_size
        self._error_log = error_log
        self._clock = clock
        self._sleep = sleep
        self._metrics = metrics
        self._started_at = clock()

        self._services: dict[str, _Registration] = {}
        self._history: dict[str, deque[HealthCheckResult]] = {}
        self._lock = threading.Lock()
        self._monitor_task: Optional[asyncio.Task] = None

    def register_service(
        self, name: str, probe: Probe, config: Optional[HealthCheckConfig] = None
    ) -> None:
        """Register (or replace) a probe. Its history starts empty."""
        with self._lock:
            self._services[name] = _Registration(probe, config or self.default_config)
            self._history[name] = deque(maxlen=self.history_size)
        logger.info(f"Registered health probe: {name}")

    def unregister_service(self, name: str) -> None:
        with self._lock:
            self._services.pop(name, None)
            self._history.pop(name, None)

    @property
    def services(self) -> list[str]:
        with self._lock:
            return list(self._services)

    @property
    def uptime(self) -> float:
        """Seconds since the monitor was created."""
        return self._clock() - self._started_at

    async def check_service_health(self, name: str) -> HealthCheckResult:
        """Run one service's probe with timeout and retries.

        Args:
            name: Registered service name

        Returns:
            The probe's result, or an unhealthy result carrying the last error
        """
        with self._lock:
            registration = self._services.get(name)

        if registration is None:
            return HealthCheckResult(
                service_name=name,
                status=HealthStatus.UNHEALTHY,
                observed_at=self._clock(),
                error="Service not registered",
            )

        config = registration.config
        last_error: Optional[str] = None
        start = time.perf_counter()

        for attempt in range(1, config.retries + 2):
            try:
                result = await with_async_timeout(
                    registration.probe(), config.timeout, "Health check timeout"
                )
                self._record(name, result, time.perf_counter() - start)
                return result
            except ProbeTimeoutError as e:
                last_error = str(e)
                logger.warning(f"Health probe {name} timed out (attempt {attempt})")
            except Exception as e:
                last_error = str(e) or type(e).__name__
                logger.warning(f"Health probe {name} failed (attempt {attempt}): {last_error}")

            if attempt <= config.retries:
                await self._sleep(config.retry_delay * attempt)

        failure = HealthCheckResult(
            service_name=name,
            status=HealthStatus.UNHEALTHY,
            observed_at=self._clock(),
            error=last_error,
        )
        self._record(name, failure, time.perf_counter() - start)
        return failure

    async def check_all_services(self) -> SystemHealth:
        """Check every registered service concurrently and aggregate."""
        results = list(await asyncio.gather(*(self.check_service_health(n) for n in self.services)))
        overall = aggregate_status(results)

        health = SystemHealth(
            overall=overall,
            services=results,
            timestamp=self._clock(),
            uptime_seconds=self.uptime,
        )

        if overall == HealthStatus.UNHEALTHY:
            logger.error(f"System health check failed: {len(results)} services checked")
            if self._error_log is not None:
                self._error_log.log_custom_error(
                    ErrorKind.CONFIGURATION,
                    "System health check failed",
                    {"results": [result.to_dict() for result in results]},
                    {"healthCheck": True},
                )

        return health

    def _record(self, name: str, result: HealthCheckResult, duration: float) -> None:
        with self._lock:
            history = self._history.get(name)
            if history is not None:
                history.append(result)

        if self._metrics is not None:
            self._metrics.health_check_duration.labels(service=name).observe(duration)
            self._metrics.service_health.labels(service=name).set(result.status.gauge_value)

    def get_service_history(self, name: str, limit: int = 50) -> list[HealthCheckResult]:
        with self._lock:
            history = list(self._history.get(name, ()))
        return history[-limit:] if limit else history

    def get_service_metrics(self, name: str, window: float = 3600.0) -> ServiceMetrics:
        """Summarize the results observed within the last ``window`` seconds."""
        cutoff = self._clock() - window
        with self._lock:
            recent = [r for r in self._history.get(name, ()) if r.observed_at >= cutoff]

        if not recent:
            return ServiceMetrics()

        healthy = sum(1 for r in recent if r.status == HealthStatus.HEALTHY)
        timings = [r.response_time_ms for r in recent if r.response_time_ms is not None]

        return ServiceMetrics(
            uptime_pct=healthy / len(recent) * 100,
            avg_response_time_ms=sum(timings) / len(timings) if timings else 0.0,
            error_rate_pct=(len(recent) - healthy) / len(recent) * 100,
            sample_count=len(recent),
        )

    def clear_history(self, name: Optional[str] = None) -> None:
        with self._lock:
            if name is None:
                for history in self._history.values():
                    history.clear()
            elif name in self._history:
                self._history[name].clear()

    @property
    def is_monitoring(self) -> bool:
        return self._monitor_task is not None and not self._monitor_task.done()

    def start_monitoring(self) -> None:
        """Start the monitoring loop. Calling it again while running is a no-op."""
        if self.is_monitoring:
            return
        self._monitor_task = asyncio.get_running_loop().create_task(self._monitor_loop())
        logger.info(f"Health monitoring started (every {self.default_config.interval}s)")

    async def stop_monitoring(self) -> None:
        """Stop the monitoring loop if it is running."""
        task, self._monitor_task = self._monitor_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Health monitoring stopped")

    async def _monitor_loop(self) -> None:
        while True:
            await asyncio.sleep(self.default_config.interval)
            try:
                await self.check_all_services()
            except Exception as e:
                logger.error(f"Health monitoring error: {e}")
                if self._error_log is not None:
                    self._error_log.log_custom_error(
                        ErrorKind.CONFIGURATION,
                        "Health monitoring failed",
                        {"error": str(e)},
                    )
