"""Runtime that owns every Bulwark component.

Constructed once at startup and handed to the HTTP layer; nothing is shared
through module globals.
"""

import asyncio
import logging
import threading
import time
from typing import Any, Awaitable, Callable, Optional

from .config import Settings
from .monitoring.error_log import ErrorLog
from .monitoring.health import HealthCheckConfig, HealthMonitor, HealthStatus, probe_from_callable
from .monitoring.metrics import MetricsRegistry
from .resilience.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from .resilience.errors import CircuitOpenError, ErrorClassifier
from .resilience.fallback import (
    MISSING,
    CacheResult,
    CacheSource,
    FallbackCache,
    FallbackOptions,
    load_cache,
    save_cache,
)
from .resilience.retry import RetryConfig, RetryExecutor
from .security.audit import AuditTrail
from .security.rate_limiter import AbuseGuard

logger = logging.getLogger(__name__)

CACHE_HEALTH_KEY = "__health__"


class Runtime:
    """Owns the resilience, monitoring and security components.

    Outbound calls go through call_remote(), which layers the fallback
    cache over a named circuit breaker over the retry executor. The breaker
    sees one outcome per call, however many retries it took.

    Usage:
        runtime = Runtime(Settings())
        await runtime.start()
        result = await runtime.call_remote(
            "gamification_api",
            lambda: client.get_player(player_id),
            cache_key=f"player:{player_id}",
        )
        await runtime.stop()
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """Initialize runtime.

        Args:
            settings: Application settings (read from the environment if None)
            clock: Time source shared by every component
            sleep: Sleep used between retries and health probe attempts
        """
        self.settings = settings or Settings()
        s = self.settings
        self.clock = clock

        self.metrics = MetricsRegistry()
        self.classifier = ErrorClassifier(history_size=s.error_history_size, clock=clock)
        self.error_log = ErrorLog(
            max_size=s.error_log_size, classifier=self.classifier, clock=clock, metrics=self.metrics
        )

        self.retry_config = RetryConfig(
            max_attempts=s.retry_max_attempts,
            initial_delay=s.retry_initial_delay,
            max_delay=s.retry_max_delay,
            backoff_multiplier=s.retry_backoff_multiplier,
            jitter_enabled=s.retry_jitter_enabled,
        )
        self.executor = RetryExecutor(
            classifier=self.classifier,
            default_config=self.retry_config,
            sleep=sleep,
            metrics=self.metrics,
        )

        self.cache = FallbackCache(
            max_size=s.cache_max_size,
            default_ttl=s.cache_default_ttl,
            executor=self.executor,
            clock=clock,
            metrics=self.metrics,
        )

        self.health = HealthMonitor(
            default_config=HealthCheckConfig(
                timeout=s.health_timeout,
                retries=s.health_retries,
                interval=s.health_interval,
                retry_delay=s.health_retry_delay,
            ),
            history_size=s.health_history_size,
            error_log=self.error_log,
            clock=clock,
            sleep=sleep,
            metrics=self.metrics,
        )

        self.audit = AuditTrail(clock=clock)
        self.guard = AbuseGuard(
            audit=self.audit,
            cleanup_interval=s.cleanup_interval,
            clock=clock,
            metrics=self.metrics,
        )

        self._breakers: dict[str, CircuitBreaker] = {}
        self._breakers_lock = threading.Lock()
        self._started = False

        # The cache is not critical, so a failing check only degrades the system
        self.health.register_service(
            "cache",
            probe_from_callable("cache", self._check_cache, HealthStatus.DEGRADED, clock=clock),
        )

    async def _check_cache(self) -> bool:
        """Write, read back and delete a health key."""
        expected = str(self.clock())
        self.cache.set(CACHE_HEALTH_KEY, expected, 10.0)
        try:
            retrieved = self.cache.get(CACHE_HEALTH_KEY)
        finally:
            self.cache.invalidate(CACHE_HEALTH_KEY)
        if retrieved != expected:
            logger.warning(f"Cache read/write check failed: expected {expected!r}, got {retrieved!r}")
            return False
        return True

    def breaker(self, name: str) -> CircuitBreaker:
        """Get or create the circuit breaker for a remote service."""
        with self._breakers_lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(
                    name,
                    CircuitBreakerConfig(
                        failure_threshold=self.settings.breaker_failure_threshold,
                        reset_timeout=self.settings.breaker_reset_timeout,
                    ),
                    clock=self.clock,
                    metrics=self.metrics,
                )
                self._breakers[name] = breaker
            return breaker

    @property
    def breakers(self) -> dict[str, CircuitBreaker]:
        with self._breakers_lock:
            return dict(self._breakers)

    async def call_remote(
        self,
        service: str,
        operation: Callable[[], Awaitable[Any]],
        cache_key: Optional[str] = None,
        cache_duration: Optional[float] = None,
        fallback_data: Any = MISSING,
        stale_while_revalidate: bool = False,
        retry: bool = True,
        retry_config: Optional[RetryConfig] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> CacheResult:
        """Call a remote service through cache, breaker and retries.

        Args:
            service: Breaker name for the remote service
            operation: Zero-argument callable returning an awaitable
            cache_key: Cache the result under this key (no caching if None)
            cache_duration: TTL in seconds for the cached result
            fallback_data: Value returned if the call fails
            stale_while_revalidate: Serve expired values while refreshing
            retry: Retry transient failures
            retry_config: Overrides the configured retry policy
            context: Diagnostic metadata

        Returns:
            CacheResult with the value and where it came from

        Raises:
            Exception: The classified failure when no fallback value exists
        """
        context = {"service": service, **(context or {})}
        breaker = self.breaker(service)

        async def guarded() -> Any:
            if retry:
                return await breaker.call(
                    lambda: self.executor.run(operation, retry_config, context)
                )
            return await breaker.call(operation)

        try:
            if cache_key is not None:
                return await self.cache.get_with_fallback(
                    guarded,
                    FallbackOptions(
                        cache_key=cache_key,
                        cache_duration=cache_duration,
                        fallback_data=fallback_data,
                        stale_while_revalidate=stale_while_revalidate,
                        context=context,
                    ),
                )
            return CacheResult(await guarded(), CacheSource.LIVE)
        except Exception as e:
            if cache_key is None and fallback_data is not MISSING:
                logger.info(f"Using fallback data for {service}: {e}")
                return CacheResult(fallback_data, CacheSource.FALLBACK)
            # The retry executor and the cache have already recorded the failure
            recorded = cache_key is not None or (retry and not isinstance(e, CircuitOpenError))
            self.error_log.log_error(self.classifier.classify(e, context, record=not recorded), context)
            raise

    async def start(self) -> None:
        """Restore the cache dump and start background timers. Idempotent."""
        if self._started:
            return
        self._started = True

        if self.settings.cache_dump_path:
            load_cache(self.cache, self.settings.cache_dump_path)

        self.health.start_monitoring()
        self.guard.start_cleanup()
        logger.info("Bulwark runtime started")

    async def stop(self) -> None:
        """Stop timers, cancel background refreshes and write the cache dump."""
        if not self._started:
            return
        self._started = False

        await self.health.stop_monitoring()
        await self.guard.stop_cleanup()
        await self.cache.aclose()

        if self.settings.cache_dump_path:
            save_cache(self.cache, self.settings.cache_dump_path)
        logger.info("Bulwark runtime stopped")
