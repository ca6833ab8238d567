"""Tests for the runtime composition."""

import json
from unittest.mock import AsyncMock, patch

import pytest

from bulwark.monitoring.health import HealthStatus
from bulwark.resilience.circuit_breaker import CircuitState
from bulwark.resilience.errors import (
    CircuitOpenError,
    ErrorKind,
    NetworkError,
    OperationFailedError,
    ValidationError,
)
from bulwark.resilience.fallback import CacheSource
from bulwark.runtime import CACHE_HEALTH_KEY, Runtime


@pytest.fixture
def runtime(test_settings, clock, sleeper):
    return Runtime(test_settings, clock=clock, sleep=sleeper)


class TestCallRemote:
    """Test outbound calls through cache, breaker and retries."""

    @pytest.mark.asyncio
    async def test_live_result(self, runtime):
        """Test a successful call without caching."""
        result = await runtime.call_remote("api", AsyncMock(return_value={"id": 1}))

        assert result.value == {"id": 1}
        assert result.source == CacheSource.LIVE

    @pytest.mark.asyncio
    async def test_cached_result(self, runtime):
        """Test a cache key stores and serves the value."""
        operation = AsyncMock(return_value=[1, 2])

        await runtime.call_remote("api", operation, cache_key="ranking", cache_duration=60)
        result = await runtime.call_remote("api", operation, cache_key="ranking")

        assert result.source == CacheSource.CACHE
        operation.assert_called_once()

    @pytest.mark.asyncio
    async def test_retries_then_fails(self, runtime, sleeper):
        """Test exhausted retries are logged once and raised."""
        operation = AsyncMock(side_effect=NetworkError("reset"))

        with pytest.raises(OperationFailedError):
            await runtime.call_remote("api", operation, context={"operation": "get_player"})

        assert operation.call_count == runtime.settings.retry_max_attempts
        assert len(sleeper.delays) == runtime.settings.retry_max_attempts - 1
        assert len(runtime.classifier.history()) == runtime.settings.retry_max_attempts

        (entry,) = runtime.error_log.export()
        assert entry.kind == ErrorKind.NETWORK
        assert entry.context == {"service": "api", "operation": "get_player"}

    @pytest.mark.asyncio
    async def test_breaker_counts_one_failure_per_call(self, runtime):
        """Test retries inside one call count as a single breaker failure."""
        operation = AsyncMock(side_effect=NetworkError("reset"))

        with pytest.raises(OperationFailedError):
            await runtime.call_remote("api", operation)

        assert runtime.breaker("api").consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_breaker_opens_and_rejects(self, runtime):
        """Test the breaker opens after the threshold and fails fast."""
        threshold = runtime.settings.breaker_failure_threshold
        operation = AsyncMock(side_effect=ValidationError("bad"))

        for _ in range(threshold):
            with pytest.raises(ValidationError):
                await runtime.call_remote("api", operation, retry=False)

        assert runtime.breaker("api").state == CircuitState.OPEN

        with pytest.raises(CircuitOpenError):
            await runtime.call_remote("api", operation, retry=False)
        assert operation.call_count == threshold
        assert len(runtime.error_log.export()) == threshold + 1
        assert len(runtime.classifier.history()) == threshold + 1

    @pytest.mark.asyncio
    async def test_fallback_data_without_cache(self, runtime):
        """Test fallback data is returned when the call fails."""
        result = await runtime.call_remote(
            "api", AsyncMock(side_effect=NetworkError("reset")), fallback_data=[]
        )

        assert result.value == []
        assert result.source == CacheSource.FALLBACK

    @pytest.mark.asyncio
    async def test_emergency_value(self, runtime, clock):
        """Test the last cached value is served when the call fails."""
        await runtime.call_remote("api", AsyncMock(return_value="v1"), cache_key="k", cache_duration=1)
        clock.advance(10)

        result = await runtime.call_remote("api", AsyncMock(side_effect=NetworkError("reset")), cache_key="k")

        assert result.value == "v1"
        assert result.source == CacheSource.EMERGENCY

    @pytest.mark.asyncio
    async def test_cached_failure_is_logged(self, runtime):
        """Test failures without any fallback reach the error log."""
        with pytest.raises(OperationFailedError):
            await runtime.call_remote("api", AsyncMock(side_effect=NetworkError("reset")), cache_key="k")

        assert len(runtime.error_log.export()) == 1

    @pytest.mark.asyncio
    async def test_cached_retry_exhaustion_recorded_once_per_attempt(self, runtime):
        """Test the cache layer does not record the final failure again."""
        with pytest.raises(OperationFailedError):
            await runtime.call_remote("api", AsyncMock(side_effect=NetworkError("reset")), cache_key="k")

        assert len(runtime.classifier.history()) == runtime.settings.retry_max_attempts

    def test_breaker_registry(self, runtime):
        """Test breakers are created once per service with configured thresholds."""
        breaker = runtime.breaker("api")

        assert runtime.breaker("api") is breaker
        assert breaker.config.failure_threshold == runtime.settings.breaker_failure_threshold
        assert runtime.breakers == {"api": breaker}


class TestLifecycle:
    """Test start and stop."""

    @pytest.mark.asyncio
    async def test_cache_probe_registered(self, runtime):
        """Test the built-in cache probe reports healthy."""
        health = await runtime.health.check_all_services()

        assert runtime.health.services == ["cache"]
        assert health.overall == HealthStatus.HEALTHY
        assert runtime.cache.get_entry(CACHE_HEALTH_KEY) is None

    @pytest.mark.asyncio
    async def test_cache_probe_degrades_on_read_mismatch(self, runtime):
        """Test a value that does not read back degrades the cache."""
        with patch.object(runtime.cache, "get", return_value="wrong"):
            result = await runtime.health.check_service_health("cache")

        assert result.status == HealthStatus.DEGRADED
        assert runtime.cache.get_entry(CACHE_HEALTH_KEY) is None

    @pytest.mark.asyncio
    async def test_start_stop_idempotent(self, runtime):
        """Test timers start once and stop cleanly."""
        await runtime.start()
        await runtime.start()
        assert runtime.health.is_monitoring is True
        assert runtime.guard.is_cleaning is True

        await runtime.stop()
        await runtime.stop()
        assert runtime.health.is_monitoring is False
        assert runtime.guard.is_cleaning is False

    @pytest.mark.asyncio
    async def test_cache_dump_round_trip(self, test_settings, clock, sleeper, tmp_path):
        """Test the cache is saved on stop and restored on start."""
        path = tmp_path / "cache.json"
        settings = test_settings.model_copy(update={"cache_dump_path": str(path)})

        first = Runtime(settings, clock=clock, sleep=sleeper)
        await first.start()
        first.cache.set("ranking", ["ana", "bo"])
        await first.stop()

        assert json.loads(path.read_text(encoding="utf-8"))["entries"][0][0] == "ranking"

        second = Runtime(settings, clock=clock, sleep=sleeper)
        await second.start()
        try:
            assert second.cache.get("ranking") == ["ana", "bo"]
        finally:
            await second.stop()
