"""Tests for retry with backoff."""

from unittest.mock import AsyncMock, Mock, patch

import pytest

from bulwark.monitoring.metrics import MetricsRegistry
from bulwark.resilience.errors import (
    AuthenticationError,
    ErrorClassifier,
    ErrorKind,
    NetworkError,
    OperationFailedError,
    RemoteServiceError,
    ValidationError,
)
from bulwark.resilience.retry import (
    RetryConfig,
    RetryExecutor,
    base_backoff,
    calculate_backoff,
    retry_with_backoff,
)


class TestBackoff:
    """Test delay calculation."""

    def test_exponential_growth_capped(self):
        """Test delay before attempt n is min(initial * mult^(n-2), max)."""
        config = RetryConfig(initial_delay=1.0, backoff_multiplier=2.0, max_delay=10.0, jitter_enabled=False)

        delays = [calculate_backoff(n, config) for n in range(2, 8)]

        assert delays == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]

    def test_delays_are_monotonic(self):
        """Test un-jittered delays never decrease."""
        config = RetryConfig(initial_delay=0.5, backoff_multiplier=3.0, max_delay=30.0)
        delays = [base_backoff(n, config) for n in range(2, 12)]
        assert delays == sorted(delays)

    def test_jitter_bounds(self):
        """Test jittered delay lies in [d, 1.3d)."""
        config = RetryConfig(initial_delay=1.0, backoff_multiplier=2.0, max_delay=10.0)

        for attempt in range(2, 7):
            base = base_backoff(attempt, config)
            for _ in range(200):
                delay = calculate_backoff(attempt, config)
                assert base <= delay < base * 1.3

    def test_jitter_extremes(self):
        """Test the jitter factor endpoints."""
        config = RetryConfig(initial_delay=2.0)

        with patch("bulwark.resilience.retry.random.random", return_value=0.0):
            assert calculate_backoff(2, config) == 2.0
        with patch("bulwark.resilience.retry.random.random", return_value=0.999):
            assert calculate_backoff(2, config) == pytest.approx(2.0 * 1.2997)


class TestRetryExecutor:
    """Test RetryExecutor.run."""

    @pytest.mark.asyncio
    async def test_success_first_attempt(self, sleeper):
        """Test no retry when the first attempt succeeds."""
        executor = RetryExecutor(sleep=sleeper)
        operation = AsyncMock(return_value="ok")

        assert await executor.run(operation) == "ok"
        assert operation.call_count == 1
        assert sleeper.delays == []

    @pytest.mark.asyncio
    async def test_retries_transient_failures(self, sleeper):
        """Test retryable failures are retried until success."""
        executor = RetryExecutor(sleep=sleeper)
        operation = AsyncMock(side_effect=[NetworkError("reset"), NetworkError("reset"), "ok"])

        result = await executor.run(
            operation, RetryConfig(max_attempts=3, initial_delay=1.0, jitter_enabled=False)
        )

        assert result == "ok"
        assert operation.call_count == 3
        assert sleeper.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_at_most_max_attempts(self, sleeper):
        """Test exhausted attempts raise OperationFailedError."""
        executor = RetryExecutor(sleep=sleeper)
        operation = AsyncMock(side_effect=RemoteServiceError("down", status_code=503))

        with pytest.raises(OperationFailedError) as exc_info:
            await executor.run(operation, RetryConfig(max_attempts=4, jitter_enabled=False))

        assert operation.call_count == 4
        assert exc_info.value.attempts == 4
        assert exc_info.value.kind == ErrorKind.REMOTE_SERVICE
        assert isinstance(exc_info.value.__cause__, RemoteServiceError)
        assert len(sleeper.delays) == 3

    @pytest.mark.asyncio
    async def test_non_retryable_fails_immediately(self, sleeper):
        """Test validation and authentication failures are never retried."""
        executor = RetryExecutor(sleep=sleeper)

        for exc in (ValidationError("bad"), AuthenticationError("expired", status_code=401)):
            operation = AsyncMock(side_effect=exc)
            with pytest.raises(OperationFailedError) as exc_info:
                await executor.run(operation)
            assert operation.call_count == 1
            assert exc_info.value.attempts == 1

        assert sleeper.delays == []

    @pytest.mark.asyncio
    async def test_should_retry_can_decline(self, sleeper):
        """Test should_retry vetoes a retry."""
        executor = RetryExecutor(sleep=sleeper)
        operation = AsyncMock(side_effect=NetworkError("reset"))
        should_retry = Mock(return_value=False)

        with pytest.raises(OperationFailedError):
            await executor.run(operation, RetryConfig(should_retry=should_retry))

        assert operation.call_count == 1
        should_retry.assert_called_once()

    @pytest.mark.asyncio
    async def test_failures_recorded_in_history(self, sleeper):
        """Test every failed attempt lands in the classifier history."""
        classifier = ErrorClassifier()
        executor = RetryExecutor(classifier=classifier, sleep=sleeper)
        operation = AsyncMock(side_effect=NetworkError("reset"))

        with pytest.raises(OperationFailedError):
            await executor.run(operation, RetryConfig(max_attempts=3), {"operation": "fetch"})

        history = classifier.history()
        assert len(history) == 3
        assert [context["attempt"] for _, context in history] == [1, 2, 3]
        assert all(context["operation"] == "fetch" for _, context in history)

    @pytest.mark.asyncio
    async def test_on_retry_callback(self, sleeper):
        """Test on_retry is called before each retry and its errors are ignored."""
        on_retry = Mock(side_effect=RuntimeError("callback bug"))
        executor = RetryExecutor(sleep=sleeper, on_retry=on_retry)
        operation = AsyncMock(side_effect=[NetworkError("reset"), "ok"])

        assert await executor.run(operation) == "ok"
        on_retry.assert_called_once()
        error, attempt = on_retry.call_args[0]
        assert error.kind == ErrorKind.NETWORK
        assert attempt == 1

    @pytest.mark.asyncio
    async def test_metrics(self, sleeper):
        """Test retries and permanent failures are counted."""
        metrics = MetricsRegistry()
        executor = RetryExecutor(sleep=sleeper, metrics=metrics)
        operation = AsyncMock(side_effect=NetworkError("reset"))

        with pytest.raises(OperationFailedError):
            await executor.run(operation, RetryConfig(max_attempts=2), {"operation": "fetch"})

        assert metrics.retries.get(operation="fetch") == 1
        assert metrics.operation_failures.get(kind="NETWORK") == 1


class TestRetryDecorator:
    """Test retry_with_backoff."""

    @pytest.mark.asyncio
    async def test_decorator_retries(self, sleeper):
        """Test decorated coroutine is retried."""
        calls = []

        @retry_with_backoff(max_attempts=3, executor=RetryExecutor(sleep=sleeper))
        async def flaky(value):
            calls.append(value)
            if len(calls) < 2:
                raise NetworkError("reset")
            return value * 2

        assert await flaky(21) == 42
        assert calls == [21, 21]
        assert flaky.__name__ == "flaky"

    def test_decorator_rejects_plain_functions(self):
        """Test only coroutine functions can be decorated."""
        with pytest.raises(TypeError):

            @retry_with_backoff()
            def not_async():
                return 1
