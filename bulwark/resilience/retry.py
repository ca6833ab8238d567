"""Retry with exponential backoff.

Provides automatic retry for transient failures with:
- Bounded attempt count
- Exponential backoff capped at a maximum delay
- Additive jitter (never shortens the delay)
- Retry decisions driven by ErrorClassifier
"""

import asyncio
import functools
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .errors import ClassifiedError, ErrorClassifier, OperationFailedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

JITTER_SPREAD = 0.3  # up to 30% extra delay


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_attempts: int = 3
    initial_delay: float = 1.0  # seconds
    max_delay: float = 10.0  # seconds
    backoff_multiplier: float = 2.0
    jitter_enabled: bool = True
    should_retry: Optional[Callable[[ClassifiedError, int], bool]] = None


def base_backoff(attempt: int, config: RetryConfig) -> float:
    """Un-jittered delay before an attempt.

    Args:
        attempt: Number of the attempt about to run (2 for the first retry)
        config: Retry configuration

    Returns:
        Delay in seconds
    """
    exponent = max(0, attempt - 2)
    return min(config.initial_delay * (config.backoff_multiplier**exponent), config.max_delay)


def calculate_backoff(attempt: int, config: RetryConfig) -> float:
    """Delay before an attempt, with jitter when enabled.

    The jittered value lies in [base, 1.3 * base).
    """
    delay = base_backoff(attempt, config)
    if config.jitter_enabled:
        delay *= 1.0 + random.random() * JITTER_SPREAD
    return delay


class RetryExecutor:
    """Runs an operation until it succeeds, fails permanently, or runs out of attempts.

    Usage:
        executor = RetryExecutor(classifier)
        player = await executor.run(
            lambda: client.get_player(player_id),
            RetryConfig(max_attempts=3),
            {"operation": "get_player"},
        )
    """

    def __init__(
        self,
        classifier: Optional[ErrorClassifier] = None,
        default_config: Optional[RetryConfig] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        on_retry: Optional[Callable[[ClassifiedError, int], None]] = None,
        metrics: Optional[Any] = None,
    ):
        """Initialize executor.

        Args:
            classifier: Classifier used at each failure (and for its history)
            default_config: Config used when run() receives none
            sleep: Awaitable sleep function
            on_retry: Optional callback (error, attempt_number) before each retry
            metrics: Optional MetricsRegistry
        """
        self.classifier = classifier or ErrorClassifier()
        self.default_config = default_config or RetryConfig()
        self._sleep = sleep
        self._on_retry = on_retry
        self._metrics = metrics

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        config: Optional[RetryConfig] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> T:
        """Execute operation with retries.

        Args:
            operation: Zero-argument callable returning an awaitable
            config: Retry configuration (defaults to the executor's)
            context: Diagnostic metadata recorded with each failure

        Returns:
            The operation's result

        Raises:
            OperationFailedError: On a non-retryable failure or when attempts run out
        """
        config = config or self.default_config
        context = dict(context or {})
        name = context.get("operation", getattr(operation, "__name__", "operation"))

        for attempt in range(1, config.max_attempts + 1):
            try:
                return await operation()
            except Exception as e:
                error = self.classifier.classify(e, {**context, "attempt": attempt})

                retry = error.retryable
                if retry and config.should_retry is not None:
                    retry = config.should_retry(error, attempt)

                if not retry or attempt >= config.max_attempts:
                    self.classifier.log(
                        error, {**context, "attempts": attempt, "final_attempt": True}
                    )
                    if self._metrics is not None:
                        self._metrics.operation_failures.labels(kind=error.kind.value).inc()
                    raise OperationFailedError(error, attempts=attempt) from e

                delay = calculate_backoff(attempt + 1, config)
                logger.warning(
                    f"Attempt {attempt}/{config.max_attempts} failed for {name}: "
                    f"{error.message}. Retrying in {delay:.2f}s"
                )

                if self._metrics is not None:
                    self._metrics.retries.labels(operation=name).inc()

                if self._on_retry:
                    try:
                        self._on_retry(error, attempt)
                    except Exception as callback_error:
                        logger.error(f"on_retry callback failed: {callback_error}")

                await self._sleep(delay)

        # max_attempts < 1
        raise ValueError("max_attempts must be at least 1")


def retry_with_backoff(
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 10.0,
    backoff_multiplier: float = 2.0,
    jitter_enabled: bool = True,
    executor: Optional[RetryExecutor] = None,
):
    """Decorator for retry with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts
        initial_delay: Delay before the first retry
        max_delay: Maximum delay between retries
        backoff_multiplier: Growth factor per retry
        jitter_enabled: Add up to 30% random extra delay
        executor: Executor to use (a private one by default)

    Returns:
        Decorated coroutine function

    Usage:
        @retry_with_backoff(max_attempts=3)
        async def fetch_ranking():
            ...
    """
    config = RetryConfig(
        max_attempts=max_attempts,
        initial_delay=initial_delay,
        max_delay=max_delay,
        backoff_multiplier=backoff_multiplier,
        jitter_enabled=jitter_enabled,
    )

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        if not asyncio.iscoroutinefunction(func):
            raise TypeError(f"retry_with_backoff requires a coroutine function, got {func!r}")

        runner = executor or RetryExecutor()

        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            return await runner.run(
                lambda: func(*args, **kwargs),
                config,
                {"operation": func.__name__},
            )

        return wrapper

    return decorator
