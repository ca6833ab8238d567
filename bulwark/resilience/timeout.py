"""Timeout wrappers for awaitable operations.

A timed-out operation is cancelled through asyncio, which takes effect at
its next suspension point. Work the operation already handed to other
systems is not rolled back.
"""

import asyncio
import functools
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .errors import NetworkError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class TimeoutConfig:
    """Configuration for timeout wrapper."""

    timeout_seconds: float = 5.0
    on_timeout: Optional[Callable[[str], None]] = None


class ProbeTimeoutError(NetworkError):
    """Raised when an operation times out."""

    def __init__(self, message: str = "", timeout: float = 0.0):
        super().__init__(message, code=NetworkError.TIMEOUT)
        self.timeout = timeout


async def with_async_timeout(
    awaitable: Awaitable[T],
    timeout_seconds: float,
    error_message: str = "Operation timed out",
) -> T:
    """Await with a deadline.

    Args:
        awaitable: Coroutine or future to await
        timeout_seconds: Timeout in seconds
        error_message: Error message for timeout

    Returns:
        The awaited result

    Raises:
        ProbeTimeoutError: If the timeout is exceeded
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_seconds)
    except asyncio.TimeoutError:
        raise ProbeTimeoutError(
            f"{error_message} after {timeout_seconds}s",
            timeout_seconds,
        ) from None


def with_timeout(
    seconds: float = 5.0,
    on_timeout: Optional[Callable[[str], None]] = None,
):
    """Decorator to add a timeout to a coroutine function.

    Args:
        seconds: Timeout in seconds
        on_timeout: Optional callback receiving the function name

    Usage:
        @with_timeout(10)
        async def fetch_leaderboard():
            ...
    """
    config = TimeoutConfig(timeout_seconds=seconds, on_timeout=on_timeout)

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            try:
                return await with_async_timeout(
                    func(*args, **kwargs),
                    config.timeout_seconds,
                    f"{func.__name__} timed out",
                )
            except ProbeTimeoutError:
                logger.warning(f"Timeout after {config.timeout_seconds}s in {func.__name__}")
                if config.on_timeout:
                    try:
                        config.on_timeout(func.__name__)
                    except Exception as e:
                        logger.error(f"on_timeout callback failed: {e}")
                raise

        return wrapper

    return decorator
