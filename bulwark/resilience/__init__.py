"""Resilience layer for outbound calls to the remote backend.

This module provides:
- Error classification
- Retry with exponential backoff and jitter
- Service-level circuit breakers
- Timeout wrappers
- A fallback cache with stale-while-revalidate
"""

from .circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitState
from .errors import (
    AuthenticationError,
    CircuitOpenError,
    ClassifiedError,
    ConfigurationError,
    ErrorAction,
    ErrorClassifier,
    ErrorKind,
    NetworkError,
    OperationFailedError,
    RemoteServiceError,
    Severity,
    ValidationError,
)
from .fallback import CacheEntry, CacheResult, CacheSource, FallbackCache, FallbackOptions
from .retry import RetryConfig, RetryExecutor, calculate_backoff, retry_with_backoff
from .timeout import ProbeTimeoutError, with_async_timeout, with_timeout

__all__ = [
    "ErrorClassifier",
    "ClassifiedError",
    "ErrorKind",
    "ErrorAction",
    "Severity",
    "AuthenticationError",
    "RemoteServiceError",
    "NetworkError",
    "ValidationError",
    "ConfigurationError",
    "OperationFailedError",
    "CircuitOpenError",
    "RetryExecutor",
    "RetryConfig",
    "calculate_backoff",
    "retry_with_backoff",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitState",
    "with_timeout",
    "with_async_timeout",
    "ProbeTimeoutError",
    "FallbackCache",
    "FallbackOptions",
    "CacheEntry",
    "CacheResult",
    "CacheSource",
]
