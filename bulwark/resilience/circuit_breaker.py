"""Service-level circuit breaker for the remote backend.

Provides per-service circuit breakers with:
- Three states: CLOSED (normal), OPEN (failing), HALF_OPEN (testing)
- Configurable consecutive-failure threshold
- A single trial call after the reset timeout
"""

import asyncio
import functools
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .errors import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitOpenError",
    "CircuitState",
]


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"  # Normal operation
    OPEN = "OPEN"  # Service failing, reject requests
    HALF_OPEN = "HALF_OPEN"  # One trial call allowed

    @property
    def gauge_value(self) -> float:
        return {"CLOSED": 0.0, "HALF_OPEN": 1.0, "OPEN": 2.0}[self.value]


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""

    failure_threshold: int = 5  # Consecutive failures before opening
    reset_timeout: float = 60.0  # Seconds before allowing a trial
    on_open: Optional[Callable[[], None]] = None
    on_close: Optional[Callable[[], None]] = None
    on_half_open: Optional[Callable[[], None]] = None


class CircuitBreaker:
    """Circuit breaker for protecting remote service calls.

    While HALF_OPEN exactly one caller is admitted as the trial; every other
    caller is rejected with CircuitOpenError until the trial settles.

    Usage:
        breaker = CircuitBreaker("gamification_api")
        ranking = await breaker.call(lambda: client.get_ranking(leaderboard_id))

        # Or as a decorator:
        @breaker.protect
        async def get_player(player_id):
            ...
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.time,
        metrics: Optional[Any] = None,
    ):
        """Initialize circuit breaker.

        Args:
            name: Service name for logging
            config: Circuit breaker configuration
            clock: Time source returning seconds
            metrics: Optional MetricsRegistry
        """
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._metrics = metrics
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        """Get current state, applying the OPEN -> HALF_OPEN timeout."""
        with self._lock:
            hooks = self._check_state_transition()
            state = self._state
        self._fire(hooks)
        return state

    @property
    def consecutive_failures(self) -> int:
        with self._lock:
            return self._consecutive_failures

    @property
    def opened_at(self) -> Optional[float]:
        with self._lock:
            return self._opened_at

    @property
    def is_open(self) -> bool:
        """Check if circuit is open (blocking requests)."""
        return self.state == CircuitState.OPEN

    def retry_after(self) -> float:
        """Seconds until an OPEN circuit admits a trial call."""
        with self._lock:
            if self._state != CircuitState.OPEN or self._opened_at is None:
                return 0.0
            return max(0.0, self._opened_at + self.config.reset_timeout - self._clock())

    def _acquire(self) -> Optional[bool]:
        """Admit a call.

        Returns:
            None if rejected, True if admitted as the half-open trial,
            False if admitted normally
        """
        with self._lock:
            hooks = self._check_state_transition()

            if self._state == CircuitState.CLOSED:
                admitted: Optional[bool] = False
            elif self._state == CircuitState.OPEN:
                admitted = None
            elif self._trial_in_flight:
                admitted = None
            else:
                self._trial_in_flight = True
                admitted = True

        self._fire(hooks)
        return admitted

    def can_execute(self) -> bool:
        """Check if a request can be executed.

        In HALF_OPEN a True result claims the single trial slot.
        """
        return self._acquire() is not None

    def record_success(self) -> None:
        """Record a successful request."""
        self._on_success(trial=True)

    def record_failure(self) -> None:
        """Record a failed request."""
        self._on_failure(trial=True)

    def _on_success(self, trial: bool) -> None:
        with self._lock:
            hooks: list[Callable[[], None]] = []
            if self._state == CircuitState.HALF_OPEN and trial:
                hooks = self._transition_to_closed()
            elif self._state == CircuitState.CLOSED:
                self._consecutive_failures = 0
        self._fire(hooks)

    def _on_failure(self, trial: bool) -> None:
        with self._lock:
            hooks: list[Callable[[], None]] = []
            self._consecutive_failures += 1

            if self._state == CircuitState.HALF_OPEN and trial:
                # Failed trial goes straight back to open
                hooks = self._transition_to_open()
            elif self._state == CircuitState.CLOSED:
                if self._consecutive_failures >= self.config.failure_threshold:
                    hooks = self._transition_to_open()
        self._fire(hooks)

    def _release_trial(self) -> None:
        with self._lock:
            self._trial_in_flight = False

    def _check_state_transition(self) -> list[Callable[[], None]]:
        """Move OPEN to HALF_OPEN once the reset timeout has elapsed."""
        if self._state == CircuitState.OPEN and self._opened_at is not None:
            if self._clock() >= self._opened_at + self.config.reset_timeout:
                return self._transition_to_half_open()
        return []

    def _transition_to_open(self) -> list[Callable[[], None]]:
        logger.warning(
            f"Circuit breaker {self.name} OPENED after {self._consecutive_failures} consecutive failures"
        )
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._trial_in_flight = False
        self._observe_transition()
        return [self.config.on_open] if self.config.on_open else []

    def _transition_to_half_open(self) -> list[Callable[[], None]]:
        logger.info(f"Circuit breaker {self.name} entering HALF_OPEN for recovery test")
        self._state = CircuitState.HALF_OPEN
        self._trial_in_flight = False
        self._observe_transition()
        return [self.config.on_half_open] if self.config.on_half_open else []

    def _transition_to_closed(self) -> list[Callable[[], None]]:
        logger.info(f"Circuit breaker {self.name} CLOSED - service recovered")
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at = None
        self._trial_in_flight = False
        self._observe_transition()
        return [self.config.on_close] if self.config.on_close else []

    def _observe_transition(self) -> None:
        if self._metrics is not None:
            self._metrics.circuit_transitions.labels(breaker=self.name, state=self._state.value).inc()
            self._metrics.circuit_state.labels(breaker=self.name).set(self._state.gauge_value)

    def _fire(self, hooks: list[Callable[[], None]]) -> None:
        # Hooks run outside the lock so they may inspect the breaker
        for hook in hooks:
            try:
                hook()
            except Exception as e:
                logger.error(f"Circuit breaker {self.name} hook failed: {e}")

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run an operation through the breaker.

        Args:
            operation: Zero-argument callable returning an awaitable

        Returns:
            The operation's result

        Raises:
            CircuitOpenError: If the call is rejected (operation not invoked)
        """
        trial = self._acquire()
        if trial is None:
            raise CircuitOpenError(
                f"Circuit breaker {self.name} is OPEN",
                retry_after=self.retry_after(),
            )

        try:
            result = await operation()
        except asyncio.CancelledError:
            if trial:
                self._release_trial()
            raise
        except Exception:
            self._on_failure(trial)
            raise

        self._on_success(trial)
        return result

    def protect(self, func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        """Decorator to protect a coroutine function with the breaker.

        Args:
            func: Coroutine function to protect

        Returns:
            Protected function
        """

        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            return await self.call(lambda: func(*args, **kwargs))

        return wrapper

    def reset(self) -> None:
        """Manually reset the circuit breaker."""
        with self._lock:
            self._state = CircuitState.CLOSED
            self._consecutive_failures = 0
            self._opened_at = None
            self._trial_in_flight = False
            self._observe_transition()
        logger.info(f"Circuit breaker {self.name} manually reset")

    def get_status(self) -> dict[str, Any]:
        """Get circuit breaker status.

        Returns:
            Status dictionary
        """
        state = self.state
        with self._lock:
            return {
                "name": self.name,
                "state": state.value,
                "consecutive_failures": self._consecutive_failures,
                "opened_at": self._opened_at,
                "failure_threshold": self.config.failure_threshold,
                "reset_timeout": self.config.reset_timeout,
            }
