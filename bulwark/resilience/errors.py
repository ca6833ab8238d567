"""Error taxonomy and classification for outbound calls.

Provides:
- Typed exceptions that operations raise for known failure categories
- ClassifiedError, the immutable description produced at every failure boundary
- ErrorClassifier with a bounded history for pattern analysis
"""

import asyncio
import logging
import threading
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    """Failure categories."""

    AUTHENTICATION = "AUTHENTICATION"
    REMOTE_SERVICE = "REMOTE_SERVICE"  # The proxied backend
    NETWORK = "NETWORK"
    VALIDATION = "VALIDATION"
    CONFIGURATION = "CONFIGURATION"
    UNKNOWN = "UNKNOWN"


class Severity(str, Enum):
    """Error severity levels."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorAction(str, Enum):
    """Recommended follow-up for the caller."""

    REDIRECT_TO_LOGIN = "REDIRECT_TO_LOGIN"
    RETRY_WITH_BACKOFF = "RETRY_WITH_BACKOFF"
    RETRY_ONCE = "RETRY_ONCE"
    WAIT_AND_RETRY = "WAIT_AND_RETRY"
    SHOW_SETUP_GUIDE = "SHOW_SETUP_GUIDE"
    CHECK_CONFIGURATION = "CHECK_CONFIGURATION"
    CONTACT_SUPPORT = "CONTACT_SUPPORT"
    NONE = "NONE"


# =============================================================================
# Exceptions raised by operations
# =============================================================================


class BulwarkError(Exception):
    """Base class for Bulwark errors."""

    def __init__(self, message: str = "", details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class AuthenticationError(BulwarkError):
    """Credentials rejected by the remote service."""

    def __init__(self, message: str = "", status_code: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.status_code = status_code


class RemoteServiceError(BulwarkError):
    """The proxied backend answered with an error status."""

    def __init__(
        self,
        message: str = "",
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.status_code = status_code
        self.retry_after = retry_after


class NetworkError(BulwarkError):
    """Transport failure before a response was received."""

    TIMEOUT = "ETIMEDOUT"
    UNREACHABLE = "EUNREACHABLE"

    def __init__(self, message: str = "", code: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.code = code


class ValidationError(BulwarkError):
    """Input rejected before or by the remote service."""

    def __init__(self, message: str = "", fields: Optional[list[str]] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.fields = fields or []


class ConfigurationError(BulwarkError):
    """Local configuration is missing or invalid."""

    pass


class CircuitOpenError(BulwarkError):
    """Raised when a circuit breaker rejects a call."""

    def __init__(self, message: str = "", retry_after: float = 0.0):
        super().__init__(message)
        self.retry_after = retry_after


# =============================================================================
# Classification
# =============================================================================


@dataclass(frozen=True)
class ClassifiedError:
    """Normalized description of a failure."""

    kind: ErrorKind
    message: str
    user_message: str
    severity: Severity
    retryable: bool
    raw_details: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    action: ErrorAction = ErrorAction.NONE
    error_code: str = "UNKNOWN_ERROR"
    suggestions: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        """Serialize for logging and reporting."""
        data = asdict(self)
        data["kind"] = self.kind.value
        data["severity"] = self.severity.value
        data["action"] = self.action.value
        data["timestamp"] = self.timestamp.isoformat()
        data["suggestions"] = list(self.suggestions)
        return data


class OperationFailedError(BulwarkError):
    """Terminal failure of a guarded operation.

    Carries the ClassifiedError; the original exception is chained as
    ``__cause__``.
    """

    def __init__(self, error: ClassifiedError, attempts: int = 1):
        super().__init__(error.message, details=error.raw_details)
        self.error = error
        self.attempts = attempts

    @property
    def kind(self) -> ErrorKind:
        return self.error.kind

    @property
    def retryable(self) -> bool:
        return self.error.retryable


@dataclass
class _Rule:
    kind: ErrorKind
    severity: Severity
    retryable: bool
    action: ErrorAction
    error_code: str
    user_message: str
    suggestions: tuple[str, ...] = ()


_AUTH_EXPIRED = _Rule(
    ErrorKind.AUTHENTICATION,
    Severity.HIGH,
    False,
    ErrorAction.REDIRECT_TO_LOGIN,
    "AUTH_401",
    "Your session has expired or is invalid. Please log in again.",
    ("Log in again with your credentials", "Check if your session has expired"),
)

_AUTH_FORBIDDEN = _Rule(
    ErrorKind.AUTHENTICATION,
    Severity.MEDIUM,
    False,
    ErrorAction.CONTACT_SUPPORT,
    "AUTH_403",
    "You do not have permission to perform this action.",
    ("Contact your administrator for access", "Verify you have the required permissions"),
)

_AUTH_FAILED = _Rule(
    ErrorKind.AUTHENTICATION,
    Severity.HIGH,
    False,
    ErrorAction.REDIRECT_TO_LOGIN,
    "AUTH_FAILED",
    "Authentication failed. Please check your credentials and try again.",
    ("Verify your username and password", "Ensure you have the correct API credentials"),
)

_NET_TIMEOUT = _Rule(
    ErrorKind.NETWORK,
    Severity.MEDIUM,
    True,
    ErrorAction.RETRY_WITH_BACKOFF,
    "NET_TIMEOUT",
    "The connection timed out. Please try again.",
    ("Check your internet connection", "Try again in a few moments"),
)

_NET_UNREACHABLE = _Rule(
    ErrorKind.NETWORK,
    Severity.HIGH,
    True,
    ErrorAction.CHECK_CONFIGURATION,
    "NET_UNREACHABLE",
    "Unable to reach the remote service. Please check the service configuration.",
    ("Verify the service URL in your configuration", "Check if the service is online"),
)

_NET_ERROR = _Rule(
    ErrorKind.NETWORK,
    Severity.MEDIUM,
    True,
    ErrorAction.RETRY_WITH_BACKOFF,
    "NET_ERROR",
    "Connection failed. Please check your connection and try again.",
    ("Check your internet connection", "Try again in a few moments"),
)

_VALIDATION = _Rule(
    ErrorKind.VALIDATION,
    Severity.LOW,
    False,
    ErrorAction.NONE,
    "VALIDATION_ERROR",
    "The provided data is invalid. Please check your input.",
    ("Ensure all required fields are filled", "Check data format requirements"),
)

_CONFIGURATION = _Rule(
    ErrorKind.CONFIGURATION,
    Severity.HIGH,
    False,
    ErrorAction.CHECK_CONFIGURATION,
    "CONFIGURATION_ERROR",
    "Configuration error detected. Please contact your administrator.",
    ("Review the service configuration",),
)

_CIRCUIT_OPEN = _Rule(
    ErrorKind.REMOTE_SERVICE,
    Severity.HIGH,
    False,
    ErrorAction.WAIT_AND_RETRY,
    "CIRCUIT_OPEN",
    "The service is temporarily unavailable. Please try again in a few moments.",
    ("Wait a few minutes and try again",),
)

_UNKNOWN = _Rule(
    ErrorKind.UNKNOWN,
    Severity.MEDIUM,
    False,
    ErrorAction.CONTACT_SUPPORT,
    "UNKNOWN_ERROR",
    "An unexpected error occurred. Please try again or contact support if the problem persists.",
    ("Try again in a few moments", "Contact support if the issue persists"),
)


def _remote_rule(status_code: Optional[int], retry_after: Optional[float]) -> _Rule:
    """Pick the rule for a remote service status code."""
    if status_code == 404:
        return _Rule(
            ErrorKind.REMOTE_SERVICE,
            Severity.MEDIUM,
            False,
            ErrorAction.SHOW_SETUP_GUIDE,
            "API_404",
            "The requested data was not found. This might be a new user or missing configuration.",
            ("Verify the resource ID is correct", "Complete initial setup if this is a new configuration"),
        )
    if status_code in (400, 422):
        return _Rule(
            ErrorKind.REMOTE_SERVICE,
            Severity.MEDIUM,
            False,
            ErrorAction.NONE,
            f"API_{status_code}",
            "The request was rejected by the service.",
            ("Check the request parameters",),
        )
    if status_code == 429:
        wait = f"{retry_after:g} seconds" if retry_after else "a moment"
        return _Rule(
            ErrorKind.REMOTE_SERVICE,
            Severity.LOW,
            True,
            ErrorAction.WAIT_AND_RETRY,
            "API_429",
            f"Too many requests. Please wait {wait} and try again.",
            (f"Wait {wait} before retrying", "Reduce the frequency of your requests"),
        )
    if status_code == 504:
        return _Rule(
            ErrorKind.REMOTE_SERVICE,
            Severity.MEDIUM,
            True,
            ErrorAction.RETRY_ONCE,
            "API_504",
            "The request timed out. Please try again.",
            ("Try again with a smaller data set",),
        )
    if status_code is not None and status_code >= 500:
        return _Rule(
            ErrorKind.REMOTE_SERVICE,
            Severity.HIGH,
            True,
            ErrorAction.RETRY_WITH_BACKOFF,
            f"API_{status_code}",
            "The service is temporarily unavailable. Please try again in a few moments.",
            ("Wait a few moments and try again", "Contact support if the issue persists"),
        )
    return _Rule(
        ErrorKind.REMOTE_SERVICE,
        Severity.MEDIUM,
        True,
        ErrorAction.RETRY_ONCE,
        "API_UNKNOWN",
        "An error occurred while processing your request.",
        ("Try again", "Check your request parameters"),
    )


def _rule_for(exc: BaseException) -> _Rule:
    """Map an exception onto its classification rule."""
    if isinstance(exc, CircuitOpenError):
        return _CIRCUIT_OPEN

    if isinstance(exc, AuthenticationError):
        if exc.status_code == 401:
            return _AUTH_EXPIRED
        if exc.status_code == 403:
            return _AUTH_FORBIDDEN
        return _AUTH_FAILED

    if isinstance(exc, RemoteServiceError):
        return _remote_rule(exc.status_code, exc.retry_after)

    if isinstance(exc, NetworkError):
        if exc.code == NetworkError.TIMEOUT:
            return _NET_TIMEOUT
        if exc.code == NetworkError.UNREACHABLE:
            return _NET_UNREACHABLE
        return _NET_ERROR

    if isinstance(exc, ValidationError):
        return _VALIDATION

    if isinstance(exc, ConfigurationError):
        return _CONFIGURATION

    # Standard library transport failures
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return _NET_TIMEOUT
    if isinstance(exc, (ConnectionRefusedError, ConnectionAbortedError)):
        return _NET_UNREACHABLE
    if isinstance(exc, (ConnectionError, OSError)):
        return _NET_ERROR

    return _UNKNOWN


@dataclass
class _HistoryEntry:
    error: ClassifiedError
    recorded_at: float
    context: Optional[dict[str, Any]] = None


class ErrorClassifier:
    """Normalizes failures and keeps a short history for pattern analysis.

    Usage:
        classifier = ErrorClassifier()
        try:
            await call_backend()
        except Exception as e:
            error = classifier.classify(e, {"operation": "fetch_player"})
            classifier.log(error)
    """

    def __init__(
        self,
        history_size: int = 50,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize classifier.

        Args:
            history_size: Maximum number of errors kept for analysis
            clock: Time source returning epoch seconds
        """
        self._clock = clock
        self._history: deque[_HistoryEntry] = deque(maxlen=history_size)
        self._lock = threading.Lock()

    def classify(
        self,
        exc: BaseException,
        context: Optional[dict[str, Any]] = None,
        record: bool = True,
    ) -> ClassifiedError:
        """Classify a failure.

        Args:
            exc: The raised exception
            context: Free-form diagnostic metadata
            record: Append the result to the history

        Returns:
            ClassifiedError describing the failure
        """
        if isinstance(exc, OperationFailedError):
            error = exc.error
        else:
            rule = _rule_for(exc)
            details: dict[str, Any] = {"exception": type(exc).__name__}
            if isinstance(exc, BulwarkError):
                details.update(exc.details)
            for attr in ("status_code", "code", "retry_after", "fields"):
                value = getattr(exc, attr, None)
                if value:
                    details[attr] = value

            message = str(exc) or rule.user_message
            user_message = rule.user_message
            if isinstance(exc, ValidationError) and exc.fields:
                user_message = f"Validation failed for: {', '.join(exc.fields)}."

            error = ClassifiedError(
                kind=rule.kind,
                message=message,
                user_message=user_message,
                severity=rule.severity,
                retryable=rule.retryable,
                raw_details=details,
                timestamp=datetime.fromtimestamp(self._clock(), tz=timezone.utc),
                action=rule.action,
                error_code=rule.error_code,
                suggestions=rule.suggestions,
            )

        if record:
            self.record(error, context)
        return error

    def record(self, error: ClassifiedError, context: Optional[dict[str, Any]] = None) -> None:
        """Append an error to the history."""
        with self._lock:
            self._history.append(_HistoryEntry(error, self._clock(), context))

    def history(self) -> list[tuple[ClassifiedError, Optional[dict[str, Any]]]]:
        """Get recorded errors, oldest first."""
        with self._lock:
            return [(entry.error, entry.context) for entry in self._history]

    def clear_history(self) -> None:
        """Clear the error history."""
        with self._lock:
            self._history.clear()

    def analyze_patterns(self, window: float = 300.0) -> dict[str, Any]:
        """Summarize the history to spot recurring issues.

        Args:
            window: Seconds that count as "recent"

        Returns:
            Dict with total_errors, errors_by_kind, recent_errors, suggestions
        """
        now = self._clock()
        with self._lock:
            entries = list(self._history)

        errors_by_kind: dict[str, int] = {}
        for entry in entries:
            kind = entry.error.kind.value
            errors_by_kind[kind] = errors_by_kind.get(kind, 0) + 1

        recent = sum(1 for entry in entries if now - entry.recorded_at <= window)

        suggestions = []
        if errors_by_kind.get(ErrorKind.NETWORK.value, 0) > 5:
            suggestions.append("Multiple network errors detected. Check connectivity to the remote service.")
        if errors_by_kind.get(ErrorKind.AUTHENTICATION.value, 0) > 3:
            suggestions.append("Repeated authentication failures. Verify your credentials.")
        if recent > 10:
            suggestions.append("High error rate detected. The service may be experiencing issues.")

        return {
            "total_errors": len(entries),
            "errors_by_kind": errors_by_kind,
            "recent_errors": recent,
            "suggestions": suggestions,
        }

    def log(self, error: ClassifiedError, context: Optional[dict[str, Any]] = None) -> None:
        """Log an error at the level matching its kind."""
        extra = f" context={context}" if context else ""
        text = f"{error.kind.value} [{error.error_code}] {error.message}{extra}"

        if error.kind == ErrorKind.VALIDATION:
            logger.info(text)
        elif error.kind == ErrorKind.AUTHENTICATION or error.retryable:
            logger.warning(text)
        else:
            logger.error(text)
