"""Error log backing the error reporting endpoint.

Keeps a bounded in-memory log of classified errors and derives metrics
(counts by kind and severity, errors per minute) over a time window.
"""

import logging
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from ..resilience.errors import ClassifiedError, ErrorClassifier, ErrorKind, Severity

logger = logging.getLogger(__name__)

_SEVERITY_BY_KIND = {
    ErrorKind.AUTHENTICATION: Severity.HIGH,
    ErrorKind.REMOTE_SERVICE: Severity.MEDIUM,
    ErrorKind.CONFIGURATION: Severity.HIGH,
    ErrorKind.VALIDATION: Severity.LOW,
    ErrorKind.NETWORK: Severity.MEDIUM,
    ErrorKind.UNKNOWN: Severity.MEDIUM,
}

_USER_MESSAGE_BY_KIND = {
    ErrorKind.AUTHENTICATION: "Authentication failed. Please check your credentials and try again.",
    ErrorKind.REMOTE_SERVICE: "Service temporarily unavailable. Please try again in a moment.",
    ErrorKind.CONFIGURATION: "Configuration error detected. Please contact your administrator.",
    ErrorKind.VALIDATION: "Invalid input provided. Please check your data and try again.",
    ErrorKind.NETWORK: "Network connection issue. Please check your internet connection.",
    ErrorKind.UNKNOWN: "An unexpected error occurred. Please try again.",
}

_RETRYABLE_KINDS = (ErrorKind.NETWORK, ErrorKind.REMOTE_SERVICE)


@dataclass
class ErrorLogEntry:
    """A logged error."""

    id: str
    kind: ErrorKind
    severity: Severity
    message: str
    user_message: str
    retryable: bool
    timestamp: float
    details: dict[str, Any] = field(default_factory=dict)
    context: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "severity": self.severity.value,
            "message": self.message,
            "userMessage": self.user_message,
            "retryable": self.retryable,
            "details": self.details,
            "context": self.context,
            "timestamp": datetime.fromtimestamp(self.timestamp, tz=timezone.utc).isoformat(),
        }


@dataclass
class ErrorMetrics:
    """Error statistics over a time window."""

    total_errors: int
    errors_by_kind: dict[str, int]
    errors_by_severity: dict[str, int]
    recent_errors: list[ErrorLogEntry]
    error_rate: float  # errors per minute

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalErrors": self.total_errors,
            "errorsByKind": self.errors_by_kind,
            "errorsBySeverity": self.errors_by_severity,
            "recentErrors": [entry.to_dict() for entry in self.recent_errors],
            "errorRate": self.error_rate,
        }


class ErrorLog:
    """Bounded error log with subscribers.

    Usage:
        error_log = ErrorLog()
        error_id = error_log.log_custom_error(ErrorKind.NETWORK, "Backend unreachable")
        metrics = error_log.get_error_metrics(window=3600)
    """

    def __init__(
        self,
        max_size: int = 1000,
        classifier: Optional[ErrorClassifier] = None,
        clock: Callable[[], float] = time.time,
        metrics: Optional[Any] = None,
    ):
        """Initialize error log.

        Args:
            max_size: Maximum number of entries kept
            classifier: Classifier for log_exception
            clock: Time source returning epoch seconds
            metrics: Optional MetricsRegistry
        """
        self.classifier = classifier or ErrorClassifier()
        self._clock = clock
        self._metrics = metrics
        self._entries: deque[ErrorLogEntry] = deque(maxlen=max_size)
        self._callbacks: list[Callable[[ErrorLogEntry], None]] = []
        self._lock = threading.Lock()

    def log_error(self, error: ClassifiedError, context: Optional[dict[str, Any]] = None) -> str:
        """Log a classified error.

        Returns:
            Generated error ID
        """
        entry = ErrorLogEntry(
            id=self._generate_id(),
            kind=error.kind,
            severity=error.severity,
            message=error.message,
            user_message=error.user_message,
            retryable=error.retryable,
            timestamp=self._clock(),
            details=dict(error.raw_details),
            context=dict(context or {}),
        )
        self._add(entry)
        return entry.id

    def log_custom_error(
        self,
        kind: ErrorKind,
        message: str,
        details: Optional[dict[str, Any]] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> str:
        """Log an error reported by a client or component.

        Returns:
            Generated error ID
        """
        entry = ErrorLogEntry(
            id=self._generate_id(),
            kind=kind,
            severity=_SEVERITY_BY_KIND[kind],
            message=message,
            user_message=_USER_MESSAGE_BY_KIND[kind],
            retryable=kind in _RETRYABLE_KINDS,
            timestamp=self._clock(),
            details=dict(details or {}),
            context=dict(context or {}),
        )
        self._add(entry)
        return entry.id

    def log_exception(self, exc: BaseException, context: Optional[dict[str, Any]] = None) -> str:
        """Classify and log an exception.

        Returns:
            Generated error ID
        """
        return self.log_error(self.classifier.classify(exc, context), context)

    def _add(self, entry: ErrorLogEntry) -> None:
        with self._lock:
            self._entries.append(entry)
            callbacks = list(self._callbacks)

        if self._metrics is not None:
            self._metrics.errors_reported.labels(
                kind=entry.kind.value, severity=entry.severity.value
            ).inc()

        if entry.severity in (Severity.HIGH, Severity.CRITICAL):
            logger.error(f"High severity error logged: {entry.id} {entry.kind.value} {entry.message}")

        for callback in callbacks:
            try:
                callback(entry)
            except Exception as e:
                logger.error(f"Error in error callback: {e}")

    def get_error_metrics(self, window: Optional[float] = None) -> ErrorMetrics:
        """Compute metrics over the last ``window`` seconds (all entries if None)."""
        cutoff = self._clock() - window if window else float("-inf")
        with self._lock:
            recent = [entry for entry in self._entries if entry.timestamp >= cutoff]

        by_kind: dict[str, int] = {}
        by_severity: dict[str, int] = {}
        for entry in recent:
            by_kind[entry.kind.value] = by_kind.get(entry.kind.value, 0) + 1
            by_severity[entry.severity.value] = by_severity.get(entry.severity.value, 0) + 1

        return ErrorMetrics(
            total_errors=len(recent),
            errors_by_kind=by_kind,
            errors_by_severity=by_severity,
            recent_errors=recent[-10:],
            error_rate=len(recent) / (window / 60) if window else 0.0,
        )

    def get_errors_by_kind(self, kind: ErrorKind, limit: int = 50) -> list[ErrorLogEntry]:
        with self._lock:
            matching = [entry for entry in self._entries if entry.kind == kind]
        return matching[-limit:]

    def get_recent_errors(self, limit: int = 50) -> list[ErrorLogEntry]:
        with self._lock:
            return list(self._entries)[-limit:]

    def on_error(self, callback: Callable[[ErrorLogEntry], None]) -> Callable[[], None]:
        """Subscribe to new entries.

        Returns:
            Function that removes the subscription
        """
        with self._lock:
            self._callbacks.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return unsubscribe

    def clear(self) -> None:
        """Clear the log."""
        with self._lock:
            self._entries.clear()

    def export(self) -> list[ErrorLogEntry]:
        """Copy of the full log, oldest first."""
        with self._lock:
            return list(self._entries)

    def _generate_id(self) -> str:
        return f"err_{int(self._clock() * 1000)}_{uuid.uuid4().hex[:9]}"
