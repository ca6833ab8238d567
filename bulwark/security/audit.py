"""Security audit trail.

Every block and policy violation is kept in a bounded in-memory trail and
written to the ``bulwark.security.audit`` logger.
"""

import logging
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

from ..resilience.errors import Severity

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("bulwark.security.audit")


class AuditAction(str, Enum):
    """Kinds of security events."""

    IP_BLOCKED = "IP_BLOCKED"
    IP_UNBLOCKED = "IP_UNBLOCKED"
    RATE_LIMIT_VIOLATION = "SECURITY_VIOLATION_RATE_LIMIT"
    DDOS_VIOLATION = "SECURITY_VIOLATION_DDOS"
    XSS_VIOLATION = "SECURITY_VIOLATION_XSS"
    SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"

    @property
    def is_violation(self) -> bool:
        return self in (
            AuditAction.IP_BLOCKED,
            AuditAction.RATE_LIMIT_VIOLATION,
            AuditAction.DDOS_VIOLATION,
            AuditAction.XSS_VIOLATION,
            AuditAction.SUSPICIOUS_ACTIVITY,
        )


_LOG_LEVELS = {
    Severity.LOW: logging.INFO,
    Severity.MEDIUM: logging.WARNING,
    Severity.HIGH: logging.WARNING,
    Severity.CRITICAL: logging.ERROR,
}


@dataclass
class SecurityEvent:
    """A recorded security event."""

    id: str
    action: AuditAction
    severity: Severity
    identifier: str
    timestamp: float
    details: dict[str, Any] = field(default_factory=dict)
    user_agent: Optional[str] = None
    url: Optional[str] = None
    method: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "action": self.action.value,
            "severity": self.severity.value,
            "identifier": self.identifier,
            "userAgent": self.user_agent,
            "url": self.url,
            "method": self.method,
            "details": self.details,
            "timestamp": datetime.fromtimestamp(self.timestamp, tz=timezone.utc).isoformat(),
        }


@dataclass
class AuditMetrics:
    """Audit statistics over a time window."""

    total_events: int
    events_by_action: dict[str, int]
    events_by_severity: dict[str, int]
    security_violations: int
    recent_events: list[SecurityEvent]


class AuditTrail:
    """Bounded log of security events.

    Usage:
        trail = AuditTrail()
        trail.record(AuditAction.IP_BLOCKED, Severity.HIGH, "10.0.0.1", {"reason": "abuse"})
        for event in trail.violations(limit=20):
            ...
    """

    def __init__(self, max_size: int = 10000, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._events: deque[SecurityEvent] = deque(maxlen=max_size)
        self._callbacks: list[Callable[[SecurityEvent], None]] = []
        self._lock = threading.Lock()

    def record(
        self,
        action: AuditAction,
        severity: Severity,
        identifier: str,
        details: Optional[dict[str, Any]] = None,
        user_agent: Optional[str] = None,
        url: Optional[str] = None,
        method: Optional[str] = None,
    ) -> SecurityEvent:
        """Record an event and write it to the audit log."""
        now = self._clock()
        event = SecurityEvent(
            id=f"audit_{int(now * 1000)}_{uuid.uuid4().hex[:9]}",
            action=action,
            severity=severity,
            identifier=identifier,
            timestamp=now,
            details=dict(details or {}),
            user_agent=user_agent,
            url=url,
            method=method,
        )

        with self._lock:
            self._events.append(event)
            callbacks = list(self._callbacks)

        audit_logger.log(
            _LOG_LEVELS[severity],
            f"{action.value} identifier={identifier} severity={severity.value} details={event.details}",
        )

        for callback in callbacks:
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Error in audit callback: {e}")

        return event

    def recent(self, limit: int = 50) -> list[SecurityEvent]:
        with self._lock:
            return list(self._events)[-limit:]

    def violations(self, limit: int = 50) -> list[SecurityEvent]:
        """Most recent blocks, violations and suspicious activity."""
        with self._lock:
            matching = [e for e in self._events if e.action.is_violation]
        return matching[-limit:]

    def events_for(self, identifier: str, limit: int = 50) -> list[SecurityEvent]:
        with self._lock:
            matching = [e for e in self._events if e.identifier == identifier]
        return matching[-limit:]

    def metrics(self, window: Optional[float] = None) -> AuditMetrics:
        """Summarize events from the last ``window`` seconds (all if None)."""
        cutoff = self._clock() - window if window else float("-inf")
        with self._lock:
            events = [e for e in self._events if e.timestamp >= cutoff]

        by_action: dict[str, int] = {}
        by_severity: dict[str, int] = {}
        for event in events:
            by_action[event.action.value] = by_action.get(event.action.value, 0) + 1
            by_severity[event.severity.value] = by_severity.get(event.severity.value, 0) + 1

        return AuditMetrics(
            total_events=len(events),
            events_by_action=by_action,
            events_by_severity=by_severity,
            security_violations=sum(1 for e in events if e.action.is_violation),
            recent_events=events[-20:],
        )

    def on_event(self, callback: Callable[[SecurityEvent], None]) -> Callable[[], None]:
        """Subscribe to new events. Returns an unsubscribe function."""
        with self._lock:
            self._callbacks.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return unsubscribe

    def clear(self) -> None:
        with self._lock:
            self._events.clear()
