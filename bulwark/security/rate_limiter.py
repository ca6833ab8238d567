"""Adaptive rate limiting and abuse detection for inbound requests.

Provides:
- Fixed-window request counting per client identifier
- Escalating blocks for repeat offenders (3 violations: 1h, 5 violations: 24h)
- Heuristic detection of bot and flood traffic
- A periodic cleanup sweep for expired state
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

from ..resilience.errors import Severity
from .audit import AuditAction, AuditTrail

logger = logging.getLogger(__name__)

HOUR = 60 * 60.0
DAY = 24 * HOUR

SOFT_BLOCK_VIOLATIONS = 3  # 1 hour block
HARD_BLOCK_VIOLATIONS = 5  # 24 hour block
SUSPICION_RESET = HOUR
SUSPICION_MIN_COUNT = 100
SUSPICION_FLOOD_COUNT = 1000
SUSPICION_RETENTION = DAY
MIN_USER_AGENT_LENGTH = 10


class ViolationType(str, Enum):
    """Why a request was denied."""

    RATE_LIMIT = "rate_limit"
    DDOS = "ddos"
    XSS = "xss"
    MANUAL_BLOCK = "manual_block"


_AUDIT_ACTIONS = {
    ViolationType.RATE_LIMIT: AuditAction.RATE_LIMIT_VIOLATION,
    ViolationType.DDOS: AuditAction.DDOS_VIOLATION,
    ViolationType.XSS: AuditAction.XSS_VIOLATION,
    ViolationType.MANUAL_BLOCK: AuditAction.IP_BLOCKED,
}


@dataclass
class RateRecord:
    """Request count for the current window of one identifier."""

    window_count: int
    window_reset_at: float
    violation_count: int = 0


@dataclass
class BlockEntry:
    """An active or expired block."""

    blocked_until: float
    reason: str

    def is_active(self, now: float) -> bool:
        return now < self.blocked_until


@dataclass
class SuspicionRecord:
    """Rolling request count used by the abuse heuristics."""

    count: int
    first_seen_at: float


@dataclass
class SecurityViolation:
    """A policy decision against a client."""

    type: ViolationType
    severity: Severity
    identifier: str
    timestamp: float
    user_agent: Optional[str] = None
    url: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "identifier": self.identifier,
            "userAgent": self.user_agent,
            "url": self.url,
            "details": self.details,
            "timestamp": datetime.fromtimestamp(self.timestamp, tz=timezone.utc).isoformat(),
        }


@dataclass
class RateDecision:
    """Result of a rate limit check."""

    allowed: bool
    violation: Optional[SecurityViolation] = None


class AbuseGuard:
    """Per-identifier rate limiter with escalating blocks.

    Usage:
        guard = AbuseGuard(audit=AuditTrail())
        decision = guard.is_allowed(client_ip, max_requests=100, window=60)
        if not decision.allowed:
            # respond 429
            pass
    """

    def __init__(
        self,
        audit: Optional[AuditTrail] = None,
        cleanup_interval: float = 300.0,
        clock: Callable[[], float] = time.time,
        metrics: Optional[Any] = None,
    ):
        """Initialize abuse guard.

        Args:
            audit: Trail receiving block and violation events
            cleanup_interval: Seconds between cleanup sweeps
            clock: Time source returning epoch seconds
            metrics: Optional MetricsRegistry
        """
        self.audit = audit or AuditTrail(clock=clock)
        self.cleanup_interval = cleanup_interval
        self._clock = clock
        self._metrics = metrics

        self._records: dict[str, RateRecord] = {}
        self._blocks: dict[str, BlockEntry] = {}
        self._suspicion: dict[str, SuspicionRecord] = {}
        self._lock = threading.Lock()
        self._cleanup_task: Optional[asyncio.Task] = None

    def is_allowed(self, identifier: str, max_requests: int, window: float) -> RateDecision:
        """Count a request against the identifier's window.

        Args:
            identifier: Client identifier (usually an IP address)
            max_requests: Requests allowed per window
            window: Window length in seconds

        Returns:
            RateDecision, carrying a violation when denied
        """
        new_block: Optional[tuple[str, float]] = None

        with self._lock:
            now = self._clock()
            block = self._blocks.get(identifier)

            if block is not None and block.is_active(now):
                decision = RateDecision(
                    allowed=False,
                    violation=SecurityViolation(
                        type=ViolationType.DDOS,
                        severity=Severity.CRITICAL,
                        identifier=identifier,
                        timestamp=now,
                        details={"reason": block.reason, "blockedUntil": block.blocked_until},
                    ),
                )
                self._count_denial(ViolationType.DDOS)
                return decision

            if block is not None:
                del self._blocks[identifier]

            record = self._records.get(identifier)
            if record is None or now > record.window_reset_at:
                self._records[identifier] = RateRecord(
                    window_count=1,
                    window_reset_at=now + window,
                    violation_count=record.violation_count if record else 0,
                )
                return RateDecision(allowed=True)

            if record.window_count < max_requests:
                record.window_count += 1
                return RateDecision(allowed=True)

            record.violation_count += 1
            violations = record.violation_count
            if violations >= HARD_BLOCK_VIOLATIONS:
                new_block = ("Repeated rate limit violations", DAY)
            elif violations >= SOFT_BLOCK_VIOLATIONS:
                new_block = ("Multiple rate limit violations", HOUR)
            if new_block is not None:
                self._blocks[identifier] = BlockEntry(now + new_block[1], new_block[0])

        if new_block is not None:
            self._after_block(identifier, *new_block)

        logger.info(f"Rate limit exceeded for {identifier} (violation {violations})")
        self._count_denial(ViolationType.RATE_LIMIT)
        return RateDecision(
            allowed=False,
            violation=SecurityViolation(
                type=ViolationType.RATE_LIMIT,
                severity=Severity.HIGH if violations >= SOFT_BLOCK_VIOLATIONS else Severity.MEDIUM,
                identifier=identifier,
                timestamp=now,
                details={"violations": violations, "maxRequests": max_requests, "window": window},
            ),
        )

    def detect_suspicious_activity(self, identifier: str, user_agent: Optional[str] = None) -> bool:
        """Track traffic volume and flag flood or bot patterns.

        An identifier is suspicious once it has sent more than 100 requests
        since it was first seen (the count restarts an hour after first
        sight) and either exceeds 1000 requests, has no user agent, has a
        user agent containing "bot", or one shorter than 10 characters.
        Suspicious identifiers are blocked for an hour.

        Returns:
            True if the identifier was flagged and blocked
        """
        with self._lock:
            now = self._clock()
            activity = self._suspicion.get(identifier)

            if activity is None or now - activity.first_seen_at > SUSPICION_RESET:
                self._suspicion[identifier] = SuspicionRecord(count=1, first_seen_at=now)
                return False

            activity.count += 1
            heuristic_fired = (
                activity.count > SUSPICION_FLOOD_COUNT
                or not user_agent
                or "bot" in user_agent.lower()
                or len(user_agent) < MIN_USER_AGENT_LENGTH
            )
            if not (heuristic_fired and activity.count > SUSPICION_MIN_COUNT):
                return False

            reason = "Suspicious activity detected"
            self._blocks[identifier] = BlockEntry(now + HOUR, reason)

        logger.warning(f"Suspicious activity from {identifier} (user agent: {user_agent!r})")
        self._after_block(identifier, reason, HOUR)
        self._count_denial(ViolationType.DDOS)
        return True

    def block_identifier(self, identifier: str, reason: str, duration: float) -> BlockEntry:
        """Block an identifier, replacing any existing block.

        Args:
            identifier: Client identifier
            reason: Reason recorded with the block
            duration: Block length in seconds
        """
        with self._lock:
            entry = BlockEntry(self._clock() + duration, reason)
            self._blocks[identifier] = entry
        self._after_block(identifier, reason, duration)
        return replace(entry)

    def unblock(self, identifier: str) -> bool:
        """Remove a block. Returns False if the identifier was not blocked."""
        with self._lock:
            removed = self._blocks.pop(identifier, None)

        if removed is None:
            return False

        self.audit.record(AuditAction.IP_UNBLOCKED, Severity.LOW, identifier, {"reason": removed.reason})
        self._update_blocked_gauge()
        return True

    def is_blocked(self, identifier: str) -> bool:
        with self._lock:
            block = self._blocks.get(identifier)
            return block is not None and block.is_active(self._clock())

    def get_blocked_identifiers(self) -> dict[str, BlockEntry]:
        """Active blocks keyed by identifier."""
        with self._lock:
            now = self._clock()
            return {key: replace(block) for key, block in self._blocks.items() if block.is_active(now)}

    def get_rate_record(self, identifier: str) -> Optional[RateRecord]:
        with self._lock:
            record = self._records.get(identifier)
            return replace(record) if record else None

    def report_violation(
        self,
        violation: SecurityViolation,
        method: Optional[str] = None,
    ) -> None:
        """Write a violation to the audit trail."""
        self.audit.record(
            _AUDIT_ACTIONS[violation.type],
            violation.severity,
            violation.identifier,
            violation.details,
            user_agent=violation.user_agent,
            url=violation.url,
            method=method,
        )

    def cleanup(self) -> dict[str, int]:
        """Purge elapsed windows, expired blocks and stale suspicion records.

        Returns:
            Number of removed entries per map
        """
        with self._lock:
            now = self._clock()
            expired_records = [k for k, r in self._records.items() if now > r.window_reset_at]
            expired_blocks = [k for k, b in self._blocks.items() if not b.is_active(now)]
            stale = [k for k, s in self._suspicion.items() if now - s.first_seen_at > SUSPICION_RETENTION]

            for key in expired_records:
                del self._records[key]
            for key in expired_blocks:
                del self._blocks[key]
            for key in stale:
                del self._suspicion[key]

        removed = {"records": len(expired_records), "blocks": len(expired_blocks), "suspicion": len(stale)}
        if any(removed.values()):
            logger.debug(f"Abuse guard cleanup removed {removed}")
        self._update_blocked_gauge()
        return removed

    @property
    def is_cleaning(self) -> bool:
        return self._cleanup_task is not None and not self._cleanup_task.done()

    def start_cleanup(self) -> None:
        """Start the periodic cleanup sweep. No-op if already running."""
        if self.is_cleaning:
            return
        self._cleanup_task = asyncio.get_running_loop().create_task(self._cleanup_loop())

    async def stop_cleanup(self) -> None:
        task, self._cleanup_task = self._cleanup_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval)
            try:
                self.cleanup()
            except Exception as e:
                logger.error(f"Abuse guard cleanup error: {e}")

    def _after_block(self, identifier: str, reason: str, duration: float) -> None:
        self.audit.record(
            AuditAction.IP_BLOCKED,
            Severity.HIGH,
            identifier,
            {"reason": reason, "duration": duration},
        )
        self._update_blocked_gauge()

    def _count_denial(self, violation_type: ViolationType) -> None:
        if self._metrics is not None:
            self._metrics.rate_limit_denials.labels(type=violation_type.value).inc()

    def _update_blocked_gauge(self) -> None:
        if self._metrics is not None:
            self._metrics.blocked_identifiers.set(len(self.get_blocked_identifiers()))
