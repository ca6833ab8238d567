"""Tests for the security audit trail."""

import logging
from unittest.mock import Mock

from bulwark.resilience.errors import Severity
from bulwark.security.audit import AuditAction, AuditTrail


class TestAuditTrail:
    """Test recording and querying events."""

    def test_record(self, clock):
        """Test events carry an ID, timestamp and request metadata."""
        trail = AuditTrail(clock=clock)

        event = trail.record(
            AuditAction.RATE_LIMIT_VIOLATION,
            Severity.MEDIUM,
            "10.0.0.1",
            {"violations": 1},
            user_agent="Mozilla/5.0",
            url="/health",
            method="GET",
        )

        assert event.id.startswith(f"audit_{int(clock.now * 1000)}_")
        assert event.timestamp == clock.now
        assert trail.recent() == [event]

        data = event.to_dict()
        assert data["action"] == "SECURITY_VIOLATION_RATE_LIMIT"
        assert data["userAgent"] == "Mozilla/5.0"
        assert data["method"] == "GET"

    def test_bounded(self):
        """Test only the newest events are kept."""
        trail = AuditTrail(max_size=2)
        for i in range(3):
            trail.record(AuditAction.IP_BLOCKED, Severity.HIGH, f"10.0.0.{i}")

        assert [e.identifier for e in trail.recent()] == ["10.0.0.1", "10.0.0.2"]

    def test_violations_exclude_unblocks(self):
        """Test unblock events are not violations."""
        trail = AuditTrail()
        trail.record(AuditAction.IP_BLOCKED, Severity.HIGH, "a")
        trail.record(AuditAction.IP_UNBLOCKED, Severity.LOW, "a")
        trail.record(AuditAction.DDOS_VIOLATION, Severity.CRITICAL, "b")

        assert [e.action for e in trail.violations()] == [AuditAction.IP_BLOCKED, AuditAction.DDOS_VIOLATION]
        assert len(trail.events_for("a")) == 2

    def test_metrics_window(self, clock):
        """Test metrics cover only the requested window."""
        trail = AuditTrail(clock=clock)
        trail.record(AuditAction.IP_BLOCKED, Severity.HIGH, "a")
        clock.advance(7200)
        trail.record(AuditAction.IP_UNBLOCKED, Severity.LOW, "a")
        trail.record(AuditAction.SUSPICIOUS_ACTIVITY, Severity.HIGH, "b")

        recent = trail.metrics(window=3600)
        assert recent.total_events == 2
        assert recent.events_by_action == {"IP_UNBLOCKED": 1, "SUSPICIOUS_ACTIVITY": 1}
        assert recent.events_by_severity == {"low": 1, "high": 1}
        assert recent.security_violations == 1

        assert trail.metrics().total_events == 3

    def test_log_level_follows_severity(self, caplog):
        """Test critical events log at error and low ones at info."""
        trail = AuditTrail()

        with caplog.at_level(logging.INFO, logger="bulwark.security.audit"):
            trail.record(AuditAction.IP_UNBLOCKED, Severity.LOW, "a")
            trail.record(AuditAction.DDOS_VIOLATION, Severity.CRITICAL, "b")

        assert [r.levelno for r in caplog.records] == [logging.INFO, logging.ERROR]
        assert "SECURITY_VIOLATION_DDOS" in caplog.records[-1].message

    def test_subscribers(self):
        """Test callbacks receive events and can unsubscribe."""
        trail = AuditTrail()
        listener = Mock()
        unsubscribe = trail.on_event(listener)

        trail.record(AuditAction.IP_BLOCKED, Severity.HIGH, "a")
        unsubscribe()
        trail.record(AuditAction.IP_BLOCKED, Severity.HIGH, "b")

        listener.assert_called_once()

    def test_clear(self):
        """Test clearing the trail."""
        trail = AuditTrail()
        trail.record(AuditAction.IP_BLOCKED, Severity.HIGH, "a")
        trail.clear()
        assert trail.recent() == []
