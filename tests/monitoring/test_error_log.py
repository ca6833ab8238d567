"""Tests for the error log."""

import logging
from unittest.mock import Mock

import pytest

from bulwark.monitoring.error_log import ErrorLog
from bulwark.monitoring.metrics import MetricsRegistry
from bulwark.resilience.errors import ErrorClassifier, ErrorKind, RemoteServiceError, Severity


class TestErrorLog:
    """Test logging entries."""

    def test_custom_error_uses_kind_defaults(self, clock):
        """Test severity, user message and retryability follow the kind."""
        error_log = ErrorLog(clock=clock)

        error_id = error_log.log_custom_error(ErrorKind.NETWORK, "Backend unreachable", {"host": "api"})

        (entry,) = error_log.export()
        assert entry.id == error_id
        assert error_id.startswith(f"err_{int(clock.now * 1000)}_")
        assert entry.severity == Severity.MEDIUM
        assert entry.retryable is True
        assert entry.details == {"host": "api"}
        assert "internet connection" in entry.user_message

    @pytest.mark.parametrize(
        "kind,severity,retryable",
        [
            (ErrorKind.AUTHENTICATION, Severity.HIGH, False),
            (ErrorKind.CONFIGURATION, Severity.HIGH, False),
            (ErrorKind.VALIDATION, Severity.LOW, False),
            (ErrorKind.REMOTE_SERVICE, Severity.MEDIUM, True),
            (ErrorKind.UNKNOWN, Severity.MEDIUM, False),
        ],
    )
    def test_kind_mapping(self, kind, severity, retryable):
        """Test every kind maps to its severity and retryability."""
        error_log = ErrorLog()
        error_log.log_custom_error(kind, "something")

        (entry,) = error_log.export()
        assert entry.severity == severity
        assert entry.retryable is retryable

    def test_ids_are_unique(self, clock):
        """Test IDs differ even within the same millisecond."""
        error_log = ErrorLog(clock=clock)
        ids = {error_log.log_custom_error(ErrorKind.UNKNOWN, "x") for _ in range(50)}
        assert len(ids) == 50

    def test_log_exception_classifies(self, clock):
        """Test exceptions are classified before logging."""
        error_log = ErrorLog(classifier=ErrorClassifier(), clock=clock)

        error_log.log_exception(RemoteServiceError("down", status_code=503), {"operation": "get_ranking"})

        (entry,) = error_log.export()
        assert entry.kind == ErrorKind.REMOTE_SERVICE
        assert entry.severity == Severity.HIGH
        assert entry.details["status_code"] == 503
        assert entry.context == {"operation": "get_ranking"}

    def test_bounded_size(self):
        """Test the oldest entries are dropped."""
        error_log = ErrorLog(max_size=3)
        for i in range(5):
            error_log.log_custom_error(ErrorKind.UNKNOWN, f"error {i}")

        assert [entry.message for entry in error_log.export()] == ["error 2", "error 3", "error 4"]

    def test_high_severity_logs_error(self, caplog):
        """Test high severity entries are written to the application log."""
        error_log = ErrorLog()

        with caplog.at_level(logging.ERROR, logger="bulwark.monitoring.error_log"):
            error_log.log_custom_error(ErrorKind.CONFIGURATION, "missing api key")

        assert any("missing api key" in r.message for r in caplog.records)

    def test_callbacks(self):
        """Test subscribers are notified and failures are isolated."""
        error_log = ErrorLog()
        broken = Mock(side_effect=RuntimeError("callback bug"))
        listener = Mock()
        error_log.on_error(broken)
        unsubscribe = error_log.on_error(listener)

        error_log.log_custom_error(ErrorKind.UNKNOWN, "first")
        unsubscribe()
        error_log.log_custom_error(ErrorKind.UNKNOWN, "second")

        listener.assert_called_once()
        assert listener.call_args[0][0].message == "first"
        assert broken.call_count == 2

    def test_metrics_counter(self):
        """Test entries are counted by kind and severity."""
        metrics = MetricsRegistry()
        error_log = ErrorLog(metrics=metrics)

        error_log.log_custom_error(ErrorKind.VALIDATION, "bad")

        assert metrics.errors_reported.get(kind="VALIDATION", severity="low") == 1

    def test_queries_and_clear(self):
        """Test filtering by kind, recent slice and clearing."""
        error_log = ErrorLog()
        error_log.log_custom_error(ErrorKind.NETWORK, "a")
        error_log.log_custom_error(ErrorKind.VALIDATION, "b")
        error_log.log_custom_error(ErrorKind.NETWORK, "c")

        assert [e.message for e in error_log.get_errors_by_kind(ErrorKind.NETWORK)] == ["a", "c"]
        assert [e.message for e in error_log.get_recent_errors(limit=2)] == ["b", "c"]

        error_log.clear()
        assert error_log.export() == []


class TestErrorMetrics:
    """Test windowed metrics."""

    def test_window_filters_and_rate(self, clock):
        """Test only entries inside the window count toward the rate."""
        error_log = ErrorLog(clock=clock)
        error_log.log_custom_error(ErrorKind.NETWORK, "old")
        clock.advance(7200)
        for _ in range(6):
            error_log.log_custom_error(ErrorKind.VALIDATION, "new")

        metrics = error_log.get_error_metrics(window=3600)

        assert metrics.total_errors == 6
        assert metrics.errors_by_kind == {"VALIDATION": 6}
        assert metrics.errors_by_severity == {"low": 6}
        assert metrics.error_rate == pytest.approx(6 / 60)

    def test_no_window_counts_everything(self, clock):
        """Test a missing window covers the whole log with zero rate."""
        error_log = ErrorLog(clock=clock)
        error_log.log_custom_error(ErrorKind.NETWORK, "a")
        clock.advance(10**6)
        error_log.log_custom_error(ErrorKind.NETWORK, "b")

        metrics = error_log.get_error_metrics()

        assert metrics.total_errors == 2
        assert metrics.error_rate == 0.0

    def test_recent_errors_capped_at_ten(self):
        """Test only the ten newest entries are included."""
        error_log = ErrorLog()
        for i in range(15):
            error_log.log_custom_error(ErrorKind.UNKNOWN, str(i))

        metrics = error_log.get_error_metrics(window=3600)

        assert len(metrics.recent_errors) == 10
        assert metrics.recent_errors[-1].message == "14"

    def test_to_dict(self, clock):
        """Test serialization uses camelCase keys."""
        error_log = ErrorLog(clock=clock)
        error_log.log_custom_error(ErrorKind.NETWORK, "a")

        data = error_log.get_error_metrics(window=60).to_dict()

        assert set(data) == {"totalErrors", "errorsByKind", "errorsBySeverity", "recentErrors", "errorRate"}
        assert data["recentErrors"][0]["userMessage"]
        assert data["recentErrors"][0]["timestamp"].startswith("2023-11-14")
