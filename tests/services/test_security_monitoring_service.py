"""Tests for security event logging, alerting and reporting"""

import base64
import csv
import datetime
import io
import json
from unittest.mock import MagicMock, patch

import pytest

from guardapi.errors import ValidationError
from guardapi.services.notification_service import NotificationDispatcher
from guardapi.services.security_config import MonitoringConfig
from guardapi.services.security_monitoring_service import SecurityMonitoringService
from guardapi.utils.request_context import RequestContext
from guardapi.utils.security_events import EventType, Severity


def from_ip(ip_address):
    return RequestContext(ip_address=ip_address, user_agent="scanner", is_secure=True)


def count(monitor, event_type):
    return monitor.search_events({"type": event_type})["total"]


class TestLogSecurityEvent:
    def test_event_is_persisted_with_context(self, monitor):
        context = RequestContext(
            ip_address="203.0.113.7",
            user_agent="Mozilla/5.0",
            is_secure=True,
            user_id="42",
            url="https://cms.example.org/login",
            method="POST",
        )
        logged = monitor.log_security_event(
            EventType.FAILED_LOGIN,
            "medium",
            "Failed login attempt for identifier: a@test.com",
            metadata={"identifier": "a@test.com"},
            context=context,
        )

        assert logged.persisted
        assert logged.error is None
        assert logged.record.id is not None
        assert logged.record.type == "failed_login"
        assert logged.record.severity == "medium"
        assert logged.record.ip_address == "203.0.113.7"
        assert logged.record.user_id == "42"
        assert logged.record.metadata["identifier"] == "a@test.com"
        assert logged.record.metadata["url"] == "https://cms.example.org/login"
        assert logged.record.metadata["method"] == "POST"
        assert "timestamp" in logged.record.metadata

    def test_system_events_have_no_origin(self, monitor):
        logged = monitor.log_security_event("config_change", Severity.LOW, "Changed")
        assert logged.record.ip_address is None
        assert logged.record.user_id is None
        assert logged.alerts == ()

    @pytest.mark.parametrize(
        "event_type,severity,metadata",
        [
            ("", "low", None),
            ("x" * 65, "low", None),
            ("failed_login", "urgent", None),
            ("failed_login", "low", ["not", "a", "mapping"]),
        ],
    )
    def test_malformed_events_are_rejected(
        self, monitor, event_type, severity, metadata
    ):
        with pytest.raises(ValidationError):
            monitor.log_security_event(
                event_type, severity, "bad event", metadata=metadata
            )
        assert monitor.search_events()["total"] == 0

    def test_persistence_failure_is_reported_not_raised(self, store, channel, clock):
        repository = MagicMock()
        repository.add.side_effect = RuntimeError("database is gone")
        repository.count_since.return_value = 0
        repository.distinct_ip_count.return_value = 0
        monitor = SecurityMonitoringService(
            repository,
            store,
            NotificationDispatcher([channel]),
            MonitoringConfig(),
            clock=clock,
        )

        with patch("guardapi.services.security_monitoring_service.rollbar") as rb:
            logged = monitor.log_security_event(
                "xss_attempt", "high", "Script tag in comment body"
            )

        assert not logged.persisted
        assert "database is gone" in logged.error
        assert logged.record.id is None
        rb.report_exc_info.assert_called_once()

    def test_critical_event_notifies(self, monitor, channel):
        logged = monitor.log_security_event(
            EventType.ACCOUNT_LOCKOUT, "critical", "Account permanently locked"
        )
        assert "critical" in logged.alerts
        assert [alert["subject"] for alert in channel.sent] == [
            "Critical Security Event: account_lockout"
        ]
        assert channel.sent[0]["data"]["event_id"] == logged.record.id

    def test_failing_channel_does_not_break_logging(self, monitor, channel):
        broken = MagicMock()
        broken.name = "broken"
        broken.send.side_effect = RuntimeError("smtp down")
        monitor.notifier.channels.insert(0, broken)

        with patch("guardapi.services.notification_service.rollbar"):
            logged = monitor.log_security_event(
                "coordinated_attack", "critical", "Many origins"
            )

        assert logged.persisted
        assert len(channel.sent) == 1


class TestThresholdAlerts:
    def test_threshold_alert_fires_once_per_hour(self, monitor, channel, clock):
        results = [
            monitor.log_security_event(
                "xss_attempt", "high", "Script tag in comment body"
            )
            for _ in range(10)
        ]

        assert [r.alerts for r in results[:4]] == [()] * 4
        assert results[4].alerts == ("threshold",)
        assert all(r.alerts == () for r in results[5:])

        assert [alert["subject"] for alert in channel.sent] == [
            "Threshold exceeded: xss_attempt"
        ]
        assert channel.sent[0]["data"]["threshold"] == 5
        assert channel.sent[0]["data"]["event_count"] == 5

        alerts = monitor.search_events({"type": "security_alert"})["events"]
        assert len(alerts) == 1
        assert alerts[0]["severity"] == "critical"
        assert alerts[0]["metadata"]["alert_type"] == "xss_attempt"

        # A new hour opens a new bucket
        clock.advance(3600)
        for _ in range(5):
            monitor.log_security_event("xss_attempt", "high", "Script tag")
        assert len(channel.sent) == 2
        assert count(monitor, "security_alert") == 2

    def test_types_without_threshold_never_alert(self, monitor, channel):
        for _ in range(20):
            monitor.log_security_event("config_change", "medium", "Setting changed")
        assert channel.sent == []
        assert count(monitor, "security_alert") == 0


class TestPatternDetection:
    """Single-origin bursts and coordinated attacks"""

    def test_neither_pattern(self, monitor):
        for i in range(4):
            for _ in range(2):
                logged = monitor.log_security_event(
                    "directory_scan", "low", "Scan", context=from_ip(f"192.0.2.{i}")
                )
                assert logged.alerts == ()

        assert count(monitor, "potential_attack") == 0
        assert count(monitor, "coordinated_attack") == 0

    def test_coordinated_only(self, monitor, channel):
        for i in range(4):
            monitor.log_security_event(
                "directory_scan", "low", "Scan", context=from_ip(f"192.0.2.{i}")
            )
        logged = monitor.log_security_event(
            "directory_scan", "low", "Scan", context=from_ip("192.0.2.200")
        )
        assert logged.alerts == ("coordinated_attack",)

        assert count(monitor, "potential_attack") == 0
        events = monitor.search_events({"type": "coordinated_attack"})["events"]
        assert len(events) == 1
        assert events[0]["severity"] == "critical"
        assert events[0]["metadata"]["unique_ips"] == 5
        assert sorted(events[0]["metadata"]["ip_addresses"]) == sorted(
            [f"192.0.2.{i}" for i in range(4)] + ["192.0.2.200"]
        )
        assert [alert["subject"] for alert in channel.sent] == [
            "Critical Security Event: coordinated_attack"
        ]

    def test_single_origin_only(self, monitor):
        results = [
            monitor.log_security_event(
                "directory_scan", "low", "Scan", context=from_ip("198.51.100.9")
            )
            for _ in range(10)
        ]
        assert results[-1].alerts == ("potential_attack",)
        assert all(r.alerts == () for r in results[:-1])

        events = monitor.search_events({"type": "potential_attack"})["events"]
        assert len(events) == 1
        assert events[0]["ip_address"] == "198.51.100.9"
        assert events[0]["severity"] == "high"
        assert count(monitor, "coordinated_attack") == 0

        # Further events in the same window are deduplicated
        monitor.log_security_event(
            "directory_scan", "low", "Scan", context=from_ip("198.51.100.9")
        )
        assert count(monitor, "potential_attack") == 1

    def test_both_patterns(self, monitor):
        for _ in range(10):
            monitor.log_security_event(
                "directory_scan", "low", "Scan", context=from_ip("198.51.100.9")
            )
        for i in range(4):
            monitor.log_security_event(
                "directory_scan", "low", "Scan", context=from_ip(f"192.0.2.{i}")
            )

        assert count(monitor, "potential_attack") == 1
        assert count(monitor, "coordinated_attack") == 1

    def test_events_outside_window_are_ignored(self, monitor, clock):
        for _ in range(9):
            monitor.log_security_event(
                "directory_scan", "low", "Scan", context=from_ip("198.51.100.9")
            )
        clock.advance(601)
        logged = monitor.log_security_event(
            "directory_scan", "low", "Scan", context=from_ip("198.51.100.9")
        )
        assert logged.alerts == ()


class TestDashboard:
    def test_dashboard_contents(self, monitor):
        monitor.log_security_event(
            "failed_login", "medium", "Failed", context=from_ip("203.0.113.7")
        )
        monitor.log_security_event(
            "failed_login", "high", "Failed", context=from_ip("203.0.113.7")
        )
        monitor.log_security_event("config_change", "low", "Changed")

        data = monitor.get_dashboard_data()

        assert len(data["recent_events"]) == 3
        assert {"type": "failed_login", "severity": "high", "count": 1} in data[
            "event_counts"
        ]
        assert data["top_ips"] == [
            {"ip_address": "203.0.113.7", "event_count": 2, "max_severity": "high"}
        ]
        assert data["timeline"][0]["date"] == "2025-01-15"
        assert data["system_health"]["status"] == "healthy"
        assert data["system_health"]["total_events_today"] == 3

    def test_dashboard_is_cached(self, monitor, clock):
        monitor.log_security_event("config_change", "low", "Changed")
        first = monitor.get_dashboard_data()

        monitor.log_security_event("config_change", "low", "Changed again")
        assert monitor.get_dashboard_data() == first
        assert len(monitor.get_dashboard_data(refresh=True)["recent_events"]) == 2

        monitor.log_security_event("config_change", "low", "Third change")
        clock.advance(300)
        assert len(monitor.get_dashboard_data()["recent_events"]) == 3

    def test_system_health_levels(self, monitor):
        for _ in range(6):
            monitor.log_security_event("session_hijack_suspected", "high", "Hijack")
        assert monitor.get_system_health()["status"] == "warning"

        monitor.log_security_event("account_lockout", "critical", "Permanent")
        health = monitor.get_system_health()
        assert health["status"] == "critical"
        assert health["critical_events_last_hour"] == 1


class TestSearchAndReporting:
    @pytest.fixture
    def events(self, monitor, clock):
        for i in range(5):
            monitor.log_security_event(
                "failed_login",
                "medium" if i % 2 else "high",
                f"Failed login {i}",
                context=RequestContext(
                    ip_address=f"192.0.2.{i}", is_secure=True, user_id=str(i)
                ),
            )
            clock.advance(120)
        monitor.log_security_event("config_change", "low", "Changed")

    def test_search_paginates_newest_first(self, monitor, events):
        first = monitor.search_events({"type": "failed_login"}, page=1, per_page=2)
        assert first["total"] == 5
        assert first["pages"] == 3
        assert [e["description"] for e in first["events"]] == [
            "Failed login 4",
            "Failed login 3",
        ]

        last = monitor.search_events({"type": "failed_login"}, page=3, per_page=2)
        assert [e["description"] for e in last["events"]] == ["Failed login 0"]

    def test_search_filters(self, monitor, events, clock):
        assert monitor.search_events({"severity": "high"})["total"] == 3
        assert monitor.search_events({"ip_address": "192.0.2.1"})["total"] == 1
        assert monitor.search_events({"user_id": "2"})["total"] == 1
        assert monitor.search_events({"severity": "low", "type": ""})["total"] == 1

        date_from = (clock() - datetime.timedelta(seconds=150)).isoformat()
        recent = monitor.search_events({"date_from": date_from})
        assert recent["total"] == 2

    def test_search_rejects_bad_input(self, monitor):
        with pytest.raises(ValidationError):
            monitor.search_events({"event": "failed_login"})
        with pytest.raises(ValidationError):
            monitor.search_events({"date_from": "yesterday"})
        with pytest.raises(ValidationError):
            monitor.search_events(per_page=201)
        with pytest.raises(ValidationError):
            monitor.search_events(page=0)

    def test_statistics(self, monitor, events):
        stats = monitor.get_statistics("24h")
        assert stats["period"] == "24h"
        assert stats["total_events"] == 6
        assert stats["by_type"] == {"failed_login": 5, "config_change": 1}
        assert stats["by_severity"] == {
            "low": 1,
            "medium": 2,
            "high": 3,
            "critical": 0,
        }
        assert stats["unique_ips"] == 5
        assert len(stats["top_ips"]) == 5

        with pytest.raises(ValidationError):
            monitor.get_statistics("1y")

    def test_export_csv(self, monitor, events):
        export = monitor.export_events("csv", filters={"type": "failed_login"})
        assert export["content_type"] == "text/csv"
        assert export["count"] == 5
        assert export["filename"].endswith(".csv")

        document = base64.b64decode(export["data"]).decode("utf-8")
        rows = list(csv.DictReader(io.StringIO(document)))
        assert len(rows) == 5
        assert rows[0]["type"] == "failed_login"
        assert json.loads(rows[0]["metadata"])["method"] is None

    def test_export_json(self, monitor, events):
        export = monitor.export_events("json")
        assert export["content_type"] == "application/json"
        rows = json.loads(base64.b64decode(export["data"]))
        assert len(rows) == 6
        assert rows[0]["type"] == "config_change"

    def test_export_rejects_unknown_format(self, monitor):
        with pytest.raises(ValidationError):
            monitor.export_events("xml")


class TestCleanup:
    def test_cleanup_removes_old_events(self, monitor, clock):
        for _ in range(3):
            monitor.log_security_event("config_change", "low", "Old change")
        clock.advance(91 * 24 * 3600)
        monitor.log_security_event("config_change", "low", "New change")

        assert monitor.cleanup_old_events() == 3
        remaining = monitor.search_events()["events"]
        assert [e["description"] for e in remaining] == ["New change"]

    def test_cleanup_with_custom_retention(self, monitor, clock):
        monitor.log_security_event("config_change", "low", "Change")
        clock.advance(2 * 24 * 3600)
        assert monitor.cleanup_old_events(days=3) == 0
        assert monitor.cleanup_old_events(days=1) == 1

    def test_cleanup_requires_positive_days(self, monitor):
        with pytest.raises(ValidationError):
            monitor.cleanup_old_events(days=0)
