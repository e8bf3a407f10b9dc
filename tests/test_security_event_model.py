"""Tests for the security event model"""

import datetime

import pytest

from guardapi import db
from guardapi.errors import ImmutableEventError
from guardapi.models import SecurityEvent, SecurityEventRecord
from guardapi.models.security_event import as_utc, to_naive_utc


def make_event(**overrides):
    values = {
        "type": "failed_login",
        "severity": "medium",
        "description": "Failed login attempt for identifier: a@test.com",
        "ip_address": "203.0.113.7",
        "event_metadata": {"identifier": "a@test.com"},
        "created_at": datetime.datetime(2025, 1, 15, 10, 5),
    }
    values.update(overrides)
    return SecurityEvent(**values)


class TestSecurityEventModel:
    def test_serialize(self, app):
        event = make_event()
        db.session.add(event)
        db.session.commit()

        data = event.serialize()
        assert data["id"] == str(event.id)
        assert data["type"] == "failed_login"
        assert data["metadata"] == {"identifier": "a@test.com"}
        assert data["created_at"] == "2025-01-15T10:05:00+00:00"
        assert data["user_id"] is None

    def test_persisted_events_are_immutable(self, app):
        event = make_event()
        db.session.add(event)
        db.session.commit()

        event.severity = "low"
        with pytest.raises(ImmutableEventError):
            db.session.commit()
        db.session.rollback()

        assert db.session.get(SecurityEvent, event.id).severity == "medium"

    def test_events_can_be_deleted(self, app):
        event = make_event()
        db.session.add(event)
        db.session.commit()

        db.session.delete(event)
        db.session.commit()
        assert SecurityEvent.query.count() == 0


class TestSecurityEventRecord:
    def test_metadata_is_read_only(self):
        record = SecurityEventRecord(
            type="xss_attempt",
            severity="high",
            description="Script tag in comment body",
            created_at=datetime.datetime(2025, 1, 15, tzinfo=datetime.UTC),
            metadata={"field": "body"},
        )
        with pytest.raises(TypeError):
            record.metadata["field"] = "title"
        assert record.serialize()["metadata"] == {"field": "body"}


def test_datetime_helpers():
    naive = datetime.datetime(2025, 1, 15, 10, 5)
    aware = datetime.datetime(
        2025, 1, 15, 11, 5, tzinfo=datetime.timezone(datetime.timedelta(hours=1))
    )
    assert to_naive_utc(aware) == naive
    assert to_naive_utc(naive) == naive
    assert as_utc(naive) == naive.replace(tzinfo=datetime.UTC)
    assert as_utc(None) is None
