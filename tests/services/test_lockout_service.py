"""Tests for the account and IP lockout service"""

import datetime
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy import select

from guardapi import db
from guardapi.errors import CounterStoreError, ValidationError
from guardapi.models import User
from guardapi.services.lockout_service import (
    LockoutService,
    normalize_identity,
    normalize_ip,
)
from guardapi.services.security_config import LockoutConfig
from guardapi.utils.counter_store import CounterStore

ATTACKER_IP = "192.0.2.10"


def events_of(core, event_type):
    records, _ = core.repository.search({"type": event_type}, per_page=200)
    return records


def fail(core, identity, times, ip_address=ATTACKER_IP):
    result = None
    for _ in range(times):
        result = core.lockout.record_failed_attempt(identity, ip_address)
    return result


def account_active(email):
    # Column query so the value comes from the database, not the identity map
    return db.session.scalar(select(User.is_active).where(User.email == email))


class TestLockoutDuration:
    """Escalating lockout durations"""

    def test_durations_double_up_to_the_cap(self, core):
        durations = [core.lockout.lockout_duration_for(n) for n in range(1, 9)]
        assert durations == [900, 1800, 3600, 7200, 14400, 28800, 28800, 28800]

    def test_fixed_duration_without_progressive_lockout(self, store):
        service = LockoutService(
            store, MagicMock(), LockoutConfig(progressive_lockout=False)
        )
        assert service.lockout_duration_for(1) == 900
        assert service.lockout_duration_for(6) == 900


class TestFailedAttempts:
    """Failed login tracking and user lockouts"""

    def test_fifth_failure_locks_account(self, core, clock, regular_user):
        for attempt in range(1, 5):
            result = core.lockout.record_failed_attempt("user@test.com", ATTACKER_IP)
            assert result.user_attempts == attempt
            assert not result.user_locked
            assert not core.lockout.is_user_locked_out("user@test.com")

        result = core.lockout.record_failed_attempt("user@test.com", ATTACKER_IP)
        assert result.user_attempts == 5
        assert result.user_locked
        assert not result.ip_locked
        assert not result.degraded

        assert core.lockout.is_user_locked_out("user@test.com")
        assert core.lockout.get_lockout_count("user@test.com") == 1
        info = core.lockout.get_user_lockout_info("user@test.com")
        assert info.locked_until == clock() + datetime.timedelta(seconds=900)
        assert info.attempt_count == 5
        assert not info.is_permanent

        failed = events_of(core, "failed_login")
        assert len(failed) == 5
        assert sorted(e.severity for e in failed) == ["high"] + ["medium"] * 4
        assert failed[0].ip_address == ATTACKER_IP

        lockouts = events_of(core, "account_lockout")
        assert len(lockouts) == 1
        assert lockouts[0].severity == "high"
        assert lockouts[0].metadata["duration"] == 900
        assert lockouts[0].metadata["lockout_count"] == 1

    def test_lockout_expires_after_duration(self, core, clock):
        fail(core, "user@test.com", 5)
        clock.advance(899)
        assert core.lockout.is_user_locked_out("user@test.com")
        clock.advance(1)
        assert not core.lockout.is_user_locked_out("user@test.com")

    def test_identity_is_case_insensitive(self, core):
        fail(core, "User@Test.com", 3)
        fail(core, "  user@test.COM ", 2)
        assert core.lockout.is_user_locked_out("USER@TEST.COM")

    def test_counters_are_isolated_per_identity_and_ip(self, core):
        fail(core, "a@test.com", 3, ip_address="198.51.100.1")
        fail(core, "a@test.com", 2, ip_address="198.51.100.2")
        fail(core, "b@test.com", 1, ip_address="198.51.100.1")

        assert core.lockout.is_user_locked_out("a@test.com")
        assert not core.lockout.is_user_locked_out("b@test.com")
        assert core.lockout.get_failed_attempt_count("b@test.com") == 1
        assert core.lockout.get_ip_failed_attempt_count("198.51.100.1") == 4
        assert core.lockout.get_ip_failed_attempt_count("198.51.100.2") == 2
        assert not core.lockout.is_ip_locked_out("198.51.100.1")

    def test_second_lockout_doubles_duration(self, core, clock):
        fail(core, "user@test.com", 5)
        clock.advance(900)
        fail(core, "user@test.com", 1)

        assert core.lockout.get_lockout_count("user@test.com") == 2
        info = core.lockout.get_user_lockout_info("user@test.com")
        assert info.locked_until == clock() + datetime.timedelta(seconds=1800)

    def test_attempt_window_expires(self, core, clock):
        fail(core, "user@test.com", 4)
        clock.advance(1800)
        result = core.lockout.record_failed_attempt("user@test.com", ATTACKER_IP)
        assert result.user_attempts == 1
        assert not result.user_locked


class TestIpLockout:
    """Lockouts by origin IP"""

    def test_ip_locked_after_many_identities(self, core):
        for i in range(19):
            result = core.lockout.record_failed_attempt(f"u{i}@test.com", ATTACKER_IP)
            assert not result.ip_locked

        result = core.lockout.record_failed_attempt("u19@test.com", ATTACKER_IP)
        assert result.ip_attempts == 20
        assert result.ip_locked
        assert not result.user_locked
        assert core.lockout.is_ip_locked_out(ATTACKER_IP)
        assert core.lockout.get_ip_lockout_info(ATTACKER_IP).attempt_count == 20

        ip_events = events_of(core, "ip_lockout")
        assert len(ip_events) == 1
        assert ip_events[0].severity == "high"
        assert ip_events[0].ip_address == ATTACKER_IP

    def test_ip_addresses_are_normalized(self, core):
        expanded = "2001:0db8:0000:0000:0000:0000:0000:0001"
        fail(core, "a@test.com", 1, ip_address=expanded)
        assert core.lockout.get_ip_failed_attempt_count("2001:db8::1") == 1

    def test_unlock_ip(self, core):
        for i in range(20):
            core.lockout.record_failed_attempt(f"u{i}@test.com", ATTACKER_IP)

        assert core.lockout.unlock_ip(ATTACKER_IP) is True
        assert not core.lockout.is_ip_locked_out(ATTACKER_IP)
        assert core.lockout.get_ip_failed_attempt_count(ATTACKER_IP) == 0
        assert len(events_of(core, "ip_unlocked")) == 1


class TestSuccessfulLogin:
    """Counter reset on successful authentication"""

    def test_success_resets_attempts_but_not_lockout_count(self, core, clock):
        fail(core, "user@test.com", 5)
        clock.advance(900)
        assert core.lockout.get_failed_attempt_count("user@test.com") == 5

        assert core.lockout.record_successful_login("user@test.com", ATTACKER_IP)
        assert core.lockout.get_failed_attempt_count("user@test.com") == 0
        assert core.lockout.get_lockout_count("user@test.com") == 1

        events = events_of(core, "successful_login_after_failures")
        assert len(events) == 1
        assert events[0].severity == "medium"

    def test_success_without_failures_logs_nothing(self, core):
        had_failures = core.lockout.record_successful_login(
            "user@test.com", ATTACKER_IP
        )
        assert had_failures is False
        assert events_of(core, "successful_login_after_failures") == []


class TestPermanentLockout:
    """Permanent lockout and administrative unlock"""

    def test_tenth_lockout_is_permanent(self, core, clock, regular_user):
        fail(core, "user@test.com", 13)
        assert core.lockout.get_lockout_count("user@test.com") == 9
        assert not core.lockout.get_user_lockout_info("user@test.com").is_permanent

        result = fail(core, "user@test.com", 1)
        assert result.user_locked
        assert core.lockout.get_lockout_count("user@test.com") == 10

        info = core.lockout.get_user_lockout_info("user@test.com")
        assert info.is_permanent
        assert info.locked_until is None

        clock.advance(365 * 24 * 3600)
        assert core.lockout.is_user_locked_out("user@test.com")
        assert core.lockout.get_lockout_count("user@test.com") == 10

        lockouts = events_of(core, "account_lockout")
        assert len(lockouts) == 10
        permanent = [e for e in lockouts if e.metadata["is_permanent"]]
        assert len(permanent) == 1
        assert permanent[0].severity == "critical"
        assert permanent[0].metadata["duration"] == "permanent"
        assert permanent[0].metadata["account_deactivated"] is True

        assert account_active("user@test.com") is False

    def test_unlock_clears_permanent_lockout(self, core, regular_user):
        fail(core, "user@test.com", 14)

        assert core.lockout.unlock_user("USER@test.com") is True

        assert not core.lockout.is_user_locked_out("user@test.com")
        assert core.lockout.get_lockout_count("user@test.com") == 0
        assert core.lockout.get_failed_attempt_count("user@test.com") == 0
        assert account_active("user@test.com") is True

        unlocked = events_of(core, "account_unlocked")
        assert len(unlocked) == 1
        assert unlocked[0].severity == "low"
        assert unlocked[0].metadata["was_permanent"] is True
        assert unlocked[0].metadata["account_reactivated"] is True

        # Escalation starts over
        fail(core, "user@test.com", 5)
        assert core.lockout.get_lockout_count("user@test.com") == 1

    def test_unlock_temporary_lockout_keeps_escalation_count(self, core):
        fail(core, "user@test.com", 5)
        core.lockout.unlock_user("user@test.com")
        assert not core.lockout.is_user_locked_out("user@test.com")
        assert core.lockout.get_lockout_count("user@test.com") == 1

    def test_unlock_is_idempotent(self, core):
        assert core.lockout.unlock_user("nobody@test.com") is True
        assert core.lockout.unlock_user("nobody@test.com") is True
        events = events_of(core, "account_unlocked")
        assert [e.metadata["was_locked"] for e in events] == [False, False]

    def test_unlock_leaves_disabled_account_alone(self, core, regular_user):
        regular_user.is_active = False
        db.session.commit()

        assert core.lockout.unlock_user("user@test.com") is True
        assert account_active("user@test.com") is False

        fail(core, "user@test.com", 5)
        core.lockout.unlock_user("user@test.com")
        assert account_active("user@test.com") is False

        events = events_of(core, "account_unlocked")
        assert [e.metadata["account_reactivated"] for e in events] == [False, False]

    def test_repeated_permanent_lockout_still_reactivates(self, core, regular_user):
        fail(core, "user@test.com", 16)
        info = core.lockout.get_user_lockout_info("user@test.com")
        assert info.is_permanent
        assert core.lockout.get_lockout_count("user@test.com") == 12

        core.lockout.unlock_user("user@test.com")
        assert account_active("user@test.com") is True


class TestStoreFailure:
    """Behaviour when the counter store cannot be reached"""

    @pytest.fixture
    def broken_lockout(self):
        store = MagicMock(spec=CounterStore)
        for method in ("get", "put", "increment", "forever", "forget", "has"):
            getattr(store, method).side_effect = CounterStoreError("store down")
        monitor = MagicMock()
        with patch("guardapi.services.lockout_service.rollbar"):
            yield LockoutService(store, monitor, LockoutConfig()), monitor

    def test_checks_fail_open(self, broken_lockout):
        lockout, _ = broken_lockout
        assert lockout.is_user_locked_out("user@test.com") is False
        assert lockout.is_ip_locked_out(ATTACKER_IP) is False
        assert lockout.get_user_lockout_info("user@test.com") is None
        assert lockout.get_failed_attempt_count("user@test.com") == 0

    def test_failed_attempt_is_degraded(self, broken_lockout):
        lockout, monitor = broken_lockout
        result = lockout.record_failed_attempt("user@test.com", ATTACKER_IP)
        assert result.degraded
        assert not result.user_locked
        monitor.log_security_event.assert_not_called()

    def test_unlock_propagates_store_errors(self, broken_lockout):
        lockout, _ = broken_lockout
        with pytest.raises(CounterStoreError):
            lockout.unlock_user("user@test.com")


class TestNormalization:
    def test_identity_validation(self):
        assert normalize_identity(" Admin@Example.ORG ") == "admin@example.org"
        for bad in (None, "", "   ", 42, "a" * 256):
            with pytest.raises(ValidationError):
                normalize_identity(bad)

    def test_ip_validation(self):
        assert normalize_ip(" 203.0.113.7 ") == "203.0.113.7"
        with pytest.raises(ValidationError):
            normalize_ip("not-an-ip")
        with pytest.raises(ValidationError):
            normalize_ip(None)
