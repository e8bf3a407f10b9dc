"""ACCOUNT LOCKOUT SERVICE"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
import datetime
import ipaddress
import logging
from typing import Any, Callable, Optional

import rollbar

from guardapi.errors import CounterStoreError, ValidationError
from guardapi.services.security_config import LockoutConfig
from guardapi.utils.counter_store import CounterStore, utcnow
from guardapi.utils.request_context import RequestContext
from guardapi.utils.security_events import EventType, Severity

logger = logging.getLogger(__name__)

IDENTITY_MAX_LENGTH = 255


@dataclass(frozen=True)
class FailedAttemptResult:
    """Counters after a failed attempt and which lockouts it triggered.

    ``degraded`` is set when the counter store could not be reached; the
    attempt was then not counted.
    """

    user_attempts: int
    ip_attempts: int
    user_locked: bool = False
    ip_locked: bool = False
    degraded: bool = False


@dataclass(frozen=True)
class LockoutInfo:
    locked_until: Optional[datetime.datetime]
    attempt_count: int
    lockout_count: Optional[int] = None
    is_permanent: bool = False

    @classmethod
    def from_record(cls, data: dict[str, Any]) -> "LockoutInfo":
        locked_until = data.get("locked_until")
        return cls(
            locked_until=datetime.datetime.fromisoformat(locked_until)
            if locked_until
            else None,
            attempt_count=int(data.get("attempt_count", 0)),
            lockout_count=data.get("lockout_count"),
            is_permanent=bool(data.get("is_permanent", False)),
        )

    def serialize(self) -> dict[str, Any]:
        return {
            "locked_until": (
                self.locked_until.isoformat() if self.locked_until else None
            ),
            "attempt_count": self.attempt_count,
            "lockout_count": self.lockout_count,
            "is_permanent": self.is_permanent,
        }


def normalize_identity(identity) -> str:
    """Lockout identities are case-insensitive (usually an email)."""
    if not isinstance(identity, str) or not identity.strip():
        raise ValidationError("Identity is required", field="identity")
    identity = identity.strip().lower()
    if len(identity) > IDENTITY_MAX_LENGTH:
        raise ValidationError("Identity is too long", field="identity")
    return identity


def normalize_ip(ip_address) -> str:
    try:
        return ipaddress.ip_address(str(ip_address).strip()).compressed
    except ValueError as e:
        raise ValidationError(
            f"Invalid IP address: {ip_address!r}", field="ip_address"
        ) from e


class LockoutService:
    """
    Tracks failed logins per identity and per IP and locks them out.

    User lockouts escalate: the n-th lockout within ``lockout_count_ttl``
    lasts ``lockout_duration * 2 ** min(n - 1, max_backoff_exponent)`` and
    reaching ``permanent_lockout_threshold`` makes the lockout permanent and
    deactivates the account. Lockout checks fail open when the counter store
    is unavailable.
    """

    def __init__(
        self,
        store: CounterStore,
        monitor,
        config: LockoutConfig,
        accounts=None,
        clock: Callable[[], datetime.datetime] = utcnow,
    ):
        self.store = store
        self.monitor = monitor
        self.config = config
        self.accounts = accounts
        self._clock = clock

    @staticmethod
    def _user_attempts_key(identity):
        return f"login_attempts:user:{identity}"

    @staticmethod
    def _ip_attempts_key(ip_address):
        return f"login_attempts:ip:{ip_address}"

    @staticmethod
    def _user_lockout_key(identity):
        return f"user_lockout:{identity}"

    @staticmethod
    def _ip_lockout_key(ip_address):
        return f"ip_lockout:{ip_address}"

    @staticmethod
    def _lockout_count_key(identity):
        return f"lockout_count:{identity}"

    def _report_store_failure(self, operation: str, error: Exception):
        logger.error(f"Counter store unavailable during {operation}: {error}")
        rollbar.report_exc_info(extra_data={"operation": operation})

    @staticmethod
    def _context_for(context, ip_address) -> RequestContext:
        context = context or RequestContext.system()
        if context.ip_address != ip_address:
            context = dataclasses.replace(context, ip_address=ip_address)
        return context

    def lockout_duration_for(self, lockout_count: int) -> int:
        """Duration in seconds of the ``lockout_count``-th lockout."""
        if not self.config.progressive_lockout:
            return self.config.lockout_duration
        exponent = min(max(lockout_count - 1, 0), self.config.max_backoff_exponent)
        return self.config.lockout_duration * 2**exponent

    def record_failed_attempt(
        self, identity, ip_address, context: Optional[RequestContext] = None
    ) -> FailedAttemptResult:
        identity = normalize_identity(identity)
        ip_address = normalize_ip(ip_address)
        context = self._context_for(context, ip_address)

        try:
            user_attempts = self.store.increment(
                self._user_attempts_key(identity), ttl=self.config.user_attempt_window
            )
            ip_attempts = self.store.increment(
                self._ip_attempts_key(ip_address), ttl=self.config.ip_attempt_window
            )
        except CounterStoreError as e:
            self._report_store_failure("record_failed_attempt", e)
            return FailedAttemptResult(user_attempts=0, ip_attempts=0, degraded=True)

        logger.warning(
            f"Failed login attempt for {identity} from {ip_address} "
            f"(user attempts: {user_attempts}, ip attempts: {ip_attempts})"
        )
        self.monitor.log_security_event(
            EventType.FAILED_LOGIN,
            Severity.HIGH
            if user_attempts >= self.config.max_attempts
            else Severity.MEDIUM,
            f"Failed login attempt for identifier: {identity}",
            metadata={
                "identifier": identity,
                "user_attempts": user_attempts,
                "ip_attempts": ip_attempts,
            },
            context=context,
        )

        user_locked = ip_locked = degraded = False
        try:
            if user_attempts >= self.config.max_attempts:
                self._lockout_user(identity, user_attempts, context)
                user_locked = True
            if (
                self.config.ip_lockout_enabled
                and ip_attempts >= self.config.ip_max_attempts
            ):
                self._lockout_ip(ip_address, ip_attempts, context)
                ip_locked = True
        except CounterStoreError as e:
            self._report_store_failure("lockout", e)
            degraded = True

        return FailedAttemptResult(
            user_attempts=user_attempts,
            ip_attempts=ip_attempts,
            user_locked=user_locked,
            ip_locked=ip_locked,
            degraded=degraded,
        )

    def record_successful_login(
        self, identity, ip_address, context: Optional[RequestContext] = None
    ) -> bool:
        """Clear the identity's failure counter. Returns True if one existed.

        The escalation counter survives successful logins.
        """
        identity = normalize_identity(identity)
        ip_address = normalize_ip(ip_address)
        context = self._context_for(context, ip_address)

        try:
            had_failures = self.store.forget(self._user_attempts_key(identity))
        except CounterStoreError as e:
            self._report_store_failure("record_successful_login", e)
            return False

        logger.info(f"Successful login for {identity} from {ip_address}")
        if had_failures:
            self.monitor.log_security_event(
                EventType.SUCCESSFUL_LOGIN_AFTER_FAILURES,
                Severity.MEDIUM,
                f"Successful login after failed attempts for identifier: {identity}",
                metadata={"identifier": identity},
                context=context,
            )
        return had_failures

    def _lockout_user(self, identity, attempt_count, context):
        count_key = self._lockout_count_key(identity)
        lockout_count = self.store.increment(
            count_key, ttl=self.config.lockout_count_ttl
        )
        is_permanent = lockout_count >= self.config.permanent_lockout_threshold
        now = self._clock()
        record = {
            "locked_at": now.isoformat(),
            "attempt_count": attempt_count,
            "lockout_count": lockout_count,
            "is_permanent": is_permanent,
        }

        account_deactivated = False
        if is_permanent:
            duration = None
            previous = self.store.get(self._user_lockout_key(identity)) or {}
            account_deactivated = self._set_account_active(identity, False) or bool(
                previous.get("account_deactivated")
            )
            record["locked_until"] = None
            record["account_deactivated"] = account_deactivated
            self.store.forever(self._user_lockout_key(identity), record)
            self.store.forever(count_key, lockout_count)
            logger.error(f"Account permanently locked: {identity}")
            description = f"Account permanently locked: {identity}"
        else:
            duration = self.lockout_duration_for(lockout_count)
            record["locked_until"] = (
                now + datetime.timedelta(seconds=duration)
            ).isoformat()
            self.store.put(self._user_lockout_key(identity), record, duration)
            # Each lockout restarts the escalation window
            self.store.expire(count_key, self.config.lockout_count_ttl)
            logger.warning(f"Account locked for {duration} seconds: {identity}")
            description = f"Account locked for {duration} seconds: {identity}"

        self.monitor.log_security_event(
            EventType.ACCOUNT_LOCKOUT,
            Severity.CRITICAL if is_permanent else Severity.HIGH,
            description,
            metadata={
                "identifier": identity,
                "attempt_count": attempt_count,
                "lockout_count": lockout_count,
                "duration": "permanent" if is_permanent else duration,
                "is_permanent": is_permanent,
                "account_deactivated": account_deactivated,
            },
            context=context,
        )

    def _lockout_ip(self, ip_address, attempt_count, context):
        duration = self.config.ip_lockout_duration
        now = self._clock()
        self.store.put(
            self._ip_lockout_key(ip_address),
            {
                "locked_at": now.isoformat(),
                "locked_until": (
                    now + datetime.timedelta(seconds=duration)
                ).isoformat(),
                "attempt_count": attempt_count,
            },
            duration,
        )
        logger.warning(f"IP address locked out for {duration} seconds: {ip_address}")
        self.monitor.log_security_event(
            EventType.IP_LOCKOUT,
            Severity.HIGH,
            f"IP address locked out for {duration} seconds: {ip_address}",
            metadata={"attempt_count": attempt_count, "duration": duration},
            context=context,
        )

    def _set_account_active(self, identity, active: bool) -> bool:
        """Flip the account's active flag. Returns True if it changed."""
        if self.accounts is None:
            return False
        try:
            if active:
                return self.accounts.activate(identity)
            return self.accounts.deactivate(identity)
        except Exception as e:
            logger.error(f"Failed to update account state for {identity}: {e}")
            rollbar.report_exc_info(extra_data={"identity": identity})
            return False

    def is_user_locked_out(self, identity) -> bool:
        identity = normalize_identity(identity)
        try:
            return self.store.has(self._user_lockout_key(identity))
        except CounterStoreError as e:
            self._report_store_failure("is_user_locked_out", e)
            return False

    def is_ip_locked_out(self, ip_address) -> bool:
        ip_address = normalize_ip(ip_address)
        try:
            return self.store.has(self._ip_lockout_key(ip_address))
        except CounterStoreError as e:
            self._report_store_failure("is_ip_locked_out", e)
            return False

    def get_user_lockout_info(self, identity) -> Optional[LockoutInfo]:
        identity = normalize_identity(identity)
        try:
            data = self.store.get(self._user_lockout_key(identity))
        except CounterStoreError as e:
            self._report_store_failure("get_user_lockout_info", e)
            return None
        return LockoutInfo.from_record(data) if data else None

    def get_ip_lockout_info(self, ip_address) -> Optional[LockoutInfo]:
        ip_address = normalize_ip(ip_address)
        try:
            data = self.store.get(self._ip_lockout_key(ip_address))
        except CounterStoreError as e:
            self._report_store_failure("get_ip_lockout_info", e)
            return None
        return LockoutInfo.from_record(data) if data else None

    def _read_count(self, key, operation) -> int:
        try:
            return int(self.store.get(key, 0) or 0)
        except CounterStoreError as e:
            self._report_store_failure(operation, e)
            return 0

    def get_failed_attempt_count(self, identity) -> int:
        identity = normalize_identity(identity)
        return self._read_count(
            self._user_attempts_key(identity), "get_failed_attempt_count"
        )

    def get_ip_failed_attempt_count(self, ip_address) -> int:
        ip_address = normalize_ip(ip_address)
        return self._read_count(
            self._ip_attempts_key(ip_address), "get_ip_failed_attempt_count"
        )

    def get_lockout_count(self, identity) -> int:
        identity = normalize_identity(identity)
        return self._read_count(self._lockout_count_key(identity), "get_lockout_count")

    def unlock_user(self, identity, context: Optional[RequestContext] = None) -> bool:
        """
        Remove a user lockout.

        Clearing a permanent lockout also resets the escalation counter so the
        next lockout starts from the base duration, and reactivates the account
        when that lockout deactivated it. Idempotent. Counter store errors
        propagate to the administrator.
        """
        identity = normalize_identity(identity)
        lockout_key = self._user_lockout_key(identity)
        record = self.store.get(lockout_key)
        self.store.forget(lockout_key)
        self.store.forget(self._user_attempts_key(identity))
        was_permanent = bool(record and record.get("is_permanent"))
        reactivated = False
        if was_permanent:
            self.store.forget(self._lockout_count_key(identity))
            if record.get("account_deactivated"):
                reactivated = self._set_account_active(identity, True)

        logger.info(f"User account manually unlocked: {identity}")
        self.monitor.log_security_event(
            EventType.ACCOUNT_UNLOCKED,
            Severity.LOW,
            f"Account manually unlocked: {identity}",
            metadata={
                "identifier": identity,
                "was_locked": record is not None,
                "was_permanent": was_permanent,
                "account_reactivated": reactivated,
            },
            context=context,
        )
        return True

    def unlock_ip(self, ip_address, context: Optional[RequestContext] = None) -> bool:
        ip_address = normalize_ip(ip_address)
        was_locked = self.store.forget(self._ip_lockout_key(ip_address))
        self.store.forget(self._ip_attempts_key(ip_address))

        logger.info(f"IP address manually unlocked: {ip_address}")
        self.monitor.log_security_event(
            EventType.IP_UNLOCKED,
            Severity.LOW,
            f"IP address manually unlocked: {ip_address}",
            metadata={"ip": ip_address, "was_locked": was_locked},
            context=context,
        )
        return True
