"""SECURE SESSION SERVICE"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
import datetime
from enum import Enum
import logging
import secrets
from typing import Any, Callable, Optional
import uuid

import rollbar

from guardapi.errors import CounterStoreError, ValidationError
from guardapi.services.security_config import SessionConfig
from guardapi.utils.counter_store import CounterStore, utcnow
from guardapi.utils.request_context import RequestContext
from guardapi.utils.security_events import EventType, Severity

logger = logging.getLogger(__name__)

# 48 random bytes, 384 bits of entropy
TOKEN_BYTES = 48
MAX_ROTATION_HOPS = 3


class InvalidationReason(str, Enum):
    TIMEOUT = "timeout"
    IDLE_TIMEOUT = "idle_timeout"
    IP_MISMATCH = "ip_mismatch"
    UA_MISMATCH = "ua_mismatch"
    INSECURE_TRANSPORT = "insecure_transport"
    CONCURRENT_LIMIT = "concurrent_limit"
    MANUAL = "manual"
    SECURITY = "security"
    ROTATED = "rotated"


def _coerce_reason(reason) -> InvalidationReason:
    try:
        return InvalidationReason(reason)
    except ValueError as e:
        raise ValidationError(
            f"Unknown invalidation reason: {reason}", field="reason"
        ) from e


def _dt(value: Optional[str]) -> Optional[datetime.datetime]:
    return datetime.datetime.fromisoformat(value) if value else None


def _iso(value: Optional[datetime.datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class SessionRecord:
    user_id: str
    token: str
    session_id: str
    origin_ip: Optional[str]
    origin_user_agent: Optional[str]
    created_at: datetime.datetime
    last_activity_at: datetime.datetime
    rotated_at: datetime.datetime
    is_active: bool = True
    invalidated_at: Optional[datetime.datetime] = None
    invalidation_reason: Optional[str] = None
    rotated_to: Optional[str] = None
    grace_until: Optional[datetime.datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "token": self.token,
            "session_id": self.session_id,
            "origin_ip": self.origin_ip,
            "origin_user_agent": self.origin_user_agent,
            "created_at": _iso(self.created_at),
            "last_activity_at": _iso(self.last_activity_at),
            "rotated_at": _iso(self.rotated_at),
            "is_active": self.is_active,
            "invalidated_at": _iso(self.invalidated_at),
            "invalidation_reason": self.invalidation_reason,
            "rotated_to": self.rotated_to,
            "grace_until": _iso(self.grace_until),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SessionRecord":
        return cls(
            user_id=data["user_id"],
            token=data["token"],
            session_id=data["session_id"],
            origin_ip=data.get("origin_ip"),
            origin_user_agent=data.get("origin_user_agent"),
            created_at=_dt(data["created_at"]),
            last_activity_at=_dt(data["last_activity_at"]),
            rotated_at=_dt(data.get("rotated_at") or data["created_at"]),
            is_active=bool(data.get("is_active", False)),
            invalidated_at=_dt(data.get("invalidated_at")),
            invalidation_reason=data.get("invalidation_reason"),
            rotated_to=data.get("rotated_to"),
            grace_until=_dt(data.get("grace_until")),
        )

    def serialize(self) -> dict[str, Any]:
        """Public view; the bearer token is never exposed."""
        data = self.to_dict()
        data.pop("token")
        data.pop("rotated_to")
        return data


@dataclass(frozen=True)
class SessionValidation:
    """Result of :meth:`SessionService.validate_session`.

    ``token`` is the token the client must use from now on; it differs from
    the presented one when ``rotated`` is set.
    """

    valid: bool
    reason: Optional[str] = None
    token: Optional[str] = None
    rotated: bool = False
    session_id: Optional[str] = None


class SessionService:
    """
    Issues and validates session tokens bound to the originating client.

    Rotation keeps a retired token usable for ``rotation_grace_period``
    seconds: concurrent requests that still carry it resolve to the
    successor token. All mutations of a user's active session list happen
    under a per-user counter store lock.
    """

    def __init__(
        self,
        store: CounterStore,
        monitor,
        config: SessionConfig,
        clock: Callable[[], datetime.datetime] = utcnow,
    ):
        self.store = store
        self.monitor = monitor
        self.config = config
        self._clock = clock

    @staticmethod
    def _session_key(user_id, token):
        return f"user_session:{user_id}:{token}"

    @staticmethod
    def _active_key(user_id):
        return f"active_sessions:{user_id}"

    def _lock(self, user_id):
        return self.store.lock(
            f"session_lock:{user_id}",
            timeout=self.config.lock_timeout,
            blocking_timeout=self.config.lock_timeout,
        )

    @staticmethod
    def _normalize_user_id(user_id) -> str:
        if user_id is None or not str(user_id).strip():
            raise ValidationError("User id is required", field="user_id")
        return str(user_id).strip()

    @staticmethod
    def _require_token(token) -> str:
        if not isinstance(token, str) or not token:
            raise ValidationError("Session token is required", field="token")
        return token

    def _load(self, user_id, token) -> Optional[SessionRecord]:
        data = self.store.get(self._session_key(user_id, token))
        if not data:
            return None
        try:
            return SessionRecord.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Discarding malformed session record for {user_id}: {e}")
            return None

    def _save(self, record: SessionRecord, ttl: int):
        self.store.put(
            self._session_key(record.user_id, record.token), record.to_dict(), ttl
        )

    def _active_tokens(self, user_id) -> list[str]:
        """Tokens of the user's live sessions, oldest first."""
        tokens = self.store.get(self._active_key(user_id)) or []
        live = []
        for token in tokens:
            record = self._load(user_id, token)
            if record is not None and record.is_active:
                live.append(token)
        return live

    def _write_active_tokens(self, user_id, tokens):
        if tokens:
            self.store.put(
                self._active_key(user_id), tokens, self.config.session_timeout
            )
        else:
            self.store.forget(self._active_key(user_id))

    def initialize_session(
        self, user_id, context: Optional[RequestContext] = None
    ) -> str:
        """Issue a new session token, evicting the oldest beyond the cap."""
        user_id = self._normalize_user_id(user_id)
        context = context or RequestContext.system(user_id=user_id)
        now = self._clock()
        record = SessionRecord(
            user_id=user_id,
            token=secrets.token_urlsafe(TOKEN_BYTES),
            session_id=uuid.uuid4().hex,
            origin_ip=context.ip_address,
            origin_user_agent=context.user_agent,
            created_at=now,
            last_activity_at=now,
            rotated_at=now,
        )

        with self._lock(user_id):
            self._save(record, self.config.session_timeout)
            tokens = self._active_tokens(user_id)
            tokens.append(record.token)
            while len(tokens) > self.config.max_concurrent_sessions:
                evicted = tokens.pop(0)
                self._retire(user_id, evicted, InvalidationReason.CONCURRENT_LIMIT)
            self._write_active_tokens(user_id, tokens)

        logger.info(f"Session {record.session_id} initialized for user {user_id}")
        return record.token

    def validate_session(
        self, user_id, token, context: Optional[RequestContext] = None
    ) -> SessionValidation:
        """Validate ``token`` for ``user_id``; fails closed on store errors."""
        user_id = self._normalize_user_id(user_id)
        token = self._require_token(token)
        context = context or RequestContext.system(user_id=user_id)
        try:
            return self._validate(user_id, token, context, hops=0)
        except CounterStoreError as e:
            logger.error(f"Session validation failed closed for user {user_id}: {e}")
            rollbar.report_exc_info(extra_data={"user_id": user_id})
            return SessionValidation(valid=False, reason="store_unavailable")

    def _validate(self, user_id, token, context, hops) -> SessionValidation:
        record = self._load(user_id, token)
        if record is None:
            return SessionValidation(valid=False, reason="not_found")

        now = self._clock()
        if not record.is_active:
            if (
                record.invalidation_reason == InvalidationReason.ROTATED.value
                and record.rotated_to
                and record.grace_until
                and now <= record.grace_until
                and hops < MAX_ROTATION_HOPS
            ):
                result = self._validate(user_id, record.rotated_to, context, hops + 1)
                if result.valid:
                    return dataclasses.replace(result, rotated=True)
                return result
            return SessionValidation(
                valid=False,
                reason=record.invalidation_reason or "inactive",
                session_id=record.session_id,
            )

        reason = self._violation(record, context, now)
        if reason is not None:
            self._report_violation(record, reason, context)
            self.invalidate_session(user_id, token, reason=reason, context=context)
            return SessionValidation(
                valid=False, reason=reason.value, session_id=record.session_id
            )

        with self._lock(user_id):
            current = self._load(user_id, token)
            if current is not None and current.is_active:
                current.last_activity_at = now
                if now - current.rotated_at >= datetime.timedelta(
                    seconds=self.config.rotation_interval
                ):
                    new_token = self._rotate(current, now)
                    return SessionValidation(
                        valid=True,
                        token=new_token,
                        rotated=True,
                        session_id=current.session_id,
                    )

                self._save(current, self.config.session_timeout)
                self.store.expire(
                    self._active_key(user_id), self.config.session_timeout
                )
                return SessionValidation(
                    valid=True,
                    token=token,
                    rotated=False,
                    session_id=current.session_id,
                )

        # Invalidated or rotated by a concurrent request since the first read
        if hops < MAX_ROTATION_HOPS:
            return self._validate(user_id, token, context, hops + 1)
        return SessionValidation(
            valid=False, reason="inactive", session_id=record.session_id
        )

    def _violation(self, record, context, now) -> Optional[InvalidationReason]:
        if now - record.created_at > datetime.timedelta(
            seconds=self.config.session_timeout
        ):
            return InvalidationReason.TIMEOUT
        if now - record.last_activity_at > datetime.timedelta(
            seconds=self.config.idle_timeout
        ):
            return InvalidationReason.IDLE_TIMEOUT
        if self.config.track_ip_address and context.ip_address != record.origin_ip:
            return InvalidationReason.IP_MISMATCH
        if (
            self.config.track_user_agent
            and context.user_agent != record.origin_user_agent
        ):
            return InvalidationReason.UA_MISMATCH
        if self.config.require_https and not context.is_secure:
            return InvalidationReason.INSECURE_TRANSPORT
        return None

    def _report_violation(self, record, reason, context):
        if reason in (InvalidationReason.IP_MISMATCH, InvalidationReason.UA_MISMATCH):
            changed = (
                "IP address"
                if reason is InvalidationReason.IP_MISMATCH
                else "user agent"
            )
            self.monitor.log_security_event(
                EventType.SESSION_HIJACK_SUSPECTED,
                Severity.HIGH,
                f"Session {record.session_id} used from a different {changed}",
                metadata={
                    "reason": reason.value,
                    "session_id": record.session_id,
                    "bound_ip": record.origin_ip,
                    "bound_user_agent": record.origin_user_agent,
                },
                context=context.with_user(record.user_id),
            )
        elif reason is InvalidationReason.INSECURE_TRANSPORT:
            self.monitor.log_security_event(
                EventType.INSECURE_SESSION_ACCESS,
                Severity.MEDIUM,
                f"Session {record.session_id} used over an insecure connection",
                metadata={"reason": reason.value, "session_id": record.session_id},
                context=context.with_user(record.user_id),
            )
        else:
            logger.info(
                f"Session {record.session_id} for user {record.user_id} "
                f"expired: {reason.value}"
            )

    def _rotate(self, record: SessionRecord, now) -> str:
        """Replace an active record with a successor token.

        The caller holds the user's lock and has just reloaded ``record``.
        """
        old_token = record.token
        successor = dataclasses.replace(
            record, token=secrets.token_urlsafe(TOKEN_BYTES), rotated_at=now
        )
        self._save(successor, self.config.session_timeout)
        record.is_active = False
        record.invalidated_at = now
        record.invalidation_reason = InvalidationReason.ROTATED.value
        record.rotated_to = successor.token
        record.grace_until = now + datetime.timedelta(
            seconds=self.config.rotation_grace_period
        )
        self._save(record, self.config.audit_retention)

        # The successor keeps the retired token's place in eviction order
        tokens = self.store.get(self._active_key(record.user_id)) or []
        tokens = [successor.token if t == old_token else t for t in tokens]
        if successor.token not in tokens:
            tokens.append(successor.token)
        self._write_active_tokens(record.user_id, tokens)

        logger.debug(f"Rotated token for session {record.session_id}")
        return successor.token

    def _retire(self, user_id, token, reason: InvalidationReason) -> bool:
        """Mark a record inactive, keeping it for the audit window."""
        record = self._load(user_id, token)
        if record is None or not record.is_active:
            return False
        record.is_active = False
        record.invalidated_at = self._clock()
        record.invalidation_reason = reason.value
        self._save(record, self.config.audit_retention)
        logger.info(
            f"Session {record.session_id} for user {user_id} invalidated: "
            f"{reason.value}"
        )
        return True

    def invalidate_session(
        self,
        user_id,
        token,
        reason=InvalidationReason.MANUAL,
        context: Optional[RequestContext] = None,
    ) -> bool:
        """Terminate one session. Returns True if it was active."""
        user_id = self._normalize_user_id(user_id)
        token = self._require_token(token)
        reason = _coerce_reason(reason)
        with self._lock(user_id):
            retired = self._retire(user_id, token, reason)
            tokens = [t for t in self._active_tokens(user_id) if t != token]
            self._write_active_tokens(user_id, tokens)
        return retired

    def invalidate_all_user_sessions(
        self,
        user_id,
        reason=InvalidationReason.SECURITY,
        context: Optional[RequestContext] = None,
    ) -> int:
        """Terminate every active session of ``user_id``. Returns the count."""
        user_id = self._normalize_user_id(user_id)
        reason = _coerce_reason(reason)
        with self._lock(user_id):
            tokens = self.store.get(self._active_key(user_id)) or []
            count = sum(1 for token in tokens if self._retire(user_id, token, reason))
            self.store.forget(self._active_key(user_id))
        logger.warning(
            f"All sessions invalidated for user {user_id} ({count}): {reason.value}"
        )
        return count

    def get_active_sessions(self, user_id) -> list[SessionRecord]:
        user_id = self._normalize_user_id(user_id)
        records = []
        for token in self.store.get(self._active_key(user_id)) or []:
            record = self._load(user_id, token)
            if record is not None and record.is_active:
                records.append(record)
        return records

    def get_session_info(self, user_id, token) -> Optional[SessionRecord]:
        user_id = self._normalize_user_id(user_id)
        token = self._require_token(token)
        return self._load(user_id, token)
