"""Immutable configuration objects for the security services"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Optional

from guardapi.errors import ValidationError


def _positive(name: str, value: int) -> int:
    value = int(value)
    if value <= 0:
        raise ValidationError(f"{name} must be positive, got {value}", field=name)
    return value


@dataclass(frozen=True)
class LockoutConfig:
    max_attempts: int = 5
    lockout_duration: int = 900
    progressive_lockout: bool = True
    max_backoff_exponent: int = 5
    ip_lockout_enabled: bool = True
    ip_max_attempts: int = 20
    ip_lockout_duration: int = 3600
    permanent_lockout_threshold: int = 10
    user_attempt_window: int = 1800
    ip_attempt_window: int = 3600
    lockout_count_ttl: int = 30 * 24 * 3600

    def __post_init__(self):
        for name in (
            "max_attempts",
            "lockout_duration",
            "ip_max_attempts",
            "ip_lockout_duration",
            "permanent_lockout_threshold",
            "user_attempt_window",
            "ip_attempt_window",
            "lockout_count_ttl",
        ):
            _positive(name, getattr(self, name))

    @classmethod
    def from_settings(cls, settings: Mapping[str, Any]) -> "LockoutConfig":
        return cls(
            max_attempts=settings.get("MAX_ATTEMPTS", 5),
            lockout_duration=settings.get("LOCKOUT_DURATION", 900),
            progressive_lockout=settings.get("PROGRESSIVE_LOCKOUT", True),
            max_backoff_exponent=settings.get("MAX_BACKOFF_EXPONENT", 5),
            ip_lockout_enabled=settings.get("IP_LOCKOUT_ENABLED", True),
            ip_max_attempts=settings.get("IP_MAX_ATTEMPTS", 20),
            ip_lockout_duration=settings.get("IP_LOCKOUT_DURATION", 3600),
            permanent_lockout_threshold=settings.get("PERMANENT_LOCKOUT_THRESHOLD", 10),
            user_attempt_window=settings.get("USER_ATTEMPT_WINDOW", 1800),
            ip_attempt_window=settings.get("IP_ATTEMPT_WINDOW", 3600),
            lockout_count_ttl=settings.get("LOCKOUT_COUNT_TTL", 30 * 24 * 3600),
        )


@dataclass(frozen=True)
class SessionConfig:
    max_concurrent_sessions: int = 3
    session_timeout: int = 7200
    idle_timeout: int = 1800
    rotation_interval: int = 300
    rotation_grace_period: int = 30
    track_ip_address: bool = True
    track_user_agent: bool = True
    require_https: bool = True
    audit_retention: int = 24 * 3600
    lock_timeout: int = 5

    def __post_init__(self):
        for name in (
            "max_concurrent_sessions",
            "session_timeout",
            "idle_timeout",
            "rotation_interval",
            "audit_retention",
            "lock_timeout",
        ):
            _positive(name, getattr(self, name))

    @classmethod
    def from_settings(cls, settings: Mapping[str, Any]) -> "SessionConfig":
        return cls(
            max_concurrent_sessions=settings.get("MAX_CONCURRENT_SESSIONS", 3),
            session_timeout=settings.get("SESSION_TIMEOUT", 7200),
            idle_timeout=settings.get("IDLE_TIMEOUT", 1800),
            rotation_interval=settings.get("ROTATION_INTERVAL", 300),
            rotation_grace_period=settings.get("ROTATION_GRACE_PERIOD", 30),
            track_ip_address=settings.get("TRACK_IP_ADDRESS", True),
            track_user_agent=settings.get("TRACK_USER_AGENT", True),
            require_https=settings.get("REQUIRE_HTTPS", True),
            audit_retention=settings.get("AUDIT_RETENTION", 24 * 3600),
            lock_timeout=settings.get("LOCK_TIMEOUT", 5),
        )


@dataclass(frozen=True)
class QueryMonitorConfig:
    enabled: bool = False
    slow_query_threshold_ms: int = 5000

    @classmethod
    def from_settings(cls, settings: Mapping[str, Any]) -> "QueryMonitorConfig":
        return cls(
            enabled=settings.get("ENABLED", False),
            slow_query_threshold_ms=settings.get("SLOW_QUERY_THRESHOLD_MS", 5000),
        )


DEFAULT_ALERT_THRESHOLDS = MappingProxyType(
    {
        "failed_login": 50,
        "suspicious_query": 10,
        "rate_limit_exceeded": 100,
        "file_upload_violation": 20,
        "xss_attempt": 5,
        "session_hijack_suspected": 10,
    }
)


@dataclass(frozen=True)
class MonitoringConfig:
    alert_thresholds: Mapping[str, int] = field(
        default_factory=lambda: DEFAULT_ALERT_THRESHOLDS
    )
    notification_channels: tuple[str, ...] = ("log",)
    admin_emails: tuple[str, ...] = ()
    alert_from_email: str = "security@guardapi.local"
    webhook_url: Optional[str] = None
    webhook_timeout: int = 5
    dashboard_refresh_interval: int = 300
    single_origin_event_threshold: int = 10
    single_origin_window: int = 600
    coordinated_ip_threshold: int = 5
    coordinated_window: int = 300
    event_retention_days: int = 90

    def __post_init__(self):
        # Freeze the mapping so a shared config cannot be mutated at runtime
        object.__setattr__(
            self, "alert_thresholds", MappingProxyType(dict(self.alert_thresholds))
        )
        object.__setattr__(
            self, "notification_channels", tuple(self.notification_channels)
        )
        object.__setattr__(self, "admin_emails", tuple(self.admin_emails))

    @classmethod
    def from_settings(
        cls, settings: Mapping[str, Any], event_retention_days: int = 90
    ) -> "MonitoringConfig":
        thresholds = dict(DEFAULT_ALERT_THRESHOLDS)
        thresholds.update(settings.get("ALERT_THRESHOLDS", {}))
        return cls(
            alert_thresholds=thresholds,
            notification_channels=tuple(settings.get("NOTIFICATION_CHANNELS", ["log"])),
            admin_emails=tuple(settings.get("ADMIN_EMAILS", [])),
            alert_from_email=settings.get(
                "ALERT_FROM_EMAIL", "security@guardapi.local"
            ),
            webhook_url=settings.get("WEBHOOK_URL"),
            webhook_timeout=settings.get("WEBHOOK_TIMEOUT", 5),
            dashboard_refresh_interval=settings.get("DASHBOARD_REFRESH_INTERVAL", 300),
            single_origin_event_threshold=settings.get(
                "SINGLE_ORIGIN_EVENT_THRESHOLD", 10
            ),
            single_origin_window=settings.get("SINGLE_ORIGIN_WINDOW", 600),
            coordinated_ip_threshold=settings.get("COORDINATED_IP_THRESHOLD", 5),
            coordinated_window=settings.get("COORDINATED_WINDOW", 300),
            event_retention_days=event_retention_days,
        )


@dataclass(frozen=True)
class SecurityConfig:
    """All security settings, built once from ``SETTINGS["SECURITY"]``."""

    lockout: LockoutConfig = field(default_factory=LockoutConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    query_monitor: QueryMonitorConfig = field(default_factory=QueryMonitorConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)

    @classmethod
    def from_settings(cls, settings: Mapping[str, Any]) -> "SecurityConfig":
        security = settings.get("SECURITY", {})
        return cls(
            lockout=LockoutConfig.from_settings(security.get("LOCKOUT", {})),
            session=SessionConfig.from_settings(security.get("SESSION", {})),
            query_monitor=QueryMonitorConfig.from_settings(
                security.get("QUERY_MONITOR", {})
            ),
            monitoring=MonitoringConfig.from_settings(
                security.get("MONITORING", {}),
                event_retention_days=security.get("EVENT_RETENTION_DAYS", 90),
            ),
        )
