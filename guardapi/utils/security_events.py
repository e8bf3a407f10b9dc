"""Security event vocabulary and structured logging for the guard API"""

from enum import Enum
import logging
from typing import Any, Optional

import rollbar

logger = logging.getLogger("guardapi.security")


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @property
    def log_level(self) -> int:
        return _SEVERITY_LOG_LEVEL[self]


_SEVERITY_RANK = {
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}

_SEVERITY_LOG_LEVEL = {
    Severity.CRITICAL: logging.CRITICAL,
    Severity.HIGH: logging.ERROR,
    Severity.MEDIUM: logging.WARNING,
    Severity.LOW: logging.INFO,
}


class EventType(str, Enum):
    FAILED_LOGIN = "failed_login"
    SUCCESSFUL_LOGIN_AFTER_FAILURES = "successful_login_after_failures"
    ACCOUNT_LOCKOUT = "account_lockout"
    IP_LOCKOUT = "ip_lockout"
    ACCOUNT_UNLOCKED = "account_unlocked"
    IP_UNLOCKED = "ip_unlocked"
    SESSION_HIJACK_SUSPECTED = "session_hijack_suspected"
    INSECURE_SESSION_ACCESS = "insecure_session_access"
    SUSPICIOUS_QUERY = "suspicious_query"
    UNPARAMETERIZED_QUERY = "unparameterized_query"
    SLOW_QUERY = "slow_query"
    FILE_UPLOAD_VIOLATION = "file_upload_violation"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    XSS_ATTEMPT = "xss_attempt"
    POTENTIAL_ATTACK = "potential_attack"
    COORDINATED_ATTACK = "coordinated_attack"
    SECURITY_ALERT = "security_alert"


# Human readable descriptions used by dashboards and exports
SECURITY_EVENTS = {
    EventType.FAILED_LOGIN.value: "Failed login attempt",
    EventType.SUCCESSFUL_LOGIN_AFTER_FAILURES.value: (
        "Successful login after failed attempts"
    ),
    EventType.ACCOUNT_LOCKOUT.value: "Account locked out",
    EventType.IP_LOCKOUT.value: "IP address locked out",
    EventType.ACCOUNT_UNLOCKED.value: "Account manually unlocked",
    EventType.IP_UNLOCKED.value: "IP address manually unlocked",
    EventType.SESSION_HIJACK_SUSPECTED.value: "Session used from a different origin",
    EventType.INSECURE_SESSION_ACCESS.value: "Session used over insecure transport",
    EventType.SUSPICIOUS_QUERY.value: "Suspicious database query pattern",
    EventType.UNPARAMETERIZED_QUERY.value: "Potentially unparameterized query",
    EventType.SLOW_QUERY.value: "Slow database query",
    EventType.FILE_UPLOAD_VIOLATION.value: "Rejected file upload",
    EventType.RATE_LIMIT_EXCEEDED.value: "Rate limit exceeded",
    EventType.XSS_ATTEMPT.value: "Cross-site scripting attempt",
    EventType.POTENTIAL_ATTACK.value: "Burst of events from a single origin",
    EventType.COORDINATED_ATTACK.value: "Same event type from many origins",
    EventType.SECURITY_ALERT.value: "Hourly threshold alert",
}


def coerce_severity(severity) -> Severity:
    """Accept either a Severity or its string value."""
    if isinstance(severity, Severity):
        return severity
    try:
        return Severity(str(severity).lower())
    except ValueError as e:
        from guardapi.errors import ValidationError

        raise ValidationError(
            f"Unknown severity: {severity}", field="severity"
        ) from e


def event_type_value(event_type) -> str:
    if isinstance(event_type, EventType):
        return event_type.value
    return str(event_type)


def log_security_event(
    event_type: str,
    severity: Severity,
    description: str,
    event_id: Optional[Any] = None,
    ip_address: Optional[str] = None,
    user_id: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
) -> None:
    """
    Write a security event to the security log.

    Args:
        event_type: Type of security event (usually an EventType value)
        severity: Severity, mapped to the log level
            (critical->CRITICAL, high->ERROR, medium->WARNING, low->INFO)
        description: Human readable description
        event_id: Database id of the persisted event, if it was stored
        ip_address: Origin IP address
        user_id: Authenticated user id (if applicable)
        details: Additional structured details
    """
    if event_type not in SECURITY_EVENTS:
        logger.debug(f"Unregistered security event type: {event_type}")

    event_data = {
        "event_id": str(event_id) if event_id is not None else None,
        "event_type": event_type,
        "severity": severity.value,
        "ip_address": ip_address,
        "user_id": user_id,
        "details": details or {},
    }
    # Filter out None values for cleaner logs
    event_data = {k: v for k, v in event_data.items() if v is not None}

    logger.log(
        severity.log_level,
        f"SECURITY_EVENT: {event_type} - {description}",
        extra={"security_event": event_data},
    )

    # High and critical events also go to Rollbar for centralized monitoring
    if severity.rank >= Severity.HIGH.rank:
        try:
            rollbar.report_message(
                message=f"Security Event: {event_type}",
                level="critical" if severity is Severity.CRITICAL else "error",
                extra_data=event_data,
            )
        except Exception as e:
            logger.error(f"Failed to send security event to Rollbar: {e}")
