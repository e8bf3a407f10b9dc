"""SECURITY MONITORING SERVICE"""

from __future__ import annotations

import base64
import csv
from dataclasses import dataclass
import datetime
import io
import json
import logging
from typing import Any, Callable, Mapping, Optional

import rollbar

from guardapi.errors import CounterStoreError, ValidationError
from guardapi.models import SecurityEventRecord
from guardapi.services.notification_service import NotificationDispatcher
from guardapi.services.security_config import MonitoringConfig
from guardapi.services.security_event_service import SecurityEventRepository
from guardapi.utils.counter_store import CounterStore, utcnow
from guardapi.utils.request_context import RequestContext
from guardapi.utils.security_events import (
    EventType,
    Severity,
    coerce_severity,
    event_type_value,
    log_security_event,
)

logger = logging.getLogger(__name__)

EVENT_TYPE_MAX_LENGTH = 64

# Events produced by pattern detection; they are not re-examined for patterns
DERIVED_EVENT_TYPES = frozenset(
    {EventType.POTENTIAL_ATTACK.value, EventType.COORDINATED_ATTACK.value}
)

STATISTICS_PERIODS = {
    "24h": datetime.timedelta(hours=24),
    "7d": datetime.timedelta(days=7),
    "30d": datetime.timedelta(days=30),
    "90d": datetime.timedelta(days=90),
}

EXPORT_FORMATS = ("csv", "json")

EXPORT_COLUMNS = (
    "id",
    "type",
    "severity",
    "description",
    "ip_address",
    "user_agent",
    "user_id",
    "created_at",
    "metadata",
)


@dataclass(frozen=True)
class LoggedEvent:
    """Outcome of :meth:`SecurityMonitoringService.log_security_event`.

    ``alerts`` names the alert conditions that fired while evaluating the
    event (``threshold``, ``critical``, ``potential_attack``,
    ``coordinated_attack``). ``error`` holds the persistence failure, if any.
    """

    record: SecurityEventRecord
    persisted: bool
    alerts: tuple[str, ...] = ()
    error: Optional[str] = None


class SecurityMonitoringService:
    """Central sink for security events, driving alerting and dashboards."""

    DASHBOARD_CACHE_KEY = "security_dashboard"

    def __init__(
        self,
        repository: SecurityEventRepository,
        store: CounterStore,
        notifier: NotificationDispatcher,
        config: MonitoringConfig,
        clock: Callable[[], datetime.datetime] = utcnow,
    ):
        self.repository = repository
        self.store = store
        self.notifier = notifier
        self.config = config
        self._clock = clock

    def log_security_event(
        self,
        event_type,
        severity,
        description: str,
        metadata: Optional[Mapping[str, Any]] = None,
        context: Optional[RequestContext] = None,
    ) -> LoggedEvent:
        """
        Persist, log and evaluate one security event.

        Persistence failures are logged, reported to Rollbar and returned in
        the result; they are never raised. ``ValidationError`` is raised for a
        malformed type, severity or metadata before anything is written.
        """
        event_type = event_type_value(event_type)
        if not event_type or len(event_type) > EVENT_TYPE_MAX_LENGTH:
            raise ValidationError("Invalid security event type", field="type")
        severity = coerce_severity(severity)
        if metadata is not None and not isinstance(metadata, Mapping):
            raise ValidationError("Event metadata must be a mapping", field="metadata")
        context = context or RequestContext.system()

        now = self._clock()
        record = SecurityEventRecord(
            type=event_type,
            severity=severity.value,
            description=description,
            created_at=now,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            user_id=context.user_id,
            metadata=self._enrich_metadata(metadata, context, now),
        )

        persisted, error = True, None
        try:
            record = self.repository.add(record)
        except Exception as e:
            persisted, error = False, str(e)
            logger.error(f"Failed to persist security event {event_type}: {e}")
            rollbar.report_exc_info(
                extra_data={"event_type": event_type, "severity": severity.value}
            )

        log_security_event(
            event_type,
            severity,
            description,
            event_id=record.id,
            ip_address=record.ip_address,
            user_id=record.user_id,
            details=dict(record.metadata),
        )

        # Threshold alerts log security_alert events; those are never evaluated
        # again, which bounds the recursion.
        alerts: tuple[str, ...] = ()
        if event_type != EventType.SECURITY_ALERT.value:
            alerts = self._evaluate_alerts(record, severity)

        return LoggedEvent(
            record=record, persisted=persisted, alerts=alerts, error=error
        )

    def _enrich_metadata(self, metadata, context, now) -> dict[str, Any]:
        # Round-trip through JSON so the stored document is plain data
        enriched = json.loads(json.dumps(dict(metadata or {}), default=str))
        enriched.setdefault("url", context.url)
        enriched.setdefault("method", context.method)
        enriched.setdefault("timestamp", now.isoformat())
        return enriched

    def _evaluate_alerts(
        self, record: SecurityEventRecord, severity: Severity
    ) -> tuple[str, ...]:
        derived = record.type in DERIVED_EVENT_TYPES
        steps = []
        if not derived:
            steps.append(self._check_threshold)
        if severity is Severity.CRITICAL:
            steps.append(self._notify_critical)
        if not derived:
            steps.extend([self._detect_single_origin_burst, self._detect_coordinated])

        fired = []
        for step in steps:
            try:
                alert = step(record)
            except Exception as e:
                logger.error(
                    f"Alert evaluation {step.__name__} failed for {record.type}: {e}"
                )
                rollbar.report_exc_info(extra_data={"event_type": record.type})
                continue
            if alert:
                fired.append(alert)
        return tuple(fired)

    def _check_threshold(self, record: SecurityEventRecord) -> Optional[str]:
        hour = record.created_at.strftime("%Y-%m-%d-%H")
        count = self.store.increment(
            f"security_events_hourly:{record.type}:{hour}", ttl=7200
        )
        threshold = self.config.alert_thresholds.get(record.type)
        if threshold is None or count < threshold:
            return None

        # Atomic marker: only the first caller in this (type, hour) bucket alerts
        if not self.store.add(
            f"security_alert:{record.type}:{hour}", record.created_at.isoformat(), 3600
        ):
            return None

        message = (
            f"Security Alert: {count} {record.type} events in the last hour "
            f"(threshold: {threshold})"
        )
        data = {
            "alert_type": record.type,
            "event_count": count,
            "threshold": threshold,
            "hour": record.created_at.strftime("%Y-%m-%d %H:00"),
        }
        logger.critical(message)
        self.notifier.dispatch(f"Threshold exceeded: {record.type}", message, data)
        self.log_security_event(
            EventType.SECURITY_ALERT,
            Severity.CRITICAL,
            message,
            metadata=data,
            context=RequestContext.system(),
        )
        return "threshold"

    def _notify_critical(self, record: SecurityEventRecord) -> str:
        message = f"Critical Security Event: {record.type}"
        data = {
            "type": record.type,
            "event_id": record.id,
            "description": record.description,
            "ip_address": record.ip_address,
            "user_id": record.user_id,
        }
        logger.critical(message)
        self.notifier.dispatch(message, record.description, data)
        return "critical"

    def _detect_single_origin_burst(
        self, record: SecurityEventRecord
    ) -> Optional[str]:
        ip_address = record.ip_address
        if not ip_address:
            return None
        window = self.config.single_origin_window
        since = record.created_at - datetime.timedelta(seconds=window)
        count = self.repository.count_since(since, ip_address=ip_address)
        if count < self.config.single_origin_event_threshold:
            return None
        if not self.store.add(
            f"attack_detected:ip:{ip_address}", record.created_at.isoformat(), window
        ):
            return None

        self.log_security_event(
            EventType.POTENTIAL_ATTACK,
            Severity.HIGH,
            f"Potential attack detected from IP: {ip_address}",
            metadata={
                "recent_events": count,
                "time_window_seconds": window,
                "trigger_type": record.type,
            },
            context=RequestContext(ip_address=ip_address, is_secure=True),
        )
        return "potential_attack"

    def _detect_coordinated(self, record: SecurityEventRecord) -> Optional[str]:
        window = self.config.coordinated_window
        since = record.created_at - datetime.timedelta(seconds=window)
        unique_ips = self.repository.distinct_ip_count(record.type, since)
        if unique_ips < self.config.coordinated_ip_threshold:
            return None
        if not self.store.add(
            f"attack_detected:type:{record.type}", record.created_at.isoformat(), window
        ):
            return None

        self.log_security_event(
            EventType.COORDINATED_ATTACK,
            Severity.CRITICAL,
            f"Potential coordinated attack detected: {record.type} "
            f"from {unique_ips} different IPs",
            metadata={
                "attack_type": record.type,
                "unique_ips": unique_ips,
                "ip_addresses": self.repository.distinct_ips(record.type, since),
                "time_window_seconds": window,
            },
            context=RequestContext.system(),
        )
        return "coordinated_attack"

    # Dashboards and reporting

    def get_dashboard_data(self, refresh: bool = False) -> dict[str, Any]:
        """
        Aggregate recent security activity for the admin dashboard.

        The result is cached in the counter store for
        ``DASHBOARD_REFRESH_INTERVAL`` seconds; ``refresh=True`` rebuilds it.
        An unavailable store only disables caching.
        """
        if not refresh:
            try:
                cached = self.store.get(self.DASHBOARD_CACHE_KEY)
                if cached is not None:
                    logger.debug("Retrieved security dashboard from cache")
                    return cached
            except CounterStoreError as e:
                logger.warning(f"Dashboard cache unavailable: {e}")

        data = self._build_dashboard()
        try:
            self.store.put(
                self.DASHBOARD_CACHE_KEY, data, self.config.dashboard_refresh_interval
            )
        except CounterStoreError as e:
            logger.warning(f"Failed to cache security dashboard: {e}")
        return data

    def _build_dashboard(self) -> dict[str, Any]:
        now = self._clock()
        week_ago = now - datetime.timedelta(days=7)
        return {
            "recent_events": [r.serialize() for r in self.repository.recent(50)],
            "event_counts": self.repository.counts_by_type_and_severity(week_ago),
            "top_ips": self.repository.top_ips(week_ago, limit=10),
            "timeline": self.repository.daily_timeline(
                now - datetime.timedelta(days=30)
            ),
            "system_health": self.get_system_health(),
            "generated_at": now.isoformat(),
        }

    def get_system_health(self) -> dict[str, Any]:
        now = self._clock()
        hour_ago = now - datetime.timedelta(hours=1)
        critical = self.repository.count_since(hour_ago, severity="critical")
        high = self.repository.count_since(hour_ago, severity="high")
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)

        if critical > 0:
            status = "critical"
        elif high > 5:
            status = "warning"
        else:
            status = "healthy"

        return {
            "status": status,
            "critical_events_last_hour": critical,
            "high_events_last_hour": high,
            "total_events_today": self.repository.count_since(start_of_day),
        }

    def _normalize_filters(self, filters: Optional[Mapping[str, Any]]) -> dict:
        normalized: dict[str, Any] = {}
        for key, value in (filters or {}).items():
            if value in (None, ""):
                continue
            if key in ("type", "ip_address", "user_id"):
                normalized[key] = str(value)
            elif key == "severity":
                normalized[key] = coerce_severity(value).value
            elif key in ("date_from", "date_to"):
                normalized[key] = self._parse_datetime(key, value)
            else:
                raise ValidationError(f"Unknown filter: {key}", field=key)
        return normalized

    @staticmethod
    def _parse_datetime(key: str, value) -> datetime.datetime:
        if isinstance(value, datetime.datetime):
            parsed = value
        else:
            try:
                parsed = datetime.datetime.fromisoformat(str(value))
            except ValueError as e:
                raise ValidationError(
                    f"{key} must be an ISO 8601 date", field=key
                ) from e
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=datetime.UTC)
        return parsed

    def search_events(
        self,
        filters: Optional[Mapping[str, Any]] = None,
        page: int = 1,
        per_page: int = 50,
    ) -> dict[str, Any]:
        if page < 1:
            raise ValidationError("page must be >= 1", field="page")
        if not 1 <= per_page <= 200:
            raise ValidationError(
                "per_page must be between 1 and 200", field="per_page"
            )

        records, total = self.repository.search(
            self._normalize_filters(filters), page=page, per_page=per_page
        )
        return {
            "events": [record.serialize() for record in records],
            "total": total,
            "page": page,
            "per_page": per_page,
            "pages": (total + per_page - 1) // per_page,
        }

    def get_statistics(self, period: str = "7d") -> dict[str, Any]:
        if period not in STATISTICS_PERIODS:
            raise ValidationError(
                f"period must be one of {', '.join(STATISTICS_PERIODS)}",
                field="period",
            )
        since = self._clock() - STATISTICS_PERIODS[period]
        counts = self.repository.counts_by_type_and_severity(since)

        by_type: dict[str, int] = {}
        by_severity = {severity.value: 0 for severity in Severity}
        for row in counts:
            by_type[row["type"]] = by_type.get(row["type"], 0) + row["count"]
            by_severity[row["severity"]] = (
                by_severity.get(row["severity"], 0) + row["count"]
            )

        return {
            "period": period,
            "total_events": sum(by_type.values()),
            "by_type": by_type,
            "by_severity": by_severity,
            "unique_ips": self.repository.unique_ip_count(since),
            "top_ips": self.repository.top_ips(since, limit=5),
            "timeline": self.repository.daily_timeline(since),
        }

    def export_events(
        self, export_format: str = "csv", filters: Optional[Mapping[str, Any]] = None
    ) -> dict[str, Any]:
        """Export matching events as a base64 encoded CSV or JSON document."""
        if export_format not in EXPORT_FORMATS:
            raise ValidationError(
                "format must be one of csv, json", field="format"
            )
        records = self.repository.export(self._normalize_filters(filters))
        rows = [record.serialize() for record in records]

        if export_format == "json":
            payload = json.dumps(rows, default=str, indent=2)
            content_type = "application/json"
        else:
            buffer = io.StringIO()
            writer = csv.DictWriter(buffer, fieldnames=EXPORT_COLUMNS)
            writer.writeheader()
            for row in rows:
                row["metadata"] = json.dumps(row["metadata"], default=str)
                writer.writerow(row)
            payload = buffer.getvalue()
            content_type = "text/csv"

        now = self._clock()
        return {
            "filename": f"security_events_{now:%Y%m%d_%H%M%S}.{export_format}",
            "content_type": content_type,
            "count": len(rows),
            "data": base64.b64encode(payload.encode("utf-8")).decode("ascii"),
        }

    def cleanup_old_events(self, days: Optional[int] = None) -> int:
        """Delete events older than ``days`` (default: configured retention)."""
        days = self.config.event_retention_days if days is None else days
        if days <= 0:
            raise ValidationError("Retention days must be positive", field="days")
        cutoff = self._clock() - datetime.timedelta(days=days)
        deleted = self.repository.delete_older_than(cutoff)
        logger.info(f"Deleted {deleted} security events older than {days} days")
        if deleted:
            try:
                self.store.forget(self.DASHBOARD_CACHE_KEY)
            except CounterStoreError as e:
                logger.warning(f"Failed to invalidate dashboard cache: {e}")
        return deleted
