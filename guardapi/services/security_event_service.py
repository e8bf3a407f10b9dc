"""Persistence and queries for security events."""

from __future__ import annotations

from collections import defaultdict
from contextlib import contextmanager
import datetime
import logging
from typing import Any, Callable, Iterator, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from guardapi.models import SecurityEvent, SecurityEventRecord
from guardapi.models.security_event import to_naive_utc
from guardapi.utils.security_events import Severity

logger = logging.getLogger(__name__)


class SecurityEventRepository:
    """Append-only store of :class:`SecurityEvent` rows.

    Every call opens its own short-lived session from ``session_factory`` so
    an event is committed even when the caller's request transaction later
    rolls back.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def add(self, record: SecurityEventRecord) -> SecurityEventRecord:
        """Insert ``record`` and return it with its database id."""
        with self._session() as session:
            model = SecurityEvent(
                type=record.type,
                severity=record.severity,
                description=record.description,
                ip_address=record.ip_address,
                user_agent=record.user_agent,
                user_id=record.user_id,
                event_metadata=dict(record.metadata),
                created_at=to_naive_utc(record.created_at),
            )
            session.add(model)
            session.commit()
            return model.to_record()

    def recent(self, limit: int = 50) -> list[SecurityEventRecord]:
        with self._session() as session:
            rows = (
                session.query(SecurityEvent)
                .order_by(SecurityEvent.created_at.desc())
                .limit(limit)
                .all()
            )
            return [row.to_record() for row in rows]

    def count_since(
        self,
        since: datetime.datetime,
        event_type: Optional[str] = None,
        severity: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> int:
        with self._session() as session:
            query = session.query(func.count(SecurityEvent.id)).filter(
                SecurityEvent.created_at >= to_naive_utc(since)
            )
            if event_type is not None:
                query = query.filter(SecurityEvent.type == event_type)
            if severity is not None:
                query = query.filter(SecurityEvent.severity == severity)
            if ip_address is not None:
                query = query.filter(SecurityEvent.ip_address == ip_address)
            return int(query.scalar() or 0)

    def distinct_ip_count(self, event_type: str, since: datetime.datetime) -> int:
        """Number of distinct non-null origin IPs for ``event_type``."""
        with self._session() as session:
            count = (
                session.query(func.count(func.distinct(SecurityEvent.ip_address)))
                .filter(
                    SecurityEvent.type == event_type,
                    SecurityEvent.created_at >= to_naive_utc(since),
                    SecurityEvent.ip_address.isnot(None),
                )
                .scalar()
            )
            return int(count or 0)

    def distinct_ips(
        self, event_type: str, since: datetime.datetime, limit: int = 20
    ) -> list[str]:
        with self._session() as session:
            rows = (
                session.query(SecurityEvent.ip_address)
                .filter(
                    SecurityEvent.type == event_type,
                    SecurityEvent.created_at >= to_naive_utc(since),
                    SecurityEvent.ip_address.isnot(None),
                )
                .distinct()
                .limit(limit)
                .all()
            )
            return [row[0] for row in rows]

    def counts_by_type_and_severity(
        self, since: datetime.datetime
    ) -> list[dict[str, Any]]:
        with self._session() as session:
            rows = (
                session.query(
                    SecurityEvent.type,
                    SecurityEvent.severity,
                    func.count(SecurityEvent.id),
                )
                .filter(SecurityEvent.created_at >= to_naive_utc(since))
                .group_by(SecurityEvent.type, SecurityEvent.severity)
                .all()
            )
            return [
                {"type": event_type, "severity": severity, "count": int(count)}
                for event_type, severity, count in rows
            ]

    def top_ips(self, since: datetime.datetime, limit: int = 10) -> list[dict]:
        """Most active origin IPs with their worst severity."""
        with self._session() as session:
            rows = (
                session.query(
                    SecurityEvent.ip_address,
                    SecurityEvent.severity,
                    func.count(SecurityEvent.id),
                )
                .filter(
                    SecurityEvent.created_at >= to_naive_utc(since),
                    SecurityEvent.ip_address.isnot(None),
                )
                .group_by(SecurityEvent.ip_address, SecurityEvent.severity)
                .all()
            )

        totals: dict[str, int] = defaultdict(int)
        worst: dict[str, Severity] = {}
        for ip_address, severity, count in rows:
            totals[ip_address] += int(count)
            try:
                level = Severity(severity)
            except ValueError:
                logger.debug(f"Ignoring unknown severity {severity!r} for {ip_address}")
                continue
            if ip_address not in worst or level.rank > worst[ip_address].rank:
                worst[ip_address] = level

        ranked = sorted(totals.items(), key=lambda item: (-item[1], item[0]))
        return [
            {
                "ip_address": ip_address,
                "event_count": count,
                "max_severity": worst[ip_address].value
                if ip_address in worst
                else None,
            }
            for ip_address, count in ranked[:limit]
        ]

    def daily_timeline(self, since: datetime.datetime) -> list[dict[str, Any]]:
        with self._session() as session:
            day = func.date(SecurityEvent.created_at)
            rows = (
                session.query(day, SecurityEvent.type, func.count(SecurityEvent.id))
                .filter(SecurityEvent.created_at >= to_naive_utc(since))
                .group_by(day, SecurityEvent.type)
                .order_by(day)
                .all()
            )
            return [
                {"date": str(date), "type": event_type, "count": int(count)}
                for date, event_type, count in rows
            ]

    def unique_ip_count(self, since: datetime.datetime) -> int:
        with self._session() as session:
            count = (
                session.query(func.count(func.distinct(SecurityEvent.ip_address)))
                .filter(
                    SecurityEvent.created_at >= to_naive_utc(since),
                    SecurityEvent.ip_address.isnot(None),
                )
                .scalar()
            )
            return int(count or 0)

    def _filtered(self, session: Session, filters: dict[str, Any]):
        query = session.query(SecurityEvent)
        if filters.get("type"):
            query = query.filter(SecurityEvent.type == filters["type"])
        if filters.get("severity"):
            query = query.filter(SecurityEvent.severity == filters["severity"])
        if filters.get("ip_address"):
            query = query.filter(SecurityEvent.ip_address == filters["ip_address"])
        if filters.get("user_id"):
            query = query.filter(SecurityEvent.user_id == filters["user_id"])
        if filters.get("date_from"):
            query = query.filter(
                SecurityEvent.created_at >= to_naive_utc(filters["date_from"])
            )
        if filters.get("date_to"):
            query = query.filter(
                SecurityEvent.created_at <= to_naive_utc(filters["date_to"])
            )
        return query

    def search(
        self, filters: dict[str, Any], page: int = 1, per_page: int = 50
    ) -> tuple[list[SecurityEventRecord], int]:
        """Return one page of matching events (newest first) and the total."""
        with self._session() as session:
            query = self._filtered(session, filters)
            total = query.count()
            rows = (
                query.order_by(SecurityEvent.created_at.desc())
                .offset((page - 1) * per_page)
                .limit(per_page)
                .all()
            )
            return [row.to_record() for row in rows], total

    def export(
        self, filters: dict[str, Any], limit: int = 10000
    ) -> list[SecurityEventRecord]:
        with self._session() as session:
            rows = (
                self._filtered(session, filters)
                .order_by(SecurityEvent.created_at.desc())
                .limit(limit)
                .all()
            )
            return [row.to_record() for row in rows]

    def delete_older_than(self, cutoff: datetime.datetime) -> int:
        """Prune events created before ``cutoff``. Returns the deleted count."""
        with self._session() as session:
            deleted = (
                session.query(SecurityEvent)
                .filter(SecurityEvent.created_at < to_naive_utc(cutoff))
                .delete(synchronize_session=False)
            )
            session.commit()
            return int(deleted or 0)
