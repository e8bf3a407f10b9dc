"""Model for persisted security events."""

from __future__ import annotations

from dataclasses import dataclass, field
import datetime
from types import MappingProxyType
from typing import Any, Mapping, Optional
import uuid

from sqlalchemy import event

from guardapi import db
from guardapi.errors import ImmutableEventError
from guardapi.models import GUID

db.GUID = GUID


def as_utc(value: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
    """Attach UTC to naive datetimes read back from the database."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.UTC)
    return value.astimezone(datetime.UTC)


def to_naive_utc(value: datetime.datetime) -> datetime.datetime:
    """Columns are ``timestamp without time zone`` holding UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(datetime.UTC).replace(tzinfo=None)


class SecurityEvent(db.Model):
    """Append-only record of a security relevant occurrence."""

    __tablename__ = "security_event"
    __table_args__ = (
        db.Index("ix_security_event_type_created_at", "type", "created_at"),
    )

    id = db.Column(
        db.GUID(),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        autoincrement=False,
    )
    type = db.Column(db.String(64), nullable=False, index=True)
    severity = db.Column(db.String(16), nullable=False, index=True)
    description = db.Column(db.Text(), nullable=False)
    ip_address = db.Column(db.String(64), nullable=True, index=True)
    user_agent = db.Column(db.String(512), nullable=True)
    user_id = db.Column(db.String(255), nullable=True, index=True)
    # "metadata" is reserved on declarative classes
    event_metadata = db.Column("metadata", db.JSON(), nullable=False, default=dict)
    created_at = db.Column(db.DateTime(), nullable=False, index=True)

    def __repr__(self):
        return f"<SecurityEvent {self.type!r} {self.severity!r}>"

    def to_record(self) -> SecurityEventRecord:
        return SecurityEventRecord(
            id=str(self.id) if self.id else None,
            type=self.type,
            severity=self.severity,
            description=self.description,
            ip_address=self.ip_address,
            user_agent=self.user_agent,
            user_id=self.user_id,
            metadata=dict(self.event_metadata or {}),
            created_at=as_utc(self.created_at),
        )

    def serialize(self) -> dict[str, object]:
        """Serialize event data for API responses."""
        return self.to_record().serialize()


@event.listens_for(SecurityEvent, "before_update")
def _reject_security_event_update(mapper, connection, target):
    raise ImmutableEventError(
        f"Security event {target.id} is immutable and cannot be updated"
    )


@dataclass(frozen=True)
class SecurityEventRecord:
    """Detached, read-only view of a security event."""

    type: str
    severity: str
    description: str
    created_at: datetime.datetime
    id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    user_id: Optional[str] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    def serialize(self) -> dict[str, object]:
        return {
            "id": self.id,
            "type": self.type,
            "severity": self.severity,
            "description": self.description,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "user_id": self.user_id,
            "metadata": dict(self.metadata),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
