"""USER MODEL"""

import datetime
import logging
import uuid

from werkzeug.security import check_password_hash, generate_password_hash

from guardapi import db
from guardapi.models import GUID

db.GUID = GUID

logger = logging.getLogger(__name__)


def _utcnow():
    return datetime.datetime.now(datetime.UTC).replace(tzinfo=None)


class User(db.Model):
    """User Model"""

    id = db.Column(
        db.GUID(),
        default=lambda: str(uuid.uuid4()),
        primary_key=True,
        autoincrement=False,
    )
    email = db.Column(db.String(120), unique=True, nullable=False)
    name = db.Column(db.String(120), nullable=False)
    password = db.Column(db.String(200), nullable=False)
    role = db.Column(db.String(10))
    # Cleared by a permanent lockout, restored by an administrator unlock
    is_active = db.Column(db.Boolean(), default=True, nullable=False)
    created_at = db.Column(db.DateTime(), default=_utcnow)
    updated_at = db.Column(db.DateTime(), default=_utcnow, onupdate=_utcnow)

    def __init__(self, email, password, name, role="USER"):
        self.email = email
        self.password = self.set_password(password)
        self.role = role if role in ["USER", "ADMIN", "SUPERADMIN"] else "USER"
        self.name = name
        self.is_active = True

    def __repr__(self):
        return f"<User {self.email!r}>"

    def serialize(self, exclude=None):
        """Return object data in easily serializeable format"""
        exclude = exclude if exclude else []
        user = {
            "id": str(self.id),
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        for field in exclude:
            user.pop(field, None)
        return user

    @property
    def is_admin(self):
        return self.role in ("ADMIN", "SUPERADMIN")

    def set_password(self, password):
        return generate_password_hash(password)

    def check_password(self, password):
        """Check if provided password matches stored hash"""
        if not self.password:
            logger.warning(f"User {self.email} has no password hash stored")
            return False

        if not password:
            logger.debug("Empty password provided for authentication")
            return False

        try:
            return check_password_hash(self.password, password)
        except ValueError as e:
            logger.error(f"Invalid password hash for user {self.email}: {e}")
            return False
