"""USER SERVICE"""

from abc import ABC, abstractmethod
import datetime
import logging
from typing import Callable, Optional
from uuid import UUID

import rollbar
from sqlalchemy import func
from sqlalchemy.orm import Session, sessionmaker

from guardapi import db
from guardapi.config import SETTINGS
from guardapi.errors import UserDuplicated, UserNotFound, ValidationError
from guardapi.models import User

ROLES = SETTINGS.get("ROLES")

logger = logging.getLogger(__name__)


class UserService:
    """User Class"""

    @staticmethod
    def create_user(user):
        logger.info("[SERVICE]: Creating user")
        email = (user.get("email") or "").strip().lower()
        password = user.get("password")
        role = user.get("role", "USER")
        name = user.get("name", "notset")
        if role not in ROLES:
            role = "USER"
        if not email or not password:
            raise ValidationError("Email and password are required")
        if User.query.filter(func.lower(User.email) == email).first():
            raise UserDuplicated(message=f"User with email {email} already exists")

        user = User(email=email, password=password, role=role, name=name)
        try:
            logger.info("[DB]: ADD")
            db.session.add(user)
            db.session.commit()
        except Exception as error:
            db.session.rollback()
            rollbar.report_exc_info()
            raise error
        return user

    @staticmethod
    def get_user(user_id):
        logger.info(f"[SERVICE]: Getting user {user_id}")
        try:
            if isinstance(user_id, UUID):
                user = db.session.get(User, user_id)
            else:
                user = db.session.get(User, UUID(str(user_id)))
        except ValueError:
            user = User.query.filter(
                func.lower(User.email) == str(user_id).lower()
            ).first()
        if not user:
            raise UserNotFound(message=f"User with id {user_id} does not exist")
        return user

    @staticmethod
    def authenticate_user(email, password) -> Optional[User]:
        """Return the user for valid, active credentials, otherwise None."""
        email = (email or "").strip().lower()
        logger.info(f"[AUTH]: Authentication attempt for {email}")
        user = User.query.filter(func.lower(User.email) == email).first()

        if not user:
            logger.warning(f"[AUTH]: Failed login - user not found: {email}")
            return None

        if not user.check_password(password):
            logger.warning(f"[AUTH]: Failed login - invalid password: {email}")
            return None

        if not user.is_active:
            logger.warning(f"[AUTH]: Failed login - account deactivated: {email}")
            return None

        return user


class AccountDirectory(ABC):
    """Lookup and activation of the accounts behind lockout identities."""

    @abstractmethod
    def find(self, identity: str) -> Optional[dict]:
        pass

    @abstractmethod
    def deactivate(self, identity: str) -> bool:
        """Deactivate an active account. Returns True if it changed."""

    @abstractmethod
    def activate(self, identity: str) -> bool:
        """Reactivate an inactive account. Returns True if it changed."""


class UserAccountDirectory(AccountDirectory):
    """Account directory over the ``user`` table, keyed by email.

    Updates run in their own session from ``session_factory`` so they never
    commit or roll back the caller's request transaction.
    """

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None):
        self._session_factory = session_factory

    def _session(self) -> Session:
        if self._session_factory is None:
            self._session_factory = sessionmaker(bind=db.engine)
        return self._session_factory()

    def find(self, identity):
        session = self._session()
        try:
            user = (
                session.query(User)
                .filter(func.lower(User.email) == identity.lower())
                .first()
            )
            return user.serialize() if user else None
        finally:
            session.close()

    def _set_active(self, identity, active):
        session = self._session()
        # Conditional update keeps repeated calls from touching the row again
        try:
            updated = (
                session.query(User)
                .filter(
                    func.lower(User.email) == identity.lower(),
                    User.is_active.is_(not active),
                )
                .update(
                    {
                        "is_active": active,
                        "updated_at": datetime.datetime.now(datetime.UTC).replace(
                            tzinfo=None
                        ),
                    },
                    synchronize_session=False,
                )
            )
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
        if updated:
            logger.info(
                f"[SERVICE]: Account {identity} "
                f"{'reactivated' if active else 'deactivated'}"
            )
        return updated > 0

    def deactivate(self, identity):
        return self._set_active(identity, False)

    def activate(self, identity):
        return self._set_active(identity, True)
