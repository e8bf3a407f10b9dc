"""Explicit request context passed into the security services"""

from dataclasses import dataclass
import logging
from typing import Optional

from flask import has_request_context, request
from flask_limiter.util import get_remote_address

logger = logging.getLogger(__name__)

USER_AGENT_MAX_LENGTH = 512


@dataclass(frozen=True)
class RequestContext:
    """Read-only facts about the request that triggered a security operation.

    Built by the HTTP layer with :meth:`from_request`; background jobs use
    :meth:`system`.
    """

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    is_secure: bool = False
    user_id: Optional[str] = None
    url: Optional[str] = None
    method: Optional[str] = None

    @classmethod
    def from_request(cls, user_id=None) -> "RequestContext":
        """Capture the current Flask request, or a system context outside one."""
        if not has_request_context():
            return cls.system(user_id=user_id)

        try:
            user_agent = request.headers.get("User-Agent")
            return cls(
                ip_address=get_remote_address(),
                user_agent=user_agent[:USER_AGENT_MAX_LENGTH] if user_agent else None,
                is_secure=request.is_secure,
                user_id=str(user_id) if user_id is not None else None,
                url=request.url,
                method=request.method,
            )
        except Exception as e:
            logger.debug(f"Failed to gather request context: {e}")
            return cls.system(user_id=user_id)

    @classmethod
    def system(cls, user_id=None) -> "RequestContext":
        return cls(
            ip_address=None,
            user_agent=None,
            is_secure=True,
            user_id=str(user_id) if user_id is not None else None,
            url=None,
            method=None,
        )

    def with_user(self, user_id) -> "RequestContext":
        return RequestContext(
            ip_address=self.ip_address,
            user_agent=self.user_agent,
            is_secure=self.is_secure,
            user_id=str(user_id) if user_id is not None else None,
            url=self.url,
            method=self.method,
        )
