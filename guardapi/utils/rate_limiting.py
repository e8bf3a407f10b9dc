"""Rate limiting configuration and breach reporting"""

import logging

from flask import current_app, jsonify
from flask_limiter.util import get_remote_address

from guardapi.config import SETTINGS

logger = logging.getLogger(__name__)


class RateLimitConfig:
    """Accessors for the ``RATE_LIMITING`` settings section."""

    @staticmethod
    def _get_config():
        return SETTINGS.get("RATE_LIMITING", {})

    @classmethod
    def is_enabled(cls):
        return cls._get_config().get("ENABLED", True)

    @classmethod
    def get_storage_uri(cls):
        """Get the storage URI for the rate limiter."""
        config = cls._get_config()
        # Fallback to other redis URLs for convenience
        return (
            config.get("STORAGE_URI")
            or SETTINGS.get("REDIS_URL")
            or SETTINGS.get("CELERY_BROKER_URL")
        )

    @classmethod
    def get_default_limits(cls):
        return cls._get_config().get("DEFAULT_LIMITS", ["1000 per hour"])

    @classmethod
    def get_login_limits(cls):
        return cls._get_config().get("LOGIN_LIMITS", ["30 per minute"])


def is_rate_limiting_disabled():
    """Helper for ``exempt_when`` so limits can be switched off at runtime"""
    return not RateLimitConfig.is_enabled()


def rate_limit_breach_handler(request_limit):
    """Log a ``rate_limit_exceeded`` security event and answer with 429"""
    from guardapi.core import get_security_core
    from guardapi.utils.request_context import RequestContext
    from guardapi.utils.security_events import EventType, Severity

    limit = str(getattr(request_limit, "limit", request_limit))
    logger.info(f"Rate limit exceeded for {get_remote_address()}: {limit}")
    try:
        get_security_core(current_app).monitor.log_security_event(
            EventType.RATE_LIMIT_EXCEEDED,
            Severity.MEDIUM,
            "Rate limit exceeded",
            metadata={"limit": limit},
            context=RequestContext.from_request(),
        )
    except Exception as e:
        logger.error(f"Failed to record rate limit breach: {e}")

    response = jsonify(
        {"status": 429, "detail": "Too many requests. Please try again later."}
    )
    response.status_code = 429
    return response
