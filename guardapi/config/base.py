from datetime import timedelta
import logging
import os

logger = logging.getLogger(__name__)


def _env_int(name, default):
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Ignoring non-integer value for {name}: {value!r}")
        return default


def _env_bool(name, default):
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.lower() == "true"


def _redis_url():
    return os.getenv("REDIS_URL") or (
        "redis://"
        + (os.getenv("REDIS_PORT_6379_TCP_ADDR") or "localhost")
        + ":"
        + (os.getenv("REDIS_PORT_6379_TCP_PORT") or "6379")
    )


SETTINGS = {
    "logging": {"level": os.getenv("LOG_LEVEL", "INFO")},
    "service": {"port": 3000},
    "environment": {
        "ROLLBAR_SERVER_TOKEN": os.getenv("ROLLBAR_SERVER_TOKEN"),
        "SPARKPOST_API_KEY": os.getenv("SPARKPOST_API_KEY"),
        "CORS_ORIGINS": os.getenv("CORS_ORIGINS"),
    },
    "ROLES": ["SUPERADMIN", "ADMIN", "USER"],
    "SQLALCHEMY_DATABASE_URI": os.getenv("DATABASE_URL")
    or (
        "postgresql://"
        + (os.getenv("DATABASE_ENV_POSTGRES_USER") or "postgres")
        + ":"
        + (os.getenv("DATABASE_ENV_POSTGRES_PASSWORD") or "postgres")
        + "@"
        + (os.getenv("DATABASE_PORT_5432_TCP_ADDR") or "localhost")
        + ":"
        + (os.getenv("DATABASE_PORT_5432_TCP_PORT") or "5432")
        + "/"
        + (os.getenv("DATABASE_ENV_POSTGRES_DB") or "postgres")
    ),
    "SECRET_KEY": os.getenv("SECRET_KEY"),
    "JWT_SECRET_KEY": os.getenv("JWT_SECRET_KEY") or os.getenv("SECRET_KEY"),
    "JWT_ACCESS_TOKEN_EXPIRES": timedelta(seconds=60 * 60 * 1),
    "JWT_TOKEN_LOCATION": ["headers"],
    "CELERY_BROKER_URL": _redis_url(),
    "CELERY_RESULT_BACKEND": _redis_url(),
    # Celery also expects lowercase versions
    "broker_url": _redis_url(),
    "result_backend": _redis_url(),
    # Backend for lockout counters, session records and alert markers.
    # "memory://" keeps everything in-process (single worker only).
    "COUNTER_STORE_URL": os.getenv("COUNTER_STORE_URL") or _redis_url(),
    "TRUSTED_PROXY_COUNT": _env_int("TRUSTED_PROXY_COUNT", 0),
    "RATE_LIMITING": {
        "ENABLED": _env_bool("RATE_LIMITING_ENABLED", True),
        "STORAGE_URI": os.getenv("RATE_LIMIT_STORAGE_URI") or _redis_url(),
        "DEFAULT_LIMITS": ["1000 per hour"],
        "LOGIN_LIMITS": ["30 per minute", "300 per hour"],
    },
    "SECURITY": {
        "LOCKOUT": {
            "MAX_ATTEMPTS": _env_int("LOCKOUT_MAX_ATTEMPTS", 5),
            "LOCKOUT_DURATION": _env_int("LOCKOUT_DURATION", 900),  # 15 minutes
            "PROGRESSIVE_LOCKOUT": _env_bool("LOCKOUT_PROGRESSIVE", True),
            "MAX_BACKOFF_EXPONENT": 5,  # 2**5 = 32x base duration
            "IP_LOCKOUT_ENABLED": _env_bool("IP_LOCKOUT_ENABLED", True),
            "IP_MAX_ATTEMPTS": _env_int("IP_LOCKOUT_MAX_ATTEMPTS", 20),
            "IP_LOCKOUT_DURATION": _env_int("IP_LOCKOUT_DURATION", 3600),
            "PERMANENT_LOCKOUT_THRESHOLD": _env_int("PERMANENT_LOCKOUT_THRESHOLD", 10),
            "USER_ATTEMPT_WINDOW": 1800,
            "IP_ATTEMPT_WINDOW": 3600,
            "LOCKOUT_COUNT_TTL": 30 * 24 * 3600,
        },
        "SESSION": {
            "MAX_CONCURRENT_SESSIONS": _env_int("MAX_CONCURRENT_SESSIONS", 3),
            "SESSION_TIMEOUT": _env_int("SESSION_TIMEOUT", 7200),  # 2 hours
            "IDLE_TIMEOUT": _env_int("SESSION_IDLE_TIMEOUT", 1800),  # 30 minutes
            "ROTATION_INTERVAL": 300,
            "ROTATION_GRACE_PERIOD": _env_int("SESSION_ROTATION_GRACE", 30),
            # Disable for clients that roam between networks
            "TRACK_IP_ADDRESS": _env_bool("SESSION_TRACK_IP", True),
            "TRACK_USER_AGENT": _env_bool("SESSION_TRACK_USER_AGENT", True),
            "REQUIRE_HTTPS": _env_bool("SESSION_REQUIRE_HTTPS", True),
            "AUDIT_RETENTION": 24 * 3600,
            "LOCK_TIMEOUT": 5,
        },
        "QUERY_MONITOR": {
            "ENABLED": _env_bool("QUERY_MONITOR_ENABLED", False),
            "SLOW_QUERY_THRESHOLD_MS": _env_int("SLOW_QUERY_THRESHOLD_MS", 5000),
        },
        "MONITORING": {
            "ALERT_THRESHOLDS": {
                "failed_login": 50,
                "suspicious_query": 10,
                "rate_limit_exceeded": 100,
                "file_upload_violation": 20,
                "xss_attempt": 5,
                "session_hijack_suspected": 10,
            },
            "NOTIFICATION_CHANNELS": ["log"],
            "ADMIN_EMAILS": [
                s.strip()
                for s in (os.getenv("SECURITY_ADMIN_EMAILS") or "").split(",")
                if s.strip()
            ],
            "ALERT_FROM_EMAIL": os.getenv(
                "SECURITY_ALERT_FROM_EMAIL", "security@guardapi.local"
            ),
            "WEBHOOK_URL": os.getenv("SECURITY_WEBHOOK_URL"),
            "WEBHOOK_TIMEOUT": 5,
            "DASHBOARD_REFRESH_INTERVAL": 300,
            "SINGLE_ORIGIN_EVENT_THRESHOLD": 10,
            "SINGLE_ORIGIN_WINDOW": 600,
            "COORDINATED_IP_THRESHOLD": 5,
            "COORDINATED_WINDOW": 300,
        },
        "EVENT_RETENTION_DAYS": _env_int("SECURITY_EVENT_RETENTION_DAYS", 90),
    },
}

# Check for email configuration
if not os.getenv("SPARKPOST_API_KEY"):
    logger.warning(
        "SPARKPOST_API_KEY is not set. Email alert notifications will be disabled."
    )
