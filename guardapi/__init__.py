"""The GUARDAPI MODULE"""

from datetime import datetime, timezone
import logging
import os
import sys

from flask import Flask, got_request_exception, jsonify, request
from flask_cors import CORS
from flask_jwt_extended import JWTManager
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy
import rollbar
import rollbar.contrib.flask
from sqlalchemy import text
from werkzeug.middleware.proxy_fix import ProxyFix

from guardapi.celery import make_celery
from guardapi.config import SETTINGS
from guardapi.utils.rate_limiting import RateLimitConfig, rate_limit_breach_handler

# Flask App
app = Flask(__name__)

# Respect trusted proxy configuration for accurate client IP detection
trusted_proxy_count = SETTINGS.get("TRUSTED_PROXY_COUNT", 0)
if trusted_proxy_count:
    app.wsgi_app = ProxyFix(  # type: ignore[assignment]
        app.wsgi_app,
        x_for=trusted_proxy_count,
        x_proto=trusted_proxy_count,
        x_host=trusted_proxy_count,
        x_port=trusted_proxy_count,
        x_prefix=trusted_proxy_count,
    )

cors_origins = os.getenv(
    "CORS_ORIGINS", "http://localhost:3000,http://localhost:8080"
).split(",")
CORS(
    app,
    origins=cors_origins,
    allow_headers=["Content-Type", "Authorization", "X-Session-Token"],
    expose_headers=["X-Session-Token"],
    methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
)

logger = logging.getLogger()
log_level = SETTINGS.get("logging", {}).get("level", "INFO")
logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

logging.getLogger("urllib3.connectionpool").setLevel(logging.WARNING)

# Ensure all unhandled exceptions are logged, and reported to rollbar
formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
handler = logging.StreamHandler(stream=sys.stdout)
handler.setLevel(logging.INFO)
handler.setFormatter(formatter)
logger.addHandler(handler)

rollbar.init(os.getenv("ROLLBAR_SERVER_TOKEN"), os.getenv("ENVIRONMENT"))
with app.app_context():
    got_request_exception.connect(rollbar.contrib.flask.report_exception, app)


@app.after_request
def set_security_headers(response):
    """Add security headers to all responses."""
    environment = os.getenv("ENVIRONMENT", "dev")

    response.headers["Content-Security-Policy"] = (
        "default-src 'none'; frame-ancestors 'none'"
    )
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Cache-Control"] = "no-store"

    if environment == "prod" or request.is_secure:
        response.headers["Strict-Transport-Security"] = (
            "max-age=31536000; includeSubDomains; preload"
        )

    return response


app.config["SQLALCHEMY_DATABASE_URI"] = SETTINGS.get("SQLALCHEMY_DATABASE_URI")

# SQLite (used by the test suite) does not accept the pool sizing options
if not str(app.config["SQLALCHEMY_DATABASE_URI"]).startswith("sqlite"):
    app.config["SQLALCHEMY_ENGINE_OPTIONS"] = {
        # Recycle connections after 1 hour to prevent stale connections
        "pool_recycle": 3600,
        "pool_pre_ping": True,
        "pool_size": 10,
        "max_overflow": 20,
        "pool_timeout": 30,
    }

app.config["TESTING"] = SETTINGS.get("TESTING", False)
app.config["RATE_LIMITING"] = SETTINGS.get("RATE_LIMITING", {})

jwt_secret = (
    SETTINGS.get("JWT_SECRET_KEY")
    or SETTINGS.get("SECRET_KEY")
    or os.getenv("JWT_SECRET_KEY")
    or os.getenv("SECRET_KEY")
)

app.config["JWT_SECRET_KEY"] = jwt_secret
app.config["JWT_ACCESS_TOKEN_EXPIRES"] = SETTINGS.get("JWT_ACCESS_TOKEN_EXPIRES")
app.config["JWT_TOKEN_LOCATION"] = SETTINGS.get("JWT_TOKEN_LOCATION")
app.config["broker_url"] = SETTINGS.get("CELERY_BROKER_URL")
app.config["result_backend"] = SETTINGS.get("CELERY_RESULT_BACKEND")

app.config["MAX_CONTENT_LENGTH"] = 50 * 1024 * 1024  # 50MB max request size

# Database
db = SQLAlchemy(app)
migrate = Migrate(app, db)

# Celery
celery = make_celery(app)

# Rate Limiting (must be after db and celery)
limiter = Limiter(
    app=app,
    key_func=get_remote_address,
    storage_uri=RateLimitConfig.get_storage_uri(),
    default_limits=RateLimitConfig.get_default_limits(),
    headers_enabled=True,
    enabled=RateLimitConfig.is_enabled(),
    on_breach=rate_limit_breach_handler,
)


# DB has to be ready!
# Import tasks to register them with Celery
from guardapi import tasks  # noqa: E402,F401
from guardapi.core import get_security_core  # noqa: E402
from guardapi.errors import (  # noqa: E402
    AccountLockedError,
    AuthError,
    CounterStoreError,
    NotAllowed,
    UserNotFound,
    ValidationError,
)
from guardapi.models import User  # noqa: E402
from guardapi.routes.api.v1 import endpoints, error  # noqa: E402

# Blueprint Flask Routing
app.register_blueprint(endpoints, url_prefix="/api/v1")

total_routes = len(list(app.url_map.iter_rules()))
logger.info(f"Registered Flask app with {total_routes} total routes")


@app.route("/api-health", methods=["GET"])
def health_check():
    """Health check covering the database and the counter store"""
    db_status = "unknown"
    store_status = "unknown"

    try:
        result = db.session.execute(text("SELECT 1 as health_check")).fetchone()
        db_status = "healthy" if result and result[0] == 1 else "unhealthy"
    except Exception as e:
        logger.warning(f"Database health check failed: {str(e)}")
        db_status = "unhealthy"

    try:
        store_status = "healthy" if get_security_core().store.ping() else "unhealthy"
    except Exception as e:
        logger.warning(f"Counter store health check failed: {str(e)}")
        store_status = "unhealthy"

    health_status = "ok" if store_status == "healthy" else "degraded"

    return jsonify(
        {
            "status": health_status,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "database": db_status,
            "counter_store": store_status,
            "version": "1.0",
            "deployment": {
                "commit_sha": os.getenv("GIT_COMMIT_SHA", "unknown"),
                "branch": os.getenv("GIT_BRANCH", "unknown"),
                "environment": os.getenv("DEPLOYMENT_ENVIRONMENT", "unknown"),
            },
        }
    ), 200


jwt = JWTManager(app)


@jwt.user_lookup_loader
def user_lookup_callback(_jwt_header, jwt_data):
    identity = jwt_data["sub"]
    return User.query.filter_by(id=identity).one_or_none()


@app.errorhandler(ValidationError)
def validation_error(e):
    return error(status=400, detail=e.message, **e.serialize)


@app.errorhandler(AuthError)
def auth_error(e):
    return error(status=401, detail=e.message)


@app.errorhandler(NotAllowed)
def not_allowed(e):
    return error(status=403, detail=e.message)


@app.errorhandler(UserNotFound)
def user_not_found(e):
    return error(status=404, detail=e.message)


@app.errorhandler(AccountLockedError)
def account_locked(e):
    status = 429 if e.scope == "ip" else 423
    return error(status=status, detail=e.GENERIC_MESSAGE, **e.serialize)


@app.errorhandler(CounterStoreError)
def counter_store_unavailable(e):
    logger.error(f"Counter store unavailable: {e.message}")
    return error(status=503, detail="Service temporarily unavailable")


@app.errorhandler(403)
def forbidden(e):
    return error(status=403, detail="Forbidden")


@app.errorhandler(404)
def page_not_found(e):
    return error(status=404, detail="Not Found")


@app.errorhandler(405)
def method_not_allowed(e):
    return error(status=405, detail="Method Not Allowed")


@app.errorhandler(413)
def request_entity_too_large(e):
    return error(status=413, detail="Request too large")


@app.errorhandler(500)
def internal_server_error(e):
    return error(status=500, detail="Internal Server Error")
