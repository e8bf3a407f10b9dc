"""
Test configuration and fixtures for guardapi tests
"""

import datetime
import os
import sys
import tempfile

import pytest

# Add the project root to the Python path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

# Set environment variables for testing before importing the app
os.environ["ENVIRONMENT"] = "testing"
os.environ["TESTING"] = "true"

if not os.environ.get("JWT_SECRET_KEY"):
    os.environ["JWT_SECRET_KEY"] = "test-jwt-secret-key-for-ci"
if not os.environ.get("SECRET_KEY"):
    os.environ["SECRET_KEY"] = "test-secret-key-for-ci"

# The engine is created when the app module is imported, so the database URL
# has to be in place first. CI may point DATABASE_URL at PostgreSQL instead.
_db_fd = _db_path = None
if not os.environ.get("DATABASE_URL"):
    _db_fd, _db_path = tempfile.mkstemp(suffix=".db")
    os.environ["DATABASE_URL"] = f"sqlite:///{_db_path}"
os.environ["COUNTER_STORE_URL"] = "memory://"

from guardapi import app as flask_app  # noqa: E402
from guardapi import db  # noqa: E402
from guardapi.config import SETTINGS  # noqa: E402
from guardapi.core import EXTENSION_KEY, build_security_core  # noqa: E402
from guardapi.models import User  # noqa: E402
from guardapi.services.notification_service import NotificationChannel  # noqa: E402
from guardapi.utils.counter_store import MemoryCounterStore  # noqa: E402

USER_TEST_PASSWORD = "UserPass123!"
ADMIN_TEST_PASSWORD = "AdminPass123!"

START_TIME = datetime.datetime(2025, 1, 15, 10, 5, tzinfo=datetime.UTC)


def pytest_sessionfinish(session, exitstatus):
    if _db_fd is not None:
        os.close(_db_fd)
        os.unlink(_db_path)


class FakeClock:
    """Controllable replacement for ``utcnow``"""

    def __init__(self, start=START_TIME):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += datetime.timedelta(seconds=seconds)


class RecordingChannel(NotificationChannel):
    """Notification channel that keeps every alert it receives"""

    name = "recording"

    def __init__(self):
        self.sent = []

    def send(self, subject, body, data):
        self.sent.append({"subject": subject, "body": body, "data": data})


@pytest.fixture(scope="function")
def app():
    """Create application for testing with fresh tables"""
    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        try:
            yield flask_app
        finally:
            db.session.remove()
            db.drop_all()
            flask_app.extensions.pop(EXTENSION_KEY, None)


@pytest.fixture
def client(app):
    """Create test client"""
    return app.test_client()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return MemoryCounterStore(clock=clock)


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def core(app, store, channel, clock):
    """Security services wired to the in-memory store and the fake clock"""
    security_core = build_security_core(
        SETTINGS, store=store, channels=[channel], clock=clock
    )
    app.extensions[EXTENSION_KEY] = security_core
    return security_core


@pytest.fixture
def monitor(core):
    return core.monitor


@pytest.fixture
def regular_user(app):
    """Create regular user for testing"""
    user = User(
        email="user@test.com",
        password=USER_TEST_PASSWORD,
        name="Test User",
        role="USER",
    )
    db.session.add(user)
    db.session.commit()
    db.session.refresh(user)
    return user


@pytest.fixture
def admin_user(app):
    """Create admin user for testing"""
    user = User(
        email="admin@test.com",
        password=ADMIN_TEST_PASSWORD,
        name="Admin User",
        role="ADMIN",
    )
    db.session.add(user)
    db.session.commit()
    db.session.refresh(user)
    return user


@pytest.fixture
def login(client):
    """POST credentials to the login endpoint"""

    def _login(email, password):
        return client.post(
            "/api/v1/auth/login", json={"email": email, "password": password}
        )

    return _login


@pytest.fixture
def admin_headers(login, core, admin_user):
    """Bearer token and session token for the admin user"""
    response = login("admin@test.com", ADMIN_TEST_PASSWORD)
    assert response.status_code == 200, response.json
    return {
        "Authorization": f"Bearer {response.json['access_token']}",
        "X-Session-Token": response.json["session_token"],
    }


@pytest.fixture
def user_headers(login, core, regular_user):
    """Bearer token and session token for the regular user"""
    response = login("user@test.com", USER_TEST_PASSWORD)
    assert response.status_code == 200, response.json
    return {
        "Authorization": f"Bearer {response.json['access_token']}",
        "X-Session-Token": response.json["session_token"],
    }
