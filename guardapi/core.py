"""Wiring of the security services shared by the API and the Celery workers"""

from dataclasses import dataclass
import datetime
import logging
import threading
from typing import Callable, Optional

from flask import current_app
from sqlalchemy.orm import sessionmaker

from guardapi import db
from guardapi.services.file_signature_service import FileSignatureService
from guardapi.services.lockout_service import LockoutService
from guardapi.services.notification_service import (
    NotificationChannel,
    NotificationDispatcher,
    build_channels,
)
from guardapi.services.query_monitor_service import QueryMonitorService
from guardapi.services.security_config import SecurityConfig
from guardapi.services.security_event_service import SecurityEventRepository
from guardapi.services.security_monitoring_service import SecurityMonitoringService
from guardapi.services.session_service import SessionService
from guardapi.services.user_service import UserAccountDirectory
from guardapi.utils.counter_store import CounterStore, create_counter_store, utcnow

logger = logging.getLogger(__name__)

EXTENSION_KEY = "guardapi.security"

_build_lock = threading.Lock()


@dataclass
class SecurityCore:
    config: SecurityConfig
    store: CounterStore
    repository: SecurityEventRepository
    notifier: NotificationDispatcher
    monitor: SecurityMonitoringService
    lockout: LockoutService
    sessions: SessionService
    query_monitor: QueryMonitorService
    file_signatures: FileSignatureService


def build_security_core(
    settings,
    store: Optional[CounterStore] = None,
    session_factory=None,
    channels: Optional[list[NotificationChannel]] = None,
    accounts=None,
    clock: Callable[[], datetime.datetime] = utcnow,
) -> SecurityCore:
    """
    Build every security service from ``settings``.

    Must run inside an application context unless ``session_factory`` is
    given, since the event repository binds to the application engine.
    """
    config = SecurityConfig.from_settings(settings)
    if store is None:
        store = create_counter_store(settings.get("COUNTER_STORE_URL"))
    if session_factory is None:
        session_factory = sessionmaker(bind=db.engine, expire_on_commit=False)
    if channels is None:
        channels = build_channels(config.monitoring)
    if accounts is None:
        accounts = UserAccountDirectory(session_factory)

    repository = SecurityEventRepository(session_factory)
    notifier = NotificationDispatcher(channels)
    monitor = SecurityMonitoringService(
        repository, store, notifier, config.monitoring, clock=clock
    )
    return SecurityCore(
        config=config,
        store=store,
        repository=repository,
        notifier=notifier,
        monitor=monitor,
        lockout=LockoutService(
            store, monitor, config.lockout, accounts=accounts, clock=clock
        ),
        sessions=SessionService(store, monitor, config.session, clock=clock),
        query_monitor=QueryMonitorService(monitor, config.query_monitor),
        file_signatures=FileSignatureService(monitor),
    )


def get_security_core(app=None) -> SecurityCore:
    """Return the app's security services, building them on first use."""
    if app is None:
        app = current_app._get_current_object()
    core = app.extensions.get(EXTENSION_KEY)
    if core is not None:
        return core

    with _build_lock:
        core = app.extensions.get(EXTENSION_KEY)
        if core is None:
            from guardapi.config import SETTINGS

            with app.app_context():
                core = build_security_core(SETTINGS)
                if core.config.query_monitor.enabled:
                    core.query_monitor.install(db.engine)
            app.extensions[EXTENSION_KEY] = core
            logger.info("Security services initialized")
    return core
