"""GUARDAPI SERVICES MODULE"""

import logging
import sys

logger = logging.getLogger()


def handle_exception(exc_type, exc_value, exc_traceback):
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_traceback)
        return
    logger.critical("Uncaught exception", exc_info=(exc_type, exc_value, exc_traceback))


sys.excepthook = handle_exception

from guardapi.services.email_service import EmailService  # noqa: E402
from guardapi.services.file_signature_service import (  # noqa: E402
    FileSignatureService,
)
from guardapi.services.lockout_service import LockoutService  # noqa: E402
from guardapi.services.notification_service import (  # noqa: E402
    NotificationDispatcher,
)
from guardapi.services.query_monitor_service import QueryMonitorService  # noqa: E402
from guardapi.services.security_event_service import (  # noqa: E402
    SecurityEventRepository,
)
from guardapi.services.security_monitoring_service import (  # noqa: E402
    SecurityMonitoringService,
)
from guardapi.services.session_service import SessionService  # noqa: E402
from guardapi.services.user_service import (  # noqa: E402
    UserAccountDirectory,
    UserService,
)

__all__ = [
    "EmailService",
    "FileSignatureService",
    "LockoutService",
    "NotificationDispatcher",
    "QueryMonitorService",
    "SecurityEventRepository",
    "SecurityMonitoringService",
    "SessionService",
    "UserAccountDirectory",
    "UserService",
]
