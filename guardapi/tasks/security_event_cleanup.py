"""SECURITY EVENT MAINTENANCE TASKS"""

import logging

from celery import Task
import rollbar

logger = logging.getLogger(__name__)


class SecurityEventTask(Task):
    """Base task for security event maintenance"""

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        logger.error(f"Security event task failed: {exc}")
        rollbar.report_exc_info()


# Import celery after other imports to avoid circular dependency
from guardapi import celery  # noqa: E402


@celery.task(base=SecurityEventTask, bind=True)
def cleanup_old_security_events(self, days=None):
    """Delete security events older than the retention period"""
    logger.info("[TASK]: Starting cleanup of old security events")

    try:
        from guardapi.core import get_security_core

        monitor = get_security_core().monitor
        retention_days = days or monitor.config.event_retention_days
        deleted_count = monitor.cleanup_old_events(retention_days)

        logger.info(f"[TASK]: Deleted {deleted_count} security events")
        return {
            "status": "success",
            "deleted_count": deleted_count,
            "retention_days": retention_days,
            "message": (
                f"Deleted {deleted_count} security events older than "
                f"{retention_days} days"
            ),
        }
    except Exception as error:
        logger.error(f"[TASK]: Error cleaning up security events: {str(error)}")
        raise self.retry(exc=error, countdown=60, max_retries=3) from error


@celery.task(base=SecurityEventTask, bind=True)
def refresh_security_dashboard(self):
    """Rebuild the cached security dashboard ahead of its expiry"""
    logger.info("[TASK]: Refreshing security dashboard cache")

    try:
        from guardapi.core import get_security_core

        data = get_security_core().monitor.get_dashboard_data(refresh=True)
        return {
            "status": "success",
            "generated_at": data["generated_at"],
            "recent_events": len(data["recent_events"]),
        }
    except Exception as error:
        logger.error(f"[TASK]: Error refreshing security dashboard: {str(error)}")
        raise self.retry(exc=error, countdown=60, max_retries=3) from error
