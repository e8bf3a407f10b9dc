"""TASKS MODULE"""

# Import tasks to ensure they are registered with Celery
from guardapi.tasks import security_event_cleanup  # noqa: F401
