from celery import Celery
from celery.signals import task_failure
import rollbar


def celery_base_data_hook(request, data):
    data["framework"] = "celery"


rollbar.BASE_DATA_HOOK = celery_base_data_hook


@task_failure.connect
def handle_task_failure(**kw):
    rollbar.report_exc_info(extra_data=kw)


def make_celery(app):
    celery = Celery(
        app.import_name,
        backend=app.config["result_backend"],
        broker=app.config["broker_url"],
    )
    celery.conf.update(app.config)

    celery.conf.task_routes = {
        "guardapi.tasks.security_event_cleanup.cleanup_old_security_events": {
            "queue": "default"
        },
        "guardapi.tasks.security_event_cleanup.refresh_security_dashboard": {
            "queue": "default"
        },
    }

    # Configure periodic tasks
    celery.conf.beat_schedule = {
        "cleanup-old-security-events": {
            "task": "guardapi.tasks.security_event_cleanup.cleanup_old_security_events",
            "schedule": 86400.0,  # Every day (86400 seconds)
        },
        "refresh-security-dashboard": {
            "task": "guardapi.tasks.security_event_cleanup.refresh_security_dashboard",
            "schedule": 240.0,  # Every 4 minutes (cache TTL is 5 minutes)
            "options": {"queue": "default"},
        },
    }
    celery.conf.timezone = "UTC"

    task_base = celery.Task

    class ContextTask(task_base):
        abstract = True

        def __call__(self, *args, **kwargs):
            with app.app_context():
                return task_base.__call__(self, *args, **kwargs)

    celery.Task = ContextTask
    return celery
