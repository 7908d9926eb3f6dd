"""Celery application for the periodic billing jobs.

Worker and scheduler::

    celery -A celery_worker.celery worker --beat --loglevel=info
"""

from __future__ import annotations

import os

from celery import Celery, Task
from celery.schedules import crontab

_flask_app = None


class ContextTask(Task):
    """Run every task inside the Flask application context."""

    abstract = True

    def __call__(self, *args, **kwargs):
        if _flask_app is None:
            raise RuntimeError("init_celery() must be called before running tasks")
        with _flask_app.app_context():
            return super().__call__(*args, **kwargs)


CELERY_BEAT_SCHEDULE = {
    "process-expiring-tenants-hourly": {
        "task": "tasks.process_expiring_tenants_task",
        "schedule": crontab(minute=0),
    },
}

celery = Celery(
    "tenant_billing",
    broker=os.getenv("CELERY_BROKER_URL", os.getenv("REDIS_URL", "memory://")),
    backend=os.getenv("CELERY_RESULT_BACKEND", os.getenv("REDIS_URL", "cache+memory://")),
    include=["tasks"],
    task_cls=ContextTask,
)

celery.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    beat_schedule=CELERY_BEAT_SCHEDULE,
)


def init_celery(app):
    """Bind tasks to *app*; ``CELERY_*`` keys of the Flask config override the defaults."""
    global _flask_app
    _flask_app = app
    overrides = {
        key[len("CELERY_"):].lower(): value
        for key, value in app.config.items()
        if key.startswith("CELERY_")
    }
    if overrides:
        celery.conf.update(overrides)
    return celery
