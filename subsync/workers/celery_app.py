# subsync/workers/celery_app.py
import os

from celery import Celery
from celery.schedules import crontab
from celery.signals import setup_logging
from kombu import Queue

from subsync.logging_config import configure_logging_for_worker

celery = Celery(
    "subsync",
    broker=os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0"),
    backend=os.getenv("CELERY_RESULT_BACKEND", os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")),
    include=["subsync.workers.ledger_tasks", "subsync.workers.subscription_sync"],
)

CELERY_BEAT_SCHEDULE = {
    "sweep-financial-records-daily": {
        "task": "subsync.workers.ledger_tasks.sweep_financial_records",
        "schedule": crontab(minute=0, hour=3),
    },
    "resync-subscriptions-hourly": {
        "task": "subsync.workers.subscription_sync.resync_subscriptions",
        "schedule": crontab(minute=15, hour="*/1"),
    },
}

celery.conf.update(
    # Serialization
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],

    # Timezone
    timezone="UTC",
    enable_utc=True,

    # Reliability settings
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_reject_on_worker_lost=True,

    # Retry behavior
    task_default_retry_delay=60,

    # Routing
    task_default_queue="default",
    task_queues=(
        Queue("default"),
        Queue("maintenance"),
    ),

    # Time limits
    task_time_limit=900,
    task_soft_time_limit=840,

    beat_schedule=CELERY_BEAT_SCHEDULE,
)


@setup_logging.connect
def _configure_worker_logging(**kwargs):
    configure_logging_for_worker()


def init_celery(app):
    """Bind tasks to the Flask app so they run inside its app context."""
    celery.conf.update(
        broker_url=app.config.get("CELERY_BROKER_URL"),
        result_backend=app.config.get("CELERY_RESULT_BACKEND"),
    )

    class ContextTask(celery.Task):
        abstract = True

        def __call__(self, *args, **kwargs):
            with app.app_context():
                return super().__call__(*args, **kwargs)

    celery.Task = ContextTask
    return celery
