from datetime import timedelta

from celery import Celery
from kombu import Queue

from core.config import load_billing_settings
from core.env import env_str

CELERY_TIMEZONE = env_str("CELERY_TIMEZONE", "UTC") or "UTC"
CELERY_DEFAULT_QUEUE = env_str("CELERY_DEFAULT_QUEUE", "billing") or "billing"

app = Celery(
    "billing",
    broker=env_str("CELERY_BROKER_URL", "redis://redis:6379/0"),
    backend=env_str("CELERY_RESULT_BACKEND", "redis://redis:6379/1"),
    include=["jobs.tasks"],
)

app.conf.update(
    task_track_started=True,
    timezone=CELERY_TIMEZONE,
    task_default_queue=CELERY_DEFAULT_QUEUE,
    task_queues=(Queue(CELERY_DEFAULT_QUEUE),),
    task_routes={},
    beat_schedule={
        "billing-downgrade-expired": {
            "task": "billing.downgrade_expired",
            "schedule": timedelta(minutes=load_billing_settings().sweeper_interval_minutes),
        },
    },
)
app.conf.enable_utc = str(CELERY_TIMEZONE).upper() == "UTC"
