"""
Celery application configuration.

Redis is both the message broker and result backend. Workers send
verification email; beat purges expired verification requests hourly.
"""

from celery import Celery
from celery.schedules import crontab
from app.core.config import settings

# Create Celery instance
celery_app = Celery(
    "naggery_worker",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL
)

# Configure Celery
celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # Timezone
    timezone="UTC",
    enable_utc=True,

    # Task behavior
    task_track_started=True,
    task_time_limit=120,
    task_soft_time_limit=90,

    # Result backend
    result_expires=3600,

    # Worker behavior
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=200,

    beat_schedule={
        "cleanup-expired-verification-requests": {
            "task": "cleanup_expired_verification_requests",
            "schedule": crontab(minute=0),  # hourly
        },
    },
)

# Auto-discover tasks from app.tasks
celery_app.autodiscover_tasks(['app'])
