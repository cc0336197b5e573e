"""Celery worker configuration.

This module sets up Celery for booking background work:
- Effect execution after committed transitions
- Webhook retry queue
- Stale booking reconciliation
"""

from celery import Celery
from celery.schedules import crontab

from app.config import settings

# Create Celery app
celery_app = Celery(
    "booking_tasks",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["app.tasks"],
)

# Celery configuration
celery_app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Task execution settings
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=300,  # 5 minutes max
    task_soft_time_limit=240,

    # Worker settings
    worker_prefetch_multiplier=1,

    # Result backend settings
    result_expires=3600,

    # Retry settings
    task_default_retry_delay=60,
    task_max_retries=3,

    # Beat schedule for periodic tasks
    beat_schedule={
        # Webhook deliveries whose retry time has come
        "retry-webhook-events": {
            "task": "app.tasks.retry_webhook_events",
            "schedule": crontab(minute="*"),
        },
        # Abandoned flows, unconfirmed cancellations and stuck effects
        "reconcile-stale-bookings": {
            "task": "app.tasks.reconcile_stale_bookings",
            "schedule": crontab(minute="*/15"),
        },
    },
)


if __name__ == "__main__":
    celery_app.start()
