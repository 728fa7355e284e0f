"""Celery application configuration.

This module sets up the Celery app with:
- Redis as broker and result backend
- Task routing to the workflow queue
- Serialization and timezone settings
- Beat schedule driving the queue, the deadline monitor and lease reclaim
- Logging and notification channels configured in every worker process
"""

import logging

from celery import Celery
from celery.schedules import crontab
from celery.signals import worker_process_init

from app.config import get_settings
from core.logging_config import setup_logging
from notifications.manager import get_notification_manager

logger = logging.getLogger(__name__)

settings = get_settings()

# Create Celery app
celery_app = Celery(
    "credentialing_workflow",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
)

# Configuration
celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # Timezone
    timezone="UTC",
    enable_utc=True,

    task_routes={
        "worker.tasks.workflow.*": {"queue": "workflows"},
        "worker.tasks.monitor.*": {"queue": "monitor"},
        "worker.tasks.*": {"queue": "default"},
    },

    # Default queue
    task_default_queue="default",

    # Result expiration (24 hours)
    result_expires=86400,

    # Task execution limits
    task_soft_time_limit=240,
    task_time_limit=300,
    task_acks_late=True,
    worker_prefetch_multiplier=1,

    task_reject_on_worker_lost=True,
    task_acks_on_failure_or_timeout=True,

    beat_schedule={
        "process-workflow-queue": {
            "task": "worker.tasks.workflow.process_workflow_queue",
            "schedule": 10.0,  # seconds
            "options": {"queue": "workflows"},
        },
        "reclaim-stale-queue-items": {
            "task": "worker.tasks.workflow.reclaim_stale_queue_items",
            "schedule": crontab(minute="*/5"),
            "options": {"queue": "workflows"},
        },
        "check-workflow-deadlines": {
            "task": "worker.tasks.monitor.check_workflow_deadlines",
            "schedule": crontab(minute=0),  # Hourly
            "options": {"queue": "monitor"},
        },
    },

    include=[
        "worker.tasks.workflow",
        "worker.tasks.monitor",
    ],
)


@worker_process_init.connect
def configure_worker_process(**kwargs):
    """Channels live in a per-process singleton; each forked worker needs its own."""
    setup_logging()
    manager = get_notification_manager()
    manager.configure_channels(get_settings().notification_channels_config())
    logger.info(f"Worker notification channels: {', '.join(manager.channel_names) or 'none'}")
