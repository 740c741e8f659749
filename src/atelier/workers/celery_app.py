"""
Celery application configuration for Atelier.

This module configures the Celery app with:
- Redis broker and result backend
- Queue routing for generation, media, maintenance and sync work
- Priority support on the Redis transport (lower number runs first)
- Default retry delay for manual retries
- Beat schedule for the provisional-resource reaper
"""

import logging

from celery import Celery
from celery.schedules import crontab

from atelier.core.config import get_settings

logger = logging.getLogger(__name__)

# Get settings
settings = get_settings()

# Queue names
QUEUE_GENERATION = "generation"
QUEUE_MEDIA = "media"
QUEUE_MAINTENANCE = "maintenance"
QUEUE_SYNC = "sync"

# =============================================================================
# Celery Application Configuration
# =============================================================================

celery_app = Celery(
    "atelier_workers",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "atelier.workers.tasks.generation",
        "atelier.workers.tasks.derived_assets",
        "atelier.workers.tasks.maintenance",
        "atelier.workers.tasks.network_sync",
    ],
)

# =============================================================================
# Task Serialization Settings
# =============================================================================

celery_app.conf.update(
    # Use JSON for serialization (more secure than pickle)
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    # Timezone configuration
    timezone="UTC",
    enable_utc=True,
)

# =============================================================================
# Task Execution Settings
# =============================================================================

celery_app.conf.update(
    # Acknowledge after execution; a crashed worker's task is redelivered
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    # Only prefetch one task at a time for long-running tasks
    worker_prefetch_multiplier=1,
    worker_concurrency=settings.worker_concurrency,
    # Default task timeout (15 minutes, renders can be slow)
    task_time_limit=900,
    # Soft time limit - raises SoftTimeLimitExceeded before hard timeout
    task_soft_time_limit=840,
    # Track task start time
    task_track_started=True,
    # Send task-sent events for monitoring
    task_send_sent_event=True,
)

# Redis emulates priorities with one list per step; 0 is consumed first
celery_app.conf.broker_transport_options = {
    "priority_steps": list(range(10)),
    "sep": ":",
    "queue_order_strategy": "priority",
    # Must exceed the longest countdown, or delayed tasks are redelivered early
    "visibility_timeout": 3600,
}
celery_app.conf.task_default_priority = 5

# =============================================================================
# Retry Settings
# =============================================================================

# Tasks declare autoretry with exponential backoff; this only covers manual retry()
celery_app.conf.task_default_retry_delay = 10

# =============================================================================
# Task Routing Configuration
# =============================================================================

celery_app.conf.task_routes = {
    # Primary content generation (OpenAI chat)
    "atelier.workers.tasks.generation.generate_artifact": {"queue": QUEUE_GENERATION},
    # Derived assets (TTS, render, storage)
    "atelier.workers.tasks.derived_assets.run_derived_stage": {"queue": QUEUE_MEDIA},
    # Periodic cleanup
    "atelier.workers.tasks.maintenance.reap_expired_resources": {"queue": QUEUE_MAINTENANCE},
    "atelier.workers.tasks.maintenance.purge_expired_resources": {"queue": QUEUE_MAINTENANCE},
    # Rate-limited third-party sync
    "atelier.workers.tasks.network_sync.sync_network": {"queue": QUEUE_SYNC},
}

# Define queue configurations
celery_app.conf.task_queues = {
    QUEUE_GENERATION: {
        "exchange": QUEUE_GENERATION,
        "routing_key": QUEUE_GENERATION,
    },
    QUEUE_MEDIA: {
        "exchange": QUEUE_MEDIA,
        "routing_key": QUEUE_MEDIA,
    },
    QUEUE_MAINTENANCE: {
        "exchange": QUEUE_MAINTENANCE,
        "routing_key": QUEUE_MAINTENANCE,
    },
    QUEUE_SYNC: {
        "exchange": QUEUE_SYNC,
        "routing_key": QUEUE_SYNC,
    },
}

celery_app.conf.task_default_queue = QUEUE_GENERATION

# =============================================================================
# Result Backend Settings
# =============================================================================

celery_app.conf.update(
    # Keep task results for 24 hours
    result_expires=86400,
    # Extend result format with additional metadata
    result_extended=True,
)

# =============================================================================
# Logging Configuration
# =============================================================================

celery_app.conf.update(
    # Log format for Celery workers
    worker_log_format="[%(asctime)s: %(levelname)s/%(processName)s] %(message)s",
    worker_task_log_format=(
        "[%(asctime)s: %(levelname)s/%(processName)s] "
        "[%(task_name)s(%(task_id)s)] %(message)s"
    ),
)

# =============================================================================
# Celery Beat Configuration
# =============================================================================

celery_app.conf.beat_schedule = {
    "reap-expired-provisional-resources": {
        "task": "atelier.workers.tasks.maintenance.reap_expired_resources",
        "schedule": crontab(minute=0, hour="*/4"),
        "kwargs": {"batch_size": settings.reaper_batch_size},
        "options": {"queue": QUEUE_MAINTENANCE},
    },
    "purge-expired-provisional-resources": {
        "task": "atelier.workers.tasks.maintenance.purge_expired_resources",
        "schedule": crontab(minute=30, hour=3),
        "kwargs": {"retention_days": settings.reaper_retention_days},
        "options": {"queue": QUEUE_MAINTENANCE},
    },
}

# Export configuration utilities
__all__ = [
    "celery_app",
    "QUEUE_GENERATION",
    "QUEUE_MEDIA",
    "QUEUE_MAINTENANCE",
    "QUEUE_SYNC",
]
