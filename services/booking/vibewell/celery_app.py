"""
Celery configuration for VibeWell booking maintenance tasks
"""
from celery import Celery
from vibewell.config import settings

# Create Celery instance
celery_app = Celery(
    "vibewell",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=[
        "vibewell.tasks.maintenance_tasks",
    ]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Task routing
    task_routes={
        "vibewell.tasks.maintenance_tasks.*": {"queue": "maintenance"},
    },

    # Queue configuration
    task_default_queue="default",
    task_queues={
        "default": {"exchange": "default", "routing_key": "default"},
        "maintenance": {"exchange": "maintenance", "routing_key": "maintenance"},
    },

    # Task execution
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_reject_on_worker_lost=True,

    # Retry configuration
    task_default_retry_delay=60,
    task_max_retries=3,
    task_retry_jitter=True,

    # Result backend
    result_expires=3600,  # 1 hour

    # Beat schedule for periodic tasks
    beat_schedule={
        "expire-stale-reservations": {
            "task": "vibewell.tasks.maintenance_tasks.expire_stale_reservations",
            "schedule": float(settings.RESERVATION_SWEEP_INTERVAL_SECONDS),
        },
        "purge-idempotency-records": {
            "task": "vibewell.tasks.maintenance_tasks.purge_idempotency_records",
            "schedule": 86400.0,  # Daily
        },
        "purge-rate-limit-events": {
            "task": "vibewell.tasks.maintenance_tasks.purge_rate_limit_events",
            "schedule": 3600.0,  # Hourly
        },
    },
)
