"""
Cleanup and maintenance background tasks
"""
import time

from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from vibewell.celery_app import celery_app
from vibewell.config import settings
from vibewell.database import SessionLocal
from vibewell.obs.logging import get_logger, log_celery_task
from vibewell.obs.metrics import record_worker_task
from vibewell.services.expiry_sweeper import sweep_expired_reservations
from vibewell.services.idempotency import purge_expired_records
from vibewell.services.kv_store import KeyValueStore
from vibewell.services.rate_limiter import RateLimiter

logger = get_logger(__name__)


def _finish(task, name: str, start_time: float, status: str, **kwargs):
    duration_ms = (time.time() - start_time) * 1000
    task_id = task.request.id if task.request else None
    log_celery_task(logger, name, task_id or "local", status, duration_ms, **kwargs)
    record_worker_task(name, status, duration_ms)


@celery_app.task(bind=True, autoretry_for=(SQLAlchemyError,), retry_backoff=True, max_retries=3)
def expire_stale_reservations(self):
    """Cancel PENDING reservations whose hold expired."""
    start_time = time.time()
    try:
        expired = sweep_expired_reservations(SessionLocal)
    except SQLAlchemyError as e:
        _finish(self, "expire_stale_reservations", start_time, "failure", error_type=type(e).__name__)
        raise
    _finish(self, "expire_stale_reservations", start_time, "success")
    return {"success": True, "expired_count": expired}


@celery_app.task(bind=True)
def purge_idempotency_records(self):
    """Delete idempotency records past the retention window."""
    start_time = time.time()
    db = SessionLocal()
    try:
        purged = purge_expired_records(db, settings.IDEMPOTENCY_TTL_DAYS)
    except SQLAlchemyError as e:
        db.rollback()
        _finish(self, "purge_idempotency_records", start_time, "failure", error_type=type(e).__name__)
        raise
    finally:
        db.close()
    _finish(self, "purge_idempotency_records", start_time, "success")
    return {"success": True, "purged_count": purged}


@celery_app.task(bind=True)
def purge_rate_limit_events(self):
    """Trim the rate limit event log to its retention window."""
    start_time = time.time()
    if not settings.REDIS_URL:
        return {"success": True, "purged_count": 0}

    store = KeyValueStore.from_url(
        settings.REDIS_URL,
        socket_timeout=settings.REDIS_SOCKET_TIMEOUT,
        connect_timeout=settings.REDIS_CONNECT_TIMEOUT,
    )
    try:
        purged = RateLimiter.from_settings(store).purge_events()
    except RedisError as e:
        _finish(self, "purge_rate_limit_events", start_time, "failure", error_type=type(e).__name__)
        raise
    finally:
        store.close()
    _finish(self, "purge_rate_limit_events", start_time, "success")
    return {"success": True, "purged_count": purged}
