"""
Health check and monitoring endpoints
"""
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from redis.exceptions import RedisError

from vibewell.config import settings
from vibewell.database import get_db
from vibewell.obs.logging import get_logger
from vibewell.obs.metrics import metrics
from vibewell.schemas.responses import HealthCheckResponse
from vibewell.utils.datetime import utcnow

router = APIRouter()
logger = get_logger(__name__)


@router.get("/health")
async def health_check():
    """Basic health check endpoint"""
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "version": "1.0.0",
        "environment": settings.ENVIRONMENT
    }


@router.get("/ready", response_model=HealthCheckResponse)
async def readiness_check(request: Request, db: Session = Depends(get_db)):
    """Readiness: the database answers, and Redis answers when rate limiting depends on it."""
    checks = {}

    try:
        db.execute(text("SELECT 1"))
        checks["database"] = True
    except SQLAlchemyError as e:
        logger.error(f"Readiness database check failed: {e}")
        checks["database"] = False

    store = getattr(request.app.state, "kv_store", None)
    if store is not None:
        try:
            checks["redis"] = store.ping()
        except RedisError as e:
            logger.error(f"Readiness redis check failed: {e}")
            checks["redis"] = False
    elif settings.is_rate_limiting_enabled():
        checks["redis"] = False

    ready = all(checks.values())
    body = HealthCheckResponse(status="healthy" if ready else "unhealthy", checks=checks)
    return JSONResponse(status_code=200 if ready else 503, content=body.model_dump(mode="json"))


@router.get("/metrics")
async def prometheus_metrics():
    """Prometheus scrape endpoint."""
    return metrics.get_metrics_response()
